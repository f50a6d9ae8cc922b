"""
数据模型模块

配置对象（Provider / AIModel / CustomAPIConfig 等）使用 pydantic 定义，
同时接受存储中的 camelCase 键（apiEndpoint、contentPath、arrayItemTemplate …）
和 Python 代码中的 snake_case 字段名。配置对象不可变，单次调用期间只读。

运行时对象（ChatTurn、Message）使用 dataclass。
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .constants import (
    AUTO_FETCH_DEFAULT_INTERVAL_HOURS,
    DEFAULT_CONTENT_TYPE,
    DEFAULT_DATA_PREFIX,
    DEFAULT_FINISH_CONDITION,
)


class ConfigModel(BaseModel):
    """配置模型基类"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        protected_namespaces=(),
    )

    def to_dict(self) -> dict:
        """序列化为存储格式（camelCase）"""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ==================== 请求头 / 查询参数 ====================

class HeaderConfig(ConfigModel):
    """请求头配置，模板值可使用 {apiKey} {model} {endpoint}"""
    key: str
    value: str = ""
    value_template: Optional[str] = None
    value_type: Optional[Literal["static", "template"]] = None

    @property
    def is_template(self) -> bool:
        # 未设置 valueType 时，存在 valueTemplate 即视为模板（兼容旧配置）
        if self.value_type == "template":
            return True
        return self.value_type is None and bool(self.value_template)

    @property
    def raw_template(self) -> str:
        return self.value_template or self.value


class QueryParamConfig(HeaderConfig):
    """查询参数配置"""
    pass


# ==================== 可视化 JSON 结构 ====================

TemplateVariable = Literal[
    "role", "content", "message", "model", "stream", "temperature", "apiKey", "systemPrompt"
]


class JsonNodeBase(ConfigModel):
    key: str = ""
    id: Optional[str] = None
    description: Optional[str] = None


class ObjectNode(JsonNodeBase):
    """对象节点：children 的 key 作为字段名"""
    type: Literal["object"] = "object"
    children: list["JsonNode"] = Field(default_factory=list)


class ArrayNode(JsonNodeBase):
    """数组节点：顶层数组代表完整消息历史，arrayItemTemplate 为单条消息模板"""
    type: Literal["array"] = "array"
    array_item_template: Optional["JsonNode"] = None


class ScalarNode(JsonNodeBase):
    """字面量节点"""
    type: Literal["string", "number", "boolean"]
    value: Union[bool, int, float, str, None] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_value(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        node_type = data.get("type")
        value = data.get("value")
        if node_type == "string":
            value = "" if value is None else str(value)
        elif node_type == "number":
            if isinstance(value, bool):
                raise ValueError("number 节点的值不能是布尔值")
            if isinstance(value, str):
                value = float(value) if "." in value else int(value)
            elif value is None:
                value = 0
            elif not isinstance(value, (int, float)):
                raise ValueError(f"number 节点的值必须是数字: {value!r}")
        elif node_type == "boolean":
            if value in ("true", "false"):
                value = value == "true"
            elif value is None:
                value = False
            elif not isinstance(value, bool):
                raise ValueError(f"boolean 节点的值必须是布尔值: {value!r}")
        return {**data, "value": value}


class TemplateNode(JsonNodeBase):
    """模板变量节点"""
    type: Literal["template"] = "template"
    template_variable: TemplateVariable


JsonNode = Annotated[
    Union[ObjectNode, ArrayNode, ScalarNode, TemplateNode],
    Field(discriminator="type"),
]

ObjectNode.model_rebuild()
ArrayNode.model_rebuild()


class RoleMapping(ConfigModel):
    """内部角色 -> Provider 角色"""
    user: str = "user"
    assistant: str = "assistant"
    system: str = "system"

    def map(self, role: str) -> str:
        mapped = getattr(self, role, None) if role in ("user", "assistant", "system") else None
        return mapped or role


class MessageStructureConfig(ConfigModel):
    """可视化消息结构配置"""
    enabled: bool = True
    root_node: JsonNode
    role_mapping: RoleMapping = Field(default_factory=RoleMapping)


# ==================== 请求体 ====================

class BodyFieldConfig(ConfigModel):
    """
    请求体字段配置

    path 为请求体中的点分隔路径（如 model、generationConfig.temperature）
    """
    path: str
    value_type: Literal["static", "template", "dynamic", "visual_structure"] = "static"
    value: Any = None
    value_template: Optional[str] = None
    message_structure: Optional[MessageStructureConfig] = None
    description: Optional[str] = None

    @field_validator("value_type", mode="before")
    @classmethod
    def _legacy_messages_type(cls, v: Any) -> Any:
        # 旧配置中的 "messages" 等同于 dynamic
        return "dynamic" if v == "messages" else v


# ==================== 流式配置 ====================

class UrlReplacement(ConfigModel):
    from_: str = Field(default="", alias="from")
    to: str = ""


class StreamRequestConfig(ConfigModel):
    """流式请求开启方式的参数"""
    body_field_path: Optional[str] = None
    body_field_value: Any = True
    url_replacement: Optional[UrlReplacement] = None
    query_param_key: Optional[str] = None
    query_param_value: Optional[str] = None


class StreamResponseConfig(ConfigModel):
    """流式响应解析配置"""
    format: Optional[Literal["sse", "json"]] = None
    data_prefix: str = DEFAULT_DATA_PREFIX
    content_path: str = ""
    reasoning_path: Optional[str] = None
    finish_condition: Optional[str] = DEFAULT_FINISH_CONDITION


class StreamConfig(ConfigModel):
    """流式配置"""
    enabled: bool = False
    request_type: Literal["body_field", "url_endpoint", "query_param"] = "body_field"
    request: StreamRequestConfig = Field(default_factory=StreamRequestConfig)
    response: StreamResponseConfig = Field(default_factory=StreamResponseConfig)


# ==================== 响应解析 ====================

class ErrorConfig(ConfigModel):
    message_path: Optional[str] = None


class APIResponseConfig(ConfigModel):
    """非流式响应解析配置"""
    content_path: str = ""
    reasoning_path: Optional[str] = None
    error_config: Optional[ErrorConfig] = None


class CustomAPIConfig(ConfigModel):
    """声明式 API 适配配置"""
    method: Literal["GET", "POST", "PUT", "DELETE"] = "POST"
    content_type: str = DEFAULT_CONTENT_TYPE
    url_template: Optional[str] = None
    headers: list[HeaderConfig] = Field(default_factory=list)
    query_params: list[QueryParamConfig] = Field(default_factory=list)
    body_fields: list[BodyFieldConfig] = Field(default_factory=list)
    stream_config: Optional[StreamConfig] = None
    response: APIResponseConfig = Field(default_factory=APIResponseConfig)
    template_variables: dict[str, str] = Field(default_factory=dict)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @property
    def streaming_enabled(self) -> bool:
        return bool(self.stream_config and self.stream_config.enabled)


# ==================== 自动获取 ====================

class ModelsApiConfig(ConfigModel):
    enabled: bool = False
    endpoint: str = ""
    method: Literal["GET", "POST"] = "GET"
    headers: list[HeaderConfig] = Field(default_factory=list)
    response_path: Optional[str] = None
    model_id_path: str = "id"
    model_name_path: Optional[str] = None
    model_description_path: Optional[str] = None
    filter_pattern: Optional[str] = None


class PricingApiConfig(ConfigModel):
    enabled: bool = False
    endpoint: str = ""
    method: Literal["GET", "POST"] = "GET"
    headers: list[HeaderConfig] = Field(default_factory=list)
    response_path: Optional[str] = None


class BalanceResponseField(ConfigModel):
    field_path: str
    label: Optional[str] = None


class BalanceApiConfig(PricingApiConfig):
    response_fields: list[BalanceResponseField] = Field(default_factory=list)
    balance_info_path: Optional[str] = None
    currency_path: Optional[str] = None
    available_path: Optional[str] = None


class AutoUpdateConfig(ConfigModel):
    enabled: bool = False
    interval_hours: int = AUTO_FETCH_DEFAULT_INTERVAL_HOURS
    last_update_time: Optional[datetime] = None


class AutoFetchConfig(ConfigModel):
    models_api: Optional[ModelsApiConfig] = None
    pricing_api: Optional[PricingApiConfig] = None
    balance_api: Optional[BalanceApiConfig] = None
    auto_update: Optional[AutoUpdateConfig] = None


# ==================== Provider / Model ====================

class ProviderKind(str, Enum):
    """Provider 协议方言，配置时确定一次"""
    OPENAI = "openai"
    GEMINI = "gemini"
    ANTHROPIC = "anthropic"
    CUSTOM = "custom"


# 名称 / 端点关键字 -> 方言（仅在校验时使用一次）
_KIND_KEYWORDS: tuple[tuple[ProviderKind, tuple[str, ...]], ...] = (
    (ProviderKind.GEMINI, ("gemini", "generativelanguage")),
    (ProviderKind.ANTHROPIC, ("claude", "anthropic")),
    (ProviderKind.OPENAI, ("openai", "deepseek", "moonshot", "qwen", "dashscope", "siliconflow", "openrouter")),
)

_PRESET_KINDS: dict[str, ProviderKind] = {
    "openai": ProviderKind.OPENAI,
    "deepseek": ProviderKind.OPENAI,
    "claude": ProviderKind.ANTHROPIC,
    "gemini": ProviderKind.GEMINI,
    "custom": ProviderKind.CUSTOM,
}


def infer_provider_kind(name: str, endpoint: str = "", preset_type: Optional[str] = None) -> ProviderKind:
    """根据预设类型或名称 / 端点推断方言"""
    if preset_type and preset_type in _PRESET_KINDS:
        return _PRESET_KINDS[preset_type]
    text = f"{name} {endpoint}".lower()
    for kind, keywords in _KIND_KEYWORDS:
        if any(k in text for k in keywords):
            return kind
    return ProviderKind.CUSTOM


class ModelFeatures(ConfigModel):
    """模型能力，仅用于界面展示"""
    reasoning: bool = False
    image: bool = False
    video: bool = False
    voice: bool = False


class AIModel(ConfigModel):
    """模型条目，id 既是 API 使用的 ID 也是显示名称"""
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    parameters: dict[str, Union[bool, int, float, str]] = Field(default_factory=dict)
    features: ModelFeatures = Field(default_factory=ModelFeatures)
    history_policy: Optional[str] = None


class Provider(ConfigModel):
    """AI Provider 配置"""
    id: str
    name: str
    api_endpoint: str = ""
    api_key: str = ""
    models: list[AIModel] = Field(default_factory=list)
    default_model_id: Optional[str] = None
    custom_config: Optional[CustomAPIConfig] = None
    auto_fetch_config: Optional[AutoFetchConfig] = None
    preset_type: Optional[str] = None
    kind: ProviderKind = ProviderKind.CUSTOM

    @model_validator(mode="before")
    @classmethod
    def _derive_kind(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("kind"):
            return data
        kind = infer_provider_kind(
            str(data.get("name", "")),
            str(data.get("apiEndpoint", data.get("api_endpoint", ""))),
            data.get("presetType", data.get("preset_type")),
        )
        return {**data, "kind": kind}

    def get_model(self, model_id: str) -> Optional[AIModel]:
        for m in self.models:
            if m.id == model_id:
                return m
        return None

    def resolve_model_id(self, model_id: Optional[str] = None) -> Optional[str]:
        """显式模型 > 默认模型 > 第一个模型"""
        if model_id:
            return model_id
        if self.default_model_id:
            return self.default_model_id
        if self.models:
            return self.models[0].id
        return None


class ProxySettings(ConfigModel):
    """代理设置"""
    enabled: bool = False
    type: Literal["http", "https", "socks5"] = "http"
    host: str = ""
    port: int = 0
    requires_auth: bool = False
    username: str = ""
    password: str = ""

    @field_validator("port", mode="before")
    @classmethod
    def _parse_port(cls, v: Any) -> Any:
        if v in (None, ""):
            return 0
        return int(v)


class Agent(ConfigModel):
    """Agent 配置（系统提示词 + 模型 + 参数）"""
    id: str
    name: str
    description: str = ""
    system_prompt: str = ""
    provider_id: str
    model_id: str
    keep_history: bool = True
    max_history_messages: Optional[int] = None
    is_stream_mode: Optional[bool] = None
    temperature: Optional[float] = None
    settings: dict[str, Any] = Field(default_factory=dict)


# ==================== 运行时对象 ====================

Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class ChatTurn:
    """一条历史消息"""
    role: Role
    content: str


@dataclass
class Message:
    """
    聊天消息

    回复开始时以空内容、streaming=True 创建，随增量原地更新，
    完成或出错时 streaming=False（出错 / 取消时 canceled=True）。
    """
    role: Literal["user", "assistant"]
    content: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    streaming: bool = False
    canceled: bool = False
    reasoning_content: Optional[str] = None

    @classmethod
    def start_reply(cls) -> "Message":
        return cls(role="assistant", streaming=True)

    def apply(self, content: str, done: bool, error: bool = False, reasoning_content: Optional[str] = None) -> None:
        """应用一次流式回调"""
        self.content = content
        if reasoning_content is not None:
            self.reasoning_content = reasoning_content
        if done:
            self.streaming = False
            self.canceled = error

    def to_turn(self) -> ChatTurn:
        return ChatTurn(role=self.role, content=self.content)
