"""
预设配置模块

- OpenAI / Gemini 的可视化消息结构树
- 各方言的完整 CustomAPIConfig 预设（界面可直接套用）
- 旧版模式：Provider 没有 customConfig 时按 ProviderKind 使用的内置配置，
  以及 dynamic 字段的构建函数
- 自动获取配置预设
"""

from functools import lru_cache
from typing import Any, Optional

from .constants import ANTHROPIC_API_VERSION, ANTHROPIC_DEFAULT_MAX_TOKENS
from .models import (
    AutoFetchConfig,
    BodyFieldConfig,
    CustomAPIConfig,
    MessageStructureConfig,
    ProviderKind,
)
from .structure import CompileContext, compile_structure


# ==================== 消息结构树 ====================

def _message_tree(root_key: str, text_child: dict) -> dict:
    return {
        "id": "root",
        "type": "array",
        "key": root_key,
        "arrayItemTemplate": {
            "id": "message-item",
            "type": "object",
            "children": [
                {"id": "role", "type": "template", "key": "role", "templateVariable": "role"},
                text_child,
            ],
        },
    }


OPENAI_MESSAGE_STRUCTURE = MessageStructureConfig.model_validate({
    "enabled": True,
    "rootNode": _message_tree(
        "messages",
        {"id": "content", "type": "template", "key": "content", "templateVariable": "content"},
    ),
    "roleMapping": {"user": "user", "assistant": "assistant", "system": "system"},
})

GEMINI_MESSAGE_STRUCTURE = MessageStructureConfig.model_validate({
    "enabled": True,
    "rootNode": _message_tree(
        "contents",
        {
            "id": "parts",
            "type": "array",
            "key": "parts",
            "arrayItemTemplate": {
                "id": "part-item",
                "type": "object",
                "children": [
                    {"id": "text", "type": "template", "key": "text", "templateVariable": "content"},
                ],
            },
        },
    ),
    "roleMapping": {"user": "user", "assistant": "model", "system": "user"},
})


# ==================== 完整配置预设 ====================

def _bearer_header() -> dict:
    return {"key": "Authorization", "valueTemplate": "Bearer {apiKey}", "valueType": "template"}


def _messages_field(path: str, structure: MessageStructureConfig, legacy: bool) -> dict:
    if legacy:
        return {"path": path, "valueType": "dynamic"}
    return {"path": path, "valueType": "visual_structure", "messageStructure": structure.to_dict()}


def _openai_config(legacy: bool) -> dict:
    return {
        "method": "POST",
        "headers": [_bearer_header()],
        "bodyFields": [
            {"path": "model", "valueType": "template", "valueTemplate": "{model}"},
            _messages_field("messages", OPENAI_MESSAGE_STRUCTURE, legacy),
            {"path": "temperature", "valueType": "template", "valueTemplate": "{temperature}"},
        ],
        "streamConfig": {
            "enabled": True,
            "requestType": "body_field",
            "request": {"bodyFieldPath": "stream", "bodyFieldValue": True},
            "response": {
                "format": "sse",
                "dataPrefix": "data: ",
                "contentPath": "choices[0].delta.content",
                "reasoningPath": "choices[0].delta.reasoning_content",
                "finishCondition": "[DONE]",
            },
        },
        "response": {
            "contentPath": "choices[0].message.content",
            "reasoningPath": "choices[0].message.reasoning_content",
            "errorConfig": {"messagePath": "error.message"},
        },
    }


def _gemini_system_fields(legacy: bool) -> list[dict]:
    # 旧版 contents 不含 system，系统提示词走 systemInstruction；
    # 可视化结构按 roleMapping 把 system 放进 contents
    if legacy:
        return [{"path": "systemInstruction", "valueType": "dynamic"}]
    return []


def _gemini_config(legacy: bool) -> dict:
    return {
        "method": "POST",
        "urlTemplate": "{endpoint}/models/{model}:generateContent",
        "queryParams": [{"key": "key", "valueTemplate": "{apiKey}", "valueType": "template"}],
        "bodyFields": [
            _messages_field("contents", GEMINI_MESSAGE_STRUCTURE, legacy),
            {"path": "generationConfig.temperature", "valueType": "template", "valueTemplate": "{temperature}"},
        ] + _gemini_system_fields(legacy),
        "streamConfig": {
            "enabled": True,
            "requestType": "url_endpoint",
            "request": {"urlReplacement": {"from": "generateContent", "to": "streamGenerateContent"}},
            # streamGenerateContent 默认返回分块的 JSON 数组
            "response": {
                "format": "json",
                "contentPath": "candidates[0].content.parts[0].text",
                "finishCondition": None,
            },
        },
        "response": {
            "contentPath": "candidates[0].content.parts[0].text",
            "errorConfig": {"messagePath": "error.message"},
        },
    }


def _anthropic_config(legacy: bool) -> dict:
    return {
        "method": "POST",
        "headers": [
            {"key": "x-api-key", "valueTemplate": "{apiKey}", "valueType": "template"},
            {"key": "anthropic-version", "value": ANTHROPIC_API_VERSION, "valueType": "static"},
        ],
        "bodyFields": [
            {"path": "model", "valueType": "template", "valueTemplate": "{model}"},
            {"path": "max_tokens", "valueType": "static", "value": ANTHROPIC_DEFAULT_MAX_TOKENS},
            {"path": "system", "valueType": "dynamic"},
            # Anthropic 的系统提示词是单独字段，messages 中不含 system
            {"path": "messages", "valueType": "dynamic"},
            {"path": "temperature", "valueType": "template", "valueTemplate": "{temperature}"},
        ],
        "streamConfig": {
            "enabled": True,
            "requestType": "body_field",
            "request": {"bodyFieldPath": "stream", "bodyFieldValue": True},
            "response": {
                "format": "sse",
                "dataPrefix": "data: ",
                "contentPath": "delta.text",
                "reasoningPath": "delta.thinking",
                "finishCondition": None,
            },
        },
        "response": {
            "contentPath": "content[0].text",
            "errorConfig": {"messagePath": "error.message"},
        },
    }


_CONFIG_BUILDERS = {
    ProviderKind.OPENAI: _openai_config,
    ProviderKind.GEMINI: _gemini_config,
    ProviderKind.ANTHROPIC: _anthropic_config,
    # 未知 Provider 按 OpenAI 兼容格式处理
    ProviderKind.CUSTOM: _openai_config,
}


@lru_cache(maxsize=None)
def get_preset_config(kind: ProviderKind, legacy: bool = False) -> CustomAPIConfig:
    """
    获取方言的预设配置

    Args:
        kind: Provider 方言
        legacy: 为 True 时消息字段使用 dynamic（旧版模式），否则使用可视化结构
    """
    return CustomAPIConfig.model_validate(_CONFIG_BUILDERS[kind](legacy))


def get_legacy_config(kind: ProviderKind) -> CustomAPIConfig:
    """没有 customConfig 的 Provider 使用的内置配置"""
    return get_preset_config(kind, legacy=True)


# ==================== dynamic 字段 ====================

def build_dynamic_value(kind: ProviderKind, field: BodyFieldConfig, ctx: CompileContext) -> Optional[Any]:
    """
    旧版模式下 dynamic 字段的取值

    - messages / contents: 方言格式的消息数组
    - system: 系统提示词（Anthropic）
    - systemInstruction: Gemini 的系统指令
    - 其他: 字段的静态 value
    """
    if field.path in ("messages", "contents"):
        if kind == ProviderKind.GEMINI:
            return compile_structure(GEMINI_MESSAGE_STRUCTURE, ctx, include_system=False)
        include_system = kind != ProviderKind.ANTHROPIC
        return compile_structure(OPENAI_MESSAGE_STRUCTURE, ctx, include_system=include_system)

    if field.path == "system":
        return ctx.system_prompt or None

    if field.path == "systemInstruction":
        if not ctx.system_prompt:
            return None
        return {"parts": [{"text": ctx.system_prompt}]}

    return field.value


# ==================== 自动获取预设 ====================

AUTO_FETCH_PRESETS: dict[str, AutoFetchConfig] = {
    "openai": AutoFetchConfig.model_validate({
        "modelsApi": {
            "enabled": True,
            "endpoint": "https://api.openai.com/v1/models",
            "method": "GET",
            "headers": [_bearer_header()],
            "responsePath": "data",
            "modelIdPath": "id",
            "modelNamePath": "id",
            "filterPattern": "^(gpt-|text-|davinci|curie|babbage|ada)",
        },
        "autoUpdate": {"enabled": True, "intervalHours": 24},
    }),
    "gemini": AutoFetchConfig.model_validate({
        "modelsApi": {
            "enabled": True,
            "endpoint": "https://generativelanguage.googleapis.com/v1beta/models?key={apiKey}",
            "method": "GET",
            "responsePath": "models",
            "modelIdPath": "name",
            "modelNamePath": "displayName",
            "modelDescriptionPath": "description",
            "filterPattern": "^models/(gemini-|chat-|text-)",
        },
        "autoUpdate": {"enabled": True, "intervalHours": 24},
    }),
    "deepseek": AutoFetchConfig.model_validate({
        "modelsApi": {
            "enabled": True,
            "endpoint": "https://api.deepseek.com/models",
            "method": "GET",
            "headers": [_bearer_header()],
            "responsePath": "data",
            "modelIdPath": "id",
            "modelNamePath": "id",
            "filterPattern": "^deepseek-",
        },
        "balanceApi": {
            "enabled": True,
            "endpoint": "https://api.deepseek.com/user/balance",
            "method": "GET",
            "headers": [_bearer_header()],
            "balanceInfoPath": "balance_infos[0].total_balance",
            "currencyPath": "balance_infos[0].currency",
            "availablePath": "is_available",
        },
        "autoUpdate": {"enabled": True, "intervalHours": 24},
    }),
    # Anthropic 不提供公开的模型列表接口
    "anthropic": AutoFetchConfig.model_validate({
        "modelsApi": {"enabled": False, "endpoint": "", "method": "GET"},
        "autoUpdate": {"enabled": False},
    }),
}
