"""
请求构建模块

根据 CustomAPIConfig 组装上游请求的方法、URL（查询参数、流式 URL 改写）、
请求头和请求体。没有 customConfig 的 Provider 使用 ProviderKind 对应的内置配置。

请求头缺少可用凭据不会在构建时报错，上游会返回 401 / 403。
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .constants import (
    BODY_METHODS,
    DEFAULT_STREAM_QUERY_VALUE,
    DEFAULT_USER_AGENT,
)
from .errors import ConfigIncompleteError
from .logger import LogLevel, log_manager
from .models import BodyFieldConfig, CustomAPIConfig, HeaderConfig, Provider
from .paths import set_path
from .presets import build_dynamic_value, get_legacy_config
from .structure import CompileContext, compile_structure
from .templates import resolve_template, resolve_value


@dataclass
class ProtocolRequest:
    """构建完成的上游请求"""
    method: str
    url: str
    headers: dict[str, str]
    body: Optional[dict] = None
    stream: bool = False


def resolve_config(provider: Provider) -> CustomAPIConfig:
    """Provider 的有效配置：customConfig，或旧版模式的内置配置"""
    if provider.custom_config is not None:
        return provider.custom_config
    return get_legacy_config(provider.kind)


def check_config_complete(config: CustomAPIConfig, stream: bool = False, provider_name: Optional[str] = None) -> None:
    """
    检查配置是否可执行

    Raises:
        ConfigIncompleteError: response.contentPath 为空，
            或流式请求时 streamConfig.response.contentPath 为空
    """
    if not config.response.content_path.strip():
        raise ConfigIncompleteError(
            "API 配置不完整：未设置响应内容路径 (response.contentPath)",
            missing_field="response.contentPath",
            provider_name=provider_name,
        )
    if stream and config.streaming_enabled and not config.stream_config.response.content_path.strip():
        raise ConfigIncompleteError(
            "API 配置不完整：未设置流式响应内容路径 (streamConfig.response.contentPath)",
            missing_field="streamConfig.response.contentPath",
            provider_name=provider_name,
        )


def _resolve_entry(entry: HeaderConfig, variables: dict[str, Any]) -> str:
    if entry.is_template:
        return resolve_template(entry.raw_template, variables)
    return entry.value


def _field_value(field: BodyFieldConfig, provider: Provider, ctx: CompileContext) -> Any:
    if field.value_type == "static":
        return field.value
    if field.value_type == "template":
        return resolve_value(field.value_template or "", ctx.variables())
    if field.value_type == "visual_structure":
        if field.message_structure is None:
            return []
        return compile_structure(field.message_structure, ctx)
    return build_dynamic_value(provider.kind, field, ctx)


def build_request(
    provider: Provider,
    model_id: str,
    ctx: CompileContext,
    stream: bool = False,
    config: Optional[CustomAPIConfig] = None,
) -> ProtocolRequest:
    """
    构建上游请求

    Args:
        provider: Provider 配置
        model_id: 实际使用的模型 ID
        ctx: 编译上下文（当前消息、规范化后的历史、温度、系统提示词）
        stream: 调用方是否请求流式；配置未启用流式时按非流式构建
        config: 覆盖 Provider 的有效配置

    Raises:
        ConfigIncompleteError: 配置不完整（不会发起任何网络请求）
    """
    config = config or resolve_config(provider)
    check_config_complete(config, stream, provider.name)

    streaming = stream and config.streaming_enabled
    ctx = dataclasses.replace(ctx, model=model_id, api_key=provider.api_key, stream=streaming)

    endpoint = provider.api_endpoint.rstrip("/")
    connection_vars = {"apiKey": provider.api_key, "model": model_id, "endpoint": endpoint}

    url = resolve_template(config.url_template, connection_vars) if config.url_template else endpoint
    if not url:
        raise ConfigIncompleteError(
            "API 配置不完整：未设置 API 端点",
            missing_field="apiEndpoint",
            provider_name=provider.name,
            model=model_id,
        )

    stream_request = config.stream_config.request if streaming else None
    request_type = config.stream_config.request_type if streaming else None

    # 流式 URL 改写（字面子串替换）
    if request_type == "url_endpoint" and stream_request.url_replacement:
        replacement = stream_request.url_replacement
        if replacement.from_:
            url = url.replace(replacement.from_, replacement.to)

    # 查询参数
    params: list[tuple[str, str]] = []
    for q in config.query_params:
        value = _resolve_entry(q, connection_vars)
        if q.key and value:
            params.append((q.key, value))
    if request_type == "query_param":
        params.append((
            stream_request.query_param_key or "stream",
            stream_request.query_param_value or DEFAULT_STREAM_QUERY_VALUE,
        ))
    if params:
        parsed = httpx.URL(url)
        for key, value in params:
            parsed = parsed.copy_set_param(key, value)
        url = str(parsed)

    # 请求头
    headers: dict[str, str] = {"Content-Type": config.content_type}
    for h in config.headers:
        if h.key:
            headers[h.key] = _resolve_entry(h, connection_vars)
    if not any(k.lower() == "user-agent" for k in headers):
        headers["User-Agent"] = DEFAULT_USER_AGENT

    # 请求体（仅 POST / PUT）
    body: Optional[dict] = None
    if config.method in BODY_METHODS:
        body = {}
        for field in config.body_fields:
            if not field.path:
                continue
            value = _field_value(field, provider, ctx)
            if value is None:
                log_manager.log_event(
                    LogLevel.DEBUG,
                    "build",
                    f"字段 {field.path} 无值，已跳过",
                    provider=provider.name,
                    model=model_id,
                )
                continue
            set_path(body, field.path, value)

        if request_type == "body_field":
            value = stream_request.body_field_value
            set_path(body, stream_request.body_field_path or "stream", True if value is None else value)

    return ProtocolRequest(
        method=config.method,
        url=url,
        headers=headers,
        body=body,
        stream=streaming,
    )
