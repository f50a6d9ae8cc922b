"""
错误分类模块

适配器对外只暴露以下错误类型：
- ConfigIncompleteError: 配置不完整（缺少 provider / model / contentPath），不会发起网络请求
- TransportError: 网络层错误（DNS、TLS、连接重置、超时）
- UpstreamHTTPError: 上游返回非 2xx
- ContentExtractionError: 2xx 响应中内容路径不存在
- StreamAbortedError: 用户主动取消
- ParseError: 单个流式帧 JSON 解析失败（仅记录，不向外传播）
"""

import json
import ssl
from typing import Any, Optional

from .constants import (
    ERROR_MESSAGE_MAX_LENGTH,
    ERROR_RAW_BODY_MAX_LENGTH,
    STREAM_REASON_CANCELED,
    STREAM_REASON_FAILED,
)


class AdapterError(Exception):
    """适配器错误基类"""

    reason: str = STREAM_REASON_FAILED

    def __init__(
        self,
        message: str,
        provider_name: Optional[str] = None,
        model: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.provider_name = provider_name
        self.model = model


class ConfigIncompleteError(AdapterError):
    """配置不完整"""

    def __init__(
        self,
        message: str,
        missing_field: Optional[str] = None,
        provider_name: Optional[str] = None,
        model: Optional[str] = None
    ):
        super().__init__(message, provider_name=provider_name, model=model)
        self.missing_field = missing_field


class TransportError(AdapterError):
    """网络传输错误"""
    pass


class UpstreamHTTPError(AdapterError):
    """上游 HTTP 错误（非 2xx）"""

    def __init__(
        self,
        message: str,
        status_code: int,
        response_body: Optional[Any] = None,
        provider_name: Optional[str] = None,
        model: Optional[str] = None
    ):
        super().__init__(message, provider_name=provider_name, model=model)
        self.status_code = status_code
        self.response_body = response_body


class ContentExtractionError(AdapterError):
    """内容路径无法解析"""

    def __init__(
        self,
        message: str,
        path: str,
        available_keys: Optional[list[str]] = None,
        provider_name: Optional[str] = None,
        model: Optional[str] = None
    ):
        super().__init__(message, provider_name=provider_name, model=model)
        self.path = path
        self.available_keys = available_keys or []


class StreamAbortedError(AdapterError):
    """用户取消"""

    reason = STREAM_REASON_CANCELED


class ParseError(AdapterError):
    """流式帧解析失败"""

    def __init__(self, message: str, frame: str = ""):
        super().__init__(message)
        self.frame = frame


def one_line(text: str, max_length: int = ERROR_MESSAGE_MAX_LENGTH) -> str:
    """压缩为单行并截断"""
    result = text.replace('\r\n', ' ').replace('\n', ' ').replace('\r', ' ').strip()
    if len(result) > max_length:
        result = result[:max_length] + "..."
    return result


def create_network_error(
    e: BaseException,
    provider_name: Optional[str] = None,
    model: Optional[str] = None
) -> TransportError:
    """根据网络异常创建 TransportError"""
    error_msg = str(e) or type(e).__name__
    if isinstance(e, ssl.SSLError):
        error_msg = f"SSL 错误: {error_msg}"
    return TransportError(error_msg, provider_name=provider_name, model=model)


def create_http_error(
    status_code: int,
    body_text: str,
    message_path: Optional[str] = None,
    provider_name: Optional[str] = None,
    model: Optional[str] = None
) -> UpstreamHTTPError:
    """
    创建上游 HTTP 错误

    如果配置了 errorConfig.messagePath 且能解析出错误信息，使用该信息；
    否则使用单行截断后的原始响应体。
    """
    from .paths import MISSING, get_path

    parsed = True
    try:
        response_body = json.loads(body_text)
    except ValueError:
        parsed = False
        response_body = {"raw_text": body_text[:ERROR_RAW_BODY_MAX_LENGTH]}

    message = f"HTTP {status_code}: {one_line(body_text) or '空响应'}"
    if message_path and parsed:
        custom = get_path(response_body, message_path)
        if custom is not MISSING and custom not in (None, ""):
            message = f"API错误: {custom}"

    return UpstreamHTTPError(
        message,
        status_code=status_code,
        response_body=response_body,
        provider_name=provider_name,
        model=model
    )
