"""
传输层模块

封装 httpx.AsyncClient，负责发送构建好的 ProtocolRequest，
支持 HTTP / HTTPS / SOCKS5 代理。默认不设置超时，上游 SSE 连接可能持续很久。

网络异常统一转为 TransportError，非 2xx 响应转为 UpstreamHTTPError。
"""

import ssl
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx

from .errors import create_http_error, create_network_error
from .models import ProxySettings
from .request_builder import ProtocolRequest

NETWORK_ERRORS = (
    httpx.TimeoutException,
    ssl.SSLError,
    ConnectionResetError,
    BrokenPipeError,
    httpx.RequestError,
)


@dataclass
class TransportResponse:
    """非流式响应"""
    status_code: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)


def build_proxy_url(settings: Optional[ProxySettings]) -> Optional[str]:
    """
    代理设置 -> httpx 代理 URL

    >>> build_proxy_url(ProxySettings(enabled=True, type="socks5", host="127.0.0.1", port=1080))
    'socks5://127.0.0.1:1080'
    """
    if settings is None or not settings.enabled or not settings.host:
        return None

    auth = ""
    if settings.requires_auth and settings.username:
        auth = f"{quote(settings.username, safe='')}:{quote(settings.password, safe='')}@"
    port = f":{settings.port}" if settings.port else ""
    return f"{settings.type}://{auth}{settings.host}{port}"


class HttpTransport:
    """
    HTTP 传输

    客户端延迟创建；代理设置变化时在下次请求前重建。
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        proxy: Optional[ProxySettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._proxy_url = build_proxy_url(proxy)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def get_client(self) -> httpx.AsyncClient:
        """获取 HTTP 客户端"""
        if self._client is None or self._client.is_closed:
            kwargs = {}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            elif self._proxy_url:
                kwargs["proxy"] = self._proxy_url
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                **kwargs
            )
        return self._client

    async def set_proxy(self, settings: Optional[ProxySettings]) -> None:
        """更新代理设置"""
        proxy_url = build_proxy_url(settings)
        if proxy_url == self._proxy_url:
            return
        self._proxy_url = proxy_url
        await self.close()
        self._log_info(f"代理设置已更新: {proxy_url or '直连'}")

    async def close(self) -> None:
        """关闭 HTTP 客户端"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def send(
        self,
        request: ProtocolRequest,
        message_path: Optional[str] = None,
        provider_name: Optional[str] = None,
        model: Optional[str] = None
    ) -> TransportResponse:
        """
        发送非流式请求

        Raises:
            TransportError: 网络层错误
            UpstreamHTTPError: 非 2xx 响应
        """
        client = await self.get_client()
        try:
            response = await client.request(
                request.method,
                request.url,
                json=request.body,
                headers=request.headers,
            )
        except NETWORK_ERRORS as e:
            raise create_network_error(e, provider_name, model)

        if not response.is_success:
            raise create_http_error(response.status_code, response.text, message_path, provider_name, model)

        return TransportResponse(
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
        )

    async def stream(
        self,
        request: ProtocolRequest,
        message_path: Optional[str] = None,
        provider_name: Optional[str] = None,
        model: Optional[str] = None
    ) -> AsyncIterator[str]:
        """
        发送流式请求，逐块产出解码后的文本

        取消所在任务会中断读取并关闭连接。

        Raises:
            TransportError: 网络层错误
            UpstreamHTTPError: 非 2xx 响应
        """
        client = await self.get_client()
        try:
            async with client.stream(
                request.method,
                request.url,
                json=request.body,
                headers=request.headers,
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode(errors="replace")
                    raise create_http_error(response.status_code, body, message_path, provider_name, model)

                async for chunk in response.aiter_text():
                    if chunk:
                        yield chunk
        except NETWORK_ERRORS as e:
            raise create_network_error(e, provider_name, model)

    @staticmethod
    def _log_info(message: str) -> None:
        """输出信息日志"""
        print(f"[TRANSPORT] {message}")
