"""
适配器编排模块

每次调用：解析 Provider / 模型 -> 规范化历史 -> 构建请求 -> 发送（流式或非流式）
-> 流式解析或响应提取 -> 回调 / 返回结果。

每个 AIAdapter 实例同一时间只有一个进行中的流（StreamHandle），
开始新的流会先取消旧的（后发者胜）。公开方法不会向外抛出异常，
调用方总能收到一个终止结果或终止事件。
"""

import asyncio
import inspect
import time
from contextlib import aclosing
from dataclasses import asdict, dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence, Union

from .constants import (
    CONNECTION_TEST_MESSAGE,
    CONNECTION_TEST_PREVIEW_LENGTH,
    CONNECTION_TEST_REASONING_PREVIEW_LENGTH,
    DEFAULT_TEMPERATURE,
    STREAM_CANCELED_MESSAGE,
    STREAM_REASON_CANCELED,
    STREAM_REASON_COMPLETED,
    STREAM_REASON_FAILED,
)
from .errors import AdapterError, ConfigIncompleteError, StreamAbortedError, UpstreamHTTPError
from .extractor import ExtractedResponse, extract_response, parse_body
from .history import normalize_history
from .logger import LogLevel, log_manager
from .models import AIModel, ChatTurn, CustomAPIConfig, Provider
from .request_builder import ProtocolRequest, build_request, resolve_config
from .storage import ProviderStore
from .streaming import StreamEvent, StreamParser, failure_text
from .structure import CompileContext
from .transport import HttpTransport

StreamCallback = Callable[[StreamEvent], Union[None, Awaitable[None]]]


class AdapterState(Enum):
    IDLE = "idle"
    BUILDING = "building"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


@dataclass
class AdapterResult:
    """非流式调用结果"""
    success: bool
    content: str
    reasoning_content: Optional[str] = None
    error: Optional[str] = None
    reason: str = STREAM_REASON_COMPLETED
    provider_name: Optional[str] = None
    model: Optional[str] = None

    @classmethod
    def failure(cls, error: AdapterError) -> "AdapterResult":
        return cls(
            success=False,
            content=failure_text(error.message),
            error=error.message,
            reason=error.reason,
            provider_name=error.provider_name,
            model=error.model,
        )

    @classmethod
    def from_event(cls, event: StreamEvent) -> "AdapterResult":
        return cls(
            success=not event.error,
            content=event.content,
            reasoning_content=event.reasoning_content,
            error=event.error_message,
            reason=event.reason or STREAM_REASON_COMPLETED,
        )

    def to_event(self) -> StreamEvent:
        return StreamEvent(
            content=self.content,
            done=True,
            error=not self.success,
            reasoning_content=self.reasoning_content,
            reason=self.reason,
            error_message=self.error,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _PreparedCall:
    provider: Provider
    model_id: str
    config: CustomAPIConfig
    request: ProtocolRequest


class StreamHandle:
    """
    进行中的流式调用

    调用方持有句柄，可取消、等待最终事件或异步迭代全部事件。
    """

    def __init__(self, on_update: Optional[StreamCallback] = None):
        self.on_update = on_update
        self.state = AdapterState.IDLE
        self.final_event: Optional[StreamEvent] = None
        self._task: Optional[asyncio.Task] = None
        self._started = False
        self._cancel_requested = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._finished = asyncio.Event()

    @property
    def done(self) -> bool:
        return self.final_event is not None

    def cancel(self) -> bool:
        """
        请求取消

        Returns:
            是否发出了取消（已结束或已取消过时返回 False）
        """
        if self.done or self._cancel_requested:
            return False
        self._cancel_requested = True
        # 任务尚未开始执行时由任务自己在入口处检查取消标记
        if self._started and self._task is not None:
            self._task.cancel()
        return True

    async def wait(self) -> StreamEvent:
        """等待最终事件"""
        await self._finished.wait()
        return self.final_event

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.done:
                return

    async def _emit(self, event: StreamEvent) -> None:
        self._queue.put_nowait(event)
        if self.on_update is not None:
            result = self.on_update(event)
            if inspect.isawaitable(result):
                await result

    async def _finish(self, event: StreamEvent) -> None:
        self.final_event = event
        try:
            await self._emit(event)
        except Exception as e:
            AIAdapter._log_warning(f"终止事件回调出错: {e}")
        finally:
            self._finished.set()


class AIAdapter:
    """
    声明式 LLM API 适配器

    Provider / 代理设置从 ProviderStore 读取，调用期间只读。
    """

    def __init__(
        self,
        store: ProviderStore,
        transport: Optional[HttpTransport] = None,
        default_temperature: float = DEFAULT_TEMPERATURE,
    ):
        self.store = store
        self.transport = transport or HttpTransport(proxy=store.get_proxy_settings())
        self.default_temperature = default_temperature
        self._current: Optional[StreamHandle] = None

    @property
    def state(self) -> AdapterState:
        """当前（最近一次）流的状态"""
        return self._current.state if self._current is not None else AdapterState.IDLE

    @property
    def current_handle(self) -> Optional[StreamHandle]:
        return self._current

    # ==================== 构建 ====================

    def _resolve(self, provider_id: Optional[str], model_id: Optional[str]) -> tuple[Provider, str, Optional[AIModel]]:
        provider_id = provider_id or self.store.get_selected_provider_id()
        if not provider_id:
            raise ConfigIncompleteError("未选择 AI 提供商", missing_field="providerId")

        provider = self.store.get_provider(provider_id)
        if provider is None:
            raise ConfigIncompleteError(f"找不到 AI 提供商: {provider_id}", missing_field="providerId")

        resolved_model = provider.resolve_model_id(model_id)
        if not resolved_model:
            raise ConfigIncompleteError(
                "请先为该提供商添加至少一个模型",
                missing_field="modelId",
                provider_name=provider.name,
            )
        return provider, resolved_model, provider.get_model(resolved_model)

    def _resolve_temperature(self, temperature: Optional[float], model: Optional[AIModel]) -> float:
        if temperature is not None:
            return temperature
        if model is not None:
            value = model.parameters.get("temperature")
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)
        return self.default_temperature

    def _prepare(
        self,
        message: str,
        history: Optional[Sequence[ChatTurn]],
        provider_id: Optional[str],
        model_id: Optional[str],
        system_prompt: Optional[str],
        temperature: Optional[float],
        stream: bool,
    ) -> _PreparedCall:
        provider, resolved_model, model = self._resolve(provider_id, model_id)
        normalized = normalize_history(history or [], resolved_model, model)
        ctx = CompileContext(
            message=message,
            history=tuple(normalized),
            temperature=self._resolve_temperature(temperature, model),
            system_prompt=system_prompt or None,
        )
        config = resolve_config(provider)
        request = build_request(provider, resolved_model, ctx, stream=stream, config=config)
        return _PreparedCall(provider=provider, model_id=resolved_model, config=config, request=request)

    # ==================== 执行 ====================

    def _message_path(self, config: CustomAPIConfig) -> Optional[str]:
        return config.response.error_config.message_path if config.response.error_config else None

    async def _execute(self, call: _PreparedCall) -> ExtractedResponse:
        response = await self.transport.send(
            call.request,
            message_path=self._message_path(call.config),
            provider_name=call.provider.name,
            model=call.model_id,
        )
        data = parse_body(response.text, call.provider.name, call.model_id)
        return extract_response(data, call.config.response, call.provider.name, call.model_id)

    async def send_message(
        self,
        message: str,
        history: Optional[Sequence[ChatTurn]] = None,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> AdapterResult:
        """
        非流式发送

        Returns:
            AdapterResult，失败时 success=False 且 error 为错误信息
        """
        started = time.monotonic()
        call: Optional[_PreparedCall] = None
        try:
            call = self._prepare(message, history, provider_id, model_id, system_prompt, temperature, stream=False)
            extracted = await self._execute(call)
        except AdapterError as e:
            self._log_call(call, started, error=e)
            return AdapterResult.failure(e)
        except Exception as e:
            error = AdapterError(f"未知错误: {e}")
            self._log_call(call, started, error=error)
            return AdapterResult.failure(error)

        self._log_call(call, started)
        return AdapterResult(
            success=True,
            content=extracted.content,
            reasoning_content=extracted.reasoning_content,
            provider_name=call.provider.name,
            model=call.model_id,
        )

    def start_stream(
        self,
        message: str,
        on_update: Optional[StreamCallback] = None,
        history: Optional[Sequence[ChatTurn]] = None,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> StreamHandle:
        """
        开始流式调用并立即返回句柄

        必须在事件循环中调用。已有进行中的流会先被取消。
        """
        handle = StreamHandle(on_update)
        previous, self._current = self._current, handle
        if previous is not None:
            previous.cancel()

        handle._task = asyncio.create_task(self._run_stream(
            handle, message, history, provider_id, model_id, system_prompt, temperature
        ))
        return handle

    async def send_message_stream(
        self,
        message: str,
        on_update: Optional[StreamCallback] = None,
        history: Optional[Sequence[ChatTurn]] = None,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> StreamEvent:
        """
        流式发送并等待最终事件

        等待方被取消时一并取消本次调用的句柄。
        """
        handle = self.start_stream(message, on_update, history, provider_id, model_id, system_prompt, temperature)
        try:
            return await handle.wait()
        except asyncio.CancelledError:
            handle.cancel()
            raise

    def cancel_stream(self) -> bool:
        """取消当前进行中的流"""
        handle = self._current
        if handle is None:
            return False
        return handle.cancel()

    async def _run_stream(
        self,
        handle: StreamHandle,
        message: str,
        history: Optional[Sequence[ChatTurn]],
        provider_id: Optional[str],
        model_id: Optional[str],
        system_prompt: Optional[str],
        temperature: Optional[float],
    ) -> None:
        started = time.monotonic()
        call: Optional[_PreparedCall] = None
        parser: Optional[StreamParser] = None
        error: Optional[AdapterError] = None

        try:
            handle._started = True
            if handle._cancel_requested:
                raise asyncio.CancelledError()

            handle.state = AdapterState.BUILDING
            call = self._prepare(message, history, provider_id, model_id, system_prompt, temperature, stream=True)
            handle.state = AdapterState.IN_FLIGHT

            if not call.request.stream:
                # 配置未启用流式：退化为一次非流式调用
                extracted = await self._execute(call)
                event = StreamEvent(
                    content=extracted.content,
                    done=True,
                    reasoning_content=extracted.reasoning_content,
                    reason=STREAM_REASON_COMPLETED,
                )
            else:
                stream_config = call.config.stream_config
                parser = StreamParser(
                    stream_config.response,
                    fallback_reasoning_path=call.config.response.reasoning_path,
                    provider_name=call.provider.name,
                    model=call.model_id,
                )
                chunks = self.transport.stream(
                    call.request,
                    message_path=self._message_path(call.config),
                    provider_name=call.provider.name,
                    model=call.model_id,
                )
                async with aclosing(chunks):
                    async for chunk in chunks:
                        for delta in parser.feed(chunk):
                            await handle._emit(delta)
                        if parser.marker_seen:
                            break
                event = parser.finish()
            handle.state = AdapterState.COMPLETED

        except asyncio.CancelledError:
            error = StreamAbortedError(
                STREAM_CANCELED_MESSAGE,
                provider_name=call.provider.name if call else None,
                model=call.model_id if call else None,
            )
            event = self._terminal_event(parser, error)
            handle.state = AdapterState.CANCELED
        except AdapterError as e:
            error = e
            event = self._terminal_event(parser, e)
            handle.state = AdapterState.FAILED
        except Exception as e:
            error = AdapterError(f"未知错误: {e}")
            event = self._terminal_event(parser, error)
            handle.state = AdapterState.FAILED

        await handle._finish(event)
        self._log_call(call, started, error=error, stream=True)
        if self._current is handle:
            self._current = None

    @staticmethod
    def _terminal_event(parser: Optional[StreamParser], error: AdapterError) -> StreamEvent:
        if parser is not None:
            return parser.fail(error)
        if error.reason == STREAM_REASON_CANCELED:
            content = STREAM_CANCELED_MESSAGE
        else:
            content = failure_text(error.message)
        return StreamEvent(
            content=content,
            done=True,
            error=True,
            reason=error.reason,
            error_message=error.message,
        )

    # ==================== 组合操作 ====================

    async def test_connection(self, provider_id: str) -> tuple[bool, str]:
        """
        测试连接

        发送一条简短的测试消息，成功时返回回复预览。
        """
        provider = self.store.get_provider(provider_id)
        if provider is None:
            return False, "找不到选中的AI提供商"
        if not provider.api_key:
            return False, "API密钥未设置"

        model_id = provider.resolve_model_id()
        if not model_id:
            return False, "请先添加至少一个模型"

        self._log_info(f"测试连接 {provider.name}，使用模型: {model_id}")
        result = await self.send_message(CONNECTION_TEST_MESSAGE, provider_id=provider.id, model_id=model_id)
        if not result.success:
            return False, f"连接失败: {result.error}"

        message = f"连接成功！收到回复: \"{_preview(result.content, CONNECTION_TEST_PREVIEW_LENGTH)}\""
        if result.reasoning_content:
            reasoning = _preview(result.reasoning_content, CONNECTION_TEST_REASONING_PREVIEW_LENGTH)
            message += f"\n推理内容: \"{reasoning}\""
        return True, message

    async def send_agent_message(
        self,
        message: str,
        agent_id: str,
        history: Optional[Sequence[ChatTurn]] = None,
        on_update: Optional[StreamCallback] = None,
    ) -> AdapterResult:
        """
        使用 Agent 的系统提示词、模型和参数发送消息

        提供 on_update 且 Agent 未关闭流式模式时走流式调用。
        """
        try:
            agent = self.store.get_agent(agent_id)
            if agent is None:
                raise ConfigIncompleteError(f"找不到Agent ID: {agent_id}", missing_field="agentId")
            provider = self.store.get_provider(agent.provider_id)
            if provider is None:
                raise ConfigIncompleteError(f"找不到Agent使用的AI提供商: {agent.provider_id}", missing_field="providerId")
            if provider.get_model(agent.model_id) is None:
                raise ConfigIncompleteError(
                    f"找不到Agent使用的模型: {agent.model_id}",
                    missing_field="modelId",
                    provider_name=provider.name,
                )
        except AdapterError as e:
            result = AdapterResult.failure(e)
            if on_update is not None:
                await _call(on_update, result.to_event())
            return result

        turns = list(history or []) if agent.keep_history else []
        if agent.max_history_messages is not None and agent.max_history_messages >= 0:
            turns = turns[-agent.max_history_messages:] if agent.max_history_messages else []

        kwargs = dict(
            history=turns,
            provider_id=agent.provider_id,
            model_id=agent.model_id,
            system_prompt=agent.system_prompt,
            temperature=agent.temperature,
        )

        use_stream = on_update is not None and agent.is_stream_mode is not False
        if use_stream:
            event = await self.send_message_stream(message, on_update, **kwargs)
            return AdapterResult.from_event(event)

        result = await self.send_message(message, **kwargs)
        if on_update is not None:
            await _call(on_update, result.to_event())
        return result

    # ==================== 日志 ====================

    def _log_call(
        self,
        call: Optional[_PreparedCall],
        started: float,
        error: Optional[AdapterError] = None,
        stream: bool = False,
    ) -> None:
        duration_ms = round((time.monotonic() - started) * 1000, 1)
        provider_name = call.provider.name if call else (error.provider_name if error else None)
        model = call.model_id if call else (error.model if error else None)
        prefix = "流式请求" if stream else "请求"

        if error is None:
            level, reason, message = LogLevel.INFO, STREAM_REASON_COMPLETED, f"{prefix}完成"
        elif error.reason == STREAM_REASON_CANCELED:
            level, reason, message = LogLevel.INFO, STREAM_REASON_CANCELED, f"{prefix}已取消"
        else:
            level, reason, message = LogLevel.ERROR, STREAM_REASON_FAILED, f"{prefix}失败"

        log_manager.log(
            level=level,
            log_type="chat",
            method=call.request.method if call else "-",
            url=call.request.url if call else "-",
            provider=provider_name,
            provider_id=call.provider.id if call else None,
            model=model,
            stream=stream,
            status_code=error.status_code if isinstance(error, UpstreamHTTPError) else None,
            duration_ms=duration_ms,
            message=f"{message} [{provider_name or '-'}:{model or '-'}]",
            error=error.message if error and reason == STREAM_REASON_FAILED else None,
            reason=reason,
        )

    @staticmethod
    def _log_info(message: str) -> None:
        """输出信息日志"""
        print(f"[ADAPTER] {message}")

    @staticmethod
    def _log_warning(message: str) -> None:
        """输出警告日志"""
        print(f"[ADAPTER] {message}")


def _preview(text: str, length: int) -> str:
    return text[:length] + ("..." if len(text) > length else "")


async def _call(callback: StreamCallback, event: StreamEvent) -> None:
    result = callback(event)
    if inspect.isawaitable(result):
        await result
