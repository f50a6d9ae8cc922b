"""
流式帧解析模块

StreamParser 逐块消费传输层文本，维护 content / reasoning 两个累加器，
把 Provider 特有的帧格式统一为 StreamEvent(content, done, error, reasoning_content)。

支持两种格式：
- sse: ``<dataPrefix><json>\\n`` 行，结束标记行（如 ``data: [DONE]``）或连接关闭表示结束
- json: 每块是一个或多个完整 JSON 对象，兼容 Gemini 的流式 JSON 数组（``[`` ``,`` ``]`` 分隔）

传输层结束时总会产生一个最终事件，与是否见到结束标记无关。
单个帧解析失败只记录日志并跳过。
"""

import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional

from .constants import (
    DEFAULT_DATA_PREFIX,
    STREAM_CANCELED_MESSAGE,
    STREAM_FAILED_MESSAGE_PREFIX,
    STREAM_REASON_CANCELED,
    STREAM_REASON_COMPLETED,
    STREAM_REASON_FAILED,
)
from .errors import AdapterError, ConfigIncompleteError, ParseError
from .logger import LogLevel, log_manager
from .models import StreamResponseConfig
from .paths import PathStep, get_steps, parse_path

_JSON_FRAMING = " \t\r\n[],"


class ParserState(Enum):
    OPEN = "open"
    ACCUMULATE = "accumulate"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class StreamEvent:
    """流式回调事件"""
    content: str
    done: bool = False
    error: bool = False
    reasoning_content: Optional[str] = None
    reason: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def failure_text(error_message: str) -> str:
    """失败时展示的文本"""
    return f"{STREAM_FAILED_MESSAGE_PREFIX} 错误信息: {error_message}"


class StreamParser:
    """
    流式帧解析器

    状态：OPEN -> ACCUMULATE -> DONE | ERRORED
    """

    def __init__(
        self,
        config: StreamResponseConfig,
        fallback_reasoning_path: Optional[str] = None,
        provider_name: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.provider_name = provider_name
        self.model = model

        reasoning_path = config.reasoning_path or fallback_reasoning_path
        try:
            self._content_steps: tuple[PathStep, ...] = parse_path(config.content_path)
            self._reasoning_steps: Optional[tuple[PathStep, ...]] = (
                parse_path(reasoning_path) if reasoning_path else None
            )
        except ValueError as e:
            raise ConfigIncompleteError(
                f"流式响应路径配置错误: {e}",
                missing_field="streamConfig.response.contentPath",
                provider_name=provider_name,
                model=model,
            )

        self._format: Optional[str] = config.format
        self._prefix = (config.data_prefix or DEFAULT_DATA_PREFIX).strip()
        self._finish_marker = config.finish_condition or None

        self._pending_line = ""
        self._json_buffer = ""
        self._decoder = json.JSONDecoder()

        self.content = ""
        self.reasoning_content = ""
        self.state = ParserState.OPEN
        self.marker_seen = False
        self.parse_errors = 0
        self.terminal_event: Optional[StreamEvent] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (ParserState.DONE, ParserState.ERRORED)

    @property
    def stream_format(self) -> Optional[str]:
        return self._format

    # ==================== 输入 ====================

    def feed(self, chunk: str) -> list[StreamEvent]:
        """消费一个传输块，返回产生的增量事件"""
        if self.is_terminal or self.marker_seen or not chunk:
            return []
        self.state = ParserState.ACCUMULATE

        if self._format is None:
            if not chunk.strip():
                return []
            # 未配置格式时按第一个非空块判断
            self._format = "sse" if "data:" in chunk else "json"

        if self._format == "sse":
            return self._feed_sse(chunk)
        return self._feed_json(chunk)

    def finish(self) -> StreamEvent:
        """传输层正常结束，产生最终事件"""
        if self.terminal_event is not None:
            return self.terminal_event

        # 连接关闭，保留的末尾行不会再有后续数据
        if self._pending_line:
            line, self._pending_line = self._pending_line, ""
            if self._handle_line(line) is None:
                self._record_parse_error(line)

        leftover = self._json_buffer.strip(_JSON_FRAMING)
        if leftover:
            self._record_parse_error(leftover)
        self._json_buffer = ""

        self.state = ParserState.DONE
        self.terminal_event = StreamEvent(
            content=self.content,
            done=True,
            reasoning_content=self.reasoning_content or None,
            reason=STREAM_REASON_COMPLETED,
        )
        return self.terminal_event

    def fail(self, error: AdapterError) -> StreamEvent:
        """
        传输中断（用户取消或传输错误），产生终止事件

        已累积的部分内容会保留；没有内容时使用取消 / 失败提示文本。
        """
        if self.terminal_event is not None:
            return self.terminal_event

        if error.reason == STREAM_REASON_CANCELED:
            content = self.content or STREAM_CANCELED_MESSAGE
            reason = STREAM_REASON_CANCELED
        else:
            content = self.content or failure_text(error.message)
            reason = STREAM_REASON_FAILED

        self.state = ParserState.ERRORED
        self.terminal_event = StreamEvent(
            content=content,
            done=True,
            error=True,
            reasoning_content=self.reasoning_content or None,
            reason=reason,
            error_message=error.message,
        )
        return self.terminal_event

    # ==================== SSE ====================

    def _feed_sse(self, chunk: str) -> list[StreamEvent]:
        lines = (self._pending_line + chunk).split("\n")
        self._pending_line = ""
        tail = lines.pop()

        events: list[StreamEvent] = []
        for line in lines:
            if self.marker_seen:
                return events
            result = self._handle_line(line)
            if result is None:
                self._record_parse_error(line)
            else:
                events.extend(result)

        if tail.strip() and not self.marker_seen:
            # 块末尾没有换行的行：只有完整的数据行才立即处理，其余等下一块拼接
            result = self._handle_tail(tail)
            if result is None:
                self._pending_line = tail
            else:
                events.extend(result)
        return events

    def _handle_tail(self, tail: str) -> Optional[list[StreamEvent]]:
        """处理块末尾的行；可能不完整时返回 None"""
        text = tail.strip()
        if self._is_finish(text):
            self.marker_seen = True
            return []
        if not text.startswith(self._prefix):
            # 可能是被截断的前缀（如 "da"）
            return None

        payload = text[len(self._prefix):].strip()
        if self._is_finish(payload):
            self.marker_seen = True
            return []
        # 数字 / 字面量可能还没传完，只接受自带结束符的对象、数组和字符串
        if not payload or payload[-1] not in '}]"':
            return None
        try:
            data = json.loads(payload)
        except ValueError:
            return None
        return self._extract(data)

    def _is_finish(self, text: str) -> bool:
        return self._finish_marker is not None and text == self._finish_marker

    def _handle_line(self, line: str) -> Optional[list[StreamEvent]]:
        """处理一行；JSON 解析失败时返回 None"""
        text = line.strip()
        if not text:
            return []
        if self._is_finish(text):
            self.marker_seen = True
            return []
        if not text.startswith(self._prefix):
            # event: / 注释 / keep-alive
            return []

        payload = text[len(self._prefix):].strip()
        if self._is_finish(payload):
            self.marker_seen = True
            return []
        try:
            data = json.loads(payload)
        except ValueError:
            return None
        return self._extract(data)

    # ==================== JSON ====================

    def _feed_json(self, chunk: str) -> list[StreamEvent]:
        buffer = self._json_buffer + chunk
        events: list[StreamEvent] = []
        pos = 0
        size = len(buffer)

        while pos < size:
            if self._finish_marker and buffer.startswith(self._finish_marker, pos):
                self.marker_seen = True
                pos = size
                break
            if buffer[pos] in _JSON_FRAMING:
                pos += 1
                continue

            try:
                data, end = self._decoder.raw_decode(buffer, pos)
            except ValueError:
                if buffer[pos] == "{":
                    # 对象被拆分到下一块
                    break
                next_obj = buffer.find("{", pos)
                garbage_end = size if next_obj == -1 else next_obj
                self._record_parse_error(buffer[pos:garbage_end])
                pos = garbage_end
                continue

            events.extend(self._extract(data))
            pos = end

        self._json_buffer = buffer[pos:]
        return events

    # ==================== 提取 ====================

    def _extract(self, data: Any) -> list[StreamEvent]:
        events: list[StreamEvent] = []

        delta = get_steps(data, self._content_steps)
        if delta:
            self.content += delta if isinstance(delta, str) else str(delta)
            events.append(StreamEvent(
                content=self.content,
                reasoning_content=self.reasoning_content or None,
            ))

        if self._reasoning_steps is not None:
            reasoning = get_steps(data, self._reasoning_steps)
            if reasoning:
                self.reasoning_content += reasoning if isinstance(reasoning, str) else str(reasoning)
                events.append(StreamEvent(
                    content=self.content,
                    reasoning_content=self.reasoning_content,
                ))

        return events

    def _record_parse_error(self, frame: str) -> None:
        self.parse_errors += 1
        error = ParseError("跳过无法解析的流式帧", frame=frame[:200])
        log_manager.log_event(
            LogLevel.WARNING,
            "stream",
            error.message,
            provider=self.provider_name,
            model=self.model,
            error=error.frame,
        )
