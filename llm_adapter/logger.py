import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, AsyncIterator, Union

from .constants import (
    LOG_MAX_MEMORY_ENTRIES,
    LOG_RECENT_LIMIT_DEFAULT,
    LOG_SUBSCRIBE_QUEUE_SIZE,
)


def _get_timezone() -> timezone:
    """获取配置的时区（延迟加载，避免循环导入）"""
    from .config import get_config
    try:
        offset = get_config().timezone_offset
    except RuntimeError:
        offset = 0
    return timezone(timedelta(hours=offset))


def timestamp_to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, _get_timezone())


def _format_timestamp(ts: float) -> str:
    return timestamp_to_datetime(ts).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


class LogLevel(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class RequestLog:
    """一次上游调用的日志"""
    id: str
    timestamp: float
    level: str
    type: str
    method: str
    url: str
    provider: Optional[str] = None
    provider_id: Optional[str] = None
    model: Optional[str] = None
    stream: bool = False
    status_code: Optional[int] = None
    duration_ms: Optional[float] = None
    message: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp_str"] = _format_timestamp(self.timestamp)
        return data


@dataclass
class EventLog:
    """非请求事件（同步、解析、配置、系统）"""
    id: str
    timestamp: float
    level: str
    type: str
    message: Optional[str] = None
    error: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp_str"] = _format_timestamp(self.timestamp)
        return data


LogEntry = Union[RequestLog, EventLog]


class LogManager:
    def __init__(self, max_memory_logs: int = LOG_MAX_MEMORY_ENTRIES):
        self.max_memory_logs = max_memory_logs
        self._logs: deque = deque(maxlen=max_memory_logs)
        self._subscribers: list[asyncio.Queue] = []
        self._log_counter = 0

    def _generate_log_id(self) -> str:
        self._log_counter += 1
        return f"log_{int(time.time() * 1000)}_{self._log_counter}"

    def log(
        self,
        level: LogLevel,
        log_type: str,
        method: str,
        url: str,
        provider: Optional[str] = None,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        stream: bool = False,
        status_code: Optional[int] = None,
        duration_ms: Optional[float] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> RequestLog:
        log_entry = RequestLog(
            id=self._generate_log_id(),
            timestamp=time.time(),
            level=level.value,
            type=log_type,
            method=method,
            url=url,
            provider=provider,
            provider_id=provider_id,
            model=model,
            stream=stream,
            status_code=status_code,
            duration_ms=duration_ms,
            message=message,
            error=error,
            reason=reason,
        )
        self._append(log_entry)
        return log_entry

    def log_event(
        self,
        level: LogLevel,
        log_type: str,
        message: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        error: Optional[str] = None,
    ) -> EventLog:
        """记录非请求事件"""
        log_entry = EventLog(
            id=self._generate_log_id(),
            timestamp=time.time(),
            level=level.value,
            type=log_type,
            message=message,
            error=error,
            provider=provider,
            model=model,
        )
        self._append(log_entry)
        return log_entry

    def _append(self, log_entry: LogEntry) -> None:
        self._logs.append(log_entry)
        self._notify_subscribers(log_entry)

    def _notify_subscribers(self, log_entry: LogEntry) -> None:
        dead = []
        for q in self._subscribers:
            try:
                q.put_nowait(log_entry)
            except asyncio.QueueFull:
                dead.append(q)
        for q in dead:
            if q in self._subscribers:
                self._subscribers.remove(q)

    async def subscribe(self) -> AsyncIterator[LogEntry]:
        q: asyncio.Queue = asyncio.Queue(maxsize=LOG_SUBSCRIBE_QUEUE_SIZE)
        self._subscribers.append(q)
        try:
            while True:
                yield await q.get()
        finally:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def get_recent_logs(
        self,
        limit: int = LOG_RECENT_LIMIT_DEFAULT,
        level: Optional[str] = None,
        log_type: Optional[str] = None,
        keyword: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> list[dict]:
        """按时间倒序返回最近的日志"""
        result: list[dict] = []
        for entry in reversed(self._logs):
            if level and entry.level != level:
                continue
            if log_type and entry.type != log_type:
                continue
            if provider and entry.provider != provider:
                continue
            if keyword:
                haystack = " ".join(
                    str(v) for v in (entry.message, entry.error, entry.model, entry.provider) if v
                )
                if keyword.lower() not in haystack.lower():
                    continue
            result.append(entry.to_dict())
            if len(result) >= limit:
                break
        return result

    def set_max_entries(self, max_memory_logs: int) -> None:
        """调整内存中保留的日志条数（保留最新的记录）"""
        self.max_memory_logs = max_memory_logs
        self._logs = deque(self._logs, maxlen=max_memory_logs)

    def clear(self) -> None:
        self._logs.clear()


log_manager = LogManager()
