"""Shared fixtures: temporary provider store and mocked upstream transport."""

import inspect
import json
from typing import Any, Callable, Iterable

import httpx
import pytest

from llm_adapter.adapter import AIAdapter
from llm_adapter.logger import log_manager
from llm_adapter.models import Provider
from llm_adapter.storage import ProviderStore
from llm_adapter.transport import HttpTransport


OPENAI_ENDPOINT = "https://llm.test/v1/chat/completions"


def openai_provider(**overrides: Any) -> Provider:
    """An OpenAI-compatible provider without customConfig (built-in config)."""
    data = {
        "id": "p1",
        "name": "Test OpenAI",
        "apiEndpoint": OPENAI_ENDPOINT,
        "apiKey": "sk-test",
        "presetType": "openai",
        "models": [{"id": "gpt-test"}],
    }
    data.update(overrides)
    return Provider.model_validate(data)


def sse_body(*payloads: Any, done: bool = True) -> bytes:
    """Encode payloads as `data: <json>` lines."""
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def openai_delta(content: str) -> dict:
    return {"choices": [{"delta": {"content": content}}]}


def openai_reply(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


async def chunked(parts: Iterable[bytes]):
    for part in parts:
        yield part


class Recorder:
    """Records upstream requests seen by the mock transport."""

    def __init__(self, handler: Callable[[httpx.Request], Any]):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request):
        self.requests.append(request)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture(autouse=True)
def clean_logs():
    log_manager.clear()
    yield
    log_manager.clear()


@pytest.fixture
def store(tmp_path) -> ProviderStore:
    s = ProviderStore(str(tmp_path / "store.json"), use_file_lock=False)
    s.save_providers([openai_provider()])
    s.save_selected_provider_id("p1")
    return s


@pytest.fixture
def make_adapter(store):
    """Build an adapter whose transport answers with `handler`."""
    def _make(handler: Callable[[httpx.Request], Any]) -> tuple[AIAdapter, Recorder]:
        recorder = Recorder(handler)
        transport = HttpTransport(transport=httpx.MockTransport(recorder))
        return AIAdapter(store, transport), recorder
    return _make
