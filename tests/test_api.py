"""Tests for the HTTP service."""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from conftest import OPENAI_ENDPOINT, openai_delta, openai_reply, sse_body
from llm_adapter.adapter import StreamHandle
from llm_adapter.config import config_manager
from llm_adapter.models import Agent
from llm_adapter.schemas import ChatRequest


def upstream(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/models"):
        return httpx.Response(200, json={"data": [{"id": "gpt-new"}, {"id": "gpt-test"}]})
    body = json.loads(request.content)
    if body.get("stream"):
        return httpx.Response(200, content=sse_body(openai_delta("4")))
    if body["messages"][-1]["content"] == "fail":
        return httpx.Response(500, json={"error": {"message": "boom"}})
    return httpx.Response(200, json=openai_reply("4"))


PROVIDER = {
    "id": "p1",
    "name": "Test OpenAI",
    "apiEndpoint": OPENAI_ENDPOINT,
    "apiKey": "sk-test",
    "presetType": "openai",
    "models": [{"id": "gpt-test"}],
    "autoFetchConfig": {
        "modelsApi": {
            "enabled": True,
            "endpoint": "https://llm.test/v1/models",
            "responsePath": "data",
        },
    },
}


def sse_events(text: str) -> list:
    frames = [line[len("data: "):] for line in text.splitlines() if line.startswith("data: ")]
    return frames


@pytest.fixture
def client(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"data_path": str(tmp_path / "store.json")}), encoding="utf-8")
    monkeypatch.setattr(config_manager, "config_path", str(config_path))
    monkeypatch.setattr(config_manager, "_config", None)
    monkeypatch.delenv("AI_ADAPTER_DATA_PATH", raising=False)
    monkeypatch.setattr(main, "_upstream_transport", httpx.MockTransport(upstream))

    with TestClient(main.app) as c:
        c.put("/api/providers", json={"providers": [PROVIDER]})
        c.post("/api/providers/select", json={"provider_id": "p1"})
        yield c


class TestService:
    """Service endpoints."""

    def test_root_and_health(self, client):
        assert client.get("/").json()["status"] == "running"
        health = client.get("/health").json()
        assert health["total_providers"] == 1
        assert health["selected_provider_id"] == "p1"

    def test_list_providers(self, client):
        data = client.get("/api/providers").json()
        assert data["selectedProviderId"] == "p1"
        assert data["providers"][0]["kind"] == "openai"

    def test_invalid_provider_rejected(self, client):
        response = client.put("/api/providers", json={"providers": [{"name": "missing id"}]})
        assert response.status_code == 400

    def test_select_unknown_provider(self, client):
        assert client.post("/api/providers/select", json={"provider_id": "nope"}).status_code == 404

    def test_chat(self, client):
        response = client.post("/api/chat", json={"message": "2+2?", "history": [{"role": "user", "content": "2+2?"}]})
        data = response.json()
        assert data["success"] is True
        assert data["content"] == "4"

    def test_chat_upstream_failure(self, client):
        data = client.post("/api/chat", json={"message": "fail"}).json()
        assert data["success"] is False
        assert data["error"] == "API错误: boom"

    def test_chat_stream(self, client):
        response = client.post("/api/chat/stream", json={"message": "2+2?"})
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = sse_events(response.text)
        assert frames[-1] == "[DONE]"
        events = [json.loads(f) for f in frames[:-1]]
        assert events[-1]["done"] is True
        assert events[-1]["content"] == "4"
        assert events[-1]["reason"] == "completed"

    def test_agent_chat_stream(self, client):
        client.put("/api/agents", json={"agents": [
            {"id": "a1", "name": "A", "providerId": "p1", "modelId": "gpt-test", "systemPrompt": "terse"},
        ]})
        response = client.post("/api/chat/stream", json={"message": "hi", "agent_id": "a1"})
        events = [json.loads(f) for f in sse_events(response.text)[:-1]]
        assert events[-1]["content"] == "4"
        assert client.get("/api/agents").json()["agents"][0]["systemPrompt"] == "terse"

    def test_cancel_without_stream(self, client):
        data = client.post("/api/chat/cancel", json={"session_id": "nobody"}).json()
        assert data["canceled"] is False

    def test_connection_test(self, client):
        data = client.post("/api/providers/p1/test").json()
        assert data["success"] is True

    def test_fetch_models(self, client):
        data = client.post("/api/providers/p1/models/fetch").json()
        assert [m["id"] for m in data["models"]] == ["gpt-new", "gpt-test"]
        stored = client.get("/api/providers").json()["providers"][0]
        assert stored["autoFetchConfig"]["autoUpdate"]["lastUpdateTime"]

    def test_balance_not_configured(self, client):
        response = client.get("/api/providers/p1/balance")
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "ConfigIncompleteError"

    def test_unknown_provider(self, client):
        assert client.post("/api/providers/zzz/test").status_code == 404

    def test_proxy_settings(self, client):
        settings = {"enabled": False, "type": "socks5", "host": "127.0.0.1", "port": 1080}
        assert client.put("/api/proxy", json=settings).status_code == 200
        assert client.get("/api/proxy").json()["type"] == "socks5"

    def test_presets(self, client):
        data = client.get("/api/presets").json()
        assert set(data["configs"]) == {"openai", "gemini", "anthropic", "custom"}
        assert "deepseek" in data["autoFetch"]

    def test_logs(self, client):
        client.post("/api/chat", json={"message": "hi"})
        logs = client.get("/api/logs", params={"log_type": "chat"}).json()["logs"]
        assert logs[0]["provider"] == "Test OpenAI"


class TestSessions:
    """Per-session adapters are released once their call ends."""

    def test_stream_sessions_released(self, client):
        for session_id in ("s1", "s2", "s3"):
            response = client.post("/api/chat/stream", json={"message": "2+2?", "session_id": session_id})
            assert sse_events(response.text)[-1] == "[DONE]"
        assert main._adapters == {}

    def test_chat_session_released(self, client):
        client.post("/api/chat", json={"message": "hi", "session_id": "once"})
        assert "once" not in main._adapters

    def test_busy_session_kept(self, store, make_adapter):
        busy, _ = make_adapter(upstream)
        busy._current = StreamHandle()
        main._adapters["busy"] = busy
        try:
            main.release_session_adapter("busy", busy)
            assert main._adapters["busy"] is busy
        finally:
            main._adapters.clear()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_non_stream_agent_call(self, store, make_adapter):
        started = asyncio.Event()
        upstream_cancelled = asyncio.Event()

        async def hanging(request):
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                upstream_cancelled.set()
                raise

        store.save_agents([Agent(id="a1", name="A", provider_id="p1", model_id="gpt-test", is_stream_mode=False)])
        adapter, _ = make_adapter(hanging)
        main._adapters["agent-session"] = adapter
        request = ChatRequest(message="hi", agent_id="a1", session_id="agent-session")

        events = main._agent_events(adapter, request)
        pending = asyncio.ensure_future(events.__anext__())
        try:
            await asyncio.wait_for(started.wait(), timeout=2)
            pending.cancel()
            with pytest.raises(asyncio.CancelledError):
                await pending
            assert upstream_cancelled.is_set()
            assert "agent-session" not in main._adapters
        finally:
            main._adapters.clear()
