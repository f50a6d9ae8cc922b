"""Tests for request assembly."""

import pytest

from conftest import OPENAI_ENDPOINT, openai_provider
from llm_adapter.constants import DEFAULT_USER_AGENT
from llm_adapter.errors import ConfigIncompleteError
from llm_adapter.models import ChatTurn, CustomAPIConfig, Provider, ProviderKind
from llm_adapter.presets import get_preset_config
from llm_adapter.request_builder import build_request, check_config_complete, resolve_config
from llm_adapter.structure import CompileContext


def custom_provider(config: dict, **overrides) -> Provider:
    data = {
        "id": "c1",
        "name": "Custom",
        "apiEndpoint": "https://custom.test/chat",
        "apiKey": "k-1",
        "models": [{"id": "m-1"}],
        "customConfig": config,
    }
    data.update(overrides)
    return Provider.model_validate(data)


MINIMAL_CONFIG = {
    "method": "POST",
    "headers": [{"key": "Authorization", "valueTemplate": "Bearer {apiKey}", "valueType": "template"}],
    "bodyFields": [
        {"path": "model", "valueType": "template", "valueTemplate": "{model}"},
        {"path": "prompt", "valueType": "template", "valueTemplate": "{message}"},
        {"path": "options.temperature", "valueType": "template", "valueTemplate": "{temperature}"},
        {"path": "options.safe", "valueType": "static", "value": True},
    ],
    "response": {"contentPath": "output.text"},
}


class TestConfigCompleteness:
    """Config validation happens before any network activity."""

    def test_missing_content_path(self):
        provider = custom_provider({"bodyFields": []})
        with pytest.raises(ConfigIncompleteError) as exc_info:
            build_request(provider, "m-1", CompileContext(message="x"))
        assert exc_info.value.missing_field == "response.contentPath"

    def test_missing_stream_content_path(self):
        config = CustomAPIConfig.model_validate({
            "response": {"contentPath": "a"},
            "streamConfig": {"enabled": True, "response": {"contentPath": ""}},
        })
        with pytest.raises(ConfigIncompleteError) as exc_info:
            check_config_complete(config, stream=True)
        assert exc_info.value.missing_field == "streamConfig.response.contentPath"

    def test_stream_path_ignored_for_non_stream_call(self):
        config = CustomAPIConfig.model_validate({
            "response": {"contentPath": "a"},
            "streamConfig": {"enabled": True, "response": {"contentPath": ""}},
        })
        check_config_complete(config, stream=False)

    def test_missing_endpoint(self):
        provider = custom_provider(MINIMAL_CONFIG, apiEndpoint="")
        with pytest.raises(ConfigIncompleteError) as exc_info:
            build_request(provider, "m-1", CompileContext(message="x"))
        assert exc_info.value.missing_field == "apiEndpoint"


class TestCustomConfig:
    """Requests assembled from customConfig."""

    def test_body_headers_and_url(self):
        request = build_request(custom_provider(MINIMAL_CONFIG), "m-1", CompileContext(message="hello", temperature=0.3))
        assert request.method == "POST"
        assert request.url == "https://custom.test/chat"
        assert request.headers["Authorization"] == "Bearer k-1"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == DEFAULT_USER_AGENT
        assert request.body == {
            "model": "m-1",
            "prompt": "hello",
            "options": {"temperature": 0.3, "safe": True},
        }
        assert request.stream is False

    def test_get_has_no_body(self):
        provider = custom_provider({**MINIMAL_CONFIG, "method": "get"})
        request = build_request(provider, "m-1", CompileContext(message="x"))
        assert request.method == "GET"
        assert request.body is None

    def test_custom_user_agent_kept(self):
        config = {**MINIMAL_CONFIG, "headers": [{"key": "user-agent", "value": "mine"}]}
        request = build_request(custom_provider(config), "m-1", CompileContext(message="x"))
        assert request.headers["user-agent"] == "mine"
        assert "User-Agent" not in request.headers

    def test_query_params_and_url_template(self):
        config = {
            **MINIMAL_CONFIG,
            "urlTemplate": "{endpoint}/models/{model}:generateContent",
            "queryParams": [{"key": "key", "valueTemplate": "{apiKey}", "valueType": "template"}],
        }
        request = build_request(custom_provider(config), "m-1", CompileContext(message="x"))
        assert request.url == "https://custom.test/chat/models/m-1:generateContent?key=k-1"

    def test_visual_structure_field(self):
        config = get_preset_config(ProviderKind.OPENAI)
        provider = openai_provider()
        history = (ChatTurn("user", "hi"), ChatTurn("assistant", "yo"), ChatTurn("user", "2+2?"))
        request = build_request(provider, "gpt-test", CompileContext(message="2+2?", history=history), config=config)
        assert request.body["messages"] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "yo"},
            {"role": "user", "content": "2+2?"},
        ]


class TestStreamActivation:
    """Each streaming activation mode."""

    def _config(self, request_type: str, request: dict) -> dict:
        return {
            **MINIMAL_CONFIG,
            "streamConfig": {
                "enabled": True,
                "requestType": request_type,
                "request": request,
                "response": {"contentPath": "delta"},
            },
        }

    def test_body_field(self):
        config = self._config("body_field", {"bodyFieldPath": "params.stream", "bodyFieldValue": True})
        request = build_request(custom_provider(config), "m-1", CompileContext(message="x"), stream=True)
        assert request.stream is True
        assert request.body["params"] == {"stream": True}

    def test_url_endpoint(self):
        config = self._config("url_endpoint", {"urlReplacement": {"from": "/chat", "to": "/chat/stream"}})
        request = build_request(custom_provider(config), "m-1", CompileContext(message="x"), stream=True)
        assert request.url == "https://custom.test/chat/stream"
        assert "stream" not in request.body

    def test_query_param_defaults(self):
        config = self._config("query_param", {})
        request = build_request(custom_provider(config), "m-1", CompileContext(message="x"), stream=True)
        assert request.url == "https://custom.test/chat?stream=true"

    def test_query_param_custom(self):
        config = self._config("query_param", {"queryParamKey": "alt", "queryParamValue": "sse"})
        request = build_request(custom_provider(config), "m-1", CompileContext(message="x"), stream=True)
        assert request.url == "https://custom.test/chat?alt=sse"

    def test_stream_disabled_builds_non_stream_request(self):
        request = build_request(custom_provider(MINIMAL_CONFIG), "m-1", CompileContext(message="x"), stream=True)
        assert request.stream is False

    def test_not_streaming_leaves_request_untouched(self):
        config = self._config("body_field", {"bodyFieldPath": "stream"})
        request = build_request(custom_provider(config), "m-1", CompileContext(message="x"), stream=False)
        assert "stream" not in request.body


class TestLegacyMode:
    """Providers without customConfig use the built-in config of their kind."""

    def test_kind_inferred_once(self):
        assert openai_provider().kind == ProviderKind.OPENAI
        assert openai_provider(name="My Gemini", presetType=None, apiEndpoint="https://x").kind == ProviderKind.GEMINI
        assert openai_provider(name="other", presetType=None, apiEndpoint="https://x").kind == ProviderKind.CUSTOM

    def test_openai_request(self):
        provider = openai_provider()
        ctx = CompileContext(message="2+2?", system_prompt="short", temperature=0.1)
        request = build_request(provider, "gpt-test", ctx, stream=True)
        assert request.url == OPENAI_ENDPOINT
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.body == {
            "model": "gpt-test",
            "messages": [
                {"role": "system", "content": "short"},
                {"role": "user", "content": "2+2?"},
            ],
            "temperature": 0.1,
            "stream": True,
        }

    def test_gemini_request(self):
        provider = Provider.model_validate({
            "id": "g",
            "name": "Gemini",
            "apiEndpoint": "https://generativelanguage.googleapis.com/v1beta/",
            "apiKey": "gk",
            "presetType": "gemini",
        })
        history = (ChatTurn("user", "hi"), ChatTurn("assistant", "hello"), ChatTurn("user", "bye"))
        request = build_request(provider, "gemini-pro", CompileContext(message="bye", history=history), stream=True)
        assert request.url == (
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro:streamGenerateContent?key=gk"
        )
        assert request.body["contents"][1] == {"role": "model", "parts": [{"text": "hello"}]}
        assert request.body["generationConfig"] == {"temperature": 0.7}
        assert "systemInstruction" not in request.body

    def test_gemini_system_prompt_sent_as_instruction(self):
        provider = Provider.model_validate({
            "id": "g",
            "name": "Gemini",
            "apiEndpoint": "https://generativelanguage.googleapis.com/v1beta",
            "apiKey": "gk",
            "presetType": "gemini",
        })
        ctx = CompileContext(message="hi", system_prompt="Answer in French")
        request = build_request(provider, "gemini-pro", ctx)
        assert request.body == {
            "systemInstruction": {"parts": [{"text": "Answer in French"}]},
            "contents": [{"role": "user", "parts": [{"text": "hi"}]}],
            "generationConfig": {"temperature": 0.7},
        }

    def test_anthropic_request(self):
        provider = Provider.model_validate({
            "id": "a",
            "name": "Claude",
            "apiEndpoint": "https://api.anthropic.com/v1/messages",
            "apiKey": "ak",
            "presetType": "claude",
        })
        request = build_request(provider, "claude-x", CompileContext(message="hi", system_prompt="sys"))
        assert request.headers["x-api-key"] == "ak"
        assert "anthropic-version" in request.headers
        assert request.body["system"] == "sys"
        assert request.body["messages"] == [{"role": "user", "content": "hi"}]
        assert request.body["max_tokens"] > 0

    def test_missing_system_prompt_field_skipped(self):
        provider = Provider.model_validate({
            "id": "a",
            "name": "Claude",
            "apiEndpoint": "https://api.anthropic.com/v1/messages",
            "presetType": "claude",
        })
        request = build_request(provider, "claude-x", CompileContext(message="hi"))
        assert "system" not in request.body

    def test_resolve_config_prefers_custom(self):
        provider = custom_provider(MINIMAL_CONFIG)
        assert resolve_config(provider).response.content_path == "output.text"
        assert resolve_config(openai_provider()).response.content_path == "choices[0].message.content"
