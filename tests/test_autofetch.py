"""Tests for model list, balance and pricing fetching."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import Recorder, openai_provider
from llm_adapter.autofetch import AutoFetchService, apply_models, mark_updated, should_auto_update
from llm_adapter.errors import ConfigIncompleteError, ContentExtractionError
from llm_adapter.models import AIModel, AutoFetchConfig
from llm_adapter.presets import AUTO_FETCH_PRESETS
from llm_adapter.transport import HttpTransport


def service(handler) -> tuple[AutoFetchService, Recorder]:
    recorder = Recorder(handler)
    return AutoFetchService(HttpTransport(transport=httpx.MockTransport(recorder))), recorder


def provider_with(auto_fetch: dict, **overrides):
    return openai_provider(autoFetchConfig=auto_fetch, **overrides)


class TestFetchModels:
    """Model list fetching."""

    @pytest.mark.asyncio
    async def test_openai_style_list(self):
        svc, recorder = service(lambda r: httpx.Response(200, json={"data": [
            {"id": "gpt-4o"}, {"id": "whisper-1"}, {"id": "gpt-4o-mini"},
        ]}))
        provider = provider_with(AUTO_FETCH_PRESETS["openai"].to_dict())
        models = await svc.fetch_models(provider)

        assert [m.id for m in models] == ["gpt-4o", "gpt-4o-mini"]
        assert recorder.requests[0].headers["authorization"] == "Bearer sk-test"
        assert str(recorder.requests[0].url) == "https://api.openai.com/v1/models"

    @pytest.mark.asyncio
    async def test_gemini_prefix_stripped(self):
        svc, recorder = service(lambda r: httpx.Response(200, json={"models": [
            {"name": "models/gemini-2.0-flash", "displayName": "Gemini 2.0 Flash", "description": "fast"},
            {"name": "models/embedding-001"},
        ]}))
        provider = provider_with(AUTO_FETCH_PRESETS["gemini"].to_dict(), apiKey="gk")
        models = await svc.fetch_models(provider)

        assert models == [AIModel(id="gemini-2.0-flash", name="Gemini 2.0 Flash", description="fast")]
        assert recorder.requests[0].url.params["key"] == "gk"

    @pytest.mark.asyncio
    async def test_not_an_array(self):
        svc, _ = service(lambda r: httpx.Response(200, json={"data": {"id": "x"}}))
        with pytest.raises(ContentExtractionError):
            await svc.fetch_models(provider_with(AUTO_FETCH_PRESETS["openai"].to_dict()))

    @pytest.mark.asyncio
    async def test_disabled(self):
        svc, recorder = service(lambda r: httpx.Response(200, json={}))
        with pytest.raises(ConfigIncompleteError):
            await svc.fetch_models(provider_with(AUTO_FETCH_PRESETS["anthropic"].to_dict()))
        assert recorder.requests == []


class TestBalanceAndPricing:
    """Balance and pricing fetching."""

    @pytest.mark.asyncio
    async def test_deepseek_balance(self):
        svc, _ = service(lambda r: httpx.Response(200, json={
            "is_available": True,
            "balance_infos": [{"currency": "CNY", "total_balance": "12.50"}],
        }))
        result = await svc.fetch_balance(provider_with(AUTO_FETCH_PRESETS["deepseek"].to_dict()))
        assert result["balance"] == "12.50"
        assert result["currency"] == "CNY"
        assert result["isAvailable"] is True

    @pytest.mark.asyncio
    async def test_balance_response_fields(self):
        svc, _ = service(lambda r: httpx.Response(200, json={"data": {"credits": 3, "used": 1}}))
        provider = provider_with({"balanceApi": {
            "enabled": True,
            "endpoint": "{endpoint}/balance",
            "responsePath": "data",
            "responseFields": [{"fieldPath": "data.credits", "label": "剩余"}],
        }})
        result = await svc.fetch_balance(provider)
        assert result == {"raw": {"credits": 3, "used": 1}, "data.credits": 3}

    @pytest.mark.asyncio
    async def test_pricing(self):
        svc, recorder = service(lambda r: httpx.Response(200, json={"prices": [{"model": "m", "input": 1}]}))
        provider = provider_with({"pricingApi": {"enabled": True, "endpoint": "https://p.test/prices", "responsePath": "prices"}})
        assert await svc.fetch_pricing(provider) == [{"model": "m", "input": 1}]


class TestAutoUpdate:
    """Update scheduling and merging."""

    def test_never_updated(self):
        provider = provider_with({"autoUpdate": {"enabled": True}})
        assert should_auto_update(provider) is True

    def test_disabled(self):
        assert should_auto_update(openai_provider()) is False

    def test_interval(self):
        now = datetime(2026, 1, 2, tzinfo=timezone.utc)
        provider = mark_updated(provider_with({"autoUpdate": {"enabled": True, "intervalHours": 24}}), now)
        assert should_auto_update(provider, now + timedelta(hours=1)) is False
        assert should_auto_update(provider, now + timedelta(hours=25)) is True

    def test_apply_models_keeps_existing_settings(self):
        provider = openai_provider(
            models=[{"id": "gpt-test", "parameters": {"temperature": 0.1}}, {"id": "old"}],
            defaultModelId="old",
        )
        updated = apply_models(provider, [AIModel(id="gpt-test"), AIModel(id="new")])
        assert [m.id for m in updated.models] == ["gpt-test", "new"]
        assert updated.models[0].parameters == {"temperature": 0.1}
        assert updated.default_model_id is None

    def test_presets_valid(self):
        for name, config in AUTO_FETCH_PRESETS.items():
            assert AutoFetchConfig.model_validate(config.to_dict()) == config, name
