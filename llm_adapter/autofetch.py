"""
自动获取模块

从 Provider 自己的 API 拉取模型列表、账户余额和定价信息，
按 AutoFetchConfig 中的路径提取字段。
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from .constants import AUTO_FETCH_DEFAULT_INTERVAL_HOURS, GEMINI_MODEL_ID_PREFIX
from .errors import ConfigIncompleteError, ContentExtractionError
from .extractor import parse_body
from .logger import LogLevel, log_manager
from .models import (
    AIModel,
    AutoFetchConfig,
    AutoUpdateConfig,
    HeaderConfig,
    ModelsApiConfig,
    PricingApiConfig,
    Provider,
)
from .paths import MISSING, get_path
from .request_builder import ProtocolRequest
from .templates import resolve_template
from .transport import HttpTransport


def _value_or_none(value: Any) -> Any:
    return None if value is MISSING else value


class AutoFetchService:
    """模型列表 / 余额 / 定价获取"""

    def __init__(self, transport: HttpTransport):
        self.transport = transport

    def _connection_vars(self, provider: Provider) -> dict[str, Any]:
        return {"apiKey": provider.api_key, "endpoint": provider.api_endpoint.rstrip("/")}

    def _build_headers(self, headers: list[HeaderConfig], variables: dict[str, Any]) -> dict[str, str]:
        result: dict[str, str] = {}
        for h in headers:
            if not h.key:
                continue
            result[h.key] = resolve_template(h.raw_template, variables) if h.is_template else h.value
        return result

    async def _request(self, provider: Provider, config: Optional[Union[ModelsApiConfig, PricingApiConfig]], label: str) -> Any:
        if config is None or not config.enabled or not config.endpoint:
            raise ConfigIncompleteError(
                f"{label}API配置未启用或端点为空",
                missing_field="endpoint",
                provider_name=provider.name,
            )

        variables = self._connection_vars(provider)
        request = ProtocolRequest(
            method=config.method,
            url=resolve_template(config.endpoint, variables),
            headers=self._build_headers(config.headers, variables),
            body={} if config.method == "POST" else None,
        )
        response = await self.transport.send(request, provider_name=provider.name)
        return parse_body(response.text, provider.name)

    @staticmethod
    def _auto_fetch(provider: Provider) -> AutoFetchConfig:
        return provider.auto_fetch_config or AutoFetchConfig()

    async def fetch_models(self, provider: Provider) -> list[AIModel]:
        """
        获取模型列表

        Raises:
            ConfigIncompleteError: 未启用或端点为空
            ContentExtractionError: 响应中的模型数据不是数组
        """
        config = self._auto_fetch(provider).models_api
        data = await self._request(provider, config, "模型")

        items = get_path(data, config.response_path) if config.response_path else data
        if not isinstance(items, list):
            raise ContentExtractionError(
                "API响应中的模型数据不是数组格式",
                path=config.response_path or "",
                available_keys=list(data.keys()) if isinstance(data, dict) else [],
                provider_name=provider.name,
            )

        pattern = re.compile(config.filter_pattern) if config.filter_pattern else None
        models: list[AIModel] = []
        for item in items:
            raw_id = get_path(item, config.model_id_path or "id")
            if not raw_id:
                continue
            model_id = str(raw_id)
            if pattern and not pattern.search(model_id):
                continue

            name = None
            if config.model_name_path:
                name = str(get_path(item, config.model_name_path) or model_id)
            description = None
            if config.model_description_path:
                description = str(get_path(item, config.model_description_path) or "")

            # Gemini 的模型 ID 带 models/ 前缀，去掉以免 URL 重复
            if model_id.startswith(GEMINI_MODEL_ID_PREFIX):
                model_id = model_id[len(GEMINI_MODEL_ID_PREFIX):]

            models.append(AIModel(id=model_id, name=name, description=description))

        log_manager.log_event(
            LogLevel.INFO, "sync", f"成功获取 {len(models)} 个模型", provider=provider.name
        )
        return models

    async def fetch_pricing(self, provider: Provider) -> Any:
        """获取定价信息"""
        config = self._auto_fetch(provider).pricing_api
        data = await self._request(provider, config, "定价")
        return _value_or_none(get_path(data, config.response_path)) if config.response_path else data

    async def fetch_balance(self, provider: Provider) -> dict[str, Any]:
        """
        获取账户余额

        返回 {"raw": ...} 加上配置的字段：responseFields 按路径为键，
        否则使用 balance / currency / isAvailable。
        """
        config = self._auto_fetch(provider).balance_api
        data = await self._request(provider, config, "余额")

        raw = _value_or_none(get_path(data, config.response_path)) if config.response_path else data
        result: dict[str, Any] = {"raw": raw}

        if config.response_fields:
            for field in config.response_fields:
                if field.field_path:
                    result[field.field_path] = _value_or_none(get_path(data, field.field_path))
        else:
            if config.balance_info_path:
                result["balance"] = _value_or_none(get_path(data, config.balance_info_path))
            if config.currency_path:
                result["currency"] = _value_or_none(get_path(data, config.currency_path))
            if config.available_path:
                result["isAvailable"] = _value_or_none(get_path(data, config.available_path))

        log_manager.log_event(
            LogLevel.INFO,
            "sync",
            f"成功获取账户余额: {result.get('balance', '-')} {result.get('currency', '')}".strip(),
            provider=provider.name,
        )
        return result


def should_auto_update(provider: Provider, now: Optional[datetime] = None) -> bool:
    """是否到了自动更新时间（从未更新过视为需要更新）"""
    auto_update = provider.auto_fetch_config.auto_update if provider.auto_fetch_config else None
    if auto_update is None or not auto_update.enabled:
        return False
    if auto_update.last_update_time is None:
        return True

    now = now or datetime.now(timezone.utc)
    last = auto_update.last_update_time
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    interval = timedelta(hours=auto_update.interval_hours or AUTO_FETCH_DEFAULT_INTERVAL_HOURS)
    return now - last >= interval


def mark_updated(provider: Provider, now: Optional[datetime] = None) -> Provider:
    """返回记录了最后更新时间的新 Provider"""
    now = now or datetime.now(timezone.utc)
    auto_fetch = provider.auto_fetch_config or AutoFetchConfig()
    auto_update = auto_fetch.auto_update or AutoUpdateConfig()
    auto_update = auto_update.model_copy(update={"last_update_time": now})
    auto_fetch = auto_fetch.model_copy(update={"auto_update": auto_update})
    return provider.model_copy(update={"auto_fetch_config": auto_fetch})


def apply_models(provider: Provider, models: list[AIModel]) -> Provider:
    """
    用获取到的模型列表更新 Provider

    已存在的模型保留原有参数和能力设置；默认模型不在新列表中时清空。
    """
    existing = {m.id: m for m in provider.models}
    merged = [existing.get(m.id, m) for m in models]
    ids = {m.id for m in merged}
    default_model_id = provider.default_model_id if provider.default_model_id in ids else None
    return provider.model_copy(update={"models": merged, "default_model_id": default_model_id})
