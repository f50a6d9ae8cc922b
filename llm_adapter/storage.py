"""
存储模块

JSON 文件存储，保存 Provider 列表、选中的 Provider、代理设置和 Agent。
配置变更即时落盘，写入时使用文件锁。

包含：
- BaseStorageManager: 存储管理器基类
- ProviderStore: 适配器读取的配置存储
"""

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import filelock
from pydantic import ValidationError

from .constants import STORAGE_LOCK_TIMEOUT_SECONDS
from .logger import LogLevel, log_manager
from .models import Agent, Provider, ProxySettings


class BaseStorageManager(ABC):
    """
    存储管理器基类

    子类需要实现：
    - _do_load(): 加载数据
    - _do_save(): 保存数据
    - _get_default_data(): 返回默认数据结构
    """

    def __init__(self, data_path: str, use_file_lock: bool = True):
        """
        初始化存储管理器

        Args:
            data_path: 数据文件路径
            use_file_lock: 是否使用文件锁
        """
        self.data_path = Path(data_path)
        self.lock_path = self.data_path.with_suffix(".json.lock")
        self.use_file_lock = use_file_lock

        self._loaded = False

        # 线程安全锁
        self._lock = threading.RLock()

    def _ensure_file_exists(self) -> None:
        """确保数据文件和目录存在"""
        if not self.data_path.exists():
            self.data_path.parent.mkdir(parents=True, exist_ok=True)
            self._write_to_file(self._get_default_data())

    def _read_from_file(self) -> dict:
        """从文件读取数据"""
        self._ensure_file_exists()
        try:
            with open(self.data_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return self._get_default_data()

    def _write_to_file(self, data: dict) -> None:
        """写入数据到文件（带可选文件锁）"""
        self.data_path.parent.mkdir(parents=True, exist_ok=True)

        if self.use_file_lock:
            lock = filelock.FileLock(self.lock_path, timeout=STORAGE_LOCK_TIMEOUT_SECONDS)
            with lock:
                self._do_write(data)
        else:
            self._do_write(data)

    def _do_write(self, data: dict) -> None:
        """实际执行写入"""
        with open(self.data_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    @abstractmethod
    def _get_default_data(self) -> dict:
        """返回默认数据结构（子类实现）"""
        pass

    @abstractmethod
    def _do_load(self) -> None:
        """加载数据到内存（子类实现）"""
        pass

    @abstractmethod
    def _do_save(self) -> None:
        """保存内存数据到文件（子类实现）"""
        pass

    def _ensure_loaded(self) -> None:
        """确保数据已加载"""
        if not self._loaded:
            self.load()

    def load(self) -> None:
        """加载数据"""
        with self._lock:
            self._do_load()
            self._loaded = True

    def save(self) -> None:
        """立即保存数据"""
        with self._lock:
            self._do_save()


class ProviderStore(BaseStorageManager):
    """
    配置存储

    适配器只读取；写入由服务接口完成。
    """

    def __init__(self, data_path: str, use_file_lock: bool = True):
        super().__init__(data_path, use_file_lock)
        self._providers: list[Provider] = []
        self._selected_provider_id: Optional[str] = None
        self._proxy_settings = ProxySettings()
        self._agents: list[Agent] = []

    def _get_default_data(self) -> dict:
        return {
            "providers": [],
            "selectedProviderId": None,
            "proxySettings": ProxySettings().to_dict(),
            "agents": [],
        }

    def _do_load(self) -> None:
        data = self._read_from_file()
        self._providers = self._parse_list(Provider, data.get("providers", []), "Provider")
        self._agents = self._parse_list(Agent, data.get("agents", []), "Agent")
        self._selected_provider_id = data.get("selectedProviderId")
        try:
            self._proxy_settings = ProxySettings.model_validate(data.get("proxySettings") or {})
        except ValidationError as e:
            self._log_warning(f"代理设置无效，已使用默认值: {e}")
            self._proxy_settings = ProxySettings()

    def _do_save(self) -> None:
        self._write_to_file({
            "providers": [p.to_dict() for p in self._providers],
            "selectedProviderId": self._selected_provider_id,
            "proxySettings": self._proxy_settings.to_dict(),
            "agents": [a.to_dict() for a in self._agents],
        })

    def _parse_list(self, model_cls, items: list, label: str) -> list:
        result = []
        for item in items:
            try:
                result.append(model_cls.model_validate(item))
            except ValidationError as e:
                name = item.get("name", item.get("id", "?")) if isinstance(item, dict) else "?"
                self._log_warning(f"跳过无效的 {label} 配置 [{name}]: {e.error_count()} 个错误")
        return result

    # ==================== Provider ====================

    def get_providers(self) -> list[Provider]:
        self._ensure_loaded()
        return list(self._providers)

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        self._ensure_loaded()
        for p in self._providers:
            if p.id == provider_id:
                return p
        return None

    def save_providers(self, providers: list[Provider]) -> None:
        with self._lock:
            self._ensure_loaded()
            self._providers = list(providers)
            ids = {p.id for p in self._providers}
            if self._selected_provider_id not in ids:
                self._selected_provider_id = None
            self.save()

    def update_provider(self, provider: Provider) -> None:
        """替换同 ID 的 Provider（不存在则追加）"""
        with self._lock:
            self._ensure_loaded()
            providers = [provider if p.id == provider.id else p for p in self._providers]
            if not any(p.id == provider.id for p in self._providers):
                providers.append(provider)
            self.save_providers(providers)

    def get_selected_provider_id(self) -> Optional[str]:
        self._ensure_loaded()
        return self._selected_provider_id

    def save_selected_provider_id(self, provider_id: Optional[str]) -> None:
        with self._lock:
            self._ensure_loaded()
            self._selected_provider_id = provider_id
            self.save()

    # ==================== 代理 ====================

    def get_proxy_settings(self) -> ProxySettings:
        self._ensure_loaded()
        return self._proxy_settings

    def save_proxy_settings(self, settings: ProxySettings) -> None:
        with self._lock:
            self._ensure_loaded()
            self._proxy_settings = settings
            self.save()

    # ==================== Agent ====================

    def get_agents(self) -> list[Agent]:
        self._ensure_loaded()
        return list(self._agents)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        self._ensure_loaded()
        for a in self._agents:
            if a.id == agent_id:
                return a
        return None

    def save_agents(self, agents: list[Agent]) -> None:
        with self._lock:
            self._ensure_loaded()
            self._agents = list(agents)
            self.save()

    @staticmethod
    def _log_warning(message: str) -> None:
        print(f"[STORAGE] {message}")
        log_manager.log_event(LogLevel.WARNING, "system", message)
