import json
import os
from typing import Optional

from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_DATA_PATH,
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PORT,
    DEFAULT_TEMPERATURE,
    LOG_MAX_MEMORY_ENTRIES,
)


class AppConfig(BaseModel):
    """应用配置模型，支持环境变量和配置文件"""
    # 服务器配置（支持环境变量）
    server_port: int = Field(default=DEFAULT_SERVER_PORT, ge=1, le=65535)
    server_host: str = Field(default=DEFAULT_SERVER_HOST)

    # 存储文件路径（支持环境变量）
    data_path: str = Field(default=DEFAULT_DATA_PATH, description="Provider / 代理 / Agent 存储文件")

    # 传输层超时，None 表示不限（SSE 连接可能持续很久）
    request_timeout: Optional[float] = Field(default=None, ge=1.0)

    # 未指定温度时使用
    default_temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)

    # 时区配置
    timezone_offset: int = Field(default=8, ge=-12, le=14, description="时区偏移量（小时），如 8 表示 UTC+8")

    # 日志配置
    log_max_memory_entries: int = Field(default=LOG_MAX_MEMORY_ENTRIES, ge=1, description="内存中保留的日志条数")


def load_config_file(config_path: str = "config.json") -> dict:
    """
    加载配置文件并返回原始字典。

    Args:
        config_path: 配置文件路径

    Returns:
        dict: 配置文件内容

    Raises:
        RuntimeError: 配置文件不存在或解析失败
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        raise RuntimeError(
            f"配置文件 '{config_path}' 未找到。"
            f"请从 config.example.json 复制并填写配置。"
        )
    except json.JSONDecodeError as e:
        raise RuntimeError(f"配置文件 '{config_path}' JSON 解析失败: {e}")


# 环境变量名称常量
ENV_CONFIG_PATH = "AI_ADAPTER_CONFIG"
ENV_SERVER_PORT = "AI_ADAPTER_PORT"
ENV_SERVER_HOST = "AI_ADAPTER_HOST"
ENV_DATA_PATH = "AI_ADAPTER_DATA_PATH"


class ConfigManager:
    """配置管理器，支持环境变量覆盖配置文件"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.getenv(ENV_CONFIG_PATH, "config.json")
        self._config: Optional[AppConfig] = None

    def load(self) -> AppConfig:
        """
        加载配置，优先级：环境变量 > 配置文件 > 默认值

        环境变量：
        - AI_ADAPTER_CONFIG: 配置文件路径
        - AI_ADAPTER_PORT: 服务端口
        - AI_ADAPTER_HOST: 服务主机
        - AI_ADAPTER_DATA_PATH: 存储文件路径

        Returns:
            AppConfig: 应用配置对象
        """
        config_data = load_config_file(self.config_path)

        env_port = os.getenv(ENV_SERVER_PORT)
        if env_port:
            config_data["server_port"] = int(env_port)

        env_host = os.getenv(ENV_SERVER_HOST)
        if env_host:
            config_data["server_host"] = env_host

        env_data_path = os.getenv(ENV_DATA_PATH)
        if env_data_path:
            config_data["data_path"] = env_data_path

        self._config = AppConfig(**config_data)
        return self._config

    @property
    def config(self) -> AppConfig:
        """获取当前配置，如未加载则自动加载"""
        if self._config is None:
            return self.load()
        return self._config


config_manager = ConfigManager()


def get_config() -> AppConfig:
    """获取应用配置"""
    return config_manager.config
