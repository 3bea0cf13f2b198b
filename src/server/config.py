"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- config: Config 的单例实例
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_roles: 将字符串/JSON 解析为角色定义字典
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    # CA 后端：local 为内置开发 CA，http 为远程 REST CA
    ca_backend: Literal["local", "http"] = "local"
    ca_url: str = ""
    ca_api_key: str = ""
    ca_zone: str = ""
    ca_verify_tls: bool = True
    ca_request_timeout: float = 30.0

    dev_ca_dir: str = "dev_ca"
    dev_ca_pending_polls: int = 0
    dev_ca_validity_days: int = 365

    # 轮询策略：默认与参考实现一致，5 秒间隔且不设上限
    poll_interval_seconds: float = 5.0
    poll_max_attempts: int | None = None
    poll_deadline_seconds: float | None = None

    storage_backend: Literal["memory", "file"] = "memory"
    storage_dir: str = "data"

    log_level: str = "INFO"

    roles: Dict[str, Dict[str, Any]] = {}

    # pydantic v2 风格配置（等价于旧版的 class Config）
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("roles", mode="before")
    @classmethod
    def parse_roles(cls, value: Any) -> Dict[str, Dict[str, Any]]:
        """支持从环境变量以 JSON 字符串解析 roles。"""
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                loaded = json.loads(value.strip())
            except json.JSONDecodeError as e:
                raise ValueError(f"roles 不是合法的 JSON: {e}") from e
            if not isinstance(loaded, dict):
                raise ValueError("roles 必须是以角色名为键的对象")
            return loaded
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except (OSError, json.JSONDecodeError):
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按字段名返回字段值。"""
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, False
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )

    def safe_dump(self) -> Dict[str, Any]:
        """导出可安全打印的配置（隐去凭据）。"""
        data = self.model_dump()
        if data.get("ca_api_key"):
            data["ca_api_key"] = "[REDACTED]"
        return data


config = Config()
