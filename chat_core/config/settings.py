"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chat_core.config.endpoint import DEFAULT_BASE_URL, DEFAULT_MODEL, normalize_base_url


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class ChatSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 推理服务 ----
    ollama_base_url: str = Field(
        default=DEFAULT_BASE_URL,
        description="推理服务基础地址，末尾的 / 会被去掉",
    )
    ollama_model: str = Field(default=DEFAULT_MODEL, description="模型标识，例如 phi3:3.8b")

    # ---- 会话 ----
    context_limit: int = Field(default=10, ge=1, le=100, description="每次请求最多携带的最近消息数")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("ollama_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        v = normalize_base_url(v)
        if not v:
            raise ValueError("ollama_base_url must not be empty")
        return v

    @field_validator("ollama_model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("ollama_model must not be empty")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = ChatSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = ChatSettings
