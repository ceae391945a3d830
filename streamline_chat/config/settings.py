"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：显式参数 > 环境变量 > .env > config.yaml > 默认值。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("STREAMLINE_CONFIG_FILE")
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


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 聊天接口（客户端侧） ----
    api_base_url: str = Field(
        default="http://localhost:8788",
        description="流式聊天接口所在服务的基础 URL",
    )
    chat_path: str = Field(default="/api/chat", description="流式聊天接口路径")
    transport: str = Field(
        default="http",
        description="传输方式：http（访问聊天服务）或 local（进程内直接调用上游）",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 连接超时时间（秒）")

    # ---- 上游模型（服务端侧） ----
    upstream_base_url: str = Field(
        default="https://api.moonshot.cn/v1",
        description="OpenAI 兼容的 chat/completions 接口基础URL",
    )
    upstream_api_key: Optional[str] = Field(default=None, description="上游模型 API 密钥")
    upstream_model: str = Field(default="kimi-k2-turbo-preview", description="上游模型 ID")
    system_prompt: Optional[str] = Field(
        default=None,
        description="系统提示词，留空时使用 prompts 目录中的默认提示词",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    storage_key: str = Field(default="chat_conversations", description="会话集合的存储键")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 会话展示 ----
    title_max_length: int = Field(default=30, ge=1, le=200, description="自动标题最大长度")
    greeting_text: str = Field(
        default="안녕하세요! 무엇을 도와드릴까요?",
        description="新会话的首条问候消息",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("upstream_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("api_base_url", "upstream_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("chat_path")
    @classmethod
    def ensure_leading_slash(cls, v: str) -> str:
        return v if v.startswith("/") else f"/{v}"

    @property
    def chat_url(self) -> str:
        return f"{self.api_base_url}{self.chat_path}"

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


settings = Settings()
