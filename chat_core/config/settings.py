"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
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
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
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
    """引擎配置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="ollama",
        description="新会话默认使用的 Provider 名称，例如 ollama、groq",
    )
    default_model: str = Field(default="", description="新会话默认模型，为空时需由 UI 选择")

    # Ollama（本地推理）
    ollama_base_url: str = Field(default="http://127.0.0.1:11434", description="Ollama 服务地址")
    # Groq（云端推理，OpenAI 兼容接口）
    groq_api_key: Optional[str] = Field(default=None, description="Groq API 密钥")
    groq_base_url: str = Field(
        default="https://api.groq.com/openai/v1",
        description="Groq API 基础URL",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_read_timeout: float = Field(
        default=60.0,
        gt=0,
        description="流式读取单个增量的超时时间（秒），超时视为后端停滞",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 上下文窗口 ----
    context_history_limit: int = Field(
        default=6,
        ge=4,
        le=50,
        description="历史轮数不超过该值时全部保留，超过后启用裁剪策略",
    )
    context_recent_turns: int = Field(default=4, ge=1, description="裁剪时始终保留的最近轮数")
    context_substantive_chars: int = Field(
        default=50,
        ge=0,
        description="较早轮次中视为“有实质内容”的最小字符数",
    )

    # ---- 流式节流 / 取消 / 后台任务 ----
    coalesce_min_interval: float = Field(default=0.12, gt=0, description="两次即时推送的最小间隔（秒）")
    coalesce_debounce: float = Field(default=0.3, gt=0, description="尾随推送的防抖窗口（秒）")
    supersede_grace: float = Field(default=0.05, ge=0, description="取消旧生成时等待其退出的宽限期（秒）")
    summary_delay: float = Field(default=1.5, ge=0, description="生成完成后延迟多久再请求摘要（秒）")
    autosave_quiet_period: float = Field(default=0.5, gt=0, description="自动保存的静默期（秒）")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("groq_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("default_provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.strip().lower()

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
