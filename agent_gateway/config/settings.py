"""配置管理模块。

支持从构造参数、环境变量、.env 以及 config.yaml 加载配置。
配置对象由 load_settings() 在进程启动时构造一次，再显式传给
Gateway / Orchestrator / Provider，不再使用模块级全局单例。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("AGENT_CONFIG_FILE")
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


class GatewaySettings(BaseSettings):
    """网关配置。"""

    # ---- 监听与鉴权 ----
    host: str = Field(default="127.0.0.1", description="WebSocket 监听地址")
    port: int = Field(default=8787, ge=0, le=65535, description="WebSocket 监听端口")
    ws_path: str = Field(default="/ws", description="WebSocket 路径")
    auth_tokens: List[str] = Field(
        default_factory=list,
        description="允许的连接 token 列表；为空时只要求 token 非空",
    )

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="deepseek",
        description="默认使用的 Provider 名称，例如 deepseek、kimi",
    )
    default_model: str = Field(
        default="chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型",
    )
    deepseek_api_key: Optional[str] = Field(default=None, description="DeepSeek API 密钥")
    deepseek_base_url: str = Field(
        default="https://api.deepseek.com/v1",
        description="DeepSeek API 基础URL",
    )
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: str = Field(
        default="https://api.moonshot.cn/v1",
        description="Kimi API 基础URL",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 请求编排 ----
    request_timeout: float = Field(default=90.0, gt=0, description="单个请求的硬超时（秒）")
    preview_delay: float = Field(default=0.3, ge=0, description="预览片段最迟发送时间（秒）")
    default_reserve: int = Field(default=800, ge=0, description="为回答预留的 token 数")
    max_history_turns: int = Field(default=50, ge=0, description="每个连接保留的历史轮数，0 表示不限制")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="生成温度")
    system_prompt: str = Field(
        default="You are an Obsidian writing companion. Be concise, helpful.",
        description="会话默认 system prompt",
    )

    # ---- 心跳 ----
    heartbeat_interval: float = Field(default=15.0, gt=0, description="心跳间隔（秒）")
    heartbeat_timeout: float = Field(default=5.0, gt=0, description="等待 pong 的超时（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 工具 ----
    enable_tools: bool = Field(default=False, description="是否允许 tools/* 请求")
    vault_root: str = Field(
        default_factory=lambda: str(Path.cwd()),
        description="笔记工具可访问的根目录",
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

    @field_validator("deepseek_api_key", "kimi_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("ws_path")
    @classmethod
    def validate_ws_path(cls, v: str) -> str:
        if not v.startswith("/"):
            return "/" + v
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v!r}")
        return level

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

    def api_key_for(self, provider: str) -> Optional[str]:
        return getattr(self, f"{provider.lower()}_api_key", None)

    def base_url_for(self, provider: str) -> Optional[str]:
        return getattr(self, f"{provider.lower()}_base_url", None)


def load_settings(**overrides: Any) -> GatewaySettings:
    """构造配置对象；overrides 的优先级最高。"""

    return GatewaySettings(**overrides)
