"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
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

    # ---- Provider 相关配置（私有模式） ----
    default_provider: str = Field(
        default="glm",
        description="默认使用的 Provider 名称，例如 glm、kimi",
    )
    default_model: str = Field(
        default="glm-4.6",
        description="默认模型 ID，由 registry 解析为具体厂商模型配置",
    )

    # Kimi
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: str = Field(
        default="https://api.moonshot.cn/v1",
        description="Kimi API 基础URL",
    )
    # GLM / BigModel
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="GLM API 基础URL",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 上下文与提示词 ----
    max_context_messages: int = Field(default=20, ge=1, le=100, description="最大上下文消息数")
    prompt_locale: str = Field(default="zh", description="默认系统提示词语言")

    # ---- 服务端模式 / 后台任务 ----
    backend_base_url: str = Field(
        default="http://localhost:8000/api",
        description="远端聊天后端的基础URL",
    )
    backend_token: Optional[str] = Field(default=None, description="远端后端访问令牌")
    poll_interval: float = Field(default=0.5, gt=0, description="会话文档轮询间隔（秒）")
    job_poll_interval: float = Field(default=2.0, gt=0, description="后台任务列表轮询间隔（秒）")
    server_settle_polls: int = Field(
        default=3,
        ge=1,
        description="服务端不再流式且占位消息仍未被替换时，允许的空闲快照次数",
    )

    # ---- 展示阶段 / 消息存储 ----
    phase_debounce_seconds: float = Field(
        default=0.2,
        ge=0,
        description="进入 precontent 阶段前的去抖时长（秒）",
    )
    tombstone_ttl: float = Field(default=30.0, gt=0, description="已删除消息墓碑的保留时长（秒）")
    store_cleanup_interval: float = Field(default=10.0, gt=0, description="消息存储清理任务的执行间隔（秒）")
    max_tombstones: int = Field(default=500, ge=1, description="最多保留的墓碑数量")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("kimi_api_key", "glm_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
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


settings = Settings()
