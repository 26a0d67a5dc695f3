"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供各厂商的具体实现 (如 kimi_client、glm_client)。
- 定义密钥解析协议 (credentials)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ProviderClient
from chat_core.providers.glm_client import GlmClient
from chat_core.providers.kimi_client import KimiClient


def create_provider(name: Optional[str] = None, api_key: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    cfg = cfg or settings
    provider_name = (name or getattr(cfg, "default_provider", "glm")).lower()
    if provider_name == "kimi":
        return KimiClient(cfg, api_key=api_key)
    if provider_name == "glm":
        return GlmClient(cfg, api_key=api_key)
    raise KeyError(f"Unknown provider: {provider_name!r}")

