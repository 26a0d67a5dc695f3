from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.openai_compat import OpenAICompatibleClient
from chat_core.providers.registry import KIMI_CONFIG


class KimiClient(OpenAICompatibleClient):
    """Kimi (Moonshot) Provider 客户端；thinking 模型直接在 delta 中返回 reasoning_content。"""

    name = "kimi"
    provider_config = KIMI_CONFIG
    api_key_field = "kimi_api_key"
    base_url_field = "kimi_base_url"

    def __init__(self, cfg=settings, api_key: Optional[str] = None):
        super().__init__(cfg, api_key=api_key)
