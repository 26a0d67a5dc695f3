"""Provider 密钥解析。

私有模式下密钥由外部 key-store 协作者提供（可能需要异步解密），
编排层只依赖 KeyStore 协议。默认实现从配置中读取 <provider>_api_key。
"""

from typing import Optional, Protocol

from chat_core.config.settings import settings


class KeyStore(Protocol):
    async def get_api_key(self, provider: str, model_id: str) -> Optional[str]:
        ...


class SettingsKeyStore:
    def __init__(self, cfg=settings):
        self._settings = cfg

    async def get_api_key(self, provider: str, model_id: str) -> Optional[str]:
        return getattr(self._settings, f"{provider.lower()}_api_key", None) or None
