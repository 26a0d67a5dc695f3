import pytest

from chat_core.providers import create_provider
from chat_core.providers.credentials import SettingsKeyStore
from chat_core.providers.glm_client import GlmClient
from chat_core.providers.kimi_client import KimiClient
from chat_core.providers.registry import get_provider_config, resolve_model


def test_create_provider_default(monkeypatch):
    class DummySettings:
        default_provider = "glm"
        glm_api_key = "glm-test-key"
        http_timeout = 1.0
        glm_base_url = "https://open.bigmodel.cn/api/paas/v4"
        kimi_api_key = None

    monkeypatch.setattr("chat_core.providers.settings", DummySettings())
    provider = create_provider()
    assert isinstance(provider, GlmClient)


def test_create_provider_explicit(monkeypatch):
    class DummySettings:
        default_provider = "glm"
        kimi_api_key = "kimi-test-key"
        http_timeout = 1.0
        kimi_base_url = "https://api.moonshot.cn/v1"
        glm_api_key = None

    monkeypatch.setattr("chat_core.providers.settings", DummySettings())
    provider = create_provider("Kimi")
    assert isinstance(provider, KimiClient)


def test_create_provider_unknown():
    with pytest.raises(KeyError):
        create_provider("openai")


def test_resolve_model_known_and_passthrough():
    known = resolve_model("glm", "glm-4.6")
    assert known.supports_reasoning

    unknown = resolve_model("GLM", "glm-5-preview")
    assert unknown.provider_model == "glm-5-preview"
    assert unknown.max_tokens == get_provider_config("glm").default_max_tokens
    assert not unknown.supports_reasoning


@pytest.mark.asyncio
async def test_settings_key_store():
    class DummySettings:
        glm_api_key = "glm-test-key"
        kimi_api_key = ""

    store = SettingsKeyStore(DummySettings())
    assert await store.get_api_key("glm", "glm-4.6") == "glm-test-key"
    assert await store.get_api_key("kimi", "kimi-k2-turbo-preview") is None
    assert await store.get_api_key("openai", "gpt") is None
