import pytest

from agent_gateway.providers import create_provider
from agent_gateway.providers.openai_compat import OpenAICompatClient
from agent_gateway.providers.registry import get_provider_config


class DummySettings:
    default_provider = "deepseek"
    deepseek_api_key = "d" * 12
    deepseek_base_url = "https://api.deepseek.com/v1"
    kimi_api_key = "k" * 12
    kimi_base_url = "https://api.moonshot.cn/v1"
    http_timeout = 1.0

    def api_key_for(self, provider):
        return getattr(self, f"{provider}_api_key", None)

    def base_url_for(self, provider):
        return getattr(self, f"{provider}_base_url", None)


def test_create_provider_default():
    provider = create_provider(DummySettings())
    assert isinstance(provider, OpenAICompatClient)
    assert provider.name == "deepseek"
    assert provider.max_prompt_tokens("chat") == 64_000


def test_create_provider_explicit():
    provider = create_provider(DummySettings(), "KIMI")
    assert provider.name == "kimi"
    assert provider.max_prompt_tokens("chat") == 128_000


def test_unknown_provider():
    with pytest.raises(KeyError):
        create_provider(DummySettings(), "nope")


def test_registry_lookup_is_case_insensitive():
    assert get_provider_config("DeepSeek").name == "deepseek"
    assert get_provider_config("kimi").model("chat").provider_model == "kimi-k2-turbo-preview"
