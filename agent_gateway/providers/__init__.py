"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供 OpenAI 兼容接口的流式实现 (openai_compat)。
"""

from typing import Literal, Optional

from agent_gateway.providers.base import CompletionProvider
from agent_gateway.providers.openai_compat import OpenAICompatClient
from agent_gateway.providers.registry import get_provider_config


def create_provider(settings, name: Optional[str] = None) -> CompletionProvider:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    provider_name = (name or settings.default_provider).lower()
    config = get_provider_config(provider_name)
    return OpenAICompatClient(
        config,
        api_key=settings.api_key_for(provider_name),
        base_url=settings.base_url_for(provider_name),
        http_timeout=settings.http_timeout,
    )


DefaultProviderName = Literal["deepseek", "kimi"]
