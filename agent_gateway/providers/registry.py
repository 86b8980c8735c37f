"""Provider 与模型配置。

本模块将"逻辑模型名"与"具体厂商模型名"解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "chat"。
- provider_model：厂商实际提供的模型 ID，例如 "deepseek-chat"。
- context_window：该模型可接受的 prompt token 上限，交给预算裁剪使用。

上层只关心逻辑名，具体用哪个底层模型由这里集中配置。"""

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    context_window: int
    max_tokens: int
    default_temperature: float


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]

    def model(self, logical_name: str) -> ModelConfig:
        try:
            return self.models[logical_name]
        except KeyError:
            raise KeyError(f"Unknown model {logical_name!r} for provider {self.name!r}") from None


DEEPSEEK_CONFIG = ProviderConfig(
    name="deepseek",
    base_url="https://api.deepseek.com/v1",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="deepseek-chat",
            context_window=64_000,
            max_tokens=800,
            default_temperature=0.3,
        ),
        "reasoner": ModelConfig(
            logical_name="reasoner",
            provider_model="deepseek-reasoner",
            context_window=64_000,
            max_tokens=4096,
            default_temperature=0.6,
        ),
    },
)

KIMI_CONFIG = ProviderConfig(
    name="kimi",
    base_url="https://api.moonshot.cn/v1",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="kimi-k2-turbo-preview",
            context_window=128_000,
            max_tokens=8192,
            default_temperature=0.6,
        )
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "deepseek": DEEPSEEK_CONFIG,
    "kimi": KIMI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    try:
        return PROVIDER_REGISTRY[name.lower()]
    except KeyError:
        raise KeyError(f"Unknown provider {name!r}, expected one of {sorted(PROVIDER_REGISTRY)}") from None
