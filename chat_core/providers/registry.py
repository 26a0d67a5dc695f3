"""Provider 与模型配置。

本模块集中维护各 Provider 的默认地址与已知模型的参数：

- model_id：用户在模型选择器中选中的 ID，例如 "glm-4.6"。
- provider_model：厂商实际接收的模型名，通常与 model_id 相同。

未登记的 model_id 也允许使用，会按 Provider 的默认参数透传，
便于在不改代码的前提下试用厂商新上线的模型。"""

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class ModelConfig:
    """单个模型的配置。"""

    model_id: str
    provider_model: str
    max_tokens: int
    default_temperature: float
    supports_reasoning: bool = False


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]
    default_max_tokens: int = 8192
    default_temperature: float = 0.7


KIMI_CONFIG = ProviderConfig(
    name="kimi",
    base_url="https://api.moonshot.cn/v1",
    models={
        "kimi-k2-turbo-preview": ModelConfig(
            model_id="kimi-k2-turbo-preview",
            provider_model="kimi-k2-turbo-preview",
            max_tokens=8192,
            default_temperature=0.6,
        ),
        "kimi-k2-thinking": ModelConfig(
            model_id="kimi-k2-thinking",
            provider_model="kimi-k2-thinking",
            max_tokens=16384,
            default_temperature=1.0,
            supports_reasoning=True,
        ),
    },
)

# GLM / BigModel 配置（glm-4.6 支持 thinking 参数）
GLM_CONFIG = ProviderConfig(
    name="glm",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    models={
        "glm-4.6": ModelConfig(
            model_id="glm-4.6",
            provider_model="glm-4.6",
            max_tokens=8192,
            default_temperature=0.7,
            supports_reasoning=True,
        ),
        "glm-4.5-air": ModelConfig(
            model_id="glm-4.5-air",
            provider_model="glm-4.5-air",
            max_tokens=8192,
            default_temperature=0.7,
            supports_reasoning=True,
        ),
        "glm-4-flash": ModelConfig(
            model_id="glm-4-flash",
            provider_model="glm-4-flash",
            max_tokens=4096,
            default_temperature=0.7,
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "kimi": KIMI_CONFIG,
    "glm": GLM_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def resolve_model(provider: str, model_id: str) -> ModelConfig:
    """解析模型配置；未登记的模型按 Provider 默认参数透传。"""

    cfg = get_provider_config(provider)
    known = cfg.models.get(model_id)
    if known is not None:
        return known
    return ModelConfig(
        model_id=model_id,
        provider_model=model_id,
        max_tokens=cfg.default_max_tokens,
        default_temperature=cfg.default_temperature,
    )
