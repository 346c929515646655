"""Static catalog of the AI providers a learner can bring a key for.

料金は 100 万トークンあたりの USD。チャットはいずれも OpenAI 互換の
エンドポイント経由で呼び出すため、プロバイダ毎の base_url を持つ。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ModelConfig:
    id: str
    name: str
    description: str
    input_cost_per_million: float
    output_cost_per_million: float
    context_window: int


@dataclass(frozen=True)
class ProviderConfig:
    id: str
    name: str
    description: str
    api_key_prefix: str
    api_key_placeholder: str
    docs_url: str
    base_url: Optional[str]
    default_model: str
    models: tuple[ModelConfig, ...]


AI_PROVIDERS: dict[str, ProviderConfig] = {
    "openai": ProviderConfig(
        id="openai",
        name="OpenAI",
        description="GPT-4o and o1 models",
        api_key_prefix="sk-",
        api_key_placeholder="sk-...",
        docs_url="https://platform.openai.com/api-keys",
        base_url=None,
        default_model="gpt-4o",
        models=(
            ModelConfig("gpt-4o", "GPT-4o", "Most capable GPT-4 model", 2.5, 10.0, 128000),
            ModelConfig("gpt-4o-mini", "GPT-4o Mini", "Fast and affordable", 0.15, 0.6, 128000),
            ModelConfig("o1", "o1", "Advanced reasoning model", 15.0, 60.0, 200000),
            ModelConfig("o1-mini", "o1 Mini", "Fast reasoning model", 3.0, 12.0, 128000),
        ),
    ),
    "anthropic": ProviderConfig(
        id="anthropic",
        name="Anthropic",
        description="Claude models",
        api_key_prefix="sk-ant-",
        api_key_placeholder="sk-ant-...",
        docs_url="https://console.anthropic.com/settings/keys",
        base_url="https://api.anthropic.com/v1/",
        default_model="claude-sonnet-4-20250514",
        models=(
            ModelConfig(
                "claude-opus-4-20250514", "Claude Opus 4", "Most intelligent model", 15.0, 75.0, 200000
            ),
            ModelConfig(
                "claude-sonnet-4-20250514", "Claude Sonnet 4", "Balanced performance", 3.0, 15.0, 200000
            ),
            ModelConfig(
                "claude-haiku-3-5-20241022", "Claude 3.5 Haiku", "Fast and efficient", 0.8, 4.0, 200000
            ),
        ),
    ),
    "google": ProviderConfig(
        id="google",
        name="Google AI",
        description="Gemini models",
        api_key_prefix="AI",
        api_key_placeholder="AIza...",
        docs_url="https://aistudio.google.com/app/apikey",
        base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
        default_model="gemini-2.0-flash",
        models=(
            ModelConfig(
                "gemini-2.0-flash", "Gemini 2.0 Flash", "Fast multimodal model", 0.1, 0.4, 1000000
            ),
            ModelConfig(
                "gemini-2.0-flash-lite", "Gemini 2.0 Flash Lite", "Most cost-efficient", 0.02, 0.1, 1000000
            ),
            ModelConfig(
                "gemini-1.5-pro", "Gemini 1.5 Pro", "Long context window", 1.25, 5.0, 2000000
            ),
        ),
    ),
}


def get_provider_config(provider_id: str) -> Optional[ProviderConfig]:
    return AI_PROVIDERS.get(provider_id)


def get_model_config(provider_id: str, model_id: str) -> Optional[ModelConfig]:
    provider = AI_PROVIDERS.get(provider_id)
    if provider is None:
        return None
    for model in provider.models:
        if model.id == model_id:
            return model
    return None


def validate_api_key_format(provider_id: str, api_key: str) -> bool:
    """Cheap local check of an API key's shape before it is stored.

    - openai: "sk-" で始まる
    - anthropic: "sk-ant-" で始まる
    - google: "AI" で始まるか 30 文字超
    キーの有効性そのものはプロバイダへの呼び出しで初めて分かる。
    """

    key = (api_key or "").strip()
    if not key:
        return False
    if provider_id == "openai":
        return key.startswith("sk-")
    if provider_id == "anthropic":
        return key.startswith("sk-ant-")
    if provider_id == "google":
        return key.startswith("AI") or len(key) > 30
    return False
