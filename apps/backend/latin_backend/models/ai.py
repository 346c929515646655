from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

AIProvider = Literal["openai", "anthropic", "google"]


class ModelInfo(BaseModel):
    id: str
    name: str
    description: str
    input_cost_per_million: float
    output_cost_per_million: float
    context_window: int


class ProviderInfo(BaseModel):
    id: str
    name: str
    description: str
    api_key_placeholder: str
    docs_url: str
    default_model: str
    models: list[ModelInfo]


class ProvidersResponse(BaseModel):
    providers: list[ProviderInfo]


class ValidateKeyRequest(BaseModel):
    provider: str
    api_key: str
    check_remote: bool = Field(
        default=False,
        description="Also call the provider to confirm the key / プロバイダへ問い合わせて確認する",
    )


class ValidateKeyResponse(BaseModel):
    provider: str
    valid: bool
    checked_remote: bool = False


class AISettingsUpdate(BaseModel):
    """Partial update of the learner's AI settings.

    未指定（None）の項目は変更しない。空文字の API キーは削除として扱う。
    """

    default_provider: AIProvider | None = None
    ai_chat_enabled: bool | None = None
    openai_api_key: str | None = None
    openai_model: str | None = None
    anthropic_api_key: str | None = None
    anthropic_model: str | None = None
    google_api_key: str | None = None
    google_model: str | None = None


class ProviderSettingsView(BaseModel):
    configured: bool = Field(description="API key stored / APIキー登録済みか")
    api_key_hint: str | None = Field(
        default=None, description="Masked key for display / 表示用にマスクしたキー"
    )
    model: str


class AISettingsResponse(BaseModel):
    default_provider: AIProvider
    ai_chat_enabled: bool
    providers: dict[str, ProviderSettingsView]


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(max_length=8000)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    history: list[ChatMessage] = Field(default_factory=list)
    provider: AIProvider | None = Field(
        default=None, description="Override the default provider / 既定プロバイダの上書き"
    )


class ChatResponse(BaseModel):
    message: str
    provider: str
    model: str
    tokens_used: int


class ChatHistoryEntry(BaseModel):
    id: str
    provider_used: str
    model_used: str
    messages: list[dict[str, str]]
    tokens_used: int
    created_at: datetime


class ChatHistoryResponse(BaseModel):
    items: list[ChatHistoryEntry]
