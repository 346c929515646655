"""Latin tutor chat backed by the learner's own AI provider key.

利用者ごとの AI 設定（既定プロバイダ・API キー・モデル）を解決し、
直近の会話履歴とシステムプロンプトを付けてプロバイダへ送る。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Optional, Sequence

from ..config import settings
from ..logging import logger
from ..providers import ChatClient, get_chat_client, get_provider_config
from ..store import AppSQLiteStore

SYSTEM_PROMPT = """You are a helpful Latin tutor assistant for the Latin Learner app. Your role is to:
- Help students understand Latin vocabulary, grammar, and syntax
- Explain the meaning and etymology of Latin words
- Provide example sentences aligned with the Cambridge Latin Course
- Suggest memory techniques (mnemonics) for vocabulary
- Explain English derivatives from Latin roots
- Answer questions about Roman culture and history when relevant to language learning

Keep responses clear, educational, and encouraging. Use simple explanations appropriate for IGCSE-level students."""

_ALLOWED_ROLES = frozenset({"user", "assistant"})


class ChatConfigurationError(Exception):
    """The learner has not configured a usable provider for chat."""


class ChatProviderError(Exception):
    """The upstream provider call failed."""


@dataclass(frozen=True)
class ChatResult:
    message: str
    provider: str
    model: str
    tokens_used: int


ClientFactory = Callable[[str, str, str], ChatClient]


class ChatFlow:
    def __init__(
        self,
        store: AppSQLiteStore,
        *,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._store = store
        self._client_factory = client_factory or get_chat_client

    def _resolve(
        self, user_id: str, provider_override: Optional[str]
    ) -> tuple[str, str, str]:
        ai_settings = self._store.get_ai_settings(user_id)
        if ai_settings is None:
            raise ChatConfigurationError(
                "AI settings not configured. Please add an API key in Settings."
            )
        if not ai_settings["ai_chat_enabled"]:
            raise ChatConfigurationError("AI chat is disabled in Settings.")
        provider = provider_override or ai_settings["default_provider"]
        config = get_provider_config(provider)
        if config is None:
            raise ChatConfigurationError(f"Unknown AI provider: {provider}")
        api_key = ai_settings.get(f"{provider}_api_key")
        if not api_key:
            raise ChatConfigurationError(
                f"No API key configured for {config.name}. Please add one in Settings."
            )
        model = ai_settings.get(f"{provider}_model") or config.default_model
        return provider, api_key, model

    @staticmethod
    def _build_messages(
        message: str, history: Sequence[dict[str, Any]]
    ) -> list[dict[str, str]]:
        """システムプロンプト + 直近 N 件の履歴 + 今回の発話を組み立てる。"""

        window = [
            {"role": str(item["role"]), "content": str(item["content"])}
            for item in history
            if item.get("role") in _ALLOWED_ROLES and item.get("content")
        ][-settings.chat_history_window:]
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            *window,
            {"role": "user", "content": message},
        ]

    def send(
        self,
        user_id: str,
        message: str,
        *,
        history: Sequence[dict[str, Any]] = (),
        provider: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ChatResult:
        text = (message or "").strip()
        if not text:
            raise ValueError("message is required")
        provider_id, api_key, model = self._resolve(user_id, provider)
        messages = self._build_messages(text, history)
        logger.info(
            "ai_chat_call",
            user_id=user_id,
            provider=provider_id,
            model=model,
            history_messages=len(messages) - 2,
        )
        try:
            reply = self._client_factory(provider_id, api_key, model).complete(messages)
        except Exception as exc:
            logger.warning(
                "ai_chat_failed",
                user_id=user_id,
                provider=provider_id,
                model=model,
                error_type=type(exc).__name__,
                error=str(exc)[:200],
            )
            raise ChatProviderError(f"{provider_id} request failed: {exc}") from exc

        self._store.append_chat_history(
            user_id,
            provider=provider_id,
            model=model,
            messages=[
                {"role": "user", "content": text},
                {"role": "assistant", "content": reply.content},
            ],
            tokens_used=reply.tokens_used,
            now=now or datetime.now(UTC),
        )
        return ChatResult(
            message=reply.content,
            provider=provider_id,
            model=model,
            tokens_used=reply.tokens_used,
        )
