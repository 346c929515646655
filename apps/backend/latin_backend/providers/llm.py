"""Chat completion clients for the learner-configured AI providers.

3 つのプロバイダとも OpenAI SDK の Chat Completions を OpenAI 互換
エンドポイントへ向けて呼ぶ。タイムアウトとリトライは共有スレッドプールで制御する。
"""

from __future__ import annotations

import contextvars
import time
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Sequence

from openai import APIError, OpenAI

from ..config import settings
from ..logging import logger
from . import _get_llm_executor, _replace_llm_executor
from .catalog import get_provider_config


@dataclass(frozen=True)
class ChatReply:
    content: str
    tokens_used: int


class ChatClient:
    """Chat Completions wrapper bound to one provider, key and model."""

    def __init__(self, *, provider: str, api_key: str, model: str) -> None:
        config = get_provider_config(provider)
        if config is None:
            raise ValueError(f"Unknown AI provider: {provider}")
        self.provider = provider
        self.model = model
        kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
        if config.base_url:
            kwargs["base_url"] = config.base_url
        self._client = OpenAI(**kwargs)

    def _create(self, messages: Sequence[dict[str, str]]) -> ChatReply:
        resp = self._client.chat.completions.create(
            model=self.model,
            messages=list(messages),  # type: ignore[arg-type]
            max_tokens=settings.llm_max_tokens,
        )
        content = ""
        if resp.choices:
            content = resp.choices[0].message.content or ""
        usage = getattr(resp, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0) if usage is not None else 0
        return ChatReply(content=content, tokens_used=tokens)

    def complete(self, messages: Sequence[dict[str, str]]) -> ChatReply:
        """Send the conversation and return the assistant reply.

        試行毎に ``LLM_TIMEOUT_MS`` で打ち切り、``LLM_MAX_RETRIES`` 回まで再試行する。
        すべて失敗した場合は最後の例外を送出する。
        """

        executor = _get_llm_executor()
        attempts = max(1, settings.llm_max_retries)
        last_exc: Exception | None = None
        logger.info(
            "llm_chat_call",
            provider=self.provider,
            model=self.model,
            messages=len(messages),
        )
        for attempt in range(1, attempts + 1):
            ctx = contextvars.copy_context()
            future = executor.submit(ctx.run, self._create, messages)
            try:
                reply = future.result(timeout=settings.llm_timeout_ms / 1000.0)
            except FuturesTimeout as exc:
                future.cancel()
                last_exc = TimeoutError(
                    f"{self.provider} did not answer within {settings.llm_timeout_ms} ms"
                )
                last_exc.__cause__ = exc
            except Exception as exc:
                last_exc = exc
            else:
                logger.info(
                    "llm_chat_result",
                    provider=self.provider,
                    model=self.model,
                    content_chars=len(reply.content),
                    usage=reply.tokens_used,
                )
                return reply
            logger.info(
                "llm_chat_error",
                provider=self.provider,
                model=self.model,
                attempt=attempt,
                retries=attempts,
                error_type=type(last_exc).__name__,
                error=str(last_exc)[:200],
            )
            if attempt < attempts:
                time.sleep(0.1 * attempt)
        assert last_exc is not None
        raise last_exc

    def verify_key(self) -> bool:
        """モデル一覧を取得できるかでキーの有効性を確かめる。"""

        try:
            self._client.models.list()
        except APIError as exc:
            logger.info(
                "llm_key_rejected",
                provider=self.provider,
                error_type=type(exc).__name__,
                status_code=getattr(exc, "status_code", None),
            )
            return False
        return True


def get_chat_client(provider: str, api_key: str, model: str) -> ChatClient:
    return ChatClient(provider=provider, api_key=api_key, model=model)


def shutdown_providers() -> None:
    """共有スレッドプールを解放する。アプリ再生成時は新しいプールが使われる。"""

    _replace_llm_executor().shutdown(wait=False, cancel_futures=True)
