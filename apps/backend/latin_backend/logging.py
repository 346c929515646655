"""Structured JSON logging for the learner API.

利用者が登録した AI プロバイダの API キーやセッション署名鍵がログへ
出ないよう、描画直前の processor で一括して伏せ字にする。
"""

from typing import Any

import logging
import structlog
from structlog import contextvars as structlog_contextvars
from .config import settings


_SENSITIVE_KEYWORDS = ("api_key", "token", "secret", "authorization", "password")


def _mask(raw: object) -> str:
    """Keep the first and last four characters of long values; hide short ones entirely."""

    text = "" if raw is None else str(raw).strip()
    if len(text) <= 8:
        return "***"
    return f"{text[:4]}…{text[-4:]}"


class _Redactor:
    """structlog processor that hides secret-looking fields and known secret literals."""

    def _literals(self) -> tuple[str, ...]:
        # テストや再設定で鍵が差し替わるため毎回 settings から読む
        secret = settings.session_secret_key
        return (secret,) if secret else ()

    @staticmethod
    def _is_sensitive(key: object) -> bool:
        lowered = str(key).lower()
        return any(word in lowered for word in _SENSITIVE_KEYWORDS)

    def _clean(self, value: Any, sensitive: bool, literals: tuple[str, ...]) -> Any:
        if isinstance(value, dict):
            return {k: self._clean(v, self._is_sensitive(k), literals) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self._clean(v, sensitive, literals) for v in value)
        if isinstance(value, str):
            for literal in literals:
                value = value.replace(literal, _mask(literal))
        return _mask(value) if sensitive else value

    def __call__(
        self,
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        literals = self._literals()
        return {
            key: self._clean(value, self._is_sensitive(key), literals)
            for key, value in event_dict.items()
        }


def configure_logging() -> None:
    """Route structlog through stdlib logging as one JSON object per line.

    Sentry は ``SENTRY_DSN`` がある場合のみ有効化し、ERROR 以上をイベント化する。
    """
    # "INFO:root:" 等のプレフィックスを付けず JSON 行だけを出す
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )
    structlog.configure(
        processors=[
            structlog_contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _Redactor(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

    if settings.sentry_dsn:
        import sentry_sdk
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
        )


logger = structlog.get_logger()
