from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response
from structlog import contextvars as structlog_contextvars

from .config import settings
from .flows.ai_chat import ChatConfigurationError, ChatProviderError
from .logging import configure_logging, logger
from .metrics import registry
from .middleware import RateLimitMiddleware, RequestIDMiddleware
from .providers import shutdown_providers
from .routers import ai, health, review, sessions, vocabulary
from .routers import config as cfg
from .seeding import seed_from_jsonl
from .srs import InvalidInput
from .store import NotFound, store


def _clip(message: str, limit: int = 200) -> str:
    return message if len(message) <= limit else f"{message[: limit - 3]}..."


class AccessLogAndMetricsMiddleware(BaseHTTPMiddleware):
    """One ``request_complete`` line and one metrics sample per request.

    ``request_id`` を contextvars に束縛するので、処理中に出たログ
    （``review_applied`` など）にも同じ ID が付く。学習者が解決済みなら
    ``user_id`` も記録する。
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:  # type: ignore[override]
        started = time.perf_counter()
        request.state.request_id = getattr(request.state, "request_id", None) or uuid4().hex
        structlog_contextvars.bind_contextvars(request_id=request.state.request_id)
        outcome: dict[str, object] = {"status_code": 500, "error_type": None, "error_message": None}
        failed = timed_out = False
        try:
            response = await call_next(request)
        except Exception as exc:
            failed = True
            timed_out = isinstance(exc, (asyncio.TimeoutError, TimeoutError))
            outcome.update(error_type=type(exc).__name__, error_message=_clip(str(exc)))
            raise
        else:
            outcome["status_code"] = response.status_code
            failed = response.status_code >= 500
            return response
        finally:
            latency_ms = (time.perf_counter() - started) * 1000
            registry.record(request.url.path, latency_ms, is_error=failed, is_timeout=timed_out)
            (logger.error if failed else logger.info)(
                "request_complete",
                path=request.url.path,
                method=request.method,
                latency_ms=round(latency_ms, 2),
                is_error=failed,
                is_timeout=timed_out,
                user_id=getattr(request.state, "user_id", None),
                client_ip=request.client.host if request.client else "unknown",
                user_agent=request.headers.get("user-agent", "-"),
                **outcome,
            )
            structlog_contextvars.unbind_contextvars("request_id")


def _error_response(status_code: int, exc: Exception, event: str, request: Request) -> JSONResponse:
    logger.warning(
        event,
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error_message=str(exc)[:200],
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def _on_invalid_input(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(422, exc, "invalid_input", request)


async def _on_not_found(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(404, exc, "not_found", request)


async def _on_chat_configuration_error(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(400, exc, "ai_chat_not_configured", request)


async def _on_chat_provider_error(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(502, exc, "ai_chat_provider_error", request)


def _seed_vocabulary() -> None:
    """VOCAB_SEED_PATH が設定されていれば空の語彙テーブルへ投入する。"""
    if not settings.vocab_seed_path:
        return
    path = Path(settings.vocab_seed_path)
    if not path.exists():
        logger.warning("vocabulary_seed_missing", path=str(path))
        return
    seed_from_jsonl(store, path)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    _seed_vocabulary()
    try:
        yield
    finally:
        shutdown_providers()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    configure_logging()
    app = FastAPI(title="Latin Learner API", version="0.1.0", lifespan=_lifespan)

    origins = list(settings.allowed_cors_origins)
    # クッキー送信は明示したオリジンのみ。未設定なら "*" で資格情報なし
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=bool(origins),
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
    )
    # Middleware stack (inner → outer): CORS → RequestID → AccessLog → RateLimit
    # Starlette では後から追加したミドルウェアが外側で実行される。
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(AccessLogAndMetricsMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        ip_capacity_per_minute=settings.rate_limit_per_min_ip,
        user_capacity_per_minute=settings.rate_limit_per_min_user,
    )

    app.add_exception_handler(InvalidInput, _on_invalid_input)
    app.add_exception_handler(NotFound, _on_not_found)
    app.add_exception_handler(ChatConfigurationError, _on_chat_configuration_error)
    app.add_exception_handler(ChatProviderError, _on_chat_provider_error)

    if settings.disable_session_auth:
        logger.warning("session_auth_disabled", reason="config_flag")

    app.include_router(health.router)
    app.include_router(cfg.router, prefix="/api")
    app.include_router(vocabulary.router, prefix="/api/vocab")
    app.include_router(review.router, prefix="/api/review")
    app.include_router(sessions.router, prefix="/api")
    app.include_router(ai.router, prefix="/api/ai")

    return app


app = create_app()
