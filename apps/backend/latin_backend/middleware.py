from __future__ import annotations

import threading
import time
import uuid
from collections import OrderedDict
from typing import Awaitable, Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from .auth import resolve_session_user
from .config import settings
from .logging import logger

__all__ = [
    "RequestIDMiddleware",
    "RateLimitMiddleware",
]

_WINDOW_SECONDS = 60.0
# 死活監視はレート制限の対象外
_EXEMPT_PATHS = frozenset({"/healthz"})


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID and echo it as ``X-Request-ID``.

    外側のミドルウェアが既に採番していればその値を使う。
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class _Window:
    """Fixed one-minute allowance; the full quota returns once the window has elapsed."""

    __slots__ = ("remaining", "opened_at", "seen_at")

    def __init__(self, quota: int, now: float) -> None:
        self.remaining = quota
        self.opened_at = now
        self.seen_at = now


class _QuotaTable:
    """Per-key answer quotas with idle expiry and an upper bound on tracked keys.

    IP 単位・利用者単位の両方で同じ表を使う。古いキーから順に捨てる。
    """

    def __init__(self, quota: int, *, idle_ttl: float, max_keys: int) -> None:
        self.quota = max(1, int(quota))
        self._idle_ttl = max(1.0, float(idle_ttl))
        self._max_keys = max(1, int(max_keys))
        self._windows: OrderedDict[str, _Window] = OrderedDict()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        while self._windows:
            _, oldest = next(iter(self._windows.items()))
            if now - oldest.seen_at <= self._idle_ttl and len(self._windows) < self._max_keys:
                break
            self._windows.popitem(last=False)

    def take(self, key: str, now: float) -> tuple[bool, int]:
        """Spend one request from ``key``'s quota; returns (allowed, remaining)."""
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                self._evict(now)
                window = self._windows[key] = _Window(self.quota, now)
            else:
                self._windows.move_to_end(key)
                window.seen_at = now
            if now - window.opened_at >= _WINDOW_SECONDS:
                window.remaining = self.quota
                window.opened_at = now
            if window.remaining <= 0:
                return False, 0
            window.remaining -= 1
            return True, window.remaining


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Limit requests per client IP and per learner.

    学習者は署名付きセッション（開発モードでは X-User-Id）から決める。
    学習者を特定できないリクエストは IP 単位の制限のみ受ける。
    """

    def __init__(
        self,
        app,
        *,
        ip_capacity_per_minute: int,
        user_capacity_per_minute: int,
        user_bucket_ttl_seconds: float = 15 * 60,
        max_user_buckets: int = 10_000,
    ) -> None:
        super().__init__(app)
        self._by_ip = _QuotaTable(
            ip_capacity_per_minute, idle_ttl=user_bucket_ttl_seconds, max_keys=max_user_buckets
        )
        self._by_user = _QuotaTable(
            user_capacity_per_minute, idle_ttl=user_bucket_ttl_seconds, max_keys=max_user_buckets
        )

    @staticmethod
    def _learner_of(request: Request) -> str | None:
        if settings.disable_session_auth:
            return (request.headers.get("x-user-id") or "").strip() or None
        return resolve_session_user(request)

    def _quota_headers(self, ip_left: int, user_left: int | None) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit-Ip": str(self._by_ip.quota),
            "X-RateLimit-Remaining-Ip": str(ip_left),
        }
        if user_left is not None:
            headers["X-RateLimit-Limit-User"] = str(self._by_user.quota)
            headers["X-RateLimit-Remaining-User"] = str(user_left)
        return headers

    def _reject(self, scope: str, request: Request, headers: dict[str, str]) -> JSONResponse:
        logger.warning(
            "rate_limited",
            scope=scope,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown",
        )
        label = "IP" if scope == "ip" else "User"
        return JSONResponse(
            status_code=429,
            content={"detail": f"Too Many Requests (per {label})"},
            headers={"Retry-After": str(int(_WINDOW_SECONDS)), **headers},
        )

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        if request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        now = time.time()
        client_ip = request.client.host if request.client else "unknown"
        ip_ok, ip_left = self._by_ip.take(client_ip, now)
        if not ip_ok:
            return self._reject("ip", request, self._quota_headers(ip_left, None))

        learner = self._learner_of(request)
        user_left: int | None = None
        if learner is not None:
            user_ok, user_left = self._by_user.take(learner, now)
            if not user_ok:
                return self._reject("user", request, self._quota_headers(ip_left, user_left))

        response = await call_next(request)
        for name, value in self._quota_headers(ip_left, user_left).items():
            response.headers.setdefault(name, value)
        return response
