from __future__ import annotations

import asyncio

import pytest
from starlette.requests import Request
from starlette.responses import Response

from latin_backend.auth import issue_session_token
from latin_backend.config import settings
from latin_backend.middleware import RateLimitMiddleware, RequestIDMiddleware


async def _call_next(_: Request) -> Response:
    return Response("ok", media_type="text/plain")


def _dispatch(middleware, request: Request) -> Response:
    return asyncio.run(middleware.dispatch(request, _call_next))


def _middleware(*, ip: int = 100, user: int = 2) -> RateLimitMiddleware:
    return RateLimitMiddleware(
        app=lambda scope, receive, send: None,
        ip_capacity_per_minute=ip,
        user_capacity_per_minute=user,
        user_bucket_ttl_seconds=60,
        max_user_buckets=8,
    )


def _make_request(
    *,
    cookie_token: str | None = None,
    header_user: str | None = None,
    client_ip: str = "198.51.100.10",
) -> Request:
    headers: list[tuple[bytes, bytes]] = []
    if cookie_token is not None:
        headers.append((b"cookie", f"{settings.session_cookie_name}={cookie_token}".encode("latin-1")))
    if header_user is not None:
        headers.append((b"x-user-id", header_user.encode("latin-1")))
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "GET",
        "path": "/api/review/due",
        "raw_path": b"/api/review/due",
        "query_string": b"",
        "headers": headers,
        "client": (client_ip, 52314),
    }
    return Request(scope)


def test_per_user_bucket_via_dev_header() -> None:
    middleware = _middleware(user=2)

    responses = [_dispatch(middleware, _make_request(header_user="alice")) for _ in range(3)]

    assert [r.status_code for r in responses] == [200, 200, 429]
    assert responses[0].headers["X-RateLimit-Remaining-User"] == "1"
    assert responses[2].headers["Retry-After"] == "60"
    # 別の利用者は独立したバケットを持つ
    assert _dispatch(middleware, _make_request(header_user="bob")).status_code == 200


def test_per_user_bucket_via_session_cookie(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "disable_session_auth", False)
    token = issue_session_token("user-123")
    middleware = _middleware(user=1)

    first = _dispatch(middleware, _make_request(cookie_token=token, client_ip="192.0.2.1"))
    second = _dispatch(middleware, _make_request(cookie_token=token, client_ip="192.0.2.2"))
    anonymous = _dispatch(middleware, _make_request(header_user="user-123"))

    assert first.status_code == 200
    assert second.status_code == 429
    # セッションが無効なら X-User-Id は無視され、IP 単位の制限だけが掛かる
    assert anonymous.status_code == 200
    assert "X-RateLimit-Limit-User" not in anonymous.headers


def test_per_ip_bucket() -> None:
    middleware = _middleware(ip=2, user=100)

    codes = [_dispatch(middleware, _make_request()).status_code for _ in range(3)]

    assert codes == [200, 200, 429]
    assert _dispatch(middleware, _make_request(client_ip="203.0.113.9")).status_code == 200


def test_request_id_header_is_added() -> None:
    middleware = RequestIDMiddleware(app=lambda scope, receive, send: None)
    request = _make_request()

    response = _dispatch(middleware, request)

    assert response.headers["X-Request-ID"] == request.state.request_id
