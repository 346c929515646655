"""Learner identity: signed session cookies, with a header override for local work.

ログイン自体は外部の ID 基盤が担い、ここでは発行済みの利用者 ID を
``itsdangerous`` で署名したクッキーとして受け渡すだけを扱う。
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import HTTPException, Request, status
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .config import settings
from .logging import logger

_SESSION_SALT = "latin.session"
_DEV_USER_HEADER = "x-user-id"
_DEV_FALLBACK_USER = "local"

# reason -> (HTTP status, detail)
_REJECTIONS: dict[str, tuple[int, str]] = {
    "missing_cookie": (status.HTTP_401_UNAUTHORIZED, "Session cookie is missing"),
    "expired": (status.HTTP_401_UNAUTHORIZED, "Session expired"),
    "bad_signature": (status.HTTP_401_UNAUTHORIZED, "Invalid session token"),
    "missing_sub": (status.HTTP_401_UNAUTHORIZED, "Invalid session payload"),
    "configuration_error": (status.HTTP_500_INTERNAL_SERVER_ERROR, "Session configuration error"),
}


def _serializer() -> URLSafeTimedSerializer:
    secret = settings.session_secret_key.strip()
    if not secret:
        raise RuntimeError("SESSION_SECRET_KEY is not configured")
    return URLSafeTimedSerializer(secret, salt=_SESSION_SALT)


def _cookie_name() -> str:
    return settings.session_cookie_name or "latin_session"


def issue_session_token(user_id: str) -> str:
    """Sign a session for a learner id issued by the identity provider."""

    return _serializer().dumps(
        {
            "sid": uuid.uuid4().hex,
            "sub": user_id,
            "issued_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
        }
    )


def verify_session_token(token: str) -> dict:
    max_age = max(60, int(settings.session_max_age_seconds or 60 * 60 * 24 * 14))
    return _serializer().loads(token, max_age=max_age)


def _read_session(request: Request) -> tuple[str | None, str | None]:
    """Return ``(learner_id, None)`` for a usable cookie, else ``(None, reason)``."""

    token = request.cookies.get(_cookie_name())
    if not token:
        return None, "missing_cookie"
    try:
        payload = verify_session_token(token)
    except SignatureExpired:
        return None, "expired"
    except BadSignature:
        return None, "bad_signature"
    except RuntimeError:
        return None, "configuration_error"
    sub = payload.get("sub") if isinstance(payload, dict) else None
    if not isinstance(sub, str) or not sub:
        return None, "missing_sub"
    return sub, None


def resolve_session_user(request: Request) -> str | None:
    """Learner id from a valid session cookie, or None. Never raises."""

    learner, _ = _read_session(request)
    return learner


async def get_current_user(request: Request) -> str:
    """FastAPI dependency resolving the calling learner.

    - 通常: 署名付きセッションクッキーの subject
    - DISABLE_SESSION_AUTH=true: X-User-Id ヘッダ（未指定なら ``local``）
    """

    if settings.disable_session_auth:
        learner = (request.headers.get(_DEV_USER_HEADER) or "").strip() or _DEV_FALLBACK_USER
    else:
        learner, reason = _read_session(request)
        if learner is None:
            status_code, detail = _REJECTIONS[reason or "missing_sub"]
            log = logger.error if status_code >= 500 else logger.warning
            # AccessLog と同じキー名で記録する
            log(
                "session_validation_failed",
                reason=reason,
                path=request.url.path,
                client_ip=request.client.host if request.client else "unknown",
                user_agent=request.headers.get("user-agent"),
                request_id=getattr(request.state, "request_id", None),
            )
            raise HTTPException(status_code=status_code, detail=detail)

    request.state.user_id = learner
    return learner
