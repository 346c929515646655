from fastapi import APIRouter
from fastapi.responses import JSONResponse
from ..metrics import registry

router = APIRouter()


@router.get("/healthz")
def health_check() -> dict[str, str]:
    """Liveness probe / 監視やオーケストレータからの疎通確認用。"""
    return {"status": "ok"}


@router.get("/metrics")
def metrics() -> JSONResponse:
    """Return in-memory metrics snapshot.

    パス別の p95/エラー/タイムアウト/件数と、学習モード別の回答数・正答数・付与XPを返す。
    """
    return JSONResponse(
        content={"paths": registry.snapshot(), "answers": registry.answers_snapshot()}
    )
