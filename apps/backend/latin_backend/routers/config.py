from fastapi import APIRouter, Depends

from ..auth import get_current_user
from ..config import settings
from ..grading import STUDY_MODES
from ..providers import AI_PROVIDERS


router = APIRouter()


@router.get("/config")
def get_runtime_config(user_id: str = Depends(get_current_user)) -> dict[str, object]:
    """Expose runtime config needed by the frontend.

    フロントエンドが同期すべき実行時設定を返す。チャットのタイムアウトは
    サーバ側の ``llm_timeout_ms`` に揃える。
    """
    return {
        "user_id": user_id,
        "request_timeout_ms": settings.llm_timeout_ms,
        "review_queue_limit": settings.review_queue_limit,
        "study_modes": list(STUDY_MODES),
        "ai_providers": sorted(AI_PROVIDERS),
    }
