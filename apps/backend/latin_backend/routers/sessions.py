from fastapi import APIRouter, Depends, HTTPException

from ..auth import get_current_user
from ..logging import logger
from ..models.session import (
    DailyGoalRequest,
    ProfileResponse,
    SessionStartRequest,
    StudySession,
)
from ..store import store

router = APIRouter(tags=["sessions"])


def _view(session: dict) -> StudySession:
    return StudySession(**{k: v for k, v in session.items() if k != "user_id"})


@router.post("/sessions", response_model=StudySession, status_code=201)
def start_session(
    req: SessionStartRequest, user_id: str = Depends(get_current_user)
) -> StudySession:
    """学習セッションを開始する。回答 API に session_id を渡すと集計される。"""
    session = store.start_session(user_id, req.mode, req.list_number)
    logger.info("study_session_started", user_id=user_id, session_id=session["id"], mode=req.mode)
    return _view(session)


@router.post("/sessions/{session_id}/finish", response_model=StudySession)
def finish_session(session_id: str, user_id: str = Depends(get_current_user)) -> StudySession:
    session = store.finish_session(user_id, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Study session {session_id} not found")
    logger.info(
        "study_session_finished",
        user_id=user_id,
        session_id=session_id,
        words_reviewed=session["words_reviewed"],
        xp_earned=session["xp_earned"],
    )
    return _view(session)


@router.get("/sessions/{session_id}", response_model=StudySession)
def get_session(session_id: str, user_id: str = Depends(get_current_user)) -> StudySession:
    session = store.get_session(user_id, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Study session {session_id} not found")
    return _view(session)


@router.get("/profile", response_model=ProfileResponse)
def get_profile(user_id: str = Depends(get_current_user)) -> ProfileResponse:
    return ProfileResponse(**store.get_profile(user_id))


@router.put("/profile/daily-goal", response_model=ProfileResponse)
def set_daily_goal(
    req: DailyGoalRequest, user_id: str = Depends(get_current_user)
) -> ProfileResponse:
    return ProfileResponse(**store.set_daily_goal(user_id, req.daily_goal))
