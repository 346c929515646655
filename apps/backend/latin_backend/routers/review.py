from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query

from .. import srs
from ..auth import get_current_user
from ..config import settings
from ..flows.review import ReviewFlow
from ..grading import MATCHING_PAIR_XP
from ..models.review import (
    AnswerResponse,
    CheckRequest,
    CheckResponse,
    IntervalTextResponse,
    MatchRequest,
    MatchResponse,
    ProgressState,
    QualityRequest,
    RateRequest,
    ReviewItem,
    ReviewQueueResponse,
    ReviewStatsResponse,
    ScheduleView,
)
from ..models.vocabulary import VocabWord
from ..store import ReviewOutcome, recent_cutoff, store

router = APIRouter(tags=["review"])
flow = ReviewFlow(store)


def _queue(rows: list[tuple[dict, dict]]) -> ReviewQueueResponse:
    items = [
        ReviewItem(
            word=VocabWord(**word),
            progress=ProgressState(
                ease_factor=progress["ease_factor"],
                interval=progress["interval"],
                repetitions=progress["repetitions"],
                status=progress["status"],
                next_review=progress["next_review"],
                last_review=progress["last_review"],
                correct_count=progress["correct_count"],
                incorrect_count=progress["incorrect_count"],
            ),
        )
        for progress, word in rows
    ]
    return ReviewQueueResponse(items=items, count=len(items))


def _answer_payload(outcome: ReviewOutcome) -> dict:
    result = outcome.result
    if result.interval == 0:
        # 失敗時は学習ステップ（分単位）後に再出題される
        label = srs.interval_text((result.next_review_at - outcome.reviewed_at).total_seconds() / 86400)
    else:
        label = srs.interval_text(result.interval)
    return {
        "vocab_id": outcome.vocab_id,
        "quality": outcome.quality,
        "correct": outcome.correct,
        "schedule": ScheduleView(
            ease_factor=result.ease_factor,
            interval=result.interval,
            repetitions=result.repetitions,
            next_review_at=result.next_review_at,
            status=result.status,
            xp=result.xp,
        ),
        "correct_count": outcome.correct_count,
        "incorrect_count": outcome.incorrect_count,
        "xp_total": outcome.xp_total,
        "interval_text": label,
    }


@router.get("/due", response_model=ReviewQueueResponse)
def get_due_reviews(
    limit: int | None = Query(default=None, ge=1, le=500),
    user_id: str = Depends(get_current_user),
) -> ReviewQueueResponse:
    """next_review が現在時刻以前の語を古い順に返す。"""
    rows = store.list_due(
        user_id, datetime.now(UTC), limit or settings.review_queue_limit
    )
    return _queue(rows)


@router.get("/recent", response_model=ReviewQueueResponse)
def get_recent_reviews(
    limit: int | None = Query(default=None, ge=1, le=500),
    user_id: str = Depends(get_current_user),
) -> ReviewQueueResponse:
    """直近（既定24時間）にレビューした語を新しい順に返す。"""
    rows = store.list_recent(
        user_id,
        recent_cutoff(datetime.now(UTC)),
        limit or settings.review_queue_limit,
    )
    return _queue(rows)


@router.get("/stats", response_model=ReviewStatsResponse)
def get_review_stats(user_id: str = Depends(get_current_user)) -> ReviewStatsResponse:
    return ReviewStatsResponse(**store.progress_stats(user_id, datetime.now(UTC)))


@router.post("/rate", response_model=AnswerResponse)
def rate_answer(req: RateRequest, user_id: str = Depends(get_current_user)) -> AnswerResponse:
    """ボタン評価（again/hard/good/easy）で回答を記録し、次回出題を決める。"""
    outcome = flow.answer_with_rating(
        user_id, req.vocab_id, req.rating, mode=req.mode, session_id=req.session_id
    )
    return AnswerResponse(**_answer_payload(outcome))


@router.post("/answer", response_model=AnswerResponse)
def answer_with_quality(
    req: QualityRequest, user_id: str = Depends(get_current_user)
) -> AnswerResponse:
    outcome = flow.answer_with_quality(
        user_id, req.vocab_id, req.quality, mode=req.mode, session_id=req.session_id
    )
    return AnswerResponse(**_answer_payload(outcome))


@router.post("/check", response_model=CheckResponse)
def check_answer(req: CheckRequest, user_id: str = Depends(get_current_user)) -> CheckResponse:
    """タイピング/穴埋め/選択式の入力を採点し、正解=4・不正解=1 で記録する。"""
    checked = flow.answer_with_input(
        user_id,
        req.vocab_id,
        req.mode,
        req.answer,
        expected=req.expected,
        session_id=req.session_id,
    )
    return CheckResponse(expected=checked.expected, **_answer_payload(checked.outcome))


@router.post("/match", response_model=MatchResponse)
def record_match(
    req: MatchRequest | None = None, user_id: str = Depends(get_current_user)
) -> MatchResponse:
    total = flow.record_match(user_id, session_id=req.session_id if req else None)
    return MatchResponse(xp=MATCHING_PAIR_XP, xp_total=total)


@router.get("/interval-text", response_model=IntervalTextResponse)
def get_interval_text(days: float = Query(ge=0)) -> IntervalTextResponse:
    return IntervalTextResponse(days=days, text=srs.interval_text(days))
