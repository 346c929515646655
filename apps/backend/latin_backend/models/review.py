from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from .vocabulary import VocabWord


class ProgressState(BaseModel):
    """Persisted scheduling state for one user x word."""

    ease_factor: float
    interval: int = Field(description="Days until the next review / 次回までの日数")
    repetitions: int
    status: Literal["new", "learning", "review", "mastered"]
    next_review: datetime
    last_review: datetime | None = None
    correct_count: int = 0
    incorrect_count: int = 0


class ReviewItem(BaseModel):
    word: VocabWord
    progress: ProgressState


class ReviewQueueResponse(BaseModel):
    items: list[ReviewItem]
    count: int


class ReviewStatsResponse(BaseModel):
    by_status: dict[str, int]
    due_now: int
    reviewed_today: int


class _AnswerBase(BaseModel):
    vocab_id: int = Field(ge=1)
    session_id: str | None = Field(
        default=None, description="Study session to credit / 集計対象の学習セッションID"
    )


class RateRequest(_AnswerBase):
    """Self-rated answer from the flashcard / fan-fold modes.

    again / hard / good / easy をそれぞれ quality 1 / 3 / 4 / 5 として扱う。
    """

    rating: str = Field(description="again | hard | good | easy")
    mode: Literal["flashcard", "fanfold"] = "flashcard"


class QualityRequest(_AnswerBase):
    # 型・範囲の検証はスケジューラ側の InvalidInput に任せる
    quality: Any = Field(description="SM-2 quality 0..5")
    mode: Literal["flashcard", "fanfold"] = "flashcard"


class CheckRequest(_AnswerBase):
    mode: Literal["typing", "cloze", "multiple_choice"]
    answer: str = Field(max_length=200, description="Learner input / 学習者の入力")
    expected: str | None = Field(
        default=None,
        max_length=200,
        description="Override the expected answer / 正解の上書き（未指定なら語彙から決定）",
    )


class MatchRequest(BaseModel):
    session_id: str | None = None


class ScheduleView(BaseModel):
    ease_factor: float
    interval: int
    repetitions: int
    next_review_at: datetime
    status: Literal["learning", "review", "mastered"]
    xp: int


class AnswerResponse(BaseModel):
    vocab_id: int
    quality: int
    correct: bool
    schedule: ScheduleView
    correct_count: int
    incorrect_count: int
    xp_total: int
    interval_text: str


class CheckResponse(AnswerResponse):
    expected: str


class MatchResponse(BaseModel):
    xp: int
    xp_total: int


class IntervalTextResponse(BaseModel):
    days: float
    text: str
