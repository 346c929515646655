"""SM-2 derived spaced-repetition scheduler.

語の習熟度と次回出題時刻を決める純粋関数群。状態は呼び出し側（ストア）が
永続化し、ここでは I/O を一切行わない。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal, Mapping, Optional

SRSStatus = Literal["new", "learning", "review", "mastered"]
Rating = Literal["again", "hard", "good", "easy"]

MIN_EASE_FACTOR = 1.3
INITIAL_EASE_FACTOR = 2.5

# Learning steps in minutes. Only the first step is applied on failure.
LEARNING_STEPS: tuple[int, ...] = (1, 10, 60, 1440)

REVIEW_THRESHOLD_DAYS = 7
MASTERED_THRESHOLD_DAYS = 21

_RATING_TO_QUALITY: dict[str, int] = {
    "again": 1,
    "hard": 3,
    "good": 4,
    "easy": 5,
}


class InvalidInput(ValueError):
    """Raised when a caller hands the scheduler values outside its contract."""


@dataclass(frozen=True)
class ReviewState:
    """Scheduling state carried between two answers for one user x word."""

    ease_factor: float = INITIAL_EASE_FACTOR
    interval: int = 0
    repetitions: int = 0


@dataclass(frozen=True)
class ScheduleResult:
    ease_factor: float
    interval: int
    repetitions: int
    next_review_at: datetime
    status: SRSStatus
    xp: int

    @property
    def state(self) -> ReviewState:
        return ReviewState(
            ease_factor=self.ease_factor,
            interval=self.interval,
            repetitions=self.repetitions,
        )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_quality(quality: object) -> int:
    """Reject anything that is not an integer quality in 0..5."""

    if not _is_int(quality) or not 0 <= quality <= 5:  # type: ignore[operator]
        raise InvalidInput(f"quality must be an integer between 0 and 5, got {quality!r}")
    return int(quality)  # type: ignore[arg-type]


def coerce_state(prior: ReviewState | Mapping[str, object] | None) -> ReviewState:
    """Validate prior scheduling fields and return them as a ``ReviewState``.

    ``None`` means the word has never been answered and yields the defaults.
    Mappings are accepted so rows from the store can be passed straight in.
    """

    if prior is None:
        return ReviewState()
    if isinstance(prior, ReviewState):
        ease, interval, repetitions = prior.ease_factor, prior.interval, prior.repetitions
    else:
        try:
            ease = prior["ease_factor"]
            interval = prior["interval"]
            repetitions = prior["repetitions"]
        except KeyError as exc:
            raise InvalidInput(f"prior state is missing field {exc.args[0]!r}") from exc

    if isinstance(ease, bool) or not isinstance(ease, (int, float)) or not math.isfinite(ease):
        raise InvalidInput(f"ease_factor must be a finite number, got {ease!r}")
    if ease < MIN_EASE_FACTOR:
        raise InvalidInput(f"ease_factor must be >= {MIN_EASE_FACTOR}, got {ease!r}")
    if not _is_int(interval) or interval < 0:  # type: ignore[operator]
        raise InvalidInput(f"interval must be a non-negative integer, got {interval!r}")
    if not _is_int(repetitions) or repetitions < 0:  # type: ignore[operator]
        raise InvalidInput(f"repetitions must be a non-negative integer, got {repetitions!r}")
    return ReviewState(ease_factor=float(ease), interval=int(interval), repetitions=int(repetitions))  # type: ignore[arg-type]


def quality_from_rating(rating: str) -> int:
    """Map a four-button self rating onto the 0..5 quality scale."""

    try:
        return _RATING_TO_QUALITY[rating]
    except (KeyError, TypeError) as exc:
        raise InvalidInput(
            f"rating must be one of {sorted(_RATING_TO_QUALITY)}, got {rating!r}"
        ) from exc


def status_for_interval(interval: int) -> SRSStatus:
    if interval < REVIEW_THRESHOLD_DAYS:
        return "learning"
    if interval < MASTERED_THRESHOLD_DAYS:
        return "review"
    return "mastered"


def calculate_xp(quality: int, status: SRSStatus) -> int:
    base_xp = 10 if quality >= 3 else 0
    if quality == 5:
        bonus_xp = 5
    elif quality == 4:
        bonus_xp = 2
    else:
        bonus_xp = 0
    mastery_bonus = 10 if status == "mastered" else 0
    return base_xp + bonus_xp + mastery_bonus


def _schedule(quality: int, state: ReviewState, now: datetime) -> ScheduleResult:
    if quality < 3:
        status: SRSStatus = "learning"
        return ScheduleResult(
            ease_factor=max(MIN_EASE_FACTOR, state.ease_factor - 0.2),
            interval=0,
            repetitions=0,
            next_review_at=now + timedelta(minutes=LEARNING_STEPS[0]),
            status=status,
            xp=calculate_xp(quality, status),
        )

    lapse = 5 - quality
    ease = max(MIN_EASE_FACTOR, state.ease_factor + (0.1 - lapse * (0.08 + lapse * 0.02)))

    if state.repetitions == 0:
        interval = 1
    elif state.repetitions == 1:
        interval = 6
    else:
        interval = _round_half_up(state.interval * ease)

    status = status_for_interval(interval)
    return ScheduleResult(
        ease_factor=ease,
        interval=interval,
        repetitions=state.repetitions + 1,
        next_review_at=now + timedelta(days=interval),
        status=status,
        xp=calculate_xp(quality, status),
    )


def schedule(
    quality: int,
    prior: ReviewState | Mapping[str, object] | None = None,
    *,
    now: Optional[datetime] = None,
) -> ScheduleResult:
    """Compute the next scheduling state after one recall attempt.

    - quality: 0..5（0-2 は不正解、3 以上は正解）
    - prior: 直前の状態。初回回答なら None
    - now: 基準時刻。テストでは固定値を渡す（未指定なら UTC 現在時刻を一度だけ取得）
    """

    q = validate_quality(quality)
    state = coerce_state(prior)
    reference = now if now is not None else datetime.now(UTC)
    return _schedule(q, state, reference)


def schedule_rating(
    rating: str,
    prior: ReviewState | Mapping[str, object] | None = None,
    *,
    now: Optional[datetime] = None,
) -> ScheduleResult:
    return schedule(quality_from_rating(rating), prior, now=now)


def interval_text(days: float) -> str:
    """Short human label for an interval expressed in days."""

    if days < 1:
        minutes = _round_half_up(days * 24 * 60)
        if minutes < 60:
            return f"{minutes}m"
        return f"{_round_half_up(minutes / 60)}h"
    if days == 1:
        return "1 day"
    if days < 7:
        # 1.2 や 2.5 のような端数はそのまま表示する
        shown = int(days) if float(days).is_integer() else days
        return f"{shown} days"
    if days < 30:
        weeks = _round_half_up(days / 7)
        return "1 week" if weeks == 1 else f"{weeks} weeks"
    months = _round_half_up(days / 30)
    return "1 month" if months == 1 else f"{months} months"


__all__ = [
    "INITIAL_EASE_FACTOR",
    "InvalidInput",
    "LEARNING_STEPS",
    "MIN_EASE_FACTOR",
    "Rating",
    "ReviewState",
    "SRSStatus",
    "ScheduleResult",
    "calculate_xp",
    "coerce_state",
    "interval_text",
    "quality_from_rating",
    "schedule",
    "schedule_rating",
    "status_for_interval",
    "validate_quality",
]
