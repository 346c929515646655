"""Answer handling shared by every practice mode.

ボタン評価（again/hard/good/easy）と自動採点（正解=4, 不正解=1）のどちらも
最終的に ``store.apply_review`` → ``srs.schedule`` の単一経路を通る。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Optional

from .. import grading, srs
from ..logging import logger
from ..metrics import MetricsRegistry, registry as default_registry
from ..store import AppSQLiteStore, NotFound, ReviewOutcome


@dataclass(frozen=True)
class CheckedAnswer:
    """An auto-graded answer together with its persisted schedule."""

    correct: bool
    expected: str
    outcome: ReviewOutcome


class ReviewFlow:
    def __init__(
        self,
        store: AppSQLiteStore,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._store = store
        self._metrics = metrics or default_registry

    def answer_with_quality(
        self,
        user_id: str,
        vocab_id: int,
        quality: int,
        *,
        mode: str = "flashcard",
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
    ) -> ReviewOutcome:
        """Schedule one answer whose quality is already known.

        quality は境界でここで検証し、範囲外はクランプせず ``InvalidInput``。
        """

        q = srs.validate_quality(quality)
        outcome = self._store.apply_review(
            user_id,
            vocab_id,
            q,
            now=now or datetime.now(UTC),
            session_id=session_id,
        )
        self._metrics.record_answer(mode, correct=outcome.correct, xp=outcome.result.xp)
        return outcome

    def answer_with_rating(
        self,
        user_id: str,
        vocab_id: int,
        rating: str,
        *,
        mode: str = "flashcard",
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
    ) -> ReviewOutcome:
        quality = srs.quality_from_rating(rating)
        return self.answer_with_quality(
            user_id, vocab_id, quality, mode=mode, now=now, session_id=session_id
        )

    def answer_with_input(
        self,
        user_id: str,
        vocab_id: int,
        mode: grading.GradedMode,
        user_input: str,
        *,
        expected: Optional[str] = None,
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
    ) -> CheckedAnswer:
        """Grade typed / cloze / multiple-choice input and schedule the result.

        - typing / multiple_choice: 既定の正解は語の英訳
        - cloze: 既定の正解はラテン語の見出し（例文の空欄に入る語）
        """

        if mode not in ("typing", "cloze", "multiple_choice"):
            raise srs.InvalidInput(f"mode {mode!r} is not auto-graded")
        word = self._store.get_word(vocab_id)
        if word is None:
            raise NotFound(f"vocabulary {vocab_id} not found")
        if expected is None:
            expected = word["latin"] if mode == "cloze" else word["english"]

        correct = grading.grade(mode, user_input, expected)
        outcome = self.answer_with_quality(
            user_id,
            vocab_id,
            grading.quality_for_outcome(correct),
            mode=mode,
            now=now,
            session_id=session_id,
        )
        return CheckedAnswer(correct=correct, expected=expected, outcome=outcome)

    def record_match(
        self,
        user_id: str,
        *,
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
    ) -> int:
        """Award the flat matching-mode XP; returns the profile's new XP total."""

        total = self._store.increment_xp(
            user_id, grading.MATCHING_PAIR_XP, now=now, session_id=session_id
        )
        self._metrics.record_answer("matching", correct=True, xp=grading.MATCHING_PAIR_XP)
        logger.info("match_recorded", user_id=user_id, xp=grading.MATCHING_PAIR_XP)
        return total
