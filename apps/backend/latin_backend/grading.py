"""Answer checking for the auto-graded practice modes.

タイピング/穴埋め/選択式モードはボタン評価を経由せず、正誤から直接
quality（正解=4, 不正解=1）を合成してスケジューラへ渡す。
"""

from __future__ import annotations

import random
import re
from typing import Literal, Optional, Sequence

StudyMode = Literal["flashcard", "fanfold", "cloze", "multiple_choice", "typing", "matching"]
GradedMode = Literal["typing", "cloze", "multiple_choice"]

STUDY_MODES: tuple[str, ...] = (
    "flashcard",
    "fanfold",
    "cloze",
    "multiple_choice",
    "typing",
    "matching",
)

CORRECT_QUALITY = 4
INCORRECT_QUALITY = 1
MATCHING_PAIR_XP = 15
CLOZE_BLANK = "_____"

# Partial typing answers count when they cover this share of the expected text.
PARTIAL_MATCH_RATIO = 0.7

_PUNCTUATION_RE = re.compile(r"[.,;:!?'\"()]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_answer(text: str) -> str:
    lowered = (text or "").lower().strip()
    stripped = _PUNCTUATION_RE.sub("", lowered)
    return _WHITESPACE_RE.sub(" ", stripped)


def grade_typing(user_input: str, expected: str) -> bool:
    """Check a typed English meaning against the stored one.

    Long glosses such as "to come together, meet" are accepted when the learner
    typed a contiguous part of at least 70% of the expected length.
    """

    given = normalize_answer(user_input)
    answer = normalize_answer(expected)
    if given == answer:
        return True
    return bool(given) and given in answer and len(given) >= len(answer) * PARTIAL_MATCH_RATIO


def grade_cloze(user_input: str, expected: str) -> bool:
    return (user_input or "").lower().strip() == (expected or "").lower().strip()


def grade_choice(selected: str, expected: str) -> bool:
    return selected == expected


def quality_for_outcome(correct: bool) -> int:
    return CORRECT_QUALITY if correct else INCORRECT_QUALITY


def grade(mode: GradedMode, user_input: str, expected: str) -> bool:
    if mode == "typing":
        return grade_typing(user_input, expected)
    if mode == "cloze":
        return grade_cloze(user_input, expected)
    if mode == "multiple_choice":
        return grade_choice(user_input, expected)
    raise ValueError(f"mode {mode!r} is not auto-graded")


def build_cloze(sentence: str, word: str) -> Optional[str]:
    """Blank out whole-word occurrences of ``word`` in a Latin sentence."""

    target = (word or "").strip().lower()
    if not target:
        return None
    pattern = re.compile(rf"\b{re.escape(target)}\b", re.IGNORECASE)
    if not pattern.search(sentence or ""):
        return None
    return pattern.sub(CLOZE_BLANK, sentence)


def build_choices(
    answer: str,
    pool: Sequence[str],
    *,
    count: int = 4,
    rng: Optional[random.Random] = None,
) -> list[str]:
    """Return ``answer`` plus up to ``count - 1`` distinct distractors, shuffled."""

    picker = rng or random.Random()
    distractors = sorted({p for p in pool if p and p != answer})
    options = [answer, *picker.sample(distractors, min(len(distractors), max(0, count - 1)))]
    picker.shuffle(options)
    return options
