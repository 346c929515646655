from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ..grading import StudyMode


class SessionStartRequest(BaseModel):
    mode: StudyMode
    list_number: int | None = Field(default=None, ge=1)


class StudySession(BaseModel):
    """Aggregated counters for one practice run / 1 回の学習セッション集計。"""

    id: str
    mode: str
    list_number: int | None = None
    started_at: datetime
    ended_at: datetime | None = None
    words_reviewed: int
    correct_count: int
    xp_earned: int


class ProfileResponse(BaseModel):
    user_id: str
    xp_points: int
    daily_goal: int


class DailyGoalRequest(BaseModel):
    daily_goal: int = Field(ge=1, le=500, description="Words per day / 1日の目標語数")
