"""Pydantic schemas for the quiz HTTP surface."""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field

__all__ = [
    "SubmitAnswerRequest",
    "SubmitAnswerResponse",
    "NextQuestionResponse",
    "DifficultyCount",
    "RecentAttempt",
    "MetricsResponse",
    "LeaderboardResponse",
]


class SubmitAnswerRequest(BaseModel):
    user_id: str = Field(min_length=1, description="User submitting the answer.")
    session_id: str = Field(min_length=1, description="Quiz session the answer belongs to.")
    question_id: str = Field(min_length=1, description="Question being answered.")
    answer: str = Field(min_length=1, description="Submitted answer text or answer fingerprint.")
    state_version: int = Field(
        ge=0,
        description="State version the client last saw; a stale value is rejected with 409.",
    )
    answer_idempotency_key: str | None = Field(
        default=None,
        description="Client token that makes retries safe; generated when omitted.",
    )


class SubmitAnswerResponse(BaseModel):
    correct: bool
    new_difficulty: int = Field(ge=1, le=10)
    new_streak: int = Field(ge=0)
    score_delta: float = Field(ge=0.0)
    total_score: float = Field(ge=0.0)
    state_version: int = Field(ge=0)
    leaderboard_rank_score: int | None = None
    leaderboard_rank_streak: int | None = None
    replayed: bool = Field(
        default=False,
        description="True when the idempotency key had already been applied.",
    )


class NextQuestionResponse(BaseModel):
    question_id: str
    difficulty: int = Field(ge=1, le=10)
    prompt: str
    choices: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    session_id: str
    state_version: int = Field(ge=0)
    current_score: float = Field(ge=0.0)
    current_streak: int = Field(ge=0)
    current_difficulty: int = Field(ge=1, le=10)


class DifficultyCount(BaseModel):
    difficulty: int
    count: int


class RecentAttempt(BaseModel):
    question_id: str
    correct: bool
    difficulty: int
    score_delta: float
    answered_at: str | None = None


class MetricsResponse(BaseModel):
    current_difficulty: int
    streak: int
    max_streak: int
    total_score: float
    accuracy: float = Field(description="Percentage of correct answers, two decimals.")
    total_questions: int
    correct_answers: int
    difficulty_histogram: List[DifficultyCount] = Field(default_factory=list)
    recent_performance: List[RecentAttempt] = Field(default_factory=list)


class LeaderboardResponse(BaseModel):
    kind: Literal["score", "streak"]
    leaderboard: List[Dict[str, Any]] = Field(default_factory=list)
    user_rank: int | None = None
