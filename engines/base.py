"""Collaborator contracts and error taxonomy for the quiz core.

The answer orchestrator and the quiz service only talk to storage through
these interfaces. Every call that must take part in the answer transaction
receives the ``tx`` handle yielded by :meth:`TransactionManager.transaction`.
"""

from __future__ import annotations

import hashlib
import hmac
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence


def normalize_answer(text: str) -> str:
    return " ".join(str(text).split()).casefold()


def fingerprint_answer(text: str) -> str:
    """SHA-256 hex digest of the normalised answer text."""
    return hashlib.sha256(normalize_answer(text).encode("utf-8")).hexdigest()


class QuizError(Exception):
    """Base class for errors surfaced by the quiz core."""

    retryable = False


class VersionConflict(QuizError):
    """The expected state version no longer matches the stored one."""

    retryable = True

    def __init__(self, user_id: str, expected_version: int) -> None:
        super().__init__(
            f"State version mismatch for user {user_id} (expected {expected_version}) - please retry"
        )
        self.user_id = user_id
        self.expected_version = expected_version


class QuestionNotFound(QuizError):
    """The caller referenced a question id that does not exist."""

    def __init__(self, question_id: str) -> None:
        super().__init__(f"Question not found: {question_id}")
        self.question_id = question_id


class IdempotencyKeyReused(QuizError):
    """An idempotency key already recorded for a different user was replayed."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Idempotency key {key} belongs to another submission")
        self.key = key


class NoQuestionsAvailable(QuizError):
    """The catalog has nothing for the requested difficulty range."""

    retryable = True

    def __init__(self, levels: Sequence[int]) -> None:
        super().__init__(f"No questions available for difficulty levels {list(levels)}")
        self.levels = list(levels)


@dataclass
class Question:
    id: str
    difficulty: int
    prompt: str
    choices: List[str] = field(default_factory=list)
    answer_fingerprint: str = ""
    tags: List[str] = field(default_factory=list)

    def is_correct(self, submitted: str) -> bool:
        """Accept either the fingerprint itself or the plaintext answer."""
        if not self.answer_fingerprint or submitted is None:
            return False
        expected = self.answer_fingerprint.encode("utf-8")
        if hmac.compare_digest(str(submitted).encode("utf-8"), expected):
            return True
        return hmac.compare_digest(fingerprint_answer(submitted).encode("utf-8"), expected)

    def public_view(self) -> Dict[str, Any]:
        """Question payload without the answer fingerprint."""
        return {
            "id": self.id,
            "difficulty": self.difficulty,
            "prompt": self.prompt,
            "choices": list(self.choices),
            "tags": list(self.tags),
        }


@dataclass
class AnswerAttempt:
    user_id: str
    question_id: str
    difficulty: int
    answer: str
    correct: bool
    score_delta: float
    streak_at_answer: int
    idempotency_key: str
    session_id: str
    answered_at: Optional[datetime] = None


@dataclass
class RankSnapshot:
    score_rank: Optional[int] = None
    streak_rank: Optional[int] = None


class TransactionManager:
    def transaction(self) -> AbstractContextManager[Any]:
        """Open an atomic write transaction; commit on exit, roll back on error."""
        raise NotImplementedError


class StateStore:
    def get_or_create(self, user_id: str, tx: Any = None):
        """Return the user's state, inserting the default one on first access."""
        raise NotImplementedError

    def get(self, user_id: str):
        """Return the committed state, or ``None`` if the user has none yet."""
        raise NotImplementedError

    def load_for_update(self, tx: Any, user_id: str, expected_version: int):
        """Return the state only if its version equals ``expected_version``, else ``None``."""
        raise NotImplementedError

    def save(self, tx: Any, state, expected_version: int) -> None:
        """Conditionally write ``state``; raise :class:`VersionConflict` if the version moved."""
        raise NotImplementedError

    def reset_streak(self, tx: Any, user_id: str) -> None:
        """Zero the current streak without touching ``max_streak`` or ``version``."""
        raise NotImplementedError


class HistoryStore:
    def find_by_idempotency_key(self, tx: Any, key: str) -> Optional[AnswerAttempt]:
        raise NotImplementedError

    def insert(self, tx: Any, attempt: AnswerAttempt) -> None:
        raise NotImplementedError

    def difficulty_histogram(self, user_id: str) -> List[Dict[str, int]]:
        raise NotImplementedError

    def recent(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        raise NotImplementedError


class RankingStore:
    def upsert_score_entry(
        self, tx: Any, user_id: str, total_score: float, total_questions: int, accuracy: float
    ) -> None:
        raise NotImplementedError

    def upsert_streak_entry(self, tx: Any, user_id: str, max_streak: int, current_streak: int) -> None:
        raise NotImplementedError

    def rank_of(self, user_id: str) -> RankSnapshot:
        raise NotImplementedError

    def top(self, kind: str, limit: int = 100) -> List[Dict[str, Any]]:
        raise NotImplementedError


class QuestionCatalog:
    def fetch_by_difficulty_range(self, levels: Sequence[int], limit: int = 20) -> List[Question]:
        raise NotImplementedError

    def fetch_by_id(self, question_id: str, tx: Any = None) -> Optional[Question]:
        raise NotImplementedError

    def upsert(self, question: Question) -> None:
        raise NotImplementedError


class Cache:
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    def delete(self, *keys: str) -> int:
        raise NotImplementedError
