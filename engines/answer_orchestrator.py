"""Versioned, idempotent answer submission.

``AnswerOrchestrator.submit`` is the only writer of answer outcomes. One call
runs inside a single storage transaction:

1. replay the recorded outcome if the idempotency key is already known,
2. load the user's state only if it still carries ``expected_version``,
3. grade the answer against the question's fingerprint,
4. run the adaptive engine on the user's own level,
5. write state (compare-and-swap on ``version``), history and leaderboards,
6. commit, then invalidate caches best-effort and read fresh ranks.

Anything raised before the commit rolls the transaction back and reaches the
caller unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from engines.adaptive import AdaptiveEngine, Transition, UserState, should_decay_streak
from engines.base import (
    AnswerAttempt,
    Cache,
    HistoryStore,
    IdempotencyKeyReused,
    QuestionCatalog,
    QuestionNotFound,
    RankingStore,
    RankSnapshot,
    StateStore,
    TransactionManager,
    VersionConflict,
)
from engines.caching import invalidate_after_answer

logger = logging.getLogger(__name__)


@dataclass
class SubmitOutcome:
    correct: bool
    new_difficulty: int
    new_streak: int
    score_delta: float
    total_score: float
    new_version: int
    ranks: RankSnapshot = field(default_factory=RankSnapshot)
    replayed: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnswerOrchestrator:
    """Apply answers to user state under optimistic concurrency control."""

    def __init__(
        self,
        transactions: TransactionManager,
        state_store: StateStore,
        history_store: HistoryStore,
        ranking_store: RankingStore,
        catalog: QuestionCatalog,
        cache: Cache,
        *,
        engine: Optional[AdaptiveEngine] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._transactions = transactions
        self._states = state_store
        self._history = history_store
        self._rankings = ranking_store
        self._catalog = catalog
        self._cache = cache
        self._engine = engine or AdaptiveEngine()
        self._clock = clock or _utcnow

    def submit(
        self,
        user_id: str,
        session_id: str,
        question_id: str,
        answer_text: str,
        expected_version: int,
        idempotency_key: str,
    ) -> SubmitOutcome:
        now = self._clock()

        with self._transactions.transaction() as tx:
            previous = self._history.find_by_idempotency_key(tx, idempotency_key)
            if previous is not None:
                if previous.user_id != user_id:
                    raise IdempotencyKeyReused(idempotency_key)
                current = self._states.get_or_create(user_id, tx)
                replay = SubmitOutcome(
                    correct=previous.correct,
                    new_difficulty=current.difficulty,
                    new_streak=previous.streak_at_answer,
                    score_delta=previous.score_delta,
                    total_score=current.total_score,
                    new_version=current.version,
                    replayed=True,
                )
            else:
                replay = None
                committed = self._apply(
                    tx, now, user_id, session_id, question_id, answer_text, expected_version, idempotency_key
                )

        if replay is not None:
            logger.info("Replayed answer %s for user %s", idempotency_key, user_id)
            replay.ranks = self._rankings.rank_of(user_id)
            return replay

        invalidate_after_answer(self._cache, user_id)
        committed.ranks = self._rankings.rank_of(user_id)
        return committed

    def _apply(
        self,
        tx: Any,
        now: datetime,
        user_id: str,
        session_id: str,
        question_id: str,
        answer_text: str,
        expected_version: int,
        idempotency_key: str,
    ) -> SubmitOutcome:
        self._states.get_or_create(user_id, tx)
        state = self._states.load_for_update(tx, user_id, expected_version)
        if state is None:
            logger.warning("Version conflict for user %s at version %s", user_id, expected_version)
            raise VersionConflict(user_id, expected_version)

        question = self._catalog.fetch_by_id(question_id, tx)
        if question is None:
            raise QuestionNotFound(question_id)
        is_correct = question.is_correct(answer_text)

        if should_decay_streak(state.last_answer_at, now):
            logger.info("Streak of user %s expired after inactivity", user_id)
            state = state.with_streak_reset()

        transition = self._engine.transition(state, is_correct, state.difficulty)
        updated = self._next_state(state, transition, is_correct, question_id, now)

        self._states.save(tx, updated, expected_version)
        self._history.insert(
            tx,
            AnswerAttempt(
                user_id=user_id,
                question_id=question_id,
                difficulty=question.difficulty,
                answer=answer_text,
                correct=is_correct,
                score_delta=transition.score_delta,
                streak_at_answer=transition.new_streak,
                idempotency_key=idempotency_key,
                session_id=session_id,
                answered_at=now,
            ),
        )
        self._rankings.upsert_score_entry(
            tx, user_id, updated.total_score, updated.total_questions, round(updated.accuracy * 100, 2)
        )
        self._rankings.upsert_streak_entry(tx, user_id, updated.max_streak, updated.streak)

        if updated.difficulty != state.difficulty:
            logger.info(
                "User %s moved from difficulty %s to %s", user_id, state.difficulty, updated.difficulty
            )
        return SubmitOutcome(
            correct=is_correct,
            new_difficulty=updated.difficulty,
            new_streak=updated.streak,
            score_delta=transition.score_delta,
            total_score=updated.total_score,
            new_version=updated.version,
        )

    @staticmethod
    def _next_state(
        state: UserState, transition: Transition, is_correct: bool, question_id: str, now: datetime
    ) -> UserState:
        return replace(
            state,
            difficulty=transition.new_difficulty,
            streak=transition.new_streak,
            max_streak=max(state.max_streak, transition.new_streak),
            total_score=state.total_score + transition.score_delta,
            total_questions=state.total_questions + 1,
            correct_answers=state.correct_answers + (1 if is_correct else 0),
            momentum=transition.new_momentum,
            consecutive_correct=transition.new_consecutive_correct,
            consecutive_wrong=transition.new_consecutive_wrong,
            last_question_id=question_id,
            last_answer_at=now,
            version=state.version + 1,
        )
