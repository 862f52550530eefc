"""Read side of the quiz: state snapshots, question selection, metrics, leaderboards."""

from __future__ import annotations

import logging
import random
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from engines.adaptive import UserState, get_difficulty_range, should_decay_streak
from engines.base import (
    Cache,
    HistoryStore,
    NoQuestionsAvailable,
    Question,
    QuestionCatalog,
    RankingStore,
    RankSnapshot,
    StateStore,
    TransactionManager,
)
from engines.caching import (
    LEADERBOARD_TTL,
    QUESTION_POOL_TTL,
    USER_METRICS_TTL,
    USER_STATE_TTL,
    CacheKeys,
    invalidate_quietly,
    read_quietly,
    write_quietly,
)

logger = logging.getLogger(__name__)

LEADERBOARD_CACHE_SIZE = 100
RECENT_ATTEMPTS = 10


@dataclass
class NextQuestion:
    question: Question
    state: UserState
    session_id: str


def _state_to_cache(state: UserState) -> Dict[str, Any]:
    payload = asdict(state)
    payload["last_answer_at"] = state.last_answer_at.isoformat() if state.last_answer_at else None
    return payload


def _state_from_cache(payload: Dict[str, Any]) -> UserState:
    data = dict(payload)
    if data.get("last_answer_at"):
        data["last_answer_at"] = datetime.fromisoformat(data["last_answer_at"])
    return UserState(**data)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _needs_decay(state: UserState, now: datetime) -> bool:
    return state.streak > 0 and should_decay_streak(state.last_answer_at, now)


class QuizService:
    def __init__(
        self,
        transactions: TransactionManager,
        state_store: StateStore,
        history_store: HistoryStore,
        ranking_store: RankingStore,
        catalog: QuestionCatalog,
        cache: Cache,
        *,
        pool_size: int = 20,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if pool_size <= 0:
            raise ValueError("pool_size must be positive")
        self._transactions = transactions
        self._states = state_store
        self._history = history_store
        self._rankings = ranking_store
        self._catalog = catalog
        self._cache = cache
        self.pool_size = pool_size
        self._rng = rng or random.Random()
        self._clock = clock or _utcnow

    # ----- user state --------------------------------------------------
    def get_user_state(self, user_id: str) -> UserState:
        """Return the user's state, creating it on first access.

        A streak older than 24 hours is reset and persisted as part of the
        read, whether the snapshot came from the cache or the database.
        """
        now = self._clock()
        key = CacheKeys.user_state(user_id)
        cached = read_quietly(self._cache, key)
        if cached is not None:
            state = _state_from_cache(cached)
            if not _needs_decay(state, now):
                return state

        state = self._states.get_or_create(user_id)
        if _needs_decay(state, now):
            state = self._decay_streak(user_id, now)
        write_quietly(self._cache, key, _state_to_cache(state), USER_STATE_TTL)

        # A submit that committed after our read has already run its
        # invalidation, so the entry we just wrote may be stale.
        current = self._states.get(user_id)
        if current is not None and current.version != state.version:
            logger.debug("Dropping stale cached state of user %s (v%s < v%s)", user_id, state.version, current.version)
            invalidate_quietly(self._cache, key)
            state = current
        return state

    def _decay_streak(self, user_id: str, now: datetime) -> UserState:
        with self._transactions.transaction() as tx:
            state = self._states.get_or_create(user_id, tx)
            if _needs_decay(state, now):
                self._states.reset_streak(tx, user_id)
                self._rankings.upsert_streak_entry(tx, user_id, state.max_streak, 0)
                logger.info("Reset streak of %s for user %s after inactivity", state.streak, user_id)
                state = state.with_streak_reset()
        invalidate_quietly(
            self._cache,
            CacheKeys.user_metrics(user_id),
            CacheKeys.leaderboard("streak"),
            CacheKeys.user_rank("streak", user_id),
        )
        return state

    # ----- question selection ------------------------------------------
    def question_pool(self, difficulty: int) -> List[Question]:
        key = CacheKeys.question_pool(difficulty)
        cached = read_quietly(self._cache, key)
        if cached is not None:
            return [Question(**item) for item in cached]

        logger.debug("Question pool cache miss for difficulty %s", difficulty)
        pool = self._catalog.fetch_by_difficulty_range(get_difficulty_range(difficulty), self.pool_size)
        if pool:
            write_quietly(self._cache, key, [asdict(q) for q in pool], QUESTION_POOL_TTL)
        return pool

    def get_next_question(self, user_id: str, session_id: Optional[str] = None) -> NextQuestion:
        state = self.get_user_state(user_id)
        pool = self.question_pool(state.difficulty)
        if not pool:
            raise NoQuestionsAvailable(get_difficulty_range(state.difficulty))

        fresh = [q for q in pool if q.id != state.last_question_id]
        question = self._rng.choice(fresh or pool)
        return NextQuestion(question=question, state=state, session_id=session_id or uuid4().hex)

    # ----- metrics & leaderboards --------------------------------------
    def get_user_metrics(self, user_id: str) -> Dict[str, Any]:
        key = CacheKeys.user_metrics(user_id)
        cached = read_quietly(self._cache, key)
        if cached is not None:
            return cached

        state = self.get_user_state(user_id)
        metrics = {
            "current_difficulty": state.difficulty,
            "streak": state.streak,
            "max_streak": state.max_streak,
            "total_score": state.total_score,
            "accuracy": round(state.accuracy * 100, 2),
            "total_questions": state.total_questions,
            "correct_answers": state.correct_answers,
            "difficulty_histogram": self._history.difficulty_histogram(user_id),
            "recent_performance": self._history.recent(user_id, RECENT_ATTEMPTS),
        }
        write_quietly(self._cache, key, metrics, USER_METRICS_TTL)
        return metrics

    def get_ranks(self, user_id: str) -> RankSnapshot:
        score_key = CacheKeys.user_rank("score", user_id)
        streak_key = CacheKeys.user_rank("streak", user_id)
        score_cached = read_quietly(self._cache, score_key)
        streak_cached = read_quietly(self._cache, streak_key)
        if score_cached is not None and streak_cached is not None:
            return RankSnapshot(score_rank=score_cached["rank"], streak_rank=streak_cached["rank"])

        ranks = self._rankings.rank_of(user_id)
        write_quietly(self._cache, score_key, {"rank": ranks.score_rank}, LEADERBOARD_TTL)
        write_quietly(self._cache, streak_key, {"rank": ranks.streak_rank}, LEADERBOARD_TTL)
        return ranks

    def get_leaderboard(self, kind: str, limit: int = 100, user_id: Optional[str] = None) -> Dict[str, Any]:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if limit > LEADERBOARD_CACHE_SIZE:
            entries = self._rankings.top(kind, limit)
        else:
            key = CacheKeys.leaderboard(kind)
            entries = read_quietly(self._cache, key)
            if entries is None:
                entries = self._rankings.top(kind, LEADERBOARD_CACHE_SIZE)
                write_quietly(self._cache, key, entries, LEADERBOARD_TTL)
            entries = entries[:limit]

        user_rank = None
        if user_id:
            ranks = self.get_ranks(user_id)
            user_rank = ranks.score_rank if kind == "score" else ranks.streak_rank
        return {"leaderboard": entries, "user_rank": user_rank}
