import random

import pytest

from conftest import CORRECT, WRONG
from engines.answer_orchestrator import AnswerOrchestrator
from engines.base import NoQuestionsAvailable, Question, fingerprint_answer
from engines.caching import CacheKeys
from engines.quiz_service import QuizService


def test_state_is_created_on_first_read(service, stores, cache):
    state = service.get_user_state("alice")

    assert state.difficulty == 5
    assert state.version == 0
    assert state.streak == 0
    assert stores.states.get("alice") is not None
    assert cache.get(CacheKeys.user_state("alice"))["user_id"] == "alice"


def test_answer_committed_during_a_cache_miss_is_not_shadowed(service, orchestrator, stores, cache, monkeypatch):
    read_state = stores.states.get_or_create
    raced = []

    def _read_then_commit(user_id, tx=None):
        state = read_state(user_id, tx)
        if tx is None and not raced:
            raced.append(orchestrator.submit(user_id, "s1", "q05-0", CORRECT, state.version, "k-race"))
        return state

    monkeypatch.setattr(stores.states, "get_or_create", _read_then_commit)
    served = service.get_user_state("alice")
    monkeypatch.undo()

    assert raced[0].new_version == 1
    assert served.version == 1
    cached = cache.get(CacheKeys.user_state("alice"))
    assert cached is None or cached["version"] == 1

    result = service.get_next_question("alice")
    assert result.state.version == 1
    outcome = orchestrator.submit("alice", "s1", result.question.id, CORRECT, result.state.version, "k-next")
    assert outcome.new_version == 2


def test_next_question_comes_from_neighbouring_levels(service):
    result = service.get_next_question("alice")

    assert result.question.difficulty in (4, 5, 6)
    assert result.state.version == 0
    assert len(result.session_id) == 32


def test_next_question_keeps_given_session(service):
    assert service.get_next_question("alice", "session-1").session_id == "session-1"


def test_next_question_avoids_last_answered(service, orchestrator):
    orchestrator.submit("alice", "s1", "q05-0", CORRECT, 0, "k1")
    for _ in range(20):
        assert service.get_next_question("alice").question.id != "q05-0"


def test_next_question_follows_level_changes(service, orchestrator):
    orchestrator.submit("alice", "s1", "q05-0", CORRECT, 0, "k1")
    orchestrator.submit("alice", "s1", "q05-1", CORRECT, 1, "k2")

    result = service.get_next_question("alice")
    assert result.state.difficulty == 6
    assert result.question.difficulty in (5, 6, 7)


def test_question_pool_is_cached(service, cache):
    pool = service.question_pool(5)

    cached = cache.get(CacheKeys.question_pool(5))
    assert {q["id"] for q in cached} == {q.id for q in pool}
    assert {q.id for q in service.question_pool(5)} == {q.id for q in pool}


def test_empty_catalog_raises_no_questions(database, stores, cache, clock):
    service = QuizService(
        database, stores.states, stores.history, stores.rankings, stores.catalog, cache, clock=clock
    )
    with pytest.raises(NoQuestionsAvailable) as excinfo:
        service.get_next_question("alice")
    assert excinfo.value.levels == [4, 5, 6]
    assert excinfo.value.retryable is True


def test_only_question_is_repeated_when_nothing_else_fits(database, stores, cache, clock):
    stores.catalog.upsert(
        Question(id="solo", difficulty=5, prompt="Only one", choices=["x", "y"], answer_fingerprint=fingerprint_answer("x"))
    )
    orchestrator = AnswerOrchestrator(
        database, stores.states, stores.history, stores.rankings, stores.catalog, cache, clock=clock
    )
    service = QuizService(
        database, stores.states, stores.history, stores.rankings, stores.catalog, cache,
        rng=random.Random(1), clock=clock,
    )

    orchestrator.submit("alice", "s1", "solo", "x", 0, "k1")
    assert service.get_next_question("alice").question.id == "solo"


def test_stale_streak_is_reset_and_persisted(service, orchestrator, stores, clock):
    orchestrator.submit("alice", "s1", "q05-0", CORRECT, 0, "k1")
    assert service.get_user_state("alice").streak == 1

    clock.advance(hours=24, seconds=1)
    state = service.get_user_state("alice")

    assert state.streak == 0
    assert state.max_streak == 1
    assert state.version == 1
    stored = stores.states.get("alice")
    assert stored.streak == 0
    assert stored.version == 1
    assert service.get_leaderboard("streak")["leaderboard"] == []


def test_streak_survives_within_a_day(service, orchestrator, clock):
    orchestrator.submit("alice", "s1", "q05-0", CORRECT, 0, "k1")
    clock.advance(hours=23, minutes=59)
    assert service.get_user_state("alice").streak == 1


def test_user_metrics(service, orchestrator):
    orchestrator.submit("alice", "s1", "q05-0", CORRECT, 0, "k1")
    orchestrator.submit("alice", "s1", "q05-1", WRONG, 1, "k2")
    orchestrator.submit("alice", "s1", "q05-0", CORRECT, 2, "k3")

    metrics = service.get_user_metrics("alice")

    assert metrics["total_questions"] == 3
    assert metrics["correct_answers"] == 2
    assert metrics["accuracy"] == 66.67
    assert metrics["streak"] == 1
    assert metrics["max_streak"] == 1
    assert metrics["difficulty_histogram"] == [{"difficulty": 5, "count": 3}]
    recent = metrics["recent_performance"]
    assert [item["correct"] for item in recent] == [True, False, True]
    assert recent[0]["question_id"] == "q05-0"


def test_metrics_for_new_user(service):
    metrics = service.get_user_metrics("newbie")
    assert metrics["accuracy"] == 0.0
    assert metrics["current_difficulty"] == 5
    assert metrics["recent_performance"] == []


def test_leaderboards_rank_users(service, orchestrator):
    orchestrator.submit("alice", "s1", "q05-0", CORRECT, 0, "a1")
    orchestrator.submit("alice", "s1", "q05-1", CORRECT, 1, "a2")
    orchestrator.submit("bob", "s2", "q05-0", CORRECT, 0, "b1")
    orchestrator.submit("bob", "s2", "q05-1", WRONG, 1, "b2")

    scores = service.get_leaderboard("score", user_id="bob")
    assert [entry["user_id"] for entry in scores["leaderboard"]] == ["alice", "bob"]
    assert scores["leaderboard"][0]["score"] == pytest.approx(308.58)
    assert scores["user_rank"] == 2

    streaks = service.get_leaderboard("streak", user_id="alice")
    assert [entry["user_id"] for entry in streaks["leaderboard"]] == ["alice"]
    assert streaks["leaderboard"][0]["score"] == 2
    assert streaks["user_rank"] == 1

    assert len(service.get_leaderboard("score", limit=1)["leaderboard"]) == 1


def test_leaderboard_rejects_bad_arguments(service):
    with pytest.raises(ValueError):
        service.get_leaderboard("score", limit=0)
    with pytest.raises(ValueError):
        service.get_leaderboard("elo")


def test_ranks_are_none_before_first_answer(service):
    ranks = service.get_ranks("nobody")
    assert ranks.score_rank is None
    assert ranks.streak_rank is None
