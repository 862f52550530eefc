import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from engines.answer_orchestrator import AnswerOrchestrator
from engines.caching import TTLCache
from engines.quiz_service import QuizService
from item_bank import QuestionBank

CHOICES = ["alpha", "beta", "gamma", "delta"]
CORRECT = "alpha"
WRONG = "delta"


def sample_questions(per_level: int = 2):
    """Two questions per level whose correct choice is always ``alpha``."""
    return [
        {
            "id": f"q{level:02d}-{index}",
            "difficulty": level,
            "prompt": f"Level {level} question {index}",
            "choices": list(CHOICES),
            "answer": CORRECT,
            "tags": [f"level-{level}"],
        }
        for level in range(1, 11)
        for index in range(per_level)
    ]


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def database(tmp_path):
    database = db.QuizDatabase(str(tmp_path / "test.db"), max_connections=10, busy_timeout=5.0)
    database.init()
    yield database
    database.close()


@pytest.fixture
def stores(database):
    return SimpleNamespace(
        states=db.SQLiteStateStore(database),
        history=db.SQLiteHistoryStore(database),
        rankings=db.SQLiteRankingStore(database),
        catalog=db.SQLiteQuestionCatalog(database),
    )


@pytest.fixture
def cache():
    return TTLCache(max_size=1000)


@pytest.fixture
def seeded_catalog(stores):
    QuestionBank.from_entries(sample_questions()).sync(stores.catalog)
    return stores.catalog


@pytest.fixture
def orchestrator(database, stores, cache, clock, seeded_catalog):
    return AnswerOrchestrator(
        database, stores.states, stores.history, stores.rankings, seeded_catalog, cache, clock=clock
    )


@pytest.fixture
def service(database, stores, cache, clock, seeded_catalog):
    return QuizService(
        database,
        stores.states,
        stores.history,
        stores.rankings,
        seeded_catalog,
        cache,
        rng=random.Random(7),
        clock=clock,
    )


def count_attempts(database, user_id: str) -> int:
    with database.connection() as con:
        row = con.execute("SELECT COUNT(*) AS n FROM answer_log WHERE user_id = ?", (user_id,)).fetchone()
    return int(row["n"])
