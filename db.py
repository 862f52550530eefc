import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from db_pool import SQLiteConnectionPool
from engines.adaptive import UserState
from engines.base import (
    AnswerAttempt,
    HistoryStore,
    Question,
    QuestionCatalog,
    RankingStore,
    RankSnapshot,
    StateStore,
    TransactionManager,
    VersionConflict,
)

logger = logging.getLogger(__name__)

LEADERBOARD_KINDS = ("score", "streak")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS user_state (
    user_id             TEXT PRIMARY KEY,
    difficulty          INTEGER NOT NULL DEFAULT 5 CHECK (difficulty BETWEEN 1 AND 10),
    streak              INTEGER NOT NULL DEFAULT 0,
    max_streak          INTEGER NOT NULL DEFAULT 0,
    total_score         REAL    NOT NULL DEFAULT 0,
    total_questions     INTEGER NOT NULL DEFAULT 0,
    correct_answers     INTEGER NOT NULL DEFAULT 0,
    momentum            REAL    NOT NULL DEFAULT 0 CHECK (momentum BETWEEN -3 AND 3),
    consecutive_correct INTEGER NOT NULL DEFAULT 0,
    consecutive_wrong   INTEGER NOT NULL DEFAULT 0,
    last_question_id    TEXT,
    last_answer_at      TEXT,
    version             INTEGER NOT NULL DEFAULT 0,
    created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS questions (
    id                  TEXT PRIMARY KEY,
    difficulty          INTEGER NOT NULL CHECK (difficulty BETWEEN 1 AND 10),
    prompt              TEXT NOT NULL,
    choices             TEXT NOT NULL DEFAULT '[]',
    correct_answer_hash TEXT NOT NULL,
    tags                TEXT NOT NULL DEFAULT '[]',
    created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_questions_difficulty ON questions(difficulty);

CREATE TABLE IF NOT EXISTS answer_log (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id          TEXT NOT NULL,
    question_id      TEXT NOT NULL,
    difficulty       INTEGER NOT NULL,
    answer           TEXT NOT NULL,
    correct          INTEGER NOT NULL,
    score_delta      REAL NOT NULL,
    streak_at_answer INTEGER NOT NULL,
    idempotency_key  TEXT NOT NULL UNIQUE,
    session_id       TEXT,
    answered_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_answer_log_user ON answer_log(user_id);

CREATE TABLE IF NOT EXISTS leaderboard_score (
    user_id         TEXT PRIMARY KEY,
    total_score     REAL NOT NULL DEFAULT 0,
    total_questions INTEGER NOT NULL DEFAULT 0,
    accuracy        REAL NOT NULL DEFAULT 0,
    updated_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_leaderboard_score ON leaderboard_score(total_score DESC);

CREATE TABLE IF NOT EXISTS leaderboard_streak (
    user_id        TEXT PRIMARY KEY,
    max_streak     INTEGER NOT NULL DEFAULT 0,
    current_streak INTEGER NOT NULL DEFAULT 0,
    updated_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_leaderboard_streak ON leaderboard_streak(current_streak DESC, max_streak DESC);
"""


class QuizDatabase(TransactionManager):
    """Owns the connection pool and hands out write transactions.

    ``transaction()`` starts with ``BEGIN IMMEDIATE`` so the write lock is
    taken before the first read. A second writer blocks (up to the pool's
    busy timeout) until the first one commits or rolls back.
    """

    def __init__(self, path: str, max_connections: int = 10, busy_timeout: float = 5.0):
        self.path = path
        self._pool = SQLiteConnectionPool(path, max_connections=max_connections, busy_timeout=busy_timeout)

    def init(self) -> None:
        with self.connection() as con:
            con.execute("PRAGMA journal_mode=WAL")
            con.executescript(_SCHEMA)
        logger.info("Quiz database ready at %s", self.path)

    def close(self) -> None:
        self._pool.close_all()

    def connection(self):
        """Return a context manager for acquiring a pooled SQLite connection."""
        return self._pool.get_connection()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.connection() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                # SQLite may already have rolled back (I/O error, interrupt)
                if con.in_transaction:
                    con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")

    def _exec(self, sql: str, params: Iterable = ()) -> int:
        with self.connection() as con:
            cur = con.execute(sql, tuple(params))
            return cur.rowcount

    def _query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self.connection() as con:
            cur = con.execute(sql, tuple(params))
            return cur.fetchall()


# -------------- helpers --------------
def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_list(value: Optional[str]) -> List[Any]:
    if not value:
        return []
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError:
        return []
    return decoded if isinstance(decoded, list) else []


def _coerce_to_utc(dt: Optional[datetime], fallback: Optional[datetime] = None) -> datetime:
    if dt is None:
        dt = fallback or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _coerce_to_utc(dt).isoformat()


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _coerce_to_utc(datetime.fromisoformat(text))
    except ValueError:
        try:
            return _coerce_to_utc(datetime.strptime(text, "%Y-%m-%d %H:%M:%S"))
        except ValueError:
            logger.warning("Unparseable timestamp in database: %r", value)
            return None


def _run(tx: Optional[sqlite3.Connection], database: QuizDatabase, sql: str, params: Sequence) -> list[sqlite3.Row]:
    if tx is not None:
        return tx.execute(sql, tuple(params)).fetchall()
    return database._query(sql, params)


def _row_to_state(row: sqlite3.Row) -> UserState:
    return UserState(
        user_id=row["user_id"],
        difficulty=int(row["difficulty"]),
        streak=int(row["streak"]),
        max_streak=int(row["max_streak"]),
        total_score=float(row["total_score"]),
        total_questions=int(row["total_questions"]),
        correct_answers=int(row["correct_answers"]),
        momentum=float(row["momentum"]),
        consecutive_correct=int(row["consecutive_correct"]),
        consecutive_wrong=int(row["consecutive_wrong"]),
        last_question_id=row["last_question_id"],
        version=int(row["version"]),
        last_answer_at=_parse_timestamp(row["last_answer_at"]),
    )


def _row_to_attempt(row: sqlite3.Row) -> AnswerAttempt:
    return AnswerAttempt(
        user_id=row["user_id"],
        question_id=row["question_id"],
        difficulty=int(row["difficulty"]),
        answer=row["answer"],
        correct=bool(row["correct"]),
        score_delta=float(row["score_delta"]),
        streak_at_answer=int(row["streak_at_answer"]),
        idempotency_key=row["idempotency_key"],
        session_id=row["session_id"],
        answered_at=_parse_timestamp(row["answered_at"]),
    )


def _row_to_question(row: sqlite3.Row) -> Question:
    return Question(
        id=row["id"],
        difficulty=int(row["difficulty"]),
        prompt=row["prompt"],
        choices=[str(choice) for choice in _decode_json_list(row["choices"])],
        answer_fingerprint=row["correct_answer_hash"],
        tags=[str(tag) for tag in _decode_json_list(row["tags"])],
    )


# -------------- user state --------------
class SQLiteStateStore(StateStore):
    def __init__(self, database: QuizDatabase):
        self._db = database

    def get_or_create(self, user_id: str, tx: Optional[sqlite3.Connection] = None) -> UserState:
        insert = "INSERT INTO user_state (user_id) VALUES (?) ON CONFLICT(user_id) DO NOTHING"
        if tx is not None:
            tx.execute(insert, (user_id,))
        else:
            self._db._exec(insert, (user_id,))
        rows = _run(tx, self._db, "SELECT * FROM user_state WHERE user_id = ?", (user_id,))
        return _row_to_state(rows[0])

    def get(self, user_id: str) -> Optional[UserState]:
        rows = self._db._query("SELECT * FROM user_state WHERE user_id = ?", (user_id,))
        return _row_to_state(rows[0]) if rows else None

    def load_for_update(self, tx: sqlite3.Connection, user_id: str, expected_version: int) -> Optional[UserState]:
        row = tx.execute(
            "SELECT * FROM user_state WHERE user_id = ? AND version = ?",
            (user_id, int(expected_version)),
        ).fetchone()
        return _row_to_state(row) if row else None

    def save(self, tx: sqlite3.Connection, state: UserState, expected_version: int) -> None:
        cur = tx.execute(
            """
            UPDATE user_state
            SET difficulty = ?,
                streak = ?,
                max_streak = ?,
                total_score = ?,
                total_questions = ?,
                correct_answers = ?,
                momentum = ?,
                consecutive_correct = ?,
                consecutive_wrong = ?,
                last_question_id = ?,
                last_answer_at = ?,
                version = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ? AND version = ?
            """,
            (
                state.difficulty,
                state.streak,
                state.max_streak,
                state.total_score,
                state.total_questions,
                state.correct_answers,
                state.momentum,
                state.consecutive_correct,
                state.consecutive_wrong,
                state.last_question_id,
                _format_timestamp(state.last_answer_at),
                state.version,
                state.user_id,
                int(expected_version),
            ),
        )
        if cur.rowcount == 0:
            raise VersionConflict(state.user_id, expected_version)

    def reset_streak(self, tx: sqlite3.Connection, user_id: str) -> None:
        tx.execute(
            "UPDATE user_state SET streak = 0, updated_at = CURRENT_TIMESTAMP WHERE user_id = ?",
            (user_id,),
        )


# -------------- answer history --------------
class SQLiteHistoryStore(HistoryStore):
    def __init__(self, database: QuizDatabase):
        self._db = database

    def find_by_idempotency_key(self, tx: Optional[sqlite3.Connection], key: str) -> Optional[AnswerAttempt]:
        rows = _run(tx, self._db, "SELECT * FROM answer_log WHERE idempotency_key = ?", (key,))
        return _row_to_attempt(rows[0]) if rows else None

    def insert(self, tx: sqlite3.Connection, attempt: AnswerAttempt) -> None:
        tx.execute(
            """
            INSERT INTO answer_log
            (user_id, question_id, difficulty, answer, correct, score_delta,
             streak_at_answer, idempotency_key, session_id, answered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                attempt.user_id,
                attempt.question_id,
                attempt.difficulty,
                attempt.answer,
                int(attempt.correct),
                attempt.score_delta,
                attempt.streak_at_answer,
                attempt.idempotency_key,
                attempt.session_id,
                _format_timestamp(attempt.answered_at or datetime.now(timezone.utc)),
            ),
        )

    def difficulty_histogram(self, user_id: str) -> List[Dict[str, int]]:
        rows = self._db._query(
            """
            SELECT difficulty, COUNT(*) AS count
            FROM answer_log
            WHERE user_id = ?
            GROUP BY difficulty
            ORDER BY difficulty
            """,
            (user_id,),
        )
        return [{"difficulty": int(row["difficulty"]), "count": int(row["count"])} for row in rows]

    def recent(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        rows = self._db._query(
            """
            SELECT question_id, correct, difficulty, score_delta, answered_at
            FROM answer_log
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (user_id, int(limit)),
        )
        return [
            {
                "question_id": row["question_id"],
                "correct": bool(row["correct"]),
                "difficulty": int(row["difficulty"]),
                "score_delta": float(row["score_delta"]),
                "answered_at": row["answered_at"],
            }
            for row in rows
        ]


# -------------- leaderboards --------------
class SQLiteRankingStore(RankingStore):
    def __init__(self, database: QuizDatabase):
        self._db = database

    def upsert_score_entry(
        self,
        tx: sqlite3.Connection,
        user_id: str,
        total_score: float,
        total_questions: int,
        accuracy: float,
    ) -> None:
        tx.execute(
            """
            INSERT INTO leaderboard_score (user_id, total_score, total_questions, accuracy)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                total_score = excluded.total_score,
                total_questions = excluded.total_questions,
                accuracy = excluded.accuracy,
                updated_at = CURRENT_TIMESTAMP
            """,
            (user_id, float(total_score), int(total_questions), float(accuracy)),
        )

    def upsert_streak_entry(
        self, tx: sqlite3.Connection, user_id: str, max_streak: int, current_streak: int
    ) -> None:
        tx.execute(
            """
            INSERT INTO leaderboard_streak (user_id, max_streak, current_streak)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                max_streak = excluded.max_streak,
                current_streak = excluded.current_streak,
                updated_at = CURRENT_TIMESTAMP
            """,
            (user_id, int(max_streak), int(current_streak)),
        )

    def rank_of(self, user_id: str) -> RankSnapshot:
        score_rows = self._db._query(
            """
            SELECT COUNT(*) + 1 AS rank
            FROM leaderboard_score
            WHERE total_score > (SELECT total_score FROM leaderboard_score WHERE user_id = ?)
            """,
            (user_id,),
        )
        streak_rows = self._db._query(
            """
            SELECT COUNT(*) + 1 AS rank
            FROM leaderboard_streak
            WHERE current_streak > (SELECT current_streak FROM leaderboard_streak WHERE user_id = ?)
            """,
            (user_id,),
        )
        has_score = self._db._query("SELECT 1 FROM leaderboard_score WHERE user_id = ?", (user_id,))
        has_streak = self._db._query("SELECT 1 FROM leaderboard_streak WHERE user_id = ?", (user_id,))
        return RankSnapshot(
            score_rank=int(score_rows[0]["rank"]) if has_score else None,
            streak_rank=int(streak_rows[0]["rank"]) if has_streak else None,
        )

    def top(self, kind: str, limit: int = 100) -> List[Dict[str, Any]]:
        if kind not in LEADERBOARD_KINDS:
            raise ValueError(f"Unknown leaderboard kind: {kind!r}")
        if kind == "score":
            rows = self._db._query(
                """
                SELECT user_id, total_score AS score, accuracy, total_questions
                FROM leaderboard_score
                ORDER BY total_score DESC, user_id
                LIMIT ?
                """,
                (int(limit),),
            )
            return [
                {
                    "user_id": row["user_id"],
                    "score": float(row["score"]),
                    "accuracy": float(row["accuracy"]),
                    "total_questions": int(row["total_questions"]),
                }
                for row in rows
            ]
        rows = self._db._query(
            """
            SELECT user_id, current_streak AS score, max_streak
            FROM leaderboard_streak
            WHERE current_streak > 0
            ORDER BY current_streak DESC, max_streak DESC, user_id
            LIMIT ?
            """,
            (int(limit),),
        )
        return [
            {"user_id": row["user_id"], "score": int(row["score"]), "max_streak": int(row["max_streak"])}
            for row in rows
        ]


# -------------- question catalog --------------
class SQLiteQuestionCatalog(QuestionCatalog):
    def __init__(self, database: QuizDatabase):
        self._db = database

    def fetch_by_difficulty_range(self, levels: Sequence[int], limit: int = 20) -> List[Question]:
        levels = [int(level) for level in levels]
        if not levels:
            return []
        placeholders = ", ".join("?" for _ in levels)
        rows = self._db._query(
            f"SELECT * FROM questions WHERE difficulty IN ({placeholders}) ORDER BY RANDOM() LIMIT ?",
            (*levels, int(limit)),
        )
        return [_row_to_question(row) for row in rows]

    def fetch_by_id(self, question_id: str, tx: Optional[sqlite3.Connection] = None) -> Optional[Question]:
        rows = _run(tx, self._db, "SELECT * FROM questions WHERE id = ?", (question_id,))
        return _row_to_question(rows[0]) if rows else None

    def upsert(self, question: Question) -> None:
        self._db._exec(
            """
            INSERT INTO questions (id, difficulty, prompt, choices, correct_answer_hash, tags)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                difficulty = excluded.difficulty,
                prompt = excluded.prompt,
                choices = excluded.choices,
                correct_answer_hash = excluded.correct_answer_hash,
                tags = excluded.tags
            """,
            (
                question.id,
                int(question.difficulty),
                question.prompt,
                json_dumps(list(question.choices)),
                question.answer_fingerprint,
                json_dumps(list(question.tags)),
            ),
        )

    def count(self) -> int:
        rows = self._db._query("SELECT COUNT(*) AS n FROM questions")
        return int(rows[0]["n"])
