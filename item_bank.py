"""Question bank loading and validation for the quiz catalog."""
from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from engines.adaptive import MAX_DIFFICULTY, MIN_DIFFICULTY
from engines.base import Question, QuestionCatalog, fingerprint_answer

logger = logging.getLogger(__name__)


class ItemValidationError(ValueError):
    """Raised when a question from the JSON bank fails validation."""


class QuestionBank:
    """Helper for loading, validating and syncing quiz questions.

    Each entry needs ``id``, ``difficulty`` (1-10) and ``prompt`` plus either a
    plaintext ``answer`` (fingerprinted on load) or a precomputed
    ``correct_answer_hash``. When ``choices`` are given the plaintext answer
    must be one of them.
    """

    REQUIRED_FIELDS = ("id", "difficulty", "prompt")

    def __init__(self, path: str | Path = "questions.json") -> None:
        self.path = Path(path)
        self._questions: List[Question] = []
        self._load()

    # ------------------------------------------------------------------
    # loading & validation
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Question bank file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        self._questions = self.validate(raw)

    @classmethod
    def validate(cls, raw: Any) -> List[Question]:
        if not isinstance(raw, list):
            raise ItemValidationError("Question bank root must be a JSON list")

        questions: List[Question] = []
        seen_ids: set[str] = set()
        for entry in raw:
            if not isinstance(entry, dict):
                raise ItemValidationError("Each question must be an object")

            for field in cls.REQUIRED_FIELDS:
                if field not in entry or entry[field] in (None, ""):
                    raise ItemValidationError(f"Question {entry.get('id')} missing required field '{field}'")

            question_id = str(entry["id"])
            if question_id in seen_ids:
                raise ItemValidationError(f"Duplicate question id detected: {question_id}")
            seen_ids.add(question_id)

            try:
                difficulty = int(entry["difficulty"])
            except (TypeError, ValueError) as exc:
                raise ItemValidationError(f"Question {question_id} difficulty must be an integer") from exc
            if not MIN_DIFFICULTY <= difficulty <= MAX_DIFFICULTY:
                raise ItemValidationError(
                    f"Question {question_id} difficulty must be between {MIN_DIFFICULTY} and {MAX_DIFFICULTY}"
                )

            choices = entry.get("choices") or []
            if not isinstance(choices, list):
                raise ItemValidationError(f"Question {question_id} choices must be a list")
            choices = [str(choice) for choice in choices]

            tags = entry.get("tags") or []
            if not isinstance(tags, list):
                raise ItemValidationError(f"Question {question_id} tags must be a list")

            answer = entry.get("answer")
            answer_hash = entry.get("correct_answer_hash")
            if answer not in (None, ""):
                if choices and str(answer) not in choices:
                    raise ItemValidationError(f"Question {question_id} answer is not one of its choices")
                answer_hash = fingerprint_answer(str(answer))
            elif not answer_hash:
                raise ItemValidationError(
                    f"Question {question_id} must provide an answer or correct_answer_hash"
                )

            questions.append(
                Question(
                    id=question_id,
                    difficulty=difficulty,
                    prompt=str(entry["prompt"]),
                    choices=choices,
                    answer_fingerprint=str(answer_hash),
                    tags=[str(tag) for tag in tags],
                )
            )
        return questions

    @property
    def questions(self) -> List[Question]:
        return list(self._questions)

    def coverage(self) -> Dict[int, int]:
        """Number of questions per difficulty level, zero-filled."""
        counts = Counter(q.difficulty for q in self._questions)
        return {level: counts.get(level, 0) for level in range(MIN_DIFFICULTY, MAX_DIFFICULTY + 1)}

    def sparse_levels(self, min_questions: int = 1) -> List[int]:
        return [level for level, count in self.coverage().items() if count < min_questions]

    def sync(self, catalog: QuestionCatalog) -> int:
        for question in self._questions:
            catalog.upsert(question)
        logger.info("Synced %d questions from %s", len(self._questions), self.path)
        return len(self._questions)

    # ------------------------------------------------------------------
    # alternative constructors/helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_entries(cls, entries: Sequence[Dict[str, Any]]) -> "QuestionBank":
        bank = cls.__new__(cls)
        bank.path = Path("<in-memory>")
        bank._questions = cls.validate(list(entries))
        return bank


def load_questions(path: str | Path, catalog: Optional[QuestionCatalog] = None) -> List[Question]:
    """Return validated questions from disk, syncing them into ``catalog`` when given."""
    bank = QuestionBank(path)
    if catalog is not None:
        bank.sync(catalog)
    return bank.questions
