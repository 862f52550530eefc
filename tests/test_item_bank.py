import json
from pathlib import Path

import pytest

from engines.base import fingerprint_answer
from item_bank import ItemValidationError, QuestionBank, load_questions

ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def sample_questions_file(tmp_path: Path) -> Path:
    questions = [
        {
            "id": "math-001",
            "difficulty": 1,
            "prompt": "What is 1+1?",
            "choices": ["1", "2", "3"],
            "answer": "2",
            "tags": ["addition"],
        },
        {
            "id": "math-002",
            "difficulty": 4,
            "prompt": "What is 12*12?",
            "correct_answer_hash": fingerprint_answer("144"),
        },
    ]
    path = tmp_path / "questions.json"
    path.write_text(json.dumps(questions), encoding="utf-8")
    return path


def test_question_bank_loads_and_syncs(sample_questions_file: Path, stores):
    bank = QuestionBank(sample_questions_file)
    assert [q.id for q in bank.questions] == ["math-001", "math-002"]

    assert bank.sync(stores.catalog) == 2
    stored = stores.catalog.fetch_by_id("math-001")
    assert stored.choices == ["1", "2", "3"]
    assert stored.tags == ["addition"]
    assert stored.is_correct(" 2 ")
    assert stores.catalog.fetch_by_id("math-002").is_correct("144")


def test_plaintext_answer_is_never_stored(sample_questions_file: Path):
    question = QuestionBank(sample_questions_file).questions[0]
    assert question.answer_fingerprint == fingerprint_answer("2")
    assert "answer" not in question.public_view()
    assert "answer_fingerprint" not in question.public_view()


def test_coverage_and_sparse_levels(sample_questions_file: Path):
    bank = QuestionBank(sample_questions_file)
    coverage = bank.coverage()
    assert list(coverage) == list(range(1, 11))
    assert coverage[1] == 1
    assert coverage[4] == 1
    assert coverage[10] == 0
    assert bank.sparse_levels() == [2, 3, 5, 6, 7, 8, 9, 10]


def test_missing_file_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        QuestionBank(tmp_path / "missing.json")


@pytest.mark.parametrize(
    "entry, message",
    [
        ({"difficulty": 3, "prompt": "p", "answer": "a"}, "missing required field 'id'"),
        ({"id": "x", "difficulty": 11, "prompt": "p", "answer": "a"}, "between 1 and 10"),
        ({"id": "x", "difficulty": "hard", "prompt": "p", "answer": "a"}, "must be an integer"),
        ({"id": "x", "difficulty": 3, "prompt": "p"}, "answer or correct_answer_hash"),
        ({"id": "x", "difficulty": 3, "prompt": "p", "choices": ["a"], "answer": "b"}, "not one of its choices"),
        ({"id": "x", "difficulty": 3, "prompt": "p", "answer": "a", "tags": "t"}, "tags must be a list"),
    ],
)
def test_invalid_entries_are_rejected(entry, message):
    with pytest.raises(ItemValidationError, match=message):
        QuestionBank.from_entries([entry])


def test_duplicate_ids_are_rejected():
    entry = {"id": "dup", "difficulty": 2, "prompt": "p", "answer": "a"}
    with pytest.raises(ItemValidationError, match="Duplicate"):
        QuestionBank.from_entries([entry, dict(entry)])


def test_root_must_be_a_list(tmp_path: Path):
    path = tmp_path / "bank.json"
    path.write_text(json.dumps({"id": "x"}), encoding="utf-8")
    with pytest.raises(ItemValidationError):
        QuestionBank(path)


def test_bundled_bank_covers_every_level(stores):
    questions = load_questions(ROOT / "data" / "questions.json", stores.catalog)
    assert len(questions) == stores.catalog.count()
    assert QuestionBank(ROOT / "data" / "questions.json").sparse_levels(2) == []
