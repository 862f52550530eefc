import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from scripts import seed_questions

BANK = str(ROOT / "data" / "questions.json")


def test_seed_writes_questions(tmp_path, capsys):
    db_path = tmp_path / "seed.db"
    exit_code = seed_questions.main(["--questions", BANK, "--db", str(db_path)])
    captured = capsys.readouterr()

    assert exit_code == 0
    report = json.loads(captured.out)
    assert report["total"] == 20
    assert report["seeded"] == 20
    assert report["sparse_levels"] == []
    assert set(report["per_level"].values()) == {2}

    database = db.QuizDatabase(str(db_path))
    try:
        assert db.SQLiteQuestionCatalog(database).count() == 20
    finally:
        database.close()


def test_dry_run_reports_sparse_levels(tmp_path, capsys):
    db_path = tmp_path / "seed.db"
    exit_code = seed_questions.main(
        ["--questions", BANK, "--db", str(db_path), "--min-per-level", "3", "--dry-run"]
    )
    captured = capsys.readouterr()

    assert exit_code == 1
    assert not db_path.exists()
    assert "warning: difficulty 1 has 2 questions (min 3)" in captured.out
    assert '"seeded"' not in captured.out


def test_invalid_bank_exits_with_error(tmp_path, capsys):
    bank = tmp_path / "broken.json"
    bank.write_text(json.dumps([{"id": "x", "difficulty": 42, "prompt": "p", "answer": "a"}]), encoding="utf-8")

    exit_code = seed_questions.main(["--questions", str(bank), "--dry-run"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert captured.err.startswith("error:")
