"""Validate a question bank, report per-level coverage and seed the catalog."""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db  # noqa: E402
from item_bank import ItemValidationError, QuestionBank  # noqa: E402


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--questions",
        type=str,
        default="data/questions.json",
        help="Path to the question bank JSON file (default: data/questions.json)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=os.getenv("DB_PATH", "quiz.db"),
        help="SQLite database to seed (default: $DB_PATH or quiz.db)",
    )
    parser.add_argument(
        "--min-per-level",
        type=int,
        default=1,
        help="Minimum number of questions required per difficulty level (default: 1)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and report without writing to the database",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        bank = QuestionBank(args.questions)
    except (FileNotFoundError, ItemValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    coverage = bank.coverage()
    sparse = bank.sparse_levels(max(1, int(args.min_per_level)))
    report = {"total": len(bank.questions), "per_level": coverage, "sparse_levels": sparse}

    if not args.dry_run:
        database = db.QuizDatabase(args.db)
        try:
            database.init()
            report["seeded"] = bank.sync(db.SQLiteQuestionCatalog(database))
        finally:
            database.close()

    print(json.dumps(report, indent=2))

    if sparse:
        for level in sparse:
            print(f"warning: difficulty {level} has {coverage[level]} questions (min {args.min_per_level})")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
