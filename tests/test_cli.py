from __future__ import annotations

import json
from datetime import date

import pytest
from typer.testing import CliRunner

from transaction_intelligence.cli import app

from tests.helpers.db import add_merchant, add_transaction, get_transaction

runner = CliRunner()


@pytest.fixture(autouse=True)
def _quiet(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    # No stray .env from the developer's checkout; logs stay off stdout.
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TRANSACTION_INTELLIGENCE_LOG_LEVEL", "WARNING")


def _invoke(*args: str):
    return runner.invoke(app, list(args))


def test_seed_then_categorize_without_ai(db_url):
    seeded = _invoke("seed-categories", "--database-url", db_url)
    assert seeded.exit_code == 0, seeded.output
    assert json.loads(seeded.stdout)["created"] > 0

    tid = add_transaction(
        db_url, "user-1", on=date(2025, 5, 2), amount="-31.40", merchant="ALBERT HEIJN 1595"
    )
    result = _invoke("categorize", "--user-id", "user-1", "--database-url", db_url, "--no-ai")

    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["status"] == "completed"
    assert summary["categorized"] == 1
    assert summary["warnings"] == []
    assert get_transaction(db_url, tid).category_source == "keyword"


def test_categorize_rejects_blank_user(db_url):
    result = _invoke("categorize", "--user-id", " ", "--database-url", db_url, "--no-ai")
    assert result.exit_code == 1
    assert "Error: categorize failed" in result.output


def test_merge_candidates_and_merge(db_url):
    a = add_merchant(db_url, "Albert Heijn")
    b = add_merchant(db_url, "ALBERT HEIJN")

    listed = _invoke("merge-candidates", "--database-url", db_url, "--threshold", "0.9")
    assert listed.exit_code == 0, listed.output
    assert json.loads(listed.stdout)["count"] == 1

    merged = _invoke("merge", f"{a}:{b}", "--database-url", db_url)
    assert merged.exit_code == 0, merged.output
    payload = json.loads(merged.stdout)
    assert payload["merged"] == 1
    assert payload["results"][0]["target_id"] == a


@pytest.mark.parametrize(
    "args",
    [
        ("merge", "12-34"),
        ("merge",),
        ("merge", "1:2", "--auto"),
    ],
)
def test_merge_argument_errors(db_url, args):
    result = _invoke(*args, "--database-url", db_url)
    assert result.exit_code == 1
    assert "Error: merge failed" in result.output


def test_recurring_rejects_bad_date(db_url):
    result = _invoke("recurring", "--user-id", "u1", "--database-url", db_url, "--as-of", "May")
    assert result.exit_code == 1
    assert "YYYY-MM-DD" in result.output


def test_variable_spending_save_requires_category_level(db_url):
    result = _invoke(
        "variable-spending",
        "--user-id",
        "u1",
        "--database-url",
        db_url,
        "--by-merchant",
        "--save",
    )
    assert result.exit_code == 1
    assert "--save cannot be combined" in result.output


def test_refine_dry_run_on_empty_history(db_url):
    result = _invoke("refine", "--user-id", "u1", "--database-url", db_url, "--dry-run")
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert (payload["dry_run"], payload["refined"], payload["changes"]) == (True, 0, [])


def test_review_without_api_key_reports_a_warning(db_url):
    result = _invoke("review", "--user-id", "u1", "--database-url", db_url)
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["warnings"] == ["classifier unavailable; review skipped"]
    assert payload["changes"] == []


def test_review_rejects_an_inverted_band(db_url):
    result = _invoke(
        "review",
        "--user-id",
        "u1",
        "--database-url",
        db_url,
        "--min-confidence",
        "0.7",
        "--max-confidence",
        "0.6",
    )
    assert result.exit_code == 1
    assert "Error: review failed" in result.output
