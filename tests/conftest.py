"""Pytest configuration for test isolation.

Puts the workspace ``packages/`` and ``libs/db/src`` directories on
``sys.path`` so ``transaction_intelligence`` and ``db`` import without an
install, and keeps each test hermetic:

- ``OPENAI_API_KEY`` and ``DATABASE_URL`` are removed so no test reaches a
  real service or a developer database by accident.
- The process-wide SQLAlchemy engine is disposed after every test; each test
  binds its own SQLite file.
- Package logging is reset so handlers never outlive a captured stream.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
_PATHS = [_ROOT / "packages", _ROOT / "libs" / "db" / "src", _ROOT]
# Local sources precede any installed copy.
sys.path[:0] = [str(p) for p in _PATHS if str(p) not in sys.path]

from db.client import dispose_engine  # noqa: E402
from transaction_intelligence.logging_setup import reset_logging  # noqa: E402

from tests.helpers.db import bootstrap_sqlite_db  # noqa: E402


@pytest.fixture(autouse=True)
def _hermetic_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TRANSACTION_INTELLIGENCE_LOG_LEVEL", raising=False)
    yield
    dispose_engine()
    reset_logging()


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """URL of a fresh file-backed SQLite database with the full schema."""

    return bootstrap_sqlite_db(tmp_path / "ti.sqlite3")
