"""Category helpers and the default taxonomy seeder.

Exports
-------
- ``normalize_name(...)`` and ``validate_name(...)``: shared name checks.
- ``create_category(...)``: idempotent creation with case-insensitive conflict
  detection within one owner (system or user).
- ``load_seed_taxonomy(...)`` and ``seed_categories(...)``: load the packaged
  Dutch taxonomy (``seeds/categories.v1.json``) into ``ti_categories``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, TypedDict

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.client import session_scope
from db.models.finance import TiCategory

from .logging_setup import get_logger

_SEED_FILE = "categories.v1.json"

_logger = get_logger("transaction_intelligence.categories")

# ---------------------------
# Name normalization/validation
# ---------------------------

_ALLOWED_RE = re.compile(r"^[\w &\-/'.,()]+$")


def normalize_name(name: str) -> str:
    """Trim and collapse internal whitespace; case is preserved."""

    return " ".join(name.strip().split())


@dataclass(frozen=True, slots=True)
class NameValidation:
    ok: bool
    reason: str | None = None


def validate_name(name: str, *, min_len: int = 1, max_len: int = 64) -> NameValidation:
    """Validate a category name.

    Rules
    -----
    - Trim whitespace; enforce length bounds 1..64.
    - Letters (accented included), digits, spaces and ``& - / ' . , ( )``.
    """

    n = normalize_name(name)
    if len(n) < min_len:
        return NameValidation(False, "Name cannot be empty")
    if len(n) > max_len:
        return NameValidation(False, f"Name must be at most {max_len} characters")
    if not _ALLOWED_RE.match(n):
        return NameValidation(
            False, "Only letters, numbers, spaces, and & - / ' . , ( ) are allowed"
        )
    return NameValidation(True, None)


# ---------------------------
# Service operations
# ---------------------------


class SeedChild(TypedDict, total=False):
    name: str
    description: str
    keywords: list[str]
    is_variable_spending: bool


class SeedParent(SeedChild, total=False):
    children: list[SeedChild]


def _find(session: Session, name: str, user_id: str | None) -> TiCategory | None:
    owner = TiCategory.user_id.is_(None) if user_id is None else TiCategory.user_id == user_id
    return (
        session.execute(
            select(TiCategory).where(owner, func.lower(TiCategory.name) == name.lower())
        )
        .scalars()
        .first()
    )


def _clean_keywords(raw: Any) -> list[str]:
    out: list[str] = []
    for kw in raw or []:
        norm = str(kw).strip().lower()
        if norm and norm not in out:
            out.append(norm)
    return out


def create_category(
    session: Session,
    *,
    name: str,
    user_id: str | None = None,
    parent_id: int | None = None,
    keywords: list[str] | None = None,
    description: str | None = None,
    is_variable_spending: bool = False,
    sort_order: int | None = None,
) -> tuple[TiCategory, bool]:
    """Create a category unless one with the same name exists for the owner.

    Returns ``(row, created)``. An existing row gains any keywords it does not
    have yet; nothing else about it changes. ``user_id=None`` creates a system
    category shared by every user.
    """

    name_n = normalize_name(name)
    check = validate_name(name_n)
    if not check.ok:
        raise ValueError(f"Invalid input: category name {name!r}: {check.reason}")
    if parent_id is not None and session.get(TiCategory, parent_id) is None:
        raise ValueError(f"Invalid input: parent category {parent_id} does not exist")

    wanted = _clean_keywords(keywords)
    existing = _find(session, name_n, user_id)
    if existing is not None:
        current = _clean_keywords(existing.keywords)
        missing = [k for k in wanted if k not in current]
        if missing:
            existing.keywords = [*current, *missing]
        return existing, False

    row = TiCategory(
        name=name_n,
        user_id=user_id,
        parent_id=parent_id,
        keywords=wanted,
        description=description,
        is_system=user_id is None,
        is_variable_spending=is_variable_spending,
        sort_order=sort_order,
    )
    session.add(row)
    session.flush()
    return row, True


def load_seed_taxonomy(path: Path | None = None) -> list[SeedParent]:
    """Read the seed JSON: a list of parents, each with optional ``children``."""

    if path is None:
        text = (
            resources.files("transaction_intelligence")
            .joinpath("seeds", _SEED_FILE)
            .read_text(encoding="utf-8")
        )
    else:
        text = path.read_text(encoding="utf-8")
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("Seed JSON must be a list of parent categories")
    for pos, item in enumerate(data):
        if not isinstance(item, dict) or not str(item.get("name") or "").strip():
            raise ValueError(f"Seed entry {pos} must be an object with a name")
    return data


def seed_categories(
    *,
    database_url: str | None = None,
    user_id: str | None = None,
    path: Path | None = None,
) -> int:
    """Insert the default taxonomy; return the number of categories created.

    Safe to re-run: existing names are kept and only gain missing keywords.
    Parents are inserted before their children and ``sort_order`` follows
    file order.
    """

    data = load_seed_taxonomy(path)
    created = 0
    with session_scope(database_url=database_url) as session:
        for parent_index, parent in enumerate(data):
            row, was_created = create_category(
                session,
                name=parent["name"],
                user_id=user_id,
                keywords=parent.get("keywords"),
                description=parent.get("description"),
                is_variable_spending=bool(parent.get("is_variable_spending", False)),
                sort_order=parent_index * 100,
            )
            created += int(was_created)
            for child_index, child in enumerate(parent.get("children") or [], start=1):
                _, child_created = create_category(
                    session,
                    name=child["name"],
                    user_id=user_id,
                    parent_id=row.id,
                    keywords=child.get("keywords"),
                    description=child.get("description"),
                    is_variable_spending=bool(child.get("is_variable_spending", False)),
                    sort_order=parent_index * 100 + child_index,
                )
                created += int(child_created)
    _logger.info("seed_categories:done created=%d parents=%d", created, len(data))
    return created


__all__ = [
    "NameValidation",
    "create_category",
    "load_seed_taxonomy",
    "normalize_name",
    "seed_categories",
    "validate_name",
]
