from __future__ import annotations

import json

import pytest
from sqlalchemy import func, select

from db.client import session_scope
from db.models.finance import TiCategory
from transaction_intelligence.categories import (
    create_category,
    load_seed_taxonomy,
    normalize_name,
    seed_categories,
    validate_name,
)

from tests.helpers.db import add_category, get_category


def _seed_size() -> int:
    return sum(1 + len(p.get("children") or []) for p in load_seed_taxonomy())


def _by_name(db_url: str) -> dict[str, TiCategory]:
    with session_scope(database_url=db_url) as session:
        return {c.name: c for c in session.execute(select(TiCategory)).scalars()}


def test_name_normalization_and_validation():
    assert normalize_name("  Eten   &  drinken ") == "Eten & drinken"
    assert validate_name("Hobby's & vrije tijd").ok
    assert validate_name("Café (extra)").ok
    assert validate_name("Uitgaan/bars").ok
    assert not validate_name("   ").ok
    assert not validate_name("x" * 65).ok
    bad = validate_name("Rent <script>")
    assert not bad.ok and "Only letters" in bad.reason


def test_packaged_taxonomy_has_expected_shape():
    data = load_seed_taxonomy()
    names = {p["name"] for p in data}
    assert {"Bankkosten", "Niet gecategoriseerd", "Overig"} <= names
    food = next(p for p in data if p["name"] == "Eten & boodschappen")
    groceries = next(c for c in food["children"] if c["name"] == "Boodschappen")
    assert groceries["is_variable_spending"] is True
    assert "albert heijn" in groceries["keywords"]


def test_seed_is_idempotent_and_orders_children_under_parents(db_url):
    assert seed_categories(database_url=db_url) == _seed_size()
    assert seed_categories(database_url=db_url) == 0

    rows = _by_name(db_url)
    assert len(rows) == _seed_size()
    parent, child = rows["Eten & boodschappen"], rows["Boodschappen"]
    assert child.parent_id == parent.id
    assert child.sort_order == parent.sort_order + 1
    assert all(r.is_system and r.user_id is None for r in rows.values())


def test_seed_merges_keywords_into_existing_categories(db_url):
    existing = add_category(db_url, "boodschappen", keywords=["Eigen Winkel"])
    created = seed_categories(database_url=db_url)

    assert created == _seed_size() - 1
    keywords = get_category(db_url, existing).keywords
    assert keywords[0] == "eigen winkel"
    assert "albert heijn" in keywords


def test_seed_from_custom_file_for_one_user(db_url, tmp_path):
    path = tmp_path / "taxonomy.json"
    path.write_text(
        json.dumps([{"name": "Hobby", "children": [{"name": "Klimmen", "keywords": ["boulder"]}]}]),
        encoding="utf-8",
    )
    assert seed_categories(database_url=db_url, user_id="user-1", path=path) == 2
    rows = _by_name(db_url)
    assert rows["Klimmen"].user_id == "user-1"
    assert rows["Klimmen"].keywords == ["boulder"]
    assert rows["Hobby"].is_system is False


def test_invalid_seed_files_are_rejected(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"name": "Hobby"}), encoding="utf-8")
    with pytest.raises(ValueError, match="must be a list"):
        load_seed_taxonomy(path)
    path.write_text(json.dumps([{"description": "no name"}]), encoding="utf-8")
    with pytest.raises(ValueError, match="must be an object with a name"):
        load_seed_taxonomy(path)


def test_create_category_checks_name_and_parent(db_url):
    with session_scope(database_url=db_url) as session:
        with pytest.raises(ValueError, match="category name"):
            create_category(session, name="<nope>")
        with pytest.raises(ValueError, match="parent category"):
            create_category(session, name="Fietsen", parent_id=999)
        row, created = create_category(session, name="Fietsen", user_id="user-1")
        again, created_again = create_category(session, name="FIETSEN", user_id="user-1")
        system, system_created = create_category(session, name="Fietsen")
        assert (created, created_again, system_created) == (True, False, True)
        assert again.id == row.id and system.id != row.id
        total = session.execute(select(func.count(TiCategory.id))).scalar_one()
    assert total == 2
