from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from db.client import session_scope
from db.models.finance import TiRecurringPattern
from transaction_intelligence.merger import (
    auto_merge_duplicates,
    find_merge_candidates,
    merge_merchants,
    pair_candidates,
    score_name,
    similarity,
)
from transaction_intelligence.models import MerchantView

from tests.helpers.db import (
    add_category,
    add_merchant,
    add_transaction,
    get_merchant,
    get_transaction,
)

USER = "user-1"


def test_similarity_compares_cleaned_keys():
    assert similarity("Albert Heijn", "ALBERT HEIJN 1595 SGRAVENHAGE") == 1.0
    assert similarity("Albert Heyn", "Albert Heijn") == pytest.approx(1 - 2 / 12)
    assert similarity("Jumbo", "Albert Heijn") < 0.5
    assert similarity("", "Jumbo") == 0.0


def test_score_name_prefers_title_case_plain_names():
    assert score_name("Albert Heijn") == 27
    assert score_name("ALBERT HEIJN") == 12
    assert score_name("Jumbo XL") == 18
    # Usage can outweigh formatting.
    assert score_name("ALBERT HEIJN", 10) > score_name("Albert Heijn")


def test_pair_candidates_only_active_pairs_above_threshold():
    merchants = [
        MerchantView(id=1, name="Albert Heijn"),
        MerchantView(id=2, name="ALBERT HEIJN"),
        MerchantView(id=3, name="Albert Heyn"),
        MerchantView(id=4, name="Jumbo"),
        MerchantView(id=5, name="Albert Heijn", is_active=False),
    ]
    found = pair_candidates(merchants, 0.75)
    assert [c.pair for c in found] == [(1, 2), (1, 3), (2, 3)]
    assert found[1].similarity == pytest.approx(0.8333)
    assert pair_candidates(merchants, 1.0) == found[:1]
    with pytest.raises(ValueError, match="threshold"):
        pair_candidates(merchants, 1.5)


def test_merge_moves_references_and_deactivates_source(db_url):
    groceries = add_category(db_url, "Boodschappen")
    keep = add_merchant(db_url, "Albert Heijn", ibans=["NL91ABNA0417164300"], keywords=["ah"])
    drop = add_merchant(
        db_url,
        "ALBERT HEIJN",
        ibans=["NL02RABO0123456789"],
        keywords=["AH", "albert"],
        default_category_id=groceries,
    )
    moved = [
        add_transaction(db_url, USER, on=date(2025, 1, d), amount="-12.00", merchant_id=drop)
        for d in (3, 10)
    ]
    add_transaction(db_url, USER, on=date(2025, 1, 4), amount="-8.00", merchant_id=keep)
    with session_scope(database_url=db_url) as session:
        session.add(
            TiRecurringPattern(
                user_id=USER,
                name="Albert Heijn",
                amount=Decimal("-12.00"),
                interval="weekly",
                merchant_id=drop,
                transaction_ids=moved,
                source="merchant_amount",
            )
        )

    [candidate] = find_merge_candidates(0.9, database_url=db_url)
    [result] = merge_merchants([candidate], database_url=db_url)

    assert (result.target_id, result.source_ids) == (keep, (drop,))
    assert (result.transactions_reassigned, result.patterns_reassigned) == (2, 1)
    assert not result.skipped
    target = get_merchant(db_url, keep)
    assert target.ibans == ["NL91ABNA0417164300", "NL02RABO0123456789"]
    assert target.keywords == ["ah", "albert"]
    assert target.default_category_id == groceries
    assert get_merchant(db_url, drop).is_active is False
    assert all(get_transaction(db_url, tid).merchant_id == keep for tid in moved)
    assert find_merge_candidates(0.9, database_url=db_url) == []


def test_merge_skips_inactive_and_identical_pairs(db_url):
    a = add_merchant(db_url, "Albert Heijn")
    b = add_merchant(db_url, "ALBERT HEIJN", is_active=False)
    results = merge_merchants([(a, b), (a, a)], database_url=db_url)
    assert [(r.skipped, r.reason) for r in results] == [
        (True, "inactive"),
        (True, "same_merchant"),
    ]
    assert get_merchant(db_url, a).is_active is True


def test_unknown_merchant_ids_fail_before_any_write(db_url):
    a = add_merchant(db_url, "Albert Heijn")
    b = add_merchant(db_url, "ALBERT HEIJN")
    with pytest.raises(ValueError, match="unknown merchant"):
        merge_merchants([(a, b), (a, 999)], database_url=db_url)
    assert get_merchant(db_url, b).is_active is True


def test_auto_merge_collapses_chains_onto_best_name(db_url):
    best = add_merchant(db_url, "Albert Heijn")
    shouty = add_merchant(db_url, "ALBERT HEIJN")
    typo = add_merchant(db_url, "Albert Heyn")
    other = add_merchant(db_url, "Jumbo")

    results = auto_merge_duplicates(0.75, database_url=db_url)

    assert sorted(r.source_ids[0] for r in results) == sorted([shouty, typo])
    assert {r.target_id for r in results} == {best}
    assert get_merchant(db_url, other).is_active is True
    assert find_merge_candidates(0.75, database_url=db_url) == []
    assert auto_merge_duplicates(0.75, database_url=db_url) == []
