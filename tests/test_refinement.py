from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from db.client import session_scope
from transaction_intelligence.progress import InMemoryProgressStore
from transaction_intelligence.refinement import (
    DEFAULT_RULES,
    RefinementRule,
    extract_time,
    hour_in_range,
    ordered_rules,
    refine_context,
)
from transaction_intelligence.repository import set_manual_category

from tests.helpers.db import add_category, add_transaction, get_transaction

USER = "user-1"
DAY = date(2025, 3, 14)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Pinbetaling 08:15 Starbucks", (8, 15)),
        ("BEA 07:05:33 then 21:00", (7, 5)),
        ("Terminal 25:99", None),
        ("no time here", None),
        (None, None),
    ],
)
def test_extract_time_uses_first_valid_occurrence(text, expected):
    assert extract_time(text) == expected


def test_hour_in_range_wraps_past_midnight():
    assert hour_in_range(12, (11, 15))
    assert not hour_in_range(15, (11, 15))
    assert hour_in_range(23, (21, 4))
    assert hour_in_range(3, (21, 4))
    assert not hour_in_range(4, (21, 4))


def test_ordered_rules_is_stable_for_equal_priority():
    ordered = ordered_rules(DEFAULT_RULES)
    assert ordered[0].name == "coffee_morning"
    equal = [r.name for r in ordered if r.priority == 95]
    assert equal == ["snacks_small", "mortgage_keyword"]


@pytest.fixture
def seeded(db_url: str) -> dict[str, int]:
    cats = {
        name: add_category(db_url, name)
        for name in ("Restaurants & uit eten", "Koffie", "Uit eten", "Bankkosten", "Wonen")
    }
    dining = cats["Restaurants & uit eten"]
    ids = {
        "coffee": add_transaction(
            db_url,
            USER,
            on=DAY,
            amount="-4.50",
            merchant="Starbucks",
            description="Pinbetaling 08:15 Starbucks Amsterdam",
            category_id=dining,
            category_source="keyword",
        ),
        "dinner": add_transaction(
            db_url,
            USER,
            on=DAY,
            amount="-45.00",
            merchant="Cafe De Zwaan",
            description="Pinbetaling 20:30 Cafe De Zwaan",
            category_id=dining,
            category_source="keyword",
        ),
        "mortgage": add_transaction(
            db_url,
            USER,
            on=DAY,
            amount="-1250.00",
            merchant="ING",
            description="Hypotheek lening 12345 maart",
            category_id=cats["Bankkosten"],
            category_source="account",
        ),
        "manual": add_transaction(
            db_url,
            USER,
            on=DAY,
            amount="-4.50",
            merchant="Starbucks",
            description="Pinbetaling 08:20 Starbucks Utrecht",
            category_id=dining,
            is_manual=True,
        ),
        "untouched": add_transaction(
            db_url,
            USER,
            on=DAY,
            amount="-60.00",
            merchant="Tuincentrum",
            description="Planten",
            category_id=dining,
            category_source="keyword",
        ),
    }
    return {**{f"cat:{k}": v for k, v in cats.items()}, **ids}


def _moves(result) -> set[tuple[int, str, str]]:
    return {(c.transaction_id, c.rule, c.to_category) for c in result.changes}


def test_dry_run_lists_changes_without_writing(db_url, seeded):
    result = refine_context(
        USER, progress_store=InMemoryProgressStore(), dry_run=True, database_url=db_url
    )

    assert result.dry_run is True
    assert result.total_processed == 4
    assert _moves(result) == {
        (seeded["coffee"], "coffee_morning", "Koffie"),
        (seeded["dinner"], "dinner_evening", "Uit eten"),
        (seeded["mortgage"], "mortgage_keyword", "Wonen"),
    }
    coffee = next(c for c in result.changes if c.transaction_id == seeded["coffee"])
    assert (coffee.time, coffee.from_category) == ("08:15", "Restaurants & uit eten")
    unchanged = get_transaction(db_url, seeded["coffee"])
    assert unchanged.category_id == seeded["cat:Restaurants & uit eten"]


def test_apply_writes_exactly_the_dry_run_changes(db_url, seeded):
    store = InMemoryProgressStore()
    preview = refine_context(USER, progress_store=store, dry_run=True, database_url=db_url)
    applied = refine_context(USER, progress_store=store, database_url=db_url)

    assert _moves(applied) == _moves(preview)
    assert applied.by_rule == {"coffee_morning": 1, "dinner_evening": 1, "mortgage_keyword": 1}

    row = get_transaction(db_url, seeded["coffee"])
    assert (row.category_id, row.category_source) == (seeded["cat:Koffie"], "refinement")
    assert row.category_confidence == Decimal("0.85")
    assert get_transaction(db_url, seeded["mortgage"]).category_id == seeded["cat:Wonen"]

    manual = get_transaction(db_url, seeded["manual"])
    assert manual.category_id == seeded["cat:Restaurants & uit eten"]
    assert manual.category_source == "manual"
    assert store.get_progress(USER).phase == "refinement"

    again = refine_context(USER, progress_store=store, database_url=db_url)
    assert again.refined == 0


def test_custom_rules_replace_the_defaults(db_url, seeded):
    rule = RefinementRule(
        name="big_dining",
        target_category="Uit eten",
        source_categories=("Restaurants & uit eten",),
        amount_range=(Decimal("50"), Decimal("100")),
    )
    result = refine_context(
        USER,
        progress_store=InMemoryProgressStore(),
        dry_run=True,
        rules=[rule],
        database_url=db_url,
    )
    assert _moves(result) == {(seeded["untouched"], "big_dining", "Uit eten")}


def test_invalid_arguments(db_url):
    store = InMemoryProgressStore()
    with pytest.raises(ValueError, match="Invalid input"):
        refine_context("", progress_store=store, database_url=db_url)
    with pytest.raises(ValueError, match="batch_size"):
        refine_context(USER, progress_store=store, database_url=db_url, batch_size=0)


def test_cancellation_keeps_finished_batches(db_url, seeded):
    store = InMemoryProgressStore()

    def _cancel_after_first_batch(payload):
        if payload.batch_index == 0:
            store.set_cancellation(USER, True)

    result = refine_context(
        USER,
        progress_store=store,
        database_url=db_url,
        on_progress=_cancel_after_first_batch,
        batch_size=1,
    )

    assert (result.status, result.total_processed, result.refined) == ("stopped", 1, 1)
    assert _moves(result) == {(seeded["coffee"], "coffee_morning", "Koffie")}
    assert get_transaction(db_url, seeded["coffee"]).category_id == seeded["cat:Koffie"]
    dinner = get_transaction(db_url, seeded["dinner"])
    assert dinner.category_id == seeded["cat:Restaurants & uit eten"]
    assert store.is_cancelled(USER) is False


def test_cancellation_requested_before_the_run_is_honoured_once(db_url, seeded):
    store = InMemoryProgressStore()
    store.set_cancellation(USER, True)

    stopped = refine_context(USER, progress_store=store, database_url=db_url)
    assert (stopped.status, stopped.refined, stopped.changes) == ("stopped", 0, [])
    assert store.is_cancelled(USER) is False

    rerun = refine_context(USER, progress_store=store, database_url=db_url)
    assert (rerun.status, rerun.refined) == ("completed", 3)


def test_row_marked_manual_mid_run_is_neither_written_nor_reported(db_url, seeded):
    dining = seeded["cat:Restaurants & uit eten"]

    def _user_edits_coffee(payload):
        if payload.batch_index is None and payload.processed == 0:
            with session_scope(database_url=db_url) as session:
                set_manual_category(
                    session, user_id=USER, transaction_id=seeded["coffee"], category_id=dining
                )

    result = refine_context(
        USER,
        progress_store=InMemoryProgressStore(),
        database_url=db_url,
        on_progress=_user_edits_coffee,
    )

    assert result.refined == 2
    assert seeded["coffee"] not in {c.transaction_id for c in result.changes}
    assert "coffee_morning" not in result.by_rule
    row = get_transaction(db_url, seeded["coffee"])
    assert (row.category_id, row.category_source) == (dining, "manual")
