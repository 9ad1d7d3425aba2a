from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from db.client import session_scope
from db.models.finance import TiVariableSpendingPattern
from transaction_intelligence.config import VariableSpendingConfig
from transaction_intelligence.models import CategoryView, TransactionView
from transaction_intelligence.variable_spending import (
    compute_variable_spending,
    detect_variable_spending,
    save_variable_spending_patterns,
    top_merchants,
)

from tests.helpers.db import add_category, add_transaction

USER = "user-1"
AS_OF = date(2025, 6, 30)
GROCERIES = CategoryView(id=1, name="Boodschappen", is_variable_spending=True)
COFFEE = CategoryView(id=2, name="Koffie", is_variable_spending=True)
RENT = CategoryView(id=3, name="Huur")
CATEGORIES = [GROCERIES, COFFEE, RENT]


def _txn(tid: int, on: date, amount: str, category: CategoryView, name: str, **kw):
    value = Decimal(amount)
    return TransactionView(
        id=tid,
        user_id=USER,
        date=on,
        amount=value,
        is_debit=value < 0,
        merchant_name_clean=name,
        category_id=category.id,
        **kw,
    )


def _groceries(start_id: int = 1) -> list[TransactionView]:
    return [
        _txn(start_id, date(2025, 4, 1), "-50.00", GROCERIES, "Albert Heijn"),
        _txn(start_id + 1, date(2025, 5, 1), "-30.00", GROCERIES, "Albert Heijn"),
        _txn(start_id + 2, date(2025, 6, 1), "-40.00", GROCERIES, "Jumbo"),
    ]


def test_monthly_figures_for_a_variable_category():
    txns = [
        *_groceries(),
        _txn(10, date(2025, 6, 2), "-3.50", COFFEE, "Starbucks"),
        _txn(11, date(2025, 6, 9), "-3.50", COFFEE, "Starbucks"),
        *[_txn(20 + i, date(2025, 4 + i, 1), "-1000.00", RENT, "Verhuurder") for i in range(3)],
    ]
    [result] = compute_variable_spending(txns, CATEGORIES, as_of=AS_OF)

    assert result.category_name == "Boodschappen"
    assert result.total_transactions == 3
    assert result.total_spent == Decimal("120.00")
    # 61 days between first and last purchase is just over two months.
    assert result.monthly_average == Decimal("59.02")
    assert result.visits_per_month == Decimal("1.5")
    assert result.average_per_visit == Decimal("40.00")
    assert (result.min_amount, result.max_amount) == (Decimal("30.00"), Decimal("50.00"))
    assert result.unique_merchants == 2
    assert result.top_merchants[0].name == "Albert Heijn"
    assert result.top_merchants[0].count == 2
    assert result.merchant_name is None


def test_recurring_linked_and_excluded_transactions_do_not_count():
    txns = [
        *_groceries(),
        _txn(4, date(2025, 6, 5), "-99.00", GROCERIES, "Picnic", recurring_pattern_id=7),
        _txn(5, date(2025, 6, 6), "-75.00", GROCERIES, "Albert Heijn"),
    ]
    [result] = compute_variable_spending(txns, CATEGORIES, as_of=AS_OF, excluded_ids={5})
    assert result.total_transactions == 3
    assert result.total_spent == Decimal("120.00")


def test_inactive_or_thin_groups_do_not_qualify():
    old = [
        _txn(i, date(2025, 1, i), "-20.00", GROCERIES, "Albert Heijn") for i in range(1, 4)
    ]
    assert compute_variable_spending(old, CATEGORIES, as_of=AS_OF) == []
    cfg = VariableSpendingConfig(min_transactions=4)
    assert compute_variable_spending(_groceries(), CATEGORIES, cfg, as_of=AS_OF) == []


def test_all_categories_when_not_restricted_to_variable_ones():
    rent = [_txn(20 + i, date(2025, 4 + i, 1), "-1000.00", RENT, "Verhuurder") for i in range(3)]
    cfg = VariableSpendingConfig(variable_categories_only=False)
    results = compute_variable_spending([*_groceries(), *rent], CATEGORIES, cfg, as_of=AS_OF)
    assert [r.category_name for r in results] == ["Huur", "Boodschappen"]


def test_group_by_merchant_splits_a_category():
    txns = [
        *_groceries(),
        _txn(4, date(2025, 6, 10), "-35.00", GROCERIES, "Jumbo"),
        _txn(5, date(2025, 6, 20), "-45.00", GROCERIES, "Jumbo"),
    ]
    cfg = VariableSpendingConfig(group_by_merchant=True)
    [result] = compute_variable_spending(txns, CATEGORIES, cfg, as_of=AS_OF)
    assert result.merchant_name == "Jumbo"
    assert result.total_transactions == 3


def test_top_merchants_ties_break_on_total_then_name():
    txns = [
        _txn(1, AS_OF, "-5.00", GROCERIES, "Lidl"),
        _txn(2, AS_OF, "-9.00", GROCERIES, "Aldi"),
        _txn(3, AS_OF, "-5.00", GROCERIES, "Dirk"),
    ]
    assert [m.name for m in top_merchants(txns, 2)] == ["Aldi", "Dirk"]


# ---- Database round trips ------------------------------------------------------------


def _seed(db_url: str) -> int:
    groceries = add_category(db_url, "Boodschappen", is_variable_spending=True)
    for on, amount, name in [
        (date(2025, 4, 1), "-50.00", "Albert Heijn"),
        (date(2025, 5, 1), "-30.00", "Albert Heijn"),
        (date(2025, 6, 1), "-40.00", "Jumbo"),
    ]:
        add_transaction(
            db_url, USER, on=on, amount=amount, merchant_name_clean=name, category_id=groceries
        )
    # Money moved to a savings account and straight back is not spending.
    add_transaction(db_url, USER, on=date(2025, 5, 15), amount="-75.00", category_id=groceries)
    add_transaction(db_url, USER, on=date(2025, 5, 16), amount="75.00")
    return groceries


def test_detect_excludes_internal_transfers(db_url):
    groceries = _seed(db_url)
    [result] = detect_variable_spending(USER, database_url=db_url, as_of=AS_OF)
    assert result.category_id == groceries
    assert result.total_spent == Decimal("120.00")


def test_save_upserts_category_level_results(db_url):
    _seed(db_url)
    results = detect_variable_spending(USER, database_url=db_url, as_of=AS_OF)
    assert save_variable_spending_patterns(USER, results, database_url=db_url) == 1
    assert save_variable_spending_patterns(USER, results, database_url=db_url) == 1

    with session_scope(database_url=db_url) as session:
        count = session.execute(select(func.count(TiVariableSpendingPattern.id))).scalar_one()
        row = session.execute(select(TiVariableSpendingPattern)).scalar_one()
        assert count == 1
        assert row.monthly_average == Decimal("59.02")
        assert row.top_merchants[0]["name"] == "Albert Heijn"

    by_merchant = detect_variable_spending(
        USER,
        VariableSpendingConfig(group_by_merchant=True, min_transactions=1),
        database_url=db_url,
        as_of=AS_OF,
    )
    with pytest.raises(ValueError, match="category-level"):
        save_variable_spending_patterns(USER, by_merchant, database_url=db_url)
