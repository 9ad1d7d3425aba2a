"""Habitual variable spending per category.

Recurring obligations and internal transfers are taken out first; what
remains in variable-spending categories (groceries, coffee, fuel, ...) is
summarized into monthly figures. A category only counts as a habit when it
has enough purchases and recent activity.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Collection, Iterable, Sequence
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select

from db.client import session_scope
from db.models.finance import TiVariableSpendingPattern

from .config import VariableSpendingConfig
from .logging_setup import get_logger
from .merchants import merchant_key
from .models import CategoryView, TopMerchant, TransactionView, VariableSpendingResult
from .repository import is_uncategorized_name, load_categories, load_transactions, require_user_id
from .transfers import identify_internal_transfers

_logger = get_logger("transaction_intelligence.variable_spending")

_CENT = Decimal("0.01")
_TENTH = Decimal("0.1")
_DAYS_PER_MONTH = Decimal(30)
_MAX_MONTHS = Decimal(12)


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _merchant_identity(txn: TransactionView) -> tuple[object, str]:
    label = txn.merchant_label or "Unknown"
    if txn.merchant_id is not None:
        return ("id", txn.merchant_id), label
    return ("name", merchant_key(label) or label.lower()), label


def top_merchants(txns: Sequence[TransactionView], n: int) -> list[TopMerchant]:
    """Most frequent merchants; ties break on total spent, then name."""

    buckets: dict[object, list[TransactionView]] = defaultdict(list)
    names: dict[object, str] = {}
    for t in txns:
        key, label = _merchant_identity(t)
        buckets[key].append(t)
        names.setdefault(key, label)
    rows: list[TopMerchant] = []
    for key, members in buckets.items():
        total = sum((abs(t.amount) for t in members), Decimal("0"))
        merchant_ids = {t.merchant_id for t in members}
        rows.append(
            TopMerchant(
                merchant_id=next(iter(merchant_ids)) if len(merchant_ids) == 1 else None,
                name=names[key],
                count=len(members),
                total=_money(total),
                average=_money(total / len(members)),
            )
        )
    rows.sort(key=lambda m: (-m.count, -m.total, m.name))
    return rows[:n]


def _summarize(
    category: CategoryView,
    txns: Sequence[TransactionView],
    config: VariableSpendingConfig,
    *,
    merchant_name: str | None,
) -> VariableSpendingResult:
    ordered = sorted(txns, key=lambda t: (t.date, t.id))
    first, last = ordered[0].date, ordered[-1].date
    span_days = max(1, (last - first).days)
    months = min(_MAX_MONTHS, max(Decimal(1), Decimal(span_days) / _DAYS_PER_MONTH))
    amounts = [abs(t.amount) for t in ordered]
    total = sum(amounts, Decimal("0"))
    merchants = {_merchant_identity(t)[0] for t in ordered}
    return VariableSpendingResult(
        category_id=category.id,
        category_name=category.name,
        monthly_average=_money(total / months),
        visits_per_month=(Decimal(len(ordered)) / months).quantize(_TENTH, rounding=ROUND_HALF_UP),
        average_per_visit=_money(total / len(ordered)),
        min_amount=_money(min(amounts)),
        max_amount=_money(max(amounts)),
        total_spent=_money(total),
        total_transactions=len(ordered),
        unique_merchants=len(merchants),
        top_merchants=tuple(top_merchants(ordered, config.top_n)),
        first_date=first,
        last_date=last,
        merchant_name=merchant_name,
    )


def compute_variable_spending(
    transactions: Iterable[TransactionView],
    categories: Iterable[CategoryView],
    config: VariableSpendingConfig | None = None,
    *,
    as_of: date,
    excluded_ids: Collection[int] = frozenset(),
) -> list[VariableSpendingResult]:
    """Summarize qualifying debit clusters, highest monthly average first.

    Transactions linked to a recurring pattern or listed in ``excluded_ids``
    (typically internal-transfer members) never contribute.
    """

    cfg = config or VariableSpendingConfig()
    by_id = {c.id: c for c in categories}
    window_start = as_of - timedelta(days=cfg.lookback_days)

    groups: dict[tuple[int, object], list[TransactionView]] = defaultdict(list)
    labels: dict[tuple[int, object], str] = {}
    for txn in transactions:
        if not txn.is_debit or txn.category_id is None:
            continue
        if txn.recurring_pattern_id is not None or txn.id in excluded_ids:
            continue
        if not (window_start <= txn.date <= as_of):
            continue
        category = by_id.get(txn.category_id)
        if category is None or is_uncategorized_name(category.name):
            continue
        if cfg.variable_categories_only and not category.is_variable_spending:
            continue
        if cfg.group_by_merchant:
            merchant, label = _merchant_identity(txn)
            key = (category.id, merchant)
            labels.setdefault(key, label)
        else:
            key = (category.id, None)
        groups[key].append(txn)

    results: list[VariableSpendingResult] = []
    for key, members in groups.items():
        if len(members) < cfg.min_transactions:
            continue
        last = max(t.date for t in members)
        if (as_of - last).days > cfg.recency_days:
            continue
        results.append(_summarize(by_id[key[0]], members, cfg, merchant_name=labels.get(key)))

    results.sort(key=lambda r: (-r.monthly_average, r.category_name, r.merchant_name or ""))
    return results


def detect_variable_spending(
    user_id: str,
    config: VariableSpendingConfig | None = None,
    *,
    database_url: str | None = None,
    as_of: date | None = None,
    transfer_window_days: int = 3,
) -> list[VariableSpendingResult]:
    user_id = require_user_id(user_id)
    cfg = config or VariableSpendingConfig()
    reference = as_of or date.today()
    t0 = time.perf_counter()
    # Transfers are paired over a slightly wider window so a pair straddling
    # the lookback boundary is still recognized.
    start = reference - timedelta(days=cfg.lookback_days + transfer_window_days)
    with session_scope(database_url=database_url) as session:
        categories = load_categories(session, user_id)
        transactions = load_transactions(session, user_id, start=start, end=reference)
    transfers = identify_internal_transfers(transactions, transfer_window_days)
    results = compute_variable_spending(
        transactions, categories, cfg, as_of=reference, excluded_ids=transfers
    )
    _logger.info(
        "detect_variable_spending:done user_id=%s transactions=%d transfers=%d patterns=%d "
        "latency_ms=%.2f",
        user_id,
        len(transactions),
        len(transfers),
        len(results),
        (time.perf_counter() - t0) * 1000.0,
    )
    return results


def save_variable_spending_patterns(
    user_id: str,
    results: Iterable[VariableSpendingResult],
    *,
    database_url: str | None = None,
) -> int:
    """Upsert category-level results for ``user_id``; return rows written.

    Rows a user marked ``ignored`` keep that status.
    """

    user_id = require_user_id(user_id)
    items = list(results)
    if any(r.merchant_name is not None for r in items):
        raise ValueError("Invalid input: only category-level results can be saved")
    written = 0
    with session_scope(database_url=database_url) as session:
        for r in items:
            row = session.execute(
                select(TiVariableSpendingPattern).where(
                    TiVariableSpendingPattern.user_id == user_id,
                    TiVariableSpendingPattern.category_id == r.category_id,
                )
            ).scalar_one_or_none()
            if row is None:
                row = TiVariableSpendingPattern(
                    user_id=user_id, category_id=r.category_id, status="active"
                )
                session.add(row)
            row.monthly_average = r.monthly_average
            row.visits_per_month = r.visits_per_month
            row.average_per_visit = r.average_per_visit
            row.min_amount = r.min_amount
            row.max_amount = r.max_amount
            row.total_transactions = r.total_transactions
            row.unique_merchants = r.unique_merchants
            row.top_merchants = r.to_dict()["top_merchants"]
            row.first_transaction_date = r.first_date
            row.last_transaction_date = r.last_date
            written += 1
    _logger.info("save_variable_spending_patterns:done user_id=%s written=%d", user_id, written)
    return written


__all__ = [
    "compute_variable_spending",
    "detect_variable_spending",
    "save_variable_spending_patterns",
    "top_merchants",
]
