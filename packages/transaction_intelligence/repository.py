# ruff: noqa: I001
"""Storage collaborator over the shared ``db`` library.

Every function takes an active SQLAlchemy ``Session``; callers own the
transaction boundary through :func:`db.client.session_scope`. Batch writers in
this package open one scope per batch so a batch is applied atomically.

Scope:
- Read views of categories, merchants and transactions for a user.
- Category assignment (single and bulk by id set), never touching rows with a
  manual category.
- Ingest of transaction rows and category keyword learning.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from db.models.finance import TiCategory, TiMerchant, TiTransaction
from .merchants import clean_merchant_name, normalize_iban
from .models import CategorySource, CategoryView, MerchantView, StrategyMatch, TransactionView

_UNCATEGORIZED_NAMES = frozenset({"uncategorized", "ongecategoriseerd", "niet gecategoriseerd"})


# ---- Conversions -----------------------------------------------------------------


def _to_decimal_2(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    try:
        d = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _to_date(raw: Any) -> date | None:
    if raw is None:
        return None
    if isinstance(raw, date):
        return raw
    s = str(raw).strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def _norm_str(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None


def _confidence(value: float | None) -> Decimal | None:
    if value is None:
        return None
    return _to_decimal_2(min(1.0, max(0.0, float(value))))


def require_user_id(user_id: Any) -> str:
    """Validate and return a user id, raising ``ValueError`` when malformed."""

    if not isinstance(user_id, str) or not user_id.strip():
        raise ValueError(f"Invalid input: user_id must be a non-empty string, got {user_id!r}")
    return user_id.strip()


def is_uncategorized_name(name: str | None) -> bool:
    return name is not None and name.strip().casefold() in _UNCATEGORIZED_NAMES


def to_transaction_view(row: TiTransaction) -> TransactionView:
    return TransactionView(
        id=row.id,
        user_id=row.user_id,
        date=row.date,
        amount=_to_decimal_2(row.amount) or Decimal("0.00"),
        is_debit=bool(row.is_debit),
        description=row.description,
        merchant_raw=row.merchant_raw,
        merchant_name_clean=row.merchant_name_clean,
        counterparty_iban=row.counterparty_iban,
        merchant_id=row.merchant_id,
        category_id=row.category_id,
        category_confidence=(
            float(row.category_confidence) if row.category_confidence is not None else None
        ),
        category_source=row.category_source or "unknown",
        is_manual=bool(row.is_manual_category),
        recurring_pattern_id=row.recurring_pattern_id,
    )


def to_category_view(row: TiCategory) -> CategoryView:
    return CategoryView(
        id=row.id,
        name=row.name,
        keywords=tuple(row.keywords or ()),
        parent_id=row.parent_id,
        user_id=row.user_id,
        is_system=bool(row.is_system),
        is_variable_spending=bool(row.is_variable_spending),
        description=row.description,
        embedding=tuple(float(x) for x in row.embedding) if row.embedding else None,
    )


def to_merchant_view(row: TiMerchant, *, transaction_count: int = 0) -> MerchantView:
    return MerchantView(
        id=row.id,
        name=row.name,
        keywords=tuple(row.keywords or ()),
        ibans=tuple(row.ibans or ()),
        default_category_id=row.default_category_id,
        is_potential_recurring=row.is_potential_recurring,
        is_active=bool(row.is_active),
        transaction_count=transaction_count,
    )


# ---- Queries ---------------------------------------------------------------------


def load_categories(session: Session, user_id: str) -> list[CategoryView]:
    """Return system categories plus the user's own, in taxonomy order."""

    stmt = (
        select(TiCategory)
        .where(or_(TiCategory.user_id.is_(None), TiCategory.user_id == user_id))
        .order_by(TiCategory.sort_order.is_(None), TiCategory.sort_order, TiCategory.id)
    )
    return [to_category_view(r) for r in session.execute(stmt).scalars()]


def load_merchants(
    session: Session,
    *,
    active_only: bool = True,
    with_counts: bool = False,
) -> list[MerchantView]:
    stmt = select(TiMerchant).order_by(TiMerchant.id)
    if active_only:
        stmt = stmt.where(TiMerchant.is_active.is_(True))
    rows = list(session.execute(stmt).scalars())
    counts: dict[int, int] = {}
    if with_counts and rows:
        count_stmt = (
            select(TiTransaction.merchant_id, func.count(TiTransaction.id))
            .where(TiTransaction.merchant_id.in_([r.id for r in rows]))
            .group_by(TiTransaction.merchant_id)
        )
        counts = {mid: int(n) for mid, n in session.execute(count_stmt).all()}
    return [to_merchant_view(r, transaction_count=counts.get(r.id, 0)) for r in rows]


def load_transactions(
    session: Session,
    user_id: str,
    *,
    start: date | None = None,
    end: date | None = None,
    category_id: int | None = None,
    merchant_id: int | None = None,
    debits_only: bool = False,
    categorized_only: bool = False,
) -> list[TransactionView]:
    """Return the user's transactions ordered by ``(date, id)``.

    ``start``/``end`` are inclusive.
    """

    stmt = select(TiTransaction).where(TiTransaction.user_id == user_id)
    if start is not None:
        stmt = stmt.where(TiTransaction.date >= start)
    if end is not None:
        stmt = stmt.where(TiTransaction.date <= end)
    if category_id is not None:
        stmt = stmt.where(TiTransaction.category_id == category_id)
    if merchant_id is not None:
        stmt = stmt.where(TiTransaction.merchant_id == merchant_id)
    if debits_only:
        stmt = stmt.where(TiTransaction.is_debit.is_(True))
    if categorized_only:
        stmt = stmt.where(TiTransaction.category_id.is_not(None))
    stmt = stmt.order_by(TiTransaction.date, TiTransaction.id)
    return [to_transaction_view(r) for r in session.execute(stmt).scalars()]


# ---- Writes ----------------------------------------------------------------------


def apply_assignments(session: Session, matches: Iterable[StrategyMatch]) -> list[int]:
    """Write strategy matches; return the ids whose rows were updated.

    Rows flagged ``is_manual_category`` are excluded by the ``WHERE`` clause,
    so a manual category is never overwritten here.
    """

    now = func.now()
    updated: list[int] = []
    for m in matches:
        values: dict[str, Any] = {
            "category_id": m.category_id,
            "category_source": m.source,
            "category_confidence": _confidence(m.confidence),
            "categorized_at": now,
            "updated_at": now,
        }
        if m.merchant_name_clean:
            values["merchant_name_clean"] = m.merchant_name_clean
        if m.merchant_id is not None:
            values["merchant_id"] = m.merchant_id
        stmt = (
            update(TiTransaction)
            .where(
                TiTransaction.id == m.transaction_id,
                TiTransaction.is_manual_category.is_(False),
            )
            .values(**values)
        )
        if session.execute(stmt).rowcount:
            updated.append(m.transaction_id)
    return updated


def bulk_set_category(
    session: Session,
    transaction_ids: Sequence[int],
    category_id: int,
    *,
    source: CategorySource,
    confidence: float | None,
) -> list[int]:
    """Assign one category to an id set; return the ids actually updated.

    Manual rows are left untouched and so are missing from the result.
    """

    if not transaction_ids:
        return []
    now = func.now()
    stmt = (
        update(TiTransaction)
        .where(
            TiTransaction.id.in_(list(transaction_ids)),
            TiTransaction.is_manual_category.is_(False),
        )
        .values(
            category_id=category_id,
            category_source=source,
            category_confidence=_confidence(confidence),
            categorized_at=now,
            updated_at=now,
        )
        .returning(TiTransaction.id)
    )
    return sorted(session.execute(stmt).scalars())


def set_manual_category(
    session: Session,
    *,
    user_id: str,
    transaction_id: int,
    category_id: int,
) -> None:
    """Record a user's own category choice; automated passes never revisit it."""

    now = func.now()
    result = session.execute(
        update(TiTransaction)
        .where(TiTransaction.id == transaction_id, TiTransaction.user_id == user_id)
        .values(
            category_id=category_id,
            category_source="manual",
            category_confidence=Decimal("0.95"),
            is_manual_category=True,
            categorized_at=now,
            updated_at=now,
        )
    )
    if not result.rowcount:
        raise ValueError(f"Invalid input: transaction {transaction_id} not found for user")


def add_category_keywords(session: Session, category_id: int, keywords: Iterable[str]) -> list[str]:
    """Append new lower-cased keywords; return those actually added."""

    row = session.get(TiCategory, category_id)
    if row is None:
        raise ValueError(f"Invalid input: category {category_id} does not exist")
    existing = [k.lower() for k in (row.keywords or [])]
    added: list[str] = []
    for kw in keywords:
        norm = kw.strip().lower()
        if norm and norm not in existing and norm not in added:
            added.append(norm)
    if added:
        row.keywords = [*existing, *added]
    return added


def add_transactions(
    session: Session,
    user_id: str,
    rows: Iterable[Mapping[str, Any]],
) -> list[int]:
    """Insert transaction rows for a user and return the new ids.

    Each row needs ``date`` (ISO string or ``date``) and a signed ``amount``.
    Optional keys: ``description``, ``merchant``, ``counterparty_iban``,
    ``is_debit`` (derived from the sign when absent), ``category_id``.
    The cleaned merchant label is derived from ``merchant`` or
    ``description``.
    """

    user_id = require_user_id(user_id)
    out: list[TiTransaction] = []
    for pos, raw in enumerate(rows):
        amount = _to_decimal_2(raw.get("amount"))
        tx_date = _to_date(raw.get("date"))
        if amount is None or tx_date is None:
            raise ValueError(f"Invalid input: row {pos} requires a parseable date and amount")
        merchant = _norm_str(raw.get("merchant"))
        description = _norm_str(raw.get("description"))
        is_debit = raw.get("is_debit")
        iban = normalize_iban(_norm_str(raw.get("counterparty_iban")))
        row = TiTransaction(
            user_id=user_id,
            date=tx_date,
            amount=amount,
            is_debit=bool(is_debit) if is_debit is not None else amount < 0,
            description=description,
            merchant_raw=merchant,
            merchant_name_clean=clean_merchant_name(merchant or description) or None,
            counterparty_iban=iban or None,
            category_id=raw.get("category_id"),
            category_source="import" if raw.get("category_id") is not None else "unknown",
            is_manual_category=False,
            raw_record=raw.get("raw_record"),
        )
        session.add(row)
        out.append(row)
    session.flush()
    return [r.id for r in out]


__all__ = [
    "add_category_keywords",
    "add_transactions",
    "apply_assignments",
    "bulk_set_category",
    "is_uncategorized_name",
    "load_categories",
    "load_merchants",
    "load_transactions",
    "require_user_id",
    "set_manual_category",
    "to_category_view",
    "to_merchant_view",
    "to_transaction_view",
]
