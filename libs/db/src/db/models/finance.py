from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: ti_categories
# ---------------------------


class TiCategory(Base):
    __tablename__ = "ti_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # NULL owner marks a system (default) category shared by every user.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    parent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("ti_categories.id", ondelete="SET NULL"),
        nullable=True,
    )
    color: Mapped[str | None] = mapped_column(String, nullable=True)
    icon: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Ordered keyword list; matching is case-insensitive.
    keywords: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    is_variable_spending: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    # Optional precomputed semantic vector for the similarity fallback.
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    sort_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_ti_categories_user_name"),)


# ---------------------------
# Reference: ti_merchants
# ---------------------------


class TiMerchant(Base):
    __tablename__ = "ti_merchants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    keywords: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # Normalized (no whitespace, upper-case) counterparty account identifiers.
    ibans: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    default_category_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("ti_categories.id", ondelete="SET NULL"),
        nullable=True,
    )
    # Tri-state: NULL unknown, true known recurring payee, false never recurring.
    is_potential_recurring: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )


# ---------------------------
# Detected: ti_recurring_patterns
# ---------------------------


class TiRecurringPattern(Base):
    __tablename__ = "ti_recurring_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    interval: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'active'"))
    merchant_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("ti_merchants.id", ondelete="SET NULL"),
        nullable=True,
    )
    category_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("ti_categories.id", ondelete="SET NULL"),
        nullable=True,
    )
    next_expected_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    transaction_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    confidence: Mapped[Decimal | None] = mapped_column(Numeric(3, 2), nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    is_income: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        CheckConstraint(
            "interval in ('weekly','4-weekly','monthly','quarterly','yearly')",
            name="ck_ti_rp_interval",
        ),
        CheckConstraint("status in ('active','ignored')", name="ck_ti_rp_status"),
        CheckConstraint(
            "source in ('merchant_amount','account','known_list','manual')",
            name="ck_ti_rp_source",
        ),
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_ti_rp_confidence",
        ),
    )


# ---------------------------
# Core: ti_transactions
# ---------------------------


class TiTransaction(Base):
    __tablename__ = "ti_transactions"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    is_debit: Mapped[bool] = mapped_column(Boolean, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    merchant_raw: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Output of the merchant name cleaner; the key for merchant-name propagation.
    merchant_name_clean: Mapped[str | None] = mapped_column(Text, nullable=True)
    counterparty_iban: Mapped[str | None] = mapped_column(String, nullable=True)
    merchant_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("ti_merchants.id", ondelete="SET NULL"),
        nullable=True,
    )
    category_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("ti_categories.id", ondelete="SET NULL"),
        nullable=True,
    )
    category_source: Mapped[str] = mapped_column(
        String,
        nullable=False,
        server_default=text("'unknown'"),
    )
    category_confidence: Mapped[Decimal | None] = mapped_column(Numeric(3, 2), nullable=True)
    is_manual_category: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    categorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recurring_pattern_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("ti_recurring_patterns.id", ondelete="SET NULL"),
        nullable=True,
    )
    raw_record: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        CheckConstraint(
            (
                "category_source in ('keyword','account','merchant_name','classifier',"
                "'embedding','refinement','manual','import','unknown')"
            ),
            name="ck_ti_tx_category_source",
        ),
        CheckConstraint(
            (
                "category_confidence IS NULL OR "
                "(category_confidence >= 0 AND category_confidence <= 1)"
            ),
            name="ck_ti_tx_category_confidence",
        ),
        Index("ix_ti_tx_user_date", "user_id", "date"),
        Index("ix_ti_tx_user_category", "user_id", "category_id"),
        Index("ix_ti_tx_merchant", "merchant_id"),
    )


# ---------------------------
# Detected: ti_variable_spending_patterns
# ---------------------------


class TiVariableSpendingPattern(Base):
    __tablename__ = "ti_variable_spending_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    category_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("ti_categories.id", ondelete="CASCADE"),
        nullable=False,
    )
    monthly_average: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    visits_per_month: Mapped[Decimal] = mapped_column(Numeric(8, 1), nullable=False)
    average_per_visit: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    max_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False)
    unique_merchants: Mapped[int] = mapped_column(Integer, nullable=False)
    top_merchants: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    first_transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'active'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        UniqueConstraint("user_id", "category_id", name="uq_ti_vsp_user_category"),
        CheckConstraint("status in ('active','ignored')", name="ck_ti_vsp_status"),
    )


__all__ = [
    "Base",
    "TiCategory",
    "TiMerchant",
    "TiRecurringPattern",
    "TiTransaction",
    "TiVariableSpendingPattern",
]
