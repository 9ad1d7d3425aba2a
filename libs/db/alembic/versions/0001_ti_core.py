# ruff: noqa: I001
"""Transaction intelligence core tables.

Revision ID: 0001_ti_core
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_ti_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # ti_categories
    op.create_table(
        "ti_categories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("ti_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("color", sa.String(), nullable=True),
        sa.Column("icon", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("keywords", sa.JSON(), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "is_variable_spending",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("embedding", sa.JSON(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_ti_categories_user_name"),
    )
    op.create_index("ix_ti_categories_user_id", "ti_categories", ["user_id"])

    # ti_merchants
    op.create_table(
        "ti_merchants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("keywords", sa.JSON(), nullable=False),
        sa.Column("ibans", sa.JSON(), nullable=False),
        sa.Column(
            "default_category_id",
            sa.Integer(),
            sa.ForeignKey("ti_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_potential_recurring", sa.Boolean(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )

    # ti_recurring_patterns
    op.create_table(
        "ti_recurring_patterns",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("interval", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'active'")),
        sa.Column(
            "merchant_id",
            sa.Integer(),
            sa.ForeignKey("ti_merchants.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("ti_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("next_expected_date", sa.Date(), nullable=True),
        sa.Column("transaction_ids", sa.JSON(), nullable=False),
        sa.Column("confidence", sa.Numeric(3, 2), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("is_income", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.CheckConstraint(
            "interval in ('weekly','4-weekly','monthly','quarterly','yearly')",
            name="ck_ti_rp_interval",
        ),
        sa.CheckConstraint("status in ('active','ignored')", name="ck_ti_rp_status"),
        sa.CheckConstraint(
            "source in ('merchant_amount','account','known_list','manual')",
            name="ck_ti_rp_source",
        ),
        sa.CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_ti_rp_confidence",
        ),
    )
    op.create_index("ix_ti_recurring_patterns_user_id", "ti_recurring_patterns", ["user_id"])

    # ti_transactions
    op.create_table(
        "ti_transactions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("is_debit", sa.Boolean(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("merchant_raw", sa.Text(), nullable=True),
        sa.Column("merchant_name_clean", sa.Text(), nullable=True),
        sa.Column("counterparty_iban", sa.String(), nullable=True),
        sa.Column(
            "merchant_id",
            sa.Integer(),
            sa.ForeignKey("ti_merchants.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("ti_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "category_source",
            sa.String(),
            nullable=False,
            server_default=sa.text("'unknown'"),
        ),
        sa.Column("category_confidence", sa.Numeric(3, 2), nullable=True),
        sa.Column(
            "is_manual_category",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("categorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "recurring_pattern_id",
            sa.Integer(),
            sa.ForeignKey("ti_recurring_patterns.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("raw_record", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            (
                "category_source in ('keyword','account','merchant_name','classifier',"
                "'embedding','refinement','manual','import','unknown')"
            ),
            name="ck_ti_tx_category_source",
        ),
        sa.CheckConstraint(
            (
                "category_confidence IS NULL OR "
                "(category_confidence >= 0 AND category_confidence <= 1)"
            ),
            name="ck_ti_tx_category_confidence",
        ),
    )
    op.create_index("ix_ti_tx_user_date", "ti_transactions", ["user_id", "date"])
    op.create_index("ix_ti_tx_user_category", "ti_transactions", ["user_id", "category_id"])
    op.create_index("ix_ti_tx_merchant", "ti_transactions", ["merchant_id"])

    # ti_variable_spending_patterns
    op.create_table(
        "ti_variable_spending_patterns",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("ti_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("monthly_average", sa.Numeric(18, 2), nullable=False),
        sa.Column("visits_per_month", sa.Numeric(8, 1), nullable=False),
        sa.Column("average_per_visit", sa.Numeric(18, 2), nullable=False),
        sa.Column("min_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("max_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("total_transactions", sa.Integer(), nullable=False),
        sa.Column("unique_merchants", sa.Integer(), nullable=False),
        sa.Column("top_merchants", sa.JSON(), nullable=False),
        sa.Column("first_transaction_date", sa.Date(), nullable=False),
        sa.Column("last_transaction_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'active'")),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "category_id", name="uq_ti_vsp_user_category"),
        sa.CheckConstraint("status in ('active','ignored')", name="ck_ti_vsp_status"),
    )


def downgrade() -> None:
    op.drop_table("ti_variable_spending_patterns")
    op.drop_index("ix_ti_tx_merchant", table_name="ti_transactions")
    op.drop_index("ix_ti_tx_user_category", table_name="ti_transactions")
    op.drop_index("ix_ti_tx_user_date", table_name="ti_transactions")
    op.drop_table("ti_transactions")
    op.drop_index("ix_ti_recurring_patterns_user_id", table_name="ti_recurring_patterns")
    op.drop_table("ti_recurring_patterns")
    op.drop_table("ti_merchants")
    op.drop_index("ix_ti_categories_user_id", table_name="ti_categories")
    op.drop_table("ti_categories")
