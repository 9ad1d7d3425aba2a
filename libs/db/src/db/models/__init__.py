"""Shared SQLAlchemy models registry for the workspace database.

Holds the transaction, merchant, category and detected-pattern tables used by
``transaction_intelligence``.
"""

from .finance import (
    Base,
    TiCategory,
    TiMerchant,
    TiRecurringPattern,
    TiTransaction,
    TiVariableSpendingPattern,
)

__all__ = [
    "Base",
    "TiCategory",
    "TiMerchant",
    "TiRecurringPattern",
    "TiTransaction",
    "TiVariableSpendingPattern",
]
