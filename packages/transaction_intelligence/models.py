"""Data models and type aliases for ``transaction_intelligence``.

ORM rows (``db.models.finance``) never leave the storage layer. Every other
module works on the frozen views and result types defined here, which keeps
the strategies, detectors and merger testable without a database.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, field_validator

# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

type CategorySource = Literal[
    "keyword",
    "account",
    "merchant_name",
    "classifier",
    "embedding",
    "refinement",
    "manual",
    "import",
    "unknown",
]
"""Value stored in ``ti_transactions.category_source``."""

type Interval = Literal["weekly", "4-weekly", "monthly", "quarterly", "yearly"]

type PatternSource = Literal["merchant_amount", "account", "known_list", "manual"]

type RunStatus = Literal["completed", "stopped"]

type FailureReason = Literal[
    "no_match",
    "classifier_unavailable",
    "classifier_error",
    "below_confidence",
    "cancelled",
]


# ---------------------------------------------------------------------------
# Read views over storage rows
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TransactionView:
    """A transaction as seen by the engine.

    ``amount`` is signed (debits negative) and quantized to cents.
    ``category_confidence`` is a plain float in [0, 1] when set.
    """

    id: int
    user_id: str
    date: date
    amount: Decimal
    is_debit: bool
    description: str | None = None
    merchant_raw: str | None = None
    merchant_name_clean: str | None = None
    counterparty_iban: str | None = None
    merchant_id: int | None = None
    category_id: int | None = None
    category_confidence: float | None = None
    category_source: str = "unknown"
    is_manual: bool = False
    recurring_pattern_id: int | None = None

    @property
    def merchant_label(self) -> str:
        """Best available merchant label: cleaned, raw, then description."""

        for value in (self.merchant_name_clean, self.merchant_raw, self.description):
            if value and value.strip():
                return value.strip()
        return ""

    @property
    def search_text(self) -> str:
        """Lower-cased text used by keyword and embedding strategies."""

        parts = [self.merchant_name_clean, self.merchant_raw, self.description]
        return " ".join(p.strip() for p in parts if p and p.strip()).lower()


@dataclass(frozen=True, slots=True)
class CategoryView:
    id: int
    name: str
    keywords: tuple[str, ...] = ()
    parent_id: int | None = None
    user_id: str | None = None
    is_system: bool = False
    is_variable_spending: bool = False
    description: str | None = None
    embedding: tuple[float, ...] | None = None


@dataclass(frozen=True, slots=True)
class MerchantView:
    id: int
    name: str
    keywords: tuple[str, ...] = ()
    ibans: tuple[str, ...] = ()
    default_category_id: int | None = None
    is_potential_recurring: bool | None = None
    is_active: bool = True
    transaction_count: int = 0


# ---------------------------------------------------------------------------
# Categorization
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StrategyMatch:
    """One strategy's decision for one transaction."""

    transaction_id: int
    category_id: int
    confidence: float
    source: CategorySource
    reason: str
    merchant_name_clean: str | None = None
    merchant_id: int | None = None


class ClassifierResult(BaseModel):
    """Validated result from an external classifier.

    Either ``category_id`` or ``category_name`` identifies the category; the
    engine resolves names against the user's categories case-insensitively.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    transaction_id: int
    category_id: int | None = None
    category_name: str | None = None
    confidence: float
    cleaned_merchant_name: str | None = None
    reasoning: str | None = None

    @field_validator("confidence")
    @classmethod
    def _confidence_in_unit_interval(cls, v: float) -> float:
        if not (0.0 <= float(v) <= 1.0):
            raise ValueError("confidence must be within [0,1]")
        return float(v)

    @field_validator("cleaned_merchant_name", "reasoning", "category_name")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v


@dataclass(frozen=True, slots=True)
class ProgressPayload:
    """Snapshot pushed to the progress store after each batch or iteration."""

    phase: str
    iteration: int
    processed: int
    total: int
    message: str
    resolved: int = 0
    counts: Mapping[str, int] = field(default_factory=dict)
    batch_index: int | None = None
    total_batches: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["counts"] = dict(self.counts)
        return out


@dataclass(slots=True)
class CategorizationSummary:
    """Run-level result of :func:`run_categorization`.

    Always returned, including on early stop. ``matches`` is keyed by strategy
    tag (``keyword``, ``account``, ``merchant_name``, ``merchant_name_rerun``,
    ``classifier``, ``embedding``).
    """

    user_id: str
    status: RunStatus = "completed"
    iterations: int = 0
    total: int = 0
    processed: int = 0
    categorized: int = 0
    skipped_manual: int = 0
    matches: dict[str, int] = field(default_factory=dict)
    changed_transaction_ids: list[int] = field(default_factory=list)
    learned_keywords: dict[str, list[str]] = field(default_factory=dict)
    match_reasons: dict[int, str] = field(default_factory=dict)
    failures: dict[int, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def count(self, strategy: str) -> int:
        return self.matches.get(strategy, 0)

    @property
    def failure_counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for reason in self.failures.values():
            out[reason] = out.get(reason, 0) + 1
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "iterations": self.iterations,
            "total": self.total,
            "processed": self.processed,
            "categorized": self.categorized,
            "skipped_manual": self.skipped_manual,
            "matches": dict(self.matches),
            "changed": len(self.changed_transaction_ids),
            "learned_keywords": {k: list(v) for k, v in self.learned_keywords.items()},
            "failures": self.failure_counts,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


# ---------------------------------------------------------------------------
# Context refinement
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RefinementChange:
    transaction_id: int
    merchant_name: str
    amount: Decimal
    time: str | None
    from_category: str | None
    to_category: str
    rule: str


@dataclass(slots=True)
class RefinementResult:
    total_processed: int = 0
    refined: int = 0
    dry_run: bool = False
    status: RunStatus = "completed"
    by_rule: dict[str, int] = field(default_factory=dict)
    changes: list[RefinementChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "refined": self.refined,
            "dry_run": self.dry_run,
            "status": self.status,
            "by_rule": dict(self.by_rule),
            "changes": [
                {**asdict(c), "amount": str(c.amount)} for c in self.changes
            ],
        }


@dataclass(frozen=True, slots=True)
class ReviewChange:
    transaction_id: int
    merchant_name: str
    amount: Decimal
    from_category: str | None
    to_category: str
    old_confidence: float | None
    new_confidence: float


@dataclass(slots=True)
class ReviewResult:
    """Outcome of a low-confidence review.

    ``processed`` counts transactions in batches the classifier answered;
    ``errors`` counts transactions in batches whose classifier call failed.
    """

    total_candidates: int = 0
    processed: int = 0
    improved: int = 0
    unchanged: int = 0
    errors: int = 0
    warnings: list[str] = field(default_factory=list)
    changes: list[ReviewChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_candidates": self.total_candidates,
            "processed": self.processed,
            "improved": self.improved,
            "unchanged": self.unchanged,
            "errors": self.errors,
            "warnings": list(self.warnings),
            "changes": [
                {**asdict(c), "amount": str(c.amount)} for c in self.changes
            ],
        }


# ---------------------------------------------------------------------------
# Recurring and variable spending
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RecurringCandidate:
    """A detected, unconfirmed recurring obligation."""

    name: str
    amount: Decimal
    interval: Interval
    transaction_ids: tuple[int, ...]
    confidence: float
    source: PatternSource
    next_expected_date: date
    last_date: date
    merchant_id: int | None = None
    category_id: int | None = None
    counterparty_iban: str | None = None
    is_income: bool = False

    @property
    def occurrences(self) -> int:
        return len(self.transaction_ids)

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["amount"] = str(self.amount)
        out["next_expected_date"] = self.next_expected_date.isoformat()
        out["last_date"] = self.last_date.isoformat()
        out["transaction_ids"] = list(self.transaction_ids)
        return out


class TopMerchant(NamedTuple):
    merchant_id: int | None
    name: str
    count: int
    total: Decimal
    average: Decimal


@dataclass(frozen=True, slots=True)
class VariableSpendingResult:
    category_id: int
    category_name: str
    monthly_average: Decimal
    visits_per_month: Decimal
    average_per_visit: Decimal
    min_amount: Decimal
    max_amount: Decimal
    total_spent: Decimal
    total_transactions: int
    unique_merchants: int
    top_merchants: tuple[TopMerchant, ...]
    first_date: date
    last_date: date
    merchant_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category_id": self.category_id,
            "category_name": self.category_name,
            "merchant_name": self.merchant_name,
            "monthly_average": str(self.monthly_average),
            "visits_per_month": str(self.visits_per_month),
            "average_per_visit": str(self.average_per_visit),
            "min_amount": str(self.min_amount),
            "max_amount": str(self.max_amount),
            "total_spent": str(self.total_spent),
            "total_transactions": self.total_transactions,
            "unique_merchants": self.unique_merchants,
            "top_merchants": [
                {**m._asdict(), "total": str(m.total), "average": str(m.average)}
                for m in self.top_merchants
            ],
            "first_date": self.first_date.isoformat(),
            "last_date": self.last_date.isoformat(),
        }


# ---------------------------------------------------------------------------
# Merchant merging
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MergeCandidate:
    first_id: int
    first_name: str
    second_id: int
    second_name: str
    similarity: float

    @property
    def pair(self) -> tuple[int, int]:
        return (self.first_id, self.second_id)


@dataclass(frozen=True, slots=True)
class MergeResult:
    target_id: int
    target_name: str
    source_ids: tuple[int, ...]
    source_names: tuple[str, ...]
    transactions_reassigned: int = 0
    patterns_reassigned: int = 0
    skipped: bool = False
    reason: str | None = None


__all__ = [
    "CategorizationSummary",
    "CategoryView",
    "CategorySource",
    "ClassifierResult",
    "FailureReason",
    "Interval",
    "MergeCandidate",
    "MergeResult",
    "MerchantView",
    "PatternSource",
    "ProgressPayload",
    "RecurringCandidate",
    "RefinementChange",
    "RefinementResult",
    "ReviewChange",
    "ReviewResult",
    "RunStatus",
    "StrategyMatch",
    "TopMerchant",
    "TransactionView",
    "VariableSpendingResult",
]
