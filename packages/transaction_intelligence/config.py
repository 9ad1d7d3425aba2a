"""Run options and detector thresholds.

All knobs are frozen dataclasses validated in ``__post_init__``; invalid values
raise ``ValueError`` before any work starts. ``from_env()`` builds defaults
from ``TI_*`` environment variables (loaded by the CLI via ``python-dotenv``)
and applies keyword overrides on top.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal
from typing import Any, Self

from .models import Interval

# ---- Env helpers ---------------------------------------------------------------


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as e:
        raise ValueError(f"Invalid input: {name} must be an integer, got {raw!r}") from e


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as e:
        raise ValueError(f"Invalid input: {name} must be a number, got {raw!r}") from e


def env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    return raw.strip() if raw and raw.strip() else default


def _check_unit(name: str, value: float) -> None:
    if not (0.0 <= value <= 1.0):
        raise ValueError(f"Invalid input: {name} must be within [0,1], got {value!r}")


def _check_positive(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"Invalid input: {name} must be a positive integer, got {value!r}")


def _with_overrides[T](base: T, overrides: dict[str, Any]) -> T:
    known = {f.name for f in fields(base)}  # type: ignore[arg-type]
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise TypeError(f"Unknown option(s): {', '.join(unknown)}")
    return replace(base, **overrides)  # type: ignore[type-var]


# ---- Categorization ------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CategorizationOptions:
    """Options for :func:`transaction_intelligence.orchestrator.run_categorization`.

    Attributes
    ----------
    max_iterations:
        Cap on full cascade passes; the loop also stops once a pass resolves
        nothing new.
    batch_size:
        Number of transactions per atomic write for local strategies.
    classifier_batch_size:
        Max transactions per external-classifier call.
    min_confidence:
        Classifier results below this are treated as unresolved.
    skip_categorized:
        When ``False``, transactions with a real category are re-checked too.
        Manual categories are never re-checked.
    learn_keywords:
        Add cleaned merchant names from confident classifier results to the
        chosen category's keyword list.
    """

    max_iterations: int = 10
    batch_size: int = 50
    classifier_batch_size: int = 10
    min_confidence: float = 0.5
    skip_categorized: bool = True
    learn_keywords: bool = False
    learn_keyword_confidence: float = 0.9
    embedding_threshold: float = 0.55
    use_classifier: bool = True
    use_embeddings: bool = True

    def __post_init__(self) -> None:
        _check_positive("max_iterations", self.max_iterations)
        _check_positive("batch_size", self.batch_size)
        _check_positive("classifier_batch_size", self.classifier_batch_size)
        _check_unit("min_confidence", self.min_confidence)
        _check_unit("learn_keyword_confidence", self.learn_keyword_confidence)
        _check_unit("embedding_threshold", self.embedding_threshold)

    @classmethod
    def from_env(cls, **overrides: Any) -> Self:
        base = cls(
            max_iterations=env_int("TI_MAX_ITERATIONS", 10),
            classifier_batch_size=env_int("TI_CLASSIFIER_BATCH_SIZE", 10),
            min_confidence=env_float("TI_MIN_CONFIDENCE", 0.5),
        )
        return _with_overrides(base, overrides)


@dataclass(frozen=True, slots=True)
class ReviewOptions:
    """Options for :func:`transaction_intelligence.review.review_low_confidence`.

    Non-manual transactions with ``min_confidence <= confidence <
    max_confidence`` are sent back to the classifier, lowest confidence
    first, at most ``max_transactions`` per run. A new category is written
    only when it differs from the current one and scores at least
    ``min_new_confidence``.
    """

    min_confidence: float = 0.50
    max_confidence: float = 0.65
    min_new_confidence: float = 0.75
    batch_size: int = 10
    max_transactions: int = 100

    def __post_init__(self) -> None:
        _check_unit("min_confidence", self.min_confidence)
        _check_unit("max_confidence", self.max_confidence)
        _check_unit("min_new_confidence", self.min_new_confidence)
        _check_positive("batch_size", self.batch_size)
        _check_positive("max_transactions", self.max_transactions)
        if self.min_confidence >= self.max_confidence:
            raise ValueError(
                "Invalid input: min_confidence must be below max_confidence, got "
                f"{self.min_confidence!r} >= {self.max_confidence!r}"
            )

    @classmethod
    def from_env(cls, **overrides: Any) -> Self:
        base = cls(
            min_confidence=env_float("TI_REVIEW_MIN_CONFIDENCE", 0.50),
            max_confidence=env_float("TI_REVIEW_MAX_CONFIDENCE", 0.65),
            min_new_confidence=env_float("TI_REVIEW_MIN_NEW_CONFIDENCE", 0.75),
            max_transactions=env_int("TI_REVIEW_MAX_TRANSACTIONS", 100),
        )
        return _with_overrides(base, overrides)


# ---- Recurring detection ---------------------------------------------------------

_DEFAULT_INTERVAL_DAYS: dict[Interval, int] = {
    "weekly": 7,
    "4-weekly": 28,
    "monthly": 30,
    "quarterly": 91,
    "yearly": 365,
}

# Days since the last occurrence after which a pattern is considered ended.
_DEFAULT_STALE_AFTER_DAYS: dict[Interval, int] = {
    "weekly": 20,
    "4-weekly": 60,
    "monthly": 70,
    "quarterly": 190,
    "yearly": 740,
}


@dataclass(frozen=True, slots=True)
class RecurringConfig:
    """Tolerance bands and thresholds for recurring detection.

    Amounts join a band when within the looser of ``amount_tolerance_pct`` and
    ``amount_tolerance_abs`` of the band's running mean. A gap matches an
    interval when within the larger of ``interval_tolerance_pct`` of the
    nominal length and ``interval_tolerance_days``.
    """

    amount_tolerance_pct: float = 0.05
    amount_tolerance_abs: Decimal = Decimal("1.00")
    interval_tolerance_pct: float = 0.15
    interval_tolerance_days: int = 3
    min_occurrences: int = 2
    min_confidence: float = 0.3
    max_amount_variance: float = 0.20
    min_average_amount: Decimal = Decimal("10.00")
    income_min_amount: Decimal = Decimal("1000.00")
    known_recurring_boost: float = 0.1
    interval_days: dict[Interval, int] = field(
        default_factory=lambda: dict(_DEFAULT_INTERVAL_DAYS)
    )
    stale_after_days: dict[Interval, int] = field(
        default_factory=lambda: dict(_DEFAULT_STALE_AFTER_DAYS)
    )

    def __post_init__(self) -> None:
        _check_unit("amount_tolerance_pct", self.amount_tolerance_pct)
        _check_unit("interval_tolerance_pct", self.interval_tolerance_pct)
        _check_unit("min_confidence", self.min_confidence)
        _check_unit("max_amount_variance", self.max_amount_variance)
        if self.amount_tolerance_abs < 0:
            raise ValueError("Invalid input: amount_tolerance_abs must be >= 0")
        if self.interval_tolerance_days < 0:
            raise ValueError("Invalid input: interval_tolerance_days must be >= 0")
        if self.min_occurrences < 2:
            raise ValueError("Invalid input: min_occurrences must be at least 2")

    @classmethod
    def from_env(cls, **overrides: Any) -> Self:
        base = cls(
            amount_tolerance_pct=env_float("TI_RECURRING_AMOUNT_TOLERANCE_PCT", 0.05),
            interval_tolerance_pct=env_float("TI_RECURRING_INTERVAL_TOLERANCE_PCT", 0.15),
            interval_tolerance_days=env_int("TI_RECURRING_INTERVAL_TOLERANCE_DAYS", 3),
            min_occurrences=env_int("TI_RECURRING_MIN_OCCURRENCES", 2),
        )
        return _with_overrides(base, overrides)


# ---- Variable spending -------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class VariableSpendingConfig:
    """Qualification thresholds for habitual spending clusters."""

    lookback_days: int = 365
    recency_days: int = 90
    min_transactions: int = 3
    top_n: int = 5
    variable_categories_only: bool = True
    group_by_merchant: bool = False

    def __post_init__(self) -> None:
        _check_positive("lookback_days", self.lookback_days)
        _check_positive("recency_days", self.recency_days)
        _check_positive("min_transactions", self.min_transactions)
        _check_positive("top_n", self.top_n)

    @classmethod
    def from_env(cls, **overrides: Any) -> Self:
        base = cls(
            lookback_days=env_int("TI_VARIABLE_LOOKBACK_DAYS", 365),
            recency_days=env_int("TI_VARIABLE_RECENCY_DAYS", 90),
            min_transactions=env_int("TI_VARIABLE_MIN_TRANSACTIONS", 3),
        )
        return _with_overrides(base, overrides)


__all__ = [
    "CategorizationOptions",
    "RecurringConfig",
    "ReviewOptions",
    "VariableSpendingConfig",
    "env_float",
    "env_int",
    "env_str",
]
