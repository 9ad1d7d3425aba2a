"""Public interface for the ``transaction_intelligence`` package.

This module exposes the package's API functions and public models/types as the
stable import surface. There is no runtime logic here, only symbol re-exports.
"""

from .api import (
    DEFAULT_PROGRESS_STORE,
    auto_merge_duplicates,
    confirm_recurring_candidate,
    detect_recurring,
    detect_variable_spending,
    find_merge_candidates,
    get_progress,
    identify_internal_transfers,
    mark_merchant_not_recurring,
    merge_merchants,
    refine_context,
    request_cancellation,
    review_low_confidence,
    run_categorization,
    save_variable_spending_patterns,
    seed_categories,
)
from .config import (
    CategorizationOptions,
    RecurringConfig,
    ReviewOptions,
    VariableSpendingConfig,
)
from .models import (
    CategorizationSummary,
    CategoryView,
    ClassifierResult,
    MergeCandidate,
    MergeResult,
    MerchantView,
    ProgressPayload,
    RecurringCandidate,
    RefinementChange,
    RefinementResult,
    ReviewChange,
    ReviewResult,
    StrategyMatch,
    TransactionView,
    VariableSpendingResult,
)
from .progress import InMemoryProgressStore, ProgressStore
from .refinement import DEFAULT_RULES, RefinementRule

__all__ = [
    # API
    "auto_merge_duplicates",
    "confirm_recurring_candidate",
    "detect_recurring",
    "detect_variable_spending",
    "find_merge_candidates",
    "get_progress",
    "identify_internal_transfers",
    "mark_merchant_not_recurring",
    "merge_merchants",
    "refine_context",
    "request_cancellation",
    "review_low_confidence",
    "run_categorization",
    "save_variable_spending_patterns",
    "seed_categories",
    # Options
    "CategorizationOptions",
    "DEFAULT_RULES",
    "RecurringConfig",
    "RefinementRule",
    "ReviewOptions",
    "VariableSpendingConfig",
    # Progress
    "DEFAULT_PROGRESS_STORE",
    "InMemoryProgressStore",
    "ProgressStore",
    # Models / types
    "CategorizationSummary",
    "CategoryView",
    "ClassifierResult",
    "MergeCandidate",
    "MergeResult",
    "MerchantView",
    "ProgressPayload",
    "RecurringCandidate",
    "RefinementChange",
    "RefinementResult",
    "ReviewChange",
    "ReviewResult",
    "StrategyMatch",
    "TransactionView",
    "VariableSpendingResult",
]
