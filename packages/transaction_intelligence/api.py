"""Public API surface for the ``transaction_intelligence`` package.

This module is the stable import surface for callers (web handlers, the CLI,
scheduled jobs). Implementations live in the feature modules and are
re-exported here; the wrappers below only fill in process-wide defaults:

- a shared :class:`InMemoryProgressStore` used when no store is injected, so
  a handler on another thread can poll progress or request cancellation;
- the OpenAI classifier and embedder, built from ``OPENAI_API_KEY`` when the
  caller does not pass collaborators explicitly.

Every DB-backed operation takes a keyword-only ``database_url`` and falls
back to ``$DATABASE_URL``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import date

from .categories import seed_categories
from .classifier import Classifier, build_default_classifier
from .config import (
    CategorizationOptions,
    RecurringConfig,
    ReviewOptions,
    VariableSpendingConfig,
)
from .embeddings import Embedder, build_default_embedder
from .merger import auto_merge_duplicates, find_merge_candidates, merge_merchants
from .models import (
    CategorizationSummary,
    ProgressPayload,
    RecurringCandidate,
    RefinementResult,
    ReviewResult,
    VariableSpendingResult,
)
from .orchestrator import run_categorization as _run_categorization
from .progress import InMemoryProgressStore, ProgressStore
from .recurring import confirm_recurring_candidate, mark_merchant_not_recurring
from .recurring import detect_recurring as _detect_recurring
from .refinement import RefinementRule
from .refinement import refine_context as _refine_context
from .repository import require_user_id
from .review import review_low_confidence as _review_low_confidence
from .transfers import identify_internal_transfers
from .variable_spending import detect_variable_spending as _detect_variable_spending
from .variable_spending import save_variable_spending_patterns

DEFAULT_PROGRESS_STORE: ProgressStore = InMemoryProgressStore()


def _store(progress_store: ProgressStore | None) -> ProgressStore:
    # An empty in-memory store is falsy, so test identity rather than truth.
    return DEFAULT_PROGRESS_STORE if progress_store is None else progress_store


# ---- Categorization -------------------------------------------------------------


def run_categorization(
    user_id: str,
    options: CategorizationOptions | None = None,
    *,
    database_url: str | None = None,
    progress_store: ProgressStore | None = None,
    classifier: Classifier | None = None,
    embedder: Embedder | None = None,
    on_progress: Callable[[ProgressPayload], None] | None = None,
    own_ibans: Iterable[str] = (),
) -> CategorizationSummary:
    """Run the categorization cascade for ``user_id``.

    Options default to :meth:`CategorizationOptions.from_env`. Collaborators
    not passed in are built from the environment when the matching
    ``use_*`` option is on; without ``OPENAI_API_KEY`` they stay unset and
    the run records a warning instead of failing.
    """

    opts = options or CategorizationOptions.from_env()
    if classifier is None and opts.use_classifier:
        classifier = build_default_classifier(max_batch_size=opts.classifier_batch_size)
    if embedder is None and opts.use_embeddings:
        embedder = build_default_embedder()
    return _run_categorization(
        user_id,
        opts,
        progress_store=_store(progress_store),
        database_url=database_url,
        classifier=classifier,
        embedder=embedder,
        on_progress=on_progress,
        own_ibans=own_ibans,
    )


def refine_context(
    user_id: str,
    *,
    dry_run: bool = False,
    rules: Sequence[RefinementRule] | None = None,
    database_url: str | None = None,
    progress_store: ProgressStore | None = None,
    on_progress: Callable[[ProgressPayload], None] | None = None,
) -> RefinementResult:
    """Apply (or with ``dry_run`` only list) context-based re-categorizations."""

    return _refine_context(
        user_id,
        progress_store=_store(progress_store),
        dry_run=dry_run,
        rules=rules,
        database_url=database_url,
        on_progress=on_progress,
    )


def review_low_confidence(
    user_id: str,
    options: ReviewOptions | None = None,
    *,
    database_url: str | None = None,
    classifier: Classifier | None = None,
    own_ibans: Iterable[str] = (),
) -> ReviewResult:
    """Ask the classifier again about low-confidence categorizations.

    Options default to :meth:`ReviewOptions.from_env`. Without a classifier,
    passed in or built from ``OPENAI_API_KEY``, the result only carries a
    warning.
    """

    opts = options or ReviewOptions.from_env()
    if classifier is None:
        classifier = build_default_classifier(max_batch_size=opts.batch_size)
    return _review_low_confidence(
        user_id,
        opts,
        classifier=classifier,
        database_url=database_url,
        own_ibans=own_ibans,
    )


def request_cancellation(user_id: str, *, progress_store: ProgressStore | None = None) -> None:
    """Ask a running categorization or refinement for ``user_id`` to stop.

    The run notices at its next batch boundary and returns ``stopped``. A
    request made before the run starts stops it before its first batch.
    Every run clears the flag when it returns, so a request never carries
    over to the following run.
    """

    store = _store(progress_store)
    store.set_cancellation(require_user_id(user_id), True)


def get_progress(
    user_id: str, *, progress_store: ProgressStore | None = None
) -> ProgressPayload | None:
    store = _store(progress_store)
    return store.get_progress(require_user_id(user_id))


# ---- Pattern detection ----------------------------------------------------------


def detect_recurring(
    user_id: str,
    config: RecurringConfig | None = None,
    *,
    database_url: str | None = None,
    as_of: date | None = None,
) -> list[RecurringCandidate]:
    """Recurring-obligation candidates for ``user_id``, most confident first."""

    return _detect_recurring(
        user_id,
        config or RecurringConfig.from_env(),
        database_url=database_url,
        as_of=as_of,
    )


def detect_variable_spending(
    user_id: str,
    config: VariableSpendingConfig | None = None,
    *,
    database_url: str | None = None,
    as_of: date | None = None,
) -> list[VariableSpendingResult]:
    """Habitual variable spending per category, highest monthly average first."""

    return _detect_variable_spending(
        user_id,
        config or VariableSpendingConfig.from_env(),
        database_url=database_url,
        as_of=as_of,
    )


__all__ = [
    "DEFAULT_PROGRESS_STORE",
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
]
