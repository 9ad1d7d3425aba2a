"""Iterative multi-strategy categorization.

Public API:
    - :func:`run_categorization`

Concurrency contract: callers must not run two categorizations for the same
user at the same time; mutual exclusion (e.g. a per-user lock) belongs to the
caller. Inside a run there is no parallelism. Writes are committed one batch
per ``session_scope``, so a cancellation between batches never leaves a batch
half-applied and completed batches stay committed.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace

from db.client import session_scope

from .classifier import Classifier
from .config import CategorizationOptions
from .embeddings import Embedder
from .logging_setup import get_logger
from .merchants import clean_merchant_name, find_or_create_merchant
from .models import (
    CategorizationSummary,
    CategoryView,
    ProgressPayload,
    StrategyMatch,
    TransactionView,
)
from .progress import ProgressStore
from .repository import (
    add_category_keywords,
    apply_assignments,
    is_uncategorized_name,
    load_categories,
    load_merchants,
    load_transactions,
    require_user_id,
)
from .strategies import (
    AccountStrategy,
    BatchStrategy,
    ClassifierStrategy,
    EmbeddingStrategy,
    KeywordStrategy,
    MerchantNameIndex,
    MerchantNameStrategy,
    Strategy,
)

_LEARN_MIN_LEN: int = 3

_logger = get_logger("transaction_intelligence.orchestrator")


def _chunks[T](items: Sequence[T], size: int) -> list[Sequence[T]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class _Run:
    """Mutable state of one categorization run."""

    def __init__(
        self,
        user_id: str,
        opts: CategorizationOptions,
        *,
        database_url: str | None,
        progress_store: ProgressStore,
        on_progress: Callable[[ProgressPayload], None] | None,
    ) -> None:
        self.user_id = user_id
        self.opts = opts
        self.database_url = database_url
        self.progress_store = progress_store
        self.on_progress = on_progress
        self.summary = CategorizationSummary(user_id=user_id)
        self.pending: dict[int, TransactionView] = {}
        self.resolved: set[int] = set()
        self.examined: set[int] = set()
        self.attempted: dict[str, set[int]] = defaultdict(set)
        self.batch_failures: dict[int, str] = {}
        self.categories: dict[int, CategoryView] = {}
        self.known_keywords: set[str] = set()
        self.index = MerchantNameIndex()
        self.iteration = 0

    # ---- Progress ----------------------------------------------------------------

    def cancelled(self) -> bool:
        return self.progress_store.is_cancelled(self.user_id)

    def report(
        self,
        phase: str,
        message: str,
        *,
        batch_index: int | None = None,
        total_batches: int | None = None,
    ) -> None:
        payload = ProgressPayload(
            phase=phase,
            iteration=self.iteration,
            processed=len(self.examined),
            total=self.summary.total,
            message=message,
            resolved=len(self.resolved),
            counts=dict(self.summary.matches),
            batch_index=batch_index,
            total_batches=total_batches,
        )
        self.progress_store.set_progress(self.user_id, payload)
        if self.on_progress is not None:
            self.on_progress(payload)

    # ---- Writes ----------------------------------------------------------------------

    def apply(self, strategy: Strategy, matches: Sequence[StrategyMatch]) -> int:
        """Persist ``matches`` atomically and fold them into run state."""

        if not matches:
            return 0
        learn = self.opts.learn_keywords and isinstance(strategy, ClassifierStrategy)
        final: list[StrategyMatch] = []
        with session_scope(database_url=self.database_url) as session:
            to_write: list[StrategyMatch] = []
            for m in matches:
                txn = self.pending[m.transaction_id]
                if m.merchant_name_clean:
                    merchant_id = find_or_create_merchant(
                        session, m.merchant_name_clean, iban=txn.counterparty_iban
                    )
                    m = replace(m, merchant_id=merchant_id)
                final.append(m)
                if txn.category_id != m.category_id or m.merchant_name_clean:
                    to_write.append(m)
            written = set(apply_assignments(session, to_write))
            if learn:
                self._learn_keywords(session, [m for m in to_write if m.transaction_id in written])

        applied = 0
        not_written = {m.transaction_id for m in final if m.transaction_id not in written}
        for m in final:
            txn = self.pending[m.transaction_id]
            wanted_write = txn.category_id != m.category_id or bool(m.merchant_name_clean)
            if wanted_write and m.transaction_id in not_written:
                # Row turned manual or vanished since it was loaded.
                _logger.debug(
                    "run_categorization:skip_locked transaction_id=%d", m.transaction_id
                )
                continue
            changed = txn.category_id != m.category_id
            updated = replace(
                txn,
                category_id=m.category_id,
                category_confidence=m.confidence,
                category_source=m.source,
                merchant_name_clean=m.merchant_name_clean or txn.merchant_name_clean,
                merchant_id=m.merchant_id if m.merchant_id is not None else txn.merchant_id,
            )
            self.pending[m.transaction_id] = updated
            self.resolved.add(m.transaction_id)
            self.batch_failures.pop(m.transaction_id, None)
            self.index.observe(updated.merchant_name_clean, m.category_id)
            self.summary.matches[strategy.name] = self.summary.matches.get(strategy.name, 0) + 1
            self.summary.match_reasons[m.transaction_id] = m.reason
            if changed:
                self.summary.changed_transaction_ids.append(m.transaction_id)
            applied += 1
        return applied

    def _learn_keywords(self, session, matches: Iterable[StrategyMatch]) -> None:
        for m in matches:
            if m.confidence < self.opts.learn_keyword_confidence or not m.merchant_name_clean:
                continue
            kw = m.merchant_name_clean.strip().lower()
            if len(kw) < _LEARN_MIN_LEN or kw in self.known_keywords:
                continue
            added = add_category_keywords(session, m.category_id, [kw])
            if added:
                self.known_keywords.update(added)
                name = self.categories[m.category_id].name
                self.summary.learned_keywords.setdefault(name, []).extend(added)
                _logger.info(
                    "run_categorization:keyword_learned category=%s keyword=%s", name, kw
                )

    # ---- Cascade -------------------------------------------------------------------------

    def run_strategy(self, strategy: Strategy, batch_size: int) -> bool:
        """Run one strategy over unresolved transactions; return False if cancelled."""

        is_batch = isinstance(strategy, BatchStrategy)
        seen = self.attempted[strategy.name]
        remaining = [
            t
            for tid, t in self.pending.items()
            if tid not in self.resolved and not (is_batch and tid in seen)
        ]
        if not remaining:
            return True
        batches = _chunks(remaining, batch_size)
        for batch_index, batch in enumerate(batches):
            if self.cancelled():
                return False
            self.examined.update(t.id for t in batch)
            if is_batch:
                seen.update(t.id for t in batch)
                try:
                    strategy.prime(batch)
                except Exception as e:  # noqa: BLE001
                    _logger.error(
                        "run_categorization:batch_failed strategy=%s batch_index=%d size=%d "
                        "error=%s",
                        strategy.name,
                        batch_index,
                        len(batch),
                        e.__class__.__name__,
                    )
                    self.summary.errors.append(f"{strategy.name} batch {batch_index}: {e}")
                    reason = "classifier_error" if strategy.name == "classifier" else "no_match"
                    for t in batch:
                        self.batch_failures[t.id] = reason
                    self.report(
                        strategy.name,
                        f"Iteration {self.iteration}: {strategy.name} batch "
                        f"{batch_index + 1}/{len(batches)} failed",
                        batch_index=batch_index,
                        total_batches=len(batches),
                    )
                    continue
            matches: list[StrategyMatch] = []
            for txn in batch:
                try:
                    match = strategy.attempt(txn)
                except Exception as e:  # noqa: BLE001
                    _logger.warning(
                        "run_categorization:item_failed strategy=%s transaction_id=%d error=%s",
                        strategy.name,
                        txn.id,
                        e.__class__.__name__,
                    )
                    continue
                if match is not None:
                    matches.append(match)
            applied = self.apply(strategy, matches)
            _logger.info(
                "run_categorization:batch_done strategy=%s iteration=%d batch_index=%d "
                "size=%d matched=%d",
                strategy.name,
                self.iteration,
                batch_index,
                len(batch),
                applied,
            )
            self.report(
                strategy.name,
                f"Iteration {self.iteration}: {strategy.name} batch "
                f"{batch_index + 1}/{len(batches)} ({applied} matched)",
                batch_index=batch_index,
                total_batches=len(batches),
            )
        return True


def _build_cascade(
    run: _Run,
    categories: Sequence[CategoryView],
    merchants,
    *,
    classifier: Classifier | None,
    embedder: Embedder | None,
    own_ibans: Iterable[str],
) -> tuple[list[Strategy], ClassifierStrategy | None]:
    opts = run.opts
    cascade: list[Strategy] = [
        KeywordStrategy(categories),
        AccountStrategy(merchants),
        MerchantNameStrategy(run.index, name="merchant_name"),
        MerchantNameStrategy(run.index, name="merchant_name_rerun"),
    ]
    classifier_strategy: ClassifierStrategy | None = None
    if opts.use_classifier:
        if classifier is None:
            run.summary.warnings.append("classifier unavailable; strategy skipped")
            _logger.warning("run_categorization:strategy_skipped strategy=classifier")
        else:
            classifier_strategy = ClassifierStrategy(
                classifier,
                categories,
                min_confidence=opts.min_confidence,
                own_ibans=own_ibans,
            )
            cascade.append(classifier_strategy)
    if opts.use_embeddings:
        if embedder is None:
            run.summary.warnings.append("embedder unavailable; strategy skipped")
            _logger.warning("run_categorization:strategy_skipped strategy=embedding")
        else:
            cascade.append(
                EmbeddingStrategy(embedder, categories, threshold=opts.embedding_threshold)
            )
    return cascade, classifier_strategy


def run_categorization(
    user_id: str,
    options: CategorizationOptions | None = None,
    *,
    progress_store: ProgressStore,
    database_url: str | None = None,
    classifier: Classifier | None = None,
    embedder: Embedder | None = None,
    on_progress: Callable[[ProgressPayload], None] | None = None,
    own_ibans: Iterable[str] = (),
) -> CategorizationSummary:
    """Categorize a user's transactions through the strategy cascade.

    Parameters
    ----------
    user_id:
        Owner of the transactions; must be a non-empty string.
    options:
        Run options; defaults to :class:`CategorizationOptions` defaults.
    progress_store:
        Receives a snapshot after every batch and is polled for cancellation
        between batches. A flag set before the run starts stops it before
        the first batch; the flag is cleared when the run returns.
    classifier, embedder:
        Optional collaborators. When absent the matching strategy is skipped
        and a warning is recorded in the summary.
    on_progress:
        Optional callback receiving the same payloads as the store.
    own_ibans:
        The user's own account numbers; transfers to them are never sent to
        the classifier.

    Returns
    -------
    CategorizationSummary
        Always returned; ``status`` is ``"stopped"`` after a cancellation.
        Manual-category transactions never appear in
        ``changed_transaction_ids``.
    """

    user_id = require_user_id(user_id)
    opts = options or CategorizationOptions()
    try:
        return _categorize(
            user_id,
            opts,
            progress_store=progress_store,
            database_url=database_url,
            classifier=classifier,
            embedder=embedder,
            on_progress=on_progress,
            own_ibans=own_ibans,
        )
    finally:
        # Honoured or not, a request never outlives the run it was aimed at.
        progress_store.set_cancellation(user_id, False)


def _categorize(
    user_id: str,
    opts: CategorizationOptions,
    *,
    progress_store: ProgressStore,
    database_url: str | None,
    classifier: Classifier | None,
    embedder: Embedder | None,
    on_progress: Callable[[ProgressPayload], None] | None,
    own_ibans: Iterable[str],
) -> CategorizationSummary:
    t0 = time.perf_counter()
    run = _Run(
        user_id,
        opts,
        database_url=database_url,
        progress_store=progress_store,
        on_progress=on_progress,
    )
    summary = run.summary

    with session_scope(database_url=database_url) as session:
        categories = load_categories(session, user_id)
        merchants = load_merchants(session)
        transactions = load_transactions(session, user_id)

    run.categories = {c.id: c for c in categories}
    run.known_keywords = {kw.strip().lower() for c in categories for kw in c.keywords}
    placeholder_ids = {c.id for c in categories if is_uncategorized_name(c.name)}

    for txn in transactions:
        if txn.is_manual:
            summary.skipped_manual += 1
            continue
        has_category = txn.category_id is not None and txn.category_id not in placeholder_ids
        if opts.skip_categorized and has_category:
            continue
        if not txn.merchant_name_clean:
            cleaned = clean_merchant_name(txn.merchant_raw or txn.description)
            if cleaned:
                txn = replace(txn, merchant_name_clean=cleaned)
        run.pending[txn.id] = txn
    summary.total = len(run.pending)
    run.index = MerchantNameIndex.from_transactions(
        (t for t in transactions if t.id not in run.pending),
        excluded_category_ids=placeholder_ids,
    )

    cascade, classifier_strategy = _build_cascade(
        run,
        categories,
        merchants,
        classifier=classifier,
        embedder=embedder,
        own_ibans=own_ibans,
    )
    summary.matches = {s.name: 0 for s in cascade}
    classifier_batch = opts.classifier_batch_size
    if classifier is not None:
        classifier_batch = min(classifier_batch, max(1, int(classifier.max_batch_size)))

    _logger.info(
        "run_categorization:start user_id=%s pending=%d skipped_manual=%d strategies=%s",
        user_id,
        summary.total,
        summary.skipped_manual,
        ",".join(s.name for s in cascade),
    )

    stopped = False
    for iteration in range(1, opts.max_iterations + 1):
        if not run.pending.keys() - run.resolved:
            break
        if run.cancelled():
            stopped = True
            break
        run.iteration = iteration
        summary.iterations = iteration
        before = len(run.resolved)
        for strategy in cascade:
            size = classifier_batch if strategy is classifier_strategy else opts.batch_size
            if not run.run_strategy(strategy, size):
                stopped = True
                break
        if stopped:
            break
        newly = len(run.resolved) - before
        run.report("iteration", f"Iteration {iteration} resolved {newly} transactions")
        if newly == 0:
            break

    # ---- Summary -------------------------------------------------------------------------
    summary.status = "stopped" if stopped else "completed"
    summary.processed = len(run.examined)
    summary.categorized = len(run.resolved)
    classifier_missing = opts.use_classifier and classifier is None
    for tid in run.pending:
        if tid in run.resolved:
            continue
        if tid in run.batch_failures:
            reason = run.batch_failures[tid]
        elif stopped:
            reason = "cancelled"
        elif classifier_strategy is not None and tid in classifier_strategy.rejections:
            reason = classifier_strategy.rejections[tid]
        elif classifier_missing:
            reason = "classifier_unavailable"
        else:
            reason = "no_match"
        summary.failures[tid] = reason

    message = (
        f"Stopped early: {summary.categorized} of {summary.total} categorized"
        if stopped
        else f"Completed: {summary.categorized} of {summary.total} categorized"
    )
    run.report("done", message)
    _logger.info(
        "run_categorization:done user_id=%s status=%s iterations=%d categorized=%d "
        "changed=%d unresolved=%d latency_ms=%.2f",
        user_id,
        summary.status,
        summary.iterations,
        summary.categorized,
        len(summary.changed_transaction_ids),
        len(summary.failures),
        (time.perf_counter() - t0) * 1000.0,
    )
    return summary


__all__ = ["run_categorization"]
