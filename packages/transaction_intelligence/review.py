"""Second classifier opinion for low-confidence categorizations.

Transactions that some strategy categorized with middling confidence (by
default 0.50 to 0.65) are sent back to the classifier in batches. A result
is written only when it names a different category and clears
``min_new_confidence``; everything else counts as unchanged. A failed
classifier call is logged, counted under ``errors`` and the next batch runs.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Sequence
from dataclasses import replace

from db.client import session_scope

from .classifier import Classifier
from .config import ReviewOptions
from .logging_setup import get_logger
from .models import ReviewChange, ReviewResult, StrategyMatch, TransactionView
from .repository import apply_assignments, load_categories, load_transactions, require_user_id
from .strategies import ClassifierStrategy

_logger = get_logger("transaction_intelligence.review")


def select_low_confidence(
    transactions: Iterable[TransactionView], options: ReviewOptions
) -> list[TransactionView]:
    """Non-manual rows inside the confidence band, lowest confidence first."""

    band = [
        t
        for t in transactions
        if not t.is_manual
        and t.category_confidence is not None
        and options.min_confidence <= t.category_confidence < options.max_confidence
    ]
    band.sort(key=lambda t: (t.category_confidence, t.id))
    return band[: options.max_transactions]


def review_low_confidence(
    user_id: str,
    options: ReviewOptions | None = None,
    *,
    classifier: Classifier | None,
    database_url: str | None = None,
    own_ibans: Iterable[str] = (),
) -> ReviewResult:
    """Re-classify ``user_id``'s low-confidence transactions.

    Without a classifier nothing is selected and the result carries a
    warning. Each improved batch is written in its own session; rows that
    turned manual since loading are left alone and not reported.
    """

    user_id = require_user_id(user_id)
    opts = options or ReviewOptions()
    result = ReviewResult()
    if classifier is None:
        result.warnings.append("classifier unavailable; review skipped")
        _logger.warning("review_low_confidence:skipped user_id=%s reason=no_classifier", user_id)
        return result

    t0 = time.perf_counter()
    with session_scope(database_url=database_url) as session:
        categories = load_categories(session, user_id)
        candidates = select_low_confidence(load_transactions(session, user_id), opts)
    result.total_candidates = len(candidates)
    names = {c.id: c.name for c in categories}
    strategy = ClassifierStrategy(
        classifier,
        categories,
        min_confidence=opts.min_new_confidence,
        own_ibans=own_ibans,
    )
    size = min(opts.batch_size, max(1, int(classifier.max_batch_size)))
    batches: list[Sequence[TransactionView]] = [
        candidates[i : i + size] for i in range(0, len(candidates), size)
    ]
    _logger.info(
        "review_low_confidence:start user_id=%s candidates=%d batches=%d",
        user_id,
        len(candidates),
        len(batches),
    )

    for batch_index, batch in enumerate(batches):
        try:
            strategy.prime(batch)
        except Exception as e:  # noqa: BLE001
            _logger.error(
                "review_low_confidence:batch_failed batch_index=%d size=%d error=%s",
                batch_index,
                len(batch),
                e.__class__.__name__,
            )
            result.errors += len(batch)
            continue

        result.processed += len(batch)
        improved: dict[int, tuple[TransactionView, StrategyMatch]] = {}
        for txn in batch:
            match = strategy.attempt(txn)
            if match is None or match.category_id == txn.category_id:
                result.unchanged += 1
                continue
            improved[txn.id] = (txn, replace(match, merchant_name_clean=None))

        if not improved:
            continue
        with session_scope(database_url=database_url) as session:
            written = set(apply_assignments(session, [m for _, m in improved.values()]))
        for tid, (txn, match) in improved.items():
            if tid not in written:
                result.unchanged += 1
                continue
            result.improved += 1
            result.changes.append(
                ReviewChange(
                    transaction_id=tid,
                    merchant_name=txn.merchant_label,
                    amount=txn.amount,
                    from_category=names.get(txn.category_id) if txn.category_id else None,
                    to_category=names[match.category_id],
                    old_confidence=txn.category_confidence,
                    new_confidence=match.confidence,
                )
            )

    _logger.info(
        "review_low_confidence:done user_id=%s candidates=%d processed=%d improved=%d "
        "unchanged=%d errors=%d latency_ms=%.2f",
        user_id,
        result.total_candidates,
        result.processed,
        result.improved,
        result.unchanged,
        result.errors,
        (time.perf_counter() - t0) * 1000.0,
    )
    return result


__all__ = ["review_low_confidence", "select_low_confidence"]
