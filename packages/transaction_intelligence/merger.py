"""Near-duplicate merchant detection and merging.

Public API:
    - :func:`similarity`: normalized Levenshtein similarity of merchant keys
    - :func:`score_name`: display-name quality score used to pick a target
    - :func:`pair_candidates`: pure candidate search over merchant views
    - :func:`find_merge_candidates`, :func:`merge_merchants`,
      :func:`auto_merge_duplicates`: storage-backed operations

Merging re-points transactions and recurring patterns to the target, unions
account numbers and keywords, and deactivates the source. Each pair runs in
its own session, so a failure never leaves a pair half-merged.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select, update

from db.client import session_scope
from db.models.finance import TiMerchant, TiRecurringPattern, TiTransaction

from .logging_setup import get_logger
from .merchants import merchant_key, normalize_iban
from .models import MergeCandidate, MergeResult, MerchantView
from .repository import load_merchants

_DEFAULT_THRESHOLD: float = 0.75

_STORE_SUFFIXES: tuple[str, ...] = (
    "xl",
    "xtra",
    "express",
    "to go",
    "togo",
    "city",
    "compact",
    "mini",
    "super",
    "mega",
    "plus",
    "extra",
    "local",
)

_logger = get_logger("transaction_intelligence.merger")

type PairLike = MergeCandidate | tuple[int, int]


def _check_threshold(threshold: float) -> float:
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        raise ValueError(f"Invalid input: threshold must be a number, got {threshold!r}")
    if not (0.0 <= threshold <= 1.0):
        raise ValueError(f"Invalid input: threshold must be within [0,1], got {threshold!r}")
    return float(threshold)


# ---- Scoring ------------------------------------------------------------------------


def similarity(a: str | None, b: str | None) -> float:
    """Normalized Levenshtein similarity in [0, 1] on cleaned merchant keys."""

    ka, kb = merchant_key(a), merchant_key(b)
    if not ka or not kb:
        return 0.0
    return float(Levenshtein.normalized_similarity(ka, kb))


def _is_title_case(name: str) -> bool:
    for word in name.split():
        if len(word) <= 4 and word == word.upper():
            continue
        if word[0] != word[0].upper() or word[1:] == word[1:].upper():
            return False
    return True


def _has_store_suffix(name: str) -> bool:
    lower = name.lower()
    return any(lower.endswith(f" {s}") or lower.endswith(f"-{s}") for s in _STORE_SUFFIXES)


def score_name(name: str, transaction_count: int = 0) -> int:
    """Higher is a better display name.

    Length and usage count add; Title Case adds 10; a shouting ALL CAPS name
    longer than four characters loses 5; a name without a store suffix
    ("XL", "To Go", ...) gains 5.
    """

    score = len(name) + 2 * transaction_count
    if _is_title_case(name):
        score += 10
    if len(name) > 4 and name == name.upper():
        score -= 5
    if not _has_store_suffix(name):
        score += 5
    return score


# ---- Candidates -------------------------------------------------------------------------


def pair_candidates(
    merchants: Sequence[MerchantView],
    threshold: float = _DEFAULT_THRESHOLD,
) -> list[MergeCandidate]:
    """All active pairs at or above ``threshold``, most similar first."""

    threshold = _check_threshold(threshold)
    active = sorted((m for m in merchants if m.is_active), key=lambda m: m.id)
    keys = [merchant_key(m.name) for m in active]
    out: list[MergeCandidate] = []
    for i, first in enumerate(active):
        if not keys[i]:
            continue
        for j in range(i + 1, len(active)):
            if not keys[j]:
                continue
            score = float(Levenshtein.normalized_similarity(keys[i], keys[j]))
            if score >= threshold:
                out.append(
                    MergeCandidate(
                        first_id=first.id,
                        first_name=first.name,
                        second_id=active[j].id,
                        second_name=active[j].name,
                        similarity=round(score, 4),
                    )
                )
    out.sort(key=lambda c: (-c.similarity, c.first_id, c.second_id))
    return out


def find_merge_candidates(
    threshold: float = _DEFAULT_THRESHOLD,
    *,
    database_url: str | None = None,
) -> list[MergeCandidate]:
    threshold = _check_threshold(threshold)
    with session_scope(database_url=database_url) as session:
        merchants = load_merchants(session, active_only=True)
    candidates = pair_candidates(merchants, threshold)
    _logger.info(
        "find_merge_candidates:done merchants=%d candidates=%d threshold=%.2f",
        len(merchants),
        len(candidates),
        threshold,
    )
    return candidates


# ---- Merging ------------------------------------------------------------------------------


def _pair_ids(pair: PairLike) -> tuple[int, int]:
    if isinstance(pair, MergeCandidate):
        return pair.pair
    first, second = pair
    return int(first), int(second)


def _union(
    existing: Iterable[str], extra: Iterable[str], norm: Callable[[str], str]
) -> list[str]:
    out: list[str] = []
    for value in (*existing, *extra):
        v = norm(value)
        if v and v not in out:
            out.append(v)
    return out


def _skipped(first: TiMerchant | None, second: TiMerchant | None, reason: str) -> MergeResult:
    target = first or second
    return MergeResult(
        target_id=target.id if target else 0,
        target_name=target.name if target else "",
        source_ids=(second.id,) if second is not None and second is not target else (),
        source_names=(second.name,) if second is not None and second is not target else (),
        skipped=True,
        reason=reason,
    )


def _merge_one(first_id: int, second_id: int, *, database_url: str | None) -> MergeResult:
    with session_scope(database_url=database_url) as session:
        first = session.get(TiMerchant, first_id)
        second = session.get(TiMerchant, second_id)
        if first_id == second_id:
            return _skipped(first, None, "same_merchant")
        if first is None or second is None or not first.is_active or not second.is_active:
            return _skipped(first, second, "inactive")

        counts = dict(
            session.execute(
                select(TiTransaction.merchant_id, func.count(TiTransaction.id))
                .where(TiTransaction.merchant_id.in_([first_id, second_id]))
                .group_by(TiTransaction.merchant_id)
            ).all()
        )
        first_score = score_name(first.name, int(counts.get(first_id, 0)))
        second_score = score_name(second.name, int(counts.get(second_id, 0)))
        target, source = (second, first) if second_score > first_score else (first, second)

        now = func.now()
        moved_txns = session.execute(
            update(TiTransaction)
            .where(TiTransaction.merchant_id == source.id)
            .values(merchant_id=target.id, updated_at=now)
        ).rowcount
        moved_patterns = session.execute(
            update(TiRecurringPattern)
            .where(TiRecurringPattern.merchant_id == source.id)
            .values(merchant_id=target.id, updated_at=now)
        ).rowcount

        target.ibans = _union(target.ibans or [], source.ibans or [], normalize_iban)
        target.keywords = _union(
            target.keywords or [], source.keywords or [], lambda k: k.strip().lower()
        )
        if target.default_category_id is None:
            target.default_category_id = source.default_category_id
        if target.is_potential_recurring is None:
            target.is_potential_recurring = source.is_potential_recurring
        source.is_active = False

        result = MergeResult(
            target_id=target.id,
            target_name=target.name,
            source_ids=(source.id,),
            source_names=(source.name,),
            transactions_reassigned=int(moved_txns or 0),
            patterns_reassigned=int(moved_patterns or 0),
        )
    _logger.info(
        "merge_merchants:merged target_id=%d source_id=%d transactions=%d patterns=%d",
        result.target_id,
        result.source_ids[0],
        result.transactions_reassigned,
        result.patterns_reassigned,
    )
    return result


def merge_merchants(
    pairs: Iterable[PairLike],
    *,
    database_url: str | None = None,
) -> list[MergeResult]:
    """Merge each pair; the better-named merchant of the pair is kept.

    Pairs whose members are identical or already inactive are reported as
    skipped. Unknown merchant ids raise ``ValueError`` before anything is
    written.
    """

    id_pairs = [_pair_ids(p) for p in pairs]
    wanted = {i for pair in id_pairs for i in pair}
    if wanted:
        with session_scope(database_url=database_url) as session:
            found = set(
                session.execute(select(TiMerchant.id).where(TiMerchant.id.in_(wanted))).scalars()
            )
        missing = sorted(wanted - found)
        if missing:
            raise ValueError(f"Invalid input: unknown merchant id(s) {missing}")

    t0 = time.perf_counter()
    results = [_merge_one(a, b, database_url=database_url) for a, b in id_pairs]
    _logger.info(
        "merge_merchants:done pairs=%d merged=%d skipped=%d latency_ms=%.2f",
        len(results),
        sum(1 for r in results if not r.skipped),
        sum(1 for r in results if r.skipped),
        (time.perf_counter() - t0) * 1000.0,
    )
    return results


def _groups(candidates: Iterable[MergeCandidate]) -> list[list[int]]:
    """Connected components of the candidate graph (union-find)."""

    parent: dict[int, int] = {}

    def find(x: int) -> int:
        parent.setdefault(x, x)
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for c in candidates:
        ra, rb = find(c.first_id), find(c.second_id)
        if ra != rb:
            parent[max(ra, rb)] = min(ra, rb)

    components: dict[int, list[int]] = {}
    for node in sorted(parent):
        components.setdefault(find(node), []).append(node)
    return [members for members in components.values() if len(members) > 1]


def auto_merge_duplicates(
    threshold: float = _DEFAULT_THRESHOLD,
    *,
    database_url: str | None = None,
) -> list[MergeResult]:
    """Collapse every chain of near-duplicates onto its best-named member."""

    threshold = _check_threshold(threshold)
    with session_scope(database_url=database_url) as session:
        merchants = {m.id: m for m in load_merchants(session, with_counts=True)}
    candidates = pair_candidates(list(merchants.values()), threshold)
    pairs: list[tuple[int, int]] = []
    for members in _groups(candidates):
        best = members[0]
        best_score = score_name(merchants[best].name, merchants[best].transaction_count)
        for mid in members[1:]:
            s = score_name(merchants[mid].name, merchants[mid].transaction_count)
            if s > best_score:
                best, best_score = mid, s
        pairs.extend((best, mid) for mid in members if mid != best)
    return merge_merchants(pairs, database_url=database_url)


__all__ = [
    "auto_merge_duplicates",
    "find_merge_candidates",
    "merge_merchants",
    "pair_candidates",
    "score_name",
    "similarity",
]
