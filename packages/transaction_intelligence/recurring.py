"""Recurring payment detection.

Public API:
    - :func:`detect_recurring_candidates`: pure detection over transaction views
    - :func:`detect_recurring`: load a user's data and detect
    - :func:`pattern_confidence`, :func:`classify_interval`, :func:`next_expected`
    - :func:`confirm_recurring_candidate`, :func:`mark_merchant_not_recurring`

Detection groups transactions by counterparty identity, amount sign and an
amount tolerance band, then asks whether the dominant gap between
occurrences matches one of the supported intervals. Merchants flagged as
potentially recurring are also matched by keyword (source ``known_list``).
Candidates are proposals only; :func:`confirm_recurring_candidate` persists one.
"""

from __future__ import annotations

import statistics
import time
from collections import Counter, defaultdict
from collections.abc import Collection, Iterable, Sequence
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update

from db.client import session_scope
from db.models.finance import TiMerchant, TiRecurringPattern, TiTransaction

from .config import RecurringConfig
from .logging_setup import get_logger
from .merchants import merchant_key, normalize_iban
from .models import Interval, MerchantView, PatternSource, RecurringCandidate, TransactionView
from .repository import load_merchants, load_transactions, require_user_id
from .transfers import identify_internal_transfers

_logger = get_logger("transaction_intelligence.recurring")

_CENT = Decimal("0.01")

_SALARY_KEYWORDS: tuple[str, ...] = (
    "salaris",
    "salary",
    "loon",
    "loonbetaling",
    "salarisbetaling",
    "payroll",
    "werkgever",
    "wage",
    "paycheck",
    "stipend",
)

# Confidence weights; they sum to 1.0 for a perfectly regular, stable series
# with at least _FULL_COUNT occurrences.
_W_BASE: float = 0.2
_W_COUNT: float = 0.3
_W_REGULARITY: float = 0.3
_W_STABILITY: float = 0.2
_FULL_COUNT: int = 6
_VARIABLE_CAP: float = 0.4
_MAX_CONFIDENCE: float = 0.95

_STEP: dict[Interval, relativedelta] = {
    "weekly": relativedelta(weeks=1),
    "4-weekly": relativedelta(weeks=4),
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "yearly": relativedelta(years=1),
}


# ---- Building blocks ----------------------------------------------------------------


def _cv(values: Sequence[float]) -> float:
    """Coefficient of variation (population); 0 for fewer than two values."""

    if len(values) < 2:
        return 0.0
    mean = statistics.fmean(values)
    if mean == 0:
        return 0.0
    return statistics.pstdev(values) / abs(mean)


def classify_interval(gap_days: float, config: RecurringConfig) -> Interval | None:
    """Return the nominal interval closest to ``gap_days`` within tolerance."""

    best: tuple[float, Interval] | None = None
    for interval, nominal in config.interval_days.items():
        tolerance = max(config.interval_tolerance_pct * nominal, config.interval_tolerance_days)
        distance = abs(gap_days - nominal)
        if distance <= tolerance and (best is None or distance < best[0]):
            best = (distance, interval)
    return best[1] if best is not None else None


def pattern_confidence(
    gaps: Sequence[int],
    amounts: Sequence[Decimal],
    config: RecurringConfig,
    *,
    known_recurring: bool = False,
) -> float:
    """Score a series in [0, 0.95].

    Grows with the occurrence count, the regularity of gaps and the stability
    of amounts. A series whose amount variation exceeds
    ``config.max_amount_variance`` is capped at 0.4.
    """

    occurrences = len(gaps) + 1
    count_score = min(1.0, (occurrences - 1) / (_FULL_COUNT - 1))
    regularity = max(0.0, 1.0 - 2.0 * _cv([float(g) for g in gaps]))
    amount_cv = _cv([float(abs(a)) for a in amounts])
    stability = 0.0
    if config.max_amount_variance:
        stability = max(0.0, 1.0 - amount_cv / config.max_amount_variance)
    score = _W_BASE + _W_COUNT * count_score + _W_REGULARITY * regularity + _W_STABILITY * stability
    if known_recurring:
        score += config.known_recurring_boost
    score = min(_MAX_CONFIDENCE, score)
    if amount_cv > config.max_amount_variance:
        score = min(score, _VARIABLE_CAP)
    return round(score, 2)


def next_expected(last: date, interval: Interval, *, is_income: bool = False) -> date:
    """Last occurrence plus one interval, in calendar months where relevant.

    Income dates landing on a weekend move back to the preceding Friday.
    """

    nxt = last + _STEP[interval]
    if is_income and nxt.weekday() >= 5:
        nxt -= timedelta(days=nxt.weekday() - 4)
    return nxt


def _amount_tolerance(mean: Decimal, config: RecurringConfig) -> Decimal:
    return max(mean * Decimal(str(config.amount_tolerance_pct)), config.amount_tolerance_abs)


def _mean_abs(txns: Sequence[TransactionView]) -> Decimal:
    return sum((abs(t.amount) for t in txns), Decimal("0")) / len(txns)


def _tighten(
    band: list[TransactionView], config: RecurringConfig
) -> tuple[list[TransactionView], list[TransactionView]]:
    """Drop the farthest member until every member is within tolerance of the mean."""

    kept = list(band)
    dropped: list[TransactionView] = []
    while len(kept) > 1:
        mean = _mean_abs(kept)
        worst = max(kept, key=lambda t: (abs(abs(t.amount) - mean), t.id))
        if abs(abs(worst.amount) - mean) <= _amount_tolerance(mean, config):
            break
        kept.remove(worst)
        dropped.append(worst)
    return kept, dropped


def _amount_bands(
    txns: Sequence[TransactionView], config: RecurringConfig
) -> list[list[TransactionView]]:
    """Cluster by absolute amount against each band's running mean.

    A running mean can drift, so each band is tightened afterwards and the
    members it sheds are clustered again. Every member of a returned band is
    within tolerance of that band's mean.
    """

    bands: list[list[TransactionView]] = []
    total = Decimal("0")
    for txn in sorted(txns, key=lambda t: (abs(t.amount), t.date, t.id)):
        value = abs(txn.amount)
        if bands:
            mean = total / len(bands[-1])
            if abs(value - mean) <= _amount_tolerance(mean, config):
                bands[-1].append(txn)
                total += value
                continue
        bands.append([txn])
        total = value

    result: list[list[TransactionView]] = []
    for band in bands:
        kept, dropped = _tighten(band, config)
        result.append(kept)
        if dropped:
            result.extend(_amount_bands(dropped, config))
    return result


def _is_salary(txns: Iterable[TransactionView]) -> bool:
    for t in txns:
        parts = (t.description, t.merchant_name_clean, t.merchant_raw)
        text = " ".join(p for p in parts if p).lower()
        if any(kw in text for kw in _SALARY_KEYWORDS):
            return True
    return False


def _group_key(
    txn: TransactionView,
) -> tuple[PatternSource, object] | None:
    if txn.merchant_id is not None:
        return "merchant_amount", txn.merchant_id
    iban = normalize_iban(txn.counterparty_iban)
    if iban:
        return "account", iban
    key = merchant_key(txn.merchant_name_clean or txn.merchant_raw)
    if key:
        return "merchant_amount", key
    return None


def _candidate_name(
    band: Sequence[TransactionView], merchant: MerchantView | None
) -> str:
    if merchant is not None:
        return merchant.name
    labels = Counter(t.merchant_label for t in band if t.merchant_label)
    if labels:
        return min(labels.items(), key=lambda kv: (-kv[1], kv[0]))[0]
    return normalize_iban(band[-1].counterparty_iban) or "Unknown"


# ---- Detection -----------------------------------------------------------------------


def detect_recurring_candidates(
    transactions: Iterable[TransactionView],
    merchants: Iterable[MerchantView] = (),
    config: RecurringConfig | None = None,
    *,
    as_of: date,
    excluded_ids: Collection[int] = frozenset(),
) -> list[RecurringCandidate]:
    """Detect recurring candidates among ``transactions``.

    Transactions already linked to a pattern, ids in ``excluded_ids`` and
    zero amounts are ignored, as is anything belonging to a merchant flagged
    not-recurring (matched by id or by name).

    Merchants flagged as potentially recurring are matched first. Candidates
    found by both passes collapse on (name, rounded amount, sign) and the
    higher confidence wins.
    """

    cfg = config or RecurringConfig()
    merchant_list = list(merchants)
    by_id = {m.id: m for m in merchant_list}
    blocked_ids = {m.id for m in merchant_list if m.is_potential_recurring is False}
    blocked_names = {
        merchant_key(m.name) for m in merchant_list if m.is_potential_recurring is False
    } - {""}
    known_ids = {m.id for m in merchant_list if m.is_potential_recurring is True}

    eligible: list[TransactionView] = []
    groups: dict[tuple[PatternSource, object, bool], list[TransactionView]] = defaultdict(list)
    for txn in transactions:
        if txn.recurring_pattern_id is not None or txn.id in excluded_ids or txn.amount == 0:
            continue
        if txn.merchant_id in blocked_ids:
            continue
        if merchant_key(txn.merchant_name_clean or txn.merchant_raw) in blocked_names:
            continue
        eligible.append(txn)
        key = _group_key(txn)
        if key is None:
            continue
        groups[(key[0], key[1], txn.amount < 0)].append(txn)

    found: dict[tuple[str, Decimal, bool], RecurringCandidate] = {}

    def keep(candidate: RecurringCandidate) -> None:
        dedupe = (
            candidate.name.lower(),
            abs(candidate.amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP),
            candidate.is_debit,
        )
        existing = found.get(dedupe)
        if existing is None or candidate.confidence > existing.confidence:
            found[dedupe] = candidate

    # Known-list candidates go first so they win confidence ties.
    known = [m for m in merchant_list if m.is_potential_recurring is True and m.is_active]
    for candidate in _known_list_candidates(eligible, known, cfg, as_of=as_of):
        keep(candidate)

    for (source, _, _), members in groups.items():
        if len(members) < cfg.min_occurrences:
            continue
        for band in _amount_bands(members, cfg):
            candidate = _evaluate_band(
                band, cfg, as_of=as_of, source=source, by_id=by_id, known_ids=known_ids
            )
            if candidate is not None:
                keep(candidate)

    return sorted(found.values(), key=lambda c: (-c.confidence, c.name))


def known_list_confidence(occurrences: int) -> float:
    """Count-based confidence for a match against a known recurring merchant."""

    if occurrences >= 3:
        return 0.9
    if occurrences == 2:
        return 0.7
    return 0.5


def _match_known(txn: TransactionView, known: Sequence[MerchantView]) -> MerchantView | None:
    for merchant in known:
        if txn.merchant_id == merchant.id:
            return merchant
    texts = [
        p.lower() for p in (txn.description, txn.merchant_raw, txn.merchant_name_clean) if p
    ]
    for merchant in known:
        for keyword in merchant.keywords:
            kw = keyword.strip().lower()
            if kw and any(kw in text for text in texts):
                return merchant
    return None


def _known_list_candidates(
    transactions: Iterable[TransactionView],
    known: Sequence[MerchantView],
    cfg: RecurringConfig,
    *,
    as_of: date,
) -> list[RecurringCandidate]:
    """Candidates for merchants flagged ``is_potential_recurring``.

    A transaction belongs to a known merchant through its merchant link or
    when one of the merchant's keywords occurs in its description, raw label
    or cleaned name. One occurrence is enough; confidence grows with the
    count. A single occurrence is assumed monthly.
    """

    if not known:
        return []
    ordered_known = sorted(known, key=lambda m: m.id)
    groups: dict[tuple[int, bool], list[TransactionView]] = defaultdict(list)
    by_id: dict[int, MerchantView] = {}
    for txn in transactions:
        merchant = _match_known(txn, ordered_known)
        if merchant is not None:
            by_id[merchant.id] = merchant
            groups[(merchant.id, txn.amount < 0)].append(txn)

    out: list[RecurringCandidate] = []
    for (merchant_id, is_debit), members in groups.items():
        ordered = sorted(members, key=lambda t: (t.date, t.id))
        gaps = [(b.date - a.date).days for a, b in zip(ordered, ordered[1:])]
        interval = classify_interval(statistics.median(gaps), cfg) if gaps else "monthly"
        if interval is None:
            continue
        last = ordered[-1].date
        if (as_of - last).days > cfg.stale_after_days[interval]:
            continue
        mean_abs = _mean_abs(ordered)
        categories = Counter(t.category_id for t in ordered if t.category_id is not None)
        out.append(
            RecurringCandidate(
                name=by_id[merchant_id].name,
                amount=(-mean_abs if is_debit else mean_abs).quantize(
                    _CENT, rounding=ROUND_HALF_UP
                ),
                interval=interval,
                transaction_ids=tuple(t.id for t in ordered),
                confidence=known_list_confidence(len(ordered)),
                source="known_list",
                next_expected_date=next_expected(last, interval),
                last_date=last,
                merchant_id=merchant_id,
                category_id=categories.most_common(1)[0][0] if categories else None,
                counterparty_iban=normalize_iban(ordered[-1].counterparty_iban) or None,
            )
        )
    return out


def _evaluate_band(
    band: Sequence[TransactionView],
    cfg: RecurringConfig,
    *,
    as_of: date,
    source: PatternSource,
    by_id: dict[int, MerchantView],
    known_ids: set[int],
) -> RecurringCandidate | None:
    if len(band) < cfg.min_occurrences:
        return None
    ordered = sorted(band, key=lambda t: (t.date, t.id))
    gaps = [(b.date - a.date).days for a, b in zip(ordered, ordered[1:])]
    median_gap = statistics.median(gaps)
    interval = classify_interval(median_gap, cfg)
    if interval is None:
        return None

    amounts = [t.amount for t in ordered]
    mean_abs = sum((abs(a) for a in amounts), Decimal("0")) / len(amounts)
    if mean_abs < cfg.min_average_amount:
        return None
    last = ordered[-1].date
    if (as_of - last).days > cfg.stale_after_days[interval]:
        return None

    merchant_ids = Counter(t.merchant_id for t in ordered if t.merchant_id is not None)
    merchant_id = merchant_ids.most_common(1)[0][0] if merchant_ids else None
    confidence = pattern_confidence(gaps, amounts, cfg, known_recurring=merchant_id in known_ids)
    if confidence < cfg.min_confidence:
        return None

    is_debit = amounts[0] < 0
    is_income = (not is_debit) and mean_abs >= cfg.income_min_amount and _is_salary(ordered)
    categories = Counter(t.category_id for t in ordered if t.category_id is not None)
    signed_mean = (mean_abs if not is_debit else -mean_abs).quantize(_CENT, rounding=ROUND_HALF_UP)
    return RecurringCandidate(
        name=_candidate_name(ordered, by_id.get(merchant_id) if merchant_id is not None else None),
        amount=signed_mean,
        interval=interval,
        transaction_ids=tuple(t.id for t in ordered),
        confidence=confidence,
        source=source,
        next_expected_date=next_expected(last, interval, is_income=is_income),
        last_date=last,
        merchant_id=merchant_id,
        category_id=categories.most_common(1)[0][0] if categories else None,
        counterparty_iban=normalize_iban(ordered[-1].counterparty_iban) or None,
        is_income=is_income,
    )


def detect_recurring(
    user_id: str,
    config: RecurringConfig | None = None,
    *,
    database_url: str | None = None,
    as_of: date | None = None,
    transfer_window_days: int = 3,
) -> list[RecurringCandidate]:
    """Load ``user_id``'s transactions and return recurring candidates.

    Internal-transfer pairs are excluded before grouping.
    """

    user_id = require_user_id(user_id)
    cfg = config or RecurringConfig()
    t0 = time.perf_counter()
    with session_scope(database_url=database_url) as session:
        transactions = load_transactions(session, user_id)
        merchants = load_merchants(session, active_only=False)
    transfers = identify_internal_transfers(transactions, transfer_window_days)
    reference = as_of or date.today()
    candidates = detect_recurring_candidates(
        transactions,
        merchants,
        cfg,
        as_of=reference,
        excluded_ids=transfers,
    )
    _logger.info(
        "detect_recurring:done user_id=%s transactions=%d transfers=%d candidates=%d "
        "latency_ms=%.2f",
        user_id,
        len(transactions),
        len(transfers),
        len(candidates),
        (time.perf_counter() - t0) * 1000.0,
    )
    return candidates


# ---- Persistence ---------------------------------------------------------------------------


def confirm_recurring_candidate(
    user_id: str,
    candidate: RecurringCandidate,
    *,
    database_url: str | None = None,
    source: PatternSource | None = None,
) -> int:
    """Persist ``candidate`` as an active pattern and link its transactions.

    Transactions already linked to another pattern, or not owned by
    ``user_id``, are left out. Returns the new pattern id.
    """

    user_id = require_user_id(user_id)
    with session_scope(database_url=database_url) as session:
        free_ids = list(
            session.execute(
                select(TiTransaction.id).where(
                    TiTransaction.id.in_(list(candidate.transaction_ids)),
                    TiTransaction.user_id == user_id,
                    TiTransaction.recurring_pattern_id.is_(None),
                )
            ).scalars()
        )
        if len(free_ids) < 2:
            raise ValueError(
                "Invalid input: candidate needs at least 2 unlinked transactions, "
                f"found {len(free_ids)}"
            )
        row = TiRecurringPattern(
            user_id=user_id,
            name=candidate.name,
            amount=candidate.amount,
            interval=candidate.interval,
            status="active",
            merchant_id=candidate.merchant_id,
            category_id=candidate.category_id,
            next_expected_date=candidate.next_expected_date,
            transaction_ids=sorted(free_ids),
            confidence=Decimal(str(candidate.confidence)).quantize(_CENT),
            source=source or candidate.source,
            is_income=candidate.is_income,
        )
        session.add(row)
        session.flush()
        session.execute(
            update(TiTransaction)
            .where(TiTransaction.id.in_(free_ids))
            .values(recurring_pattern_id=row.id)
        )
        pattern_id = row.id
    _logger.info(
        "confirm_recurring_candidate:done user_id=%s pattern_id=%d linked=%d",
        user_id,
        pattern_id,
        len(free_ids),
    )
    return pattern_id


def mark_merchant_not_recurring(
    merchant_id: int,
    *,
    flag: bool = False,
    database_url: str | None = None,
) -> None:
    """Set ``is_potential_recurring`` on a merchant (``False`` blocks detection)."""

    with session_scope(database_url=database_url) as session:
        row = session.get(TiMerchant, merchant_id)
        if row is None:
            raise ValueError(f"Invalid input: merchant {merchant_id} does not exist")
        row.is_potential_recurring = flag


__all__ = [
    "classify_interval",
    "confirm_recurring_candidate",
    "detect_recurring",
    "detect_recurring_candidates",
    "known_list_confidence",
    "mark_merchant_not_recurring",
    "next_expected",
    "pattern_confidence",
]
