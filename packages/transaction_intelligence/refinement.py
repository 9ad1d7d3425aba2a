"""Context refinement: a rule-based second pass over categorized transactions.

A coarse keyword match cannot tell a morning coffee from a dinner at the same
café, or a mortgage payment from a bank fee at the same bank. Rules look at
the time of day embedded in the description, the absolute amount and the
merchant label, and move the transaction to a more specific category.

Rules are evaluated highest priority first and the first match wins. Manual
categories are never touched. ``dry_run`` computes the change list without
writing anything.
"""

from __future__ import annotations

import re
import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal

from db.client import session_scope

from .logging_setup import get_logger
from .models import (
    CategoryView,
    ProgressPayload,
    RefinementChange,
    RefinementResult,
    TransactionView,
)
from .progress import ProgressStore
from .repository import bulk_set_category, load_categories, load_transactions, require_user_id

_BATCH_SIZE: int = 50
_REFINED_CONFIDENCE: float = 0.85

_TIME_RE = re.compile(r"\b(\d{1,2}):(\d{2})(?::(\d{2}))?\b")

_logger = get_logger("transaction_intelligence.refinement")


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass(frozen=True, slots=True)
class RefinementRule:
    """A declarative refinement rule.

    ``time_range`` is ``(start_hour, end_hour)`` with the end exclusive; a
    start after the end wraps past midnight. ``amount_range`` bounds the
    absolute amount, both ends inclusive. Empty pattern tuples and an empty
    ``source_categories`` match anything.
    """

    name: str
    target_category: str
    source_categories: tuple[str, ...] = ()
    merchant_patterns: tuple[re.Pattern[str], ...] = ()
    description_patterns: tuple[re.Pattern[str], ...] = ()
    time_range: tuple[int, int] | None = None
    amount_range: tuple[Decimal, Decimal] | None = None
    priority: int = 0
    description: str = ""

    def matches(
        self,
        txn: TransactionView,
        *,
        category_name: str | None,
        hour: int | None,
    ) -> bool:
        if self.source_categories:
            allowed = {n.casefold() for n in self.source_categories}
            if category_name is None or category_name.casefold() not in allowed:
                return False
        description = txn.description or ""
        if self.merchant_patterns:
            merchant = txn.merchant_name_clean or txn.merchant_raw or ""
            if not any(p.search(merchant) or p.search(description) for p in self.merchant_patterns):
                return False
        if self.time_range is not None:
            if hour is None or not hour_in_range(hour, self.time_range):
                return False
        if self.description_patterns:
            if not any(p.search(description) for p in self.description_patterns):
                return False
        if self.amount_range is not None:
            low, high = self.amount_range
            if not (low <= abs(txn.amount) <= high):
                return False
        return True


# ---- Default rules ---------------------------------------------------------------------

_FOOD = _compile(
    r"starbucks",
    r"coffee\s*company",
    r"bagels.*beans",
    r"anne.*max",
    r"lebkov",
    r"koffiebar",
    r"cafe|café",
    r"restaurant",
    r"eetcafe|eetcafé",
    r"brasserie",
    r"bistro",
    r"lunch",
    r"broodje",
    r"subway",
    r"la\s*place",
    r"febo",
    r"smullers",
    r"bar\b",
    r"kroeg",
    r"club",
    r"strandpaviljoen",
)

_GAS_STATION = _compile(
    r"shell",
    r"\bbp\b",
    r"esso",
    r"total(?:energies)?",
    r"tinq",
    r"tango",
    r"avia",
    r"texaco",
    r"q8",
    r"gulf",
    r"tankstation",
)

_BANK_INSURER = _compile(
    r"\bing\b",
    r"rabobank",
    r"abn\s*amro",
    r"\bsns\b",
    r"\basn\b",
    r"triodos",
    r"knab",
    r"bunq",
    r"nationale.?nederlanden|\bnn\b",
    r"aegon",
    r"achmea",
    r"centraal\s*beheer",
    r"zilveren\s*kruis",
    r"inshared",
)

_MORTGAGE_TEXT = _compile(r"hypothee?k", r"lening\s*\d+", r"aflossing", r"woningfinanciering")

_HEALTH_TEXT = _compile(
    r"zorgverzekering",
    r"zorgpremie",
    r"basispremie",
    r"aanvullende?\s*verzekering",
    r"ziektekosten",
)

_PROPERTY_TEXT = _compile(
    r"autoverzekering",
    r"inboedel",
    r"opstal",
    r"woonhuis",
    r"wa\s*verzekering",
    r"aansprakelijkheid",
    r"brandverzekering",
)

_UNCAT = "Niet gecategoriseerd"
_DINING = "Restaurants & uit eten"
_FINANCE_SOURCES = ("Verzekering", "Gezondheidszorg", "Wonen", "Bankkosten", _UNCAT)


def _finance_sources(target: str) -> tuple[str, ...]:
    return tuple(s for s in _FINANCE_SOURCES if s != target)


DEFAULT_RULES: tuple[RefinementRule, ...] = (
    RefinementRule(
        name="coffee_morning",
        target_category="Koffie",
        source_categories=(_DINING, "Uit eten", "Lunch", _UNCAT),
        merchant_patterns=_FOOD,
        time_range=(6, 11),
        amount_range=(Decimal("2"), Decimal("8")),
        priority=100,
        description="Morning coffee (6-11h, EUR 2-8)",
    ),
    RefinementRule(
        name="snacks_small",
        target_category="Snacks",
        source_categories=(_DINING, "Koffie", "Lunch", _UNCAT),
        amount_range=(Decimal("0.50"), Decimal("3")),
        priority=95,
        description="Small snacks (EUR 0.50-3)",
    ),
    RefinementRule(
        name="mortgage_keyword",
        target_category="Wonen",
        source_categories=_finance_sources("Wonen"),
        merchant_patterns=_BANK_INSURER,
        description_patterns=_MORTGAGE_TEXT,
        priority=95,
        description="Mortgage by description keyword",
    ),
    RefinementRule(
        name="health_insurance_keyword",
        target_category="Gezondheidszorg",
        source_categories=_finance_sources("Gezondheidszorg"),
        merchant_patterns=_BANK_INSURER,
        description_patterns=_HEALTH_TEXT,
        priority=94,
        description="Health insurance by description keyword",
    ),
    RefinementRule(
        name="property_insurance_keyword",
        target_category="Verzekering",
        source_categories=_finance_sources("Verzekering"),
        merchant_patterns=_BANK_INSURER,
        description_patterns=_PROPERTY_TEXT,
        priority=93,
        description="Car or home insurance by description keyword",
    ),
    RefinementRule(
        name="lunch_midday",
        target_category="Lunch",
        source_categories=(_DINING, "Uit eten", "Koffie", _UNCAT),
        merchant_patterns=_FOOD,
        time_range=(11, 15),
        amount_range=(Decimal("5"), Decimal("20")),
        priority=90,
        description="Midday lunch (11-15h, EUR 5-20)",
    ),
    RefinementRule(
        name="dinner_evening",
        target_category="Uit eten",
        source_categories=(_DINING, "Lunch", "Koffie", _UNCAT),
        merchant_patterns=_FOOD,
        time_range=(17, 22),
        amount_range=(Decimal("15"), Decimal("150")),
        priority=85,
        description="Evening dinner (17-22h, EUR 15-150)",
    ),
    RefinementRule(
        name="bars_nightlife",
        target_category="Uitgaan/bars",
        source_categories=(_DINING, "Uit eten", _UNCAT),
        merchant_patterns=_FOOD,
        time_range=(21, 4),
        amount_range=(Decimal("5"), Decimal("100")),
        priority=80,
        description="Nightlife (21-04h, EUR 5-100)",
    ),
    RefinementRule(
        name="gas_station_fuel",
        target_category="Brandstof",
        source_categories=(_UNCAT, "Lunch", "Snacks", "Koffie"),
        merchant_patterns=_GAS_STATION,
        amount_range=(Decimal("25"), Decimal("200")),
        priority=75,
        description="Gas station fuel (EUR 25-200)",
    ),
    RefinementRule(
        name="gas_station_snack",
        target_category="Snacks",
        source_categories=("Brandstof", _UNCAT),
        merchant_patterns=_GAS_STATION,
        amount_range=(Decimal("0.50"), Decimal("5")),
        priority=70,
        description="Gas station snack (EUR 0.50-5)",
    ),
    RefinementRule(
        name="gas_station_lunch",
        target_category="Lunch",
        source_categories=("Brandstof", _UNCAT),
        merchant_patterns=_GAS_STATION,
        time_range=(11, 15),
        amount_range=(Decimal("5"), Decimal("15")),
        priority=65,
        description="Gas station lunch (11-15h, EUR 5-15)",
    ),
    RefinementRule(
        name="mortgage_amount",
        target_category="Wonen",
        source_categories=_finance_sources("Wonen"),
        merchant_patterns=_BANK_INSURER,
        amount_range=(Decimal("900"), Decimal("5000")),
        priority=60,
        description="Mortgage by amount (EUR 900-5000)",
    ),
    RefinementRule(
        name="health_insurance_amount",
        target_category="Gezondheidszorg",
        source_categories=_finance_sources("Gezondheidszorg"),
        merchant_patterns=_BANK_INSURER,
        amount_range=(Decimal("120"), Decimal("180")),
        priority=58,
        description="Health insurance by monthly amount (EUR 120-180)",
    ),
    RefinementRule(
        name="health_insurance_annual",
        target_category="Gezondheidszorg",
        source_categories=_finance_sources("Gezondheidszorg"),
        merchant_patterns=_BANK_INSURER,
        amount_range=(Decimal("1440"), Decimal("2160")),
        priority=57,
        description="Health insurance by annual amount (EUR 1440-2160)",
    ),
    RefinementRule(
        name="property_insurance_amount",
        target_category="Verzekering",
        source_categories=_finance_sources("Verzekering"),
        merchant_patterns=_BANK_INSURER,
        amount_range=(Decimal("30"), Decimal("90")),
        priority=55,
        description="Car or home insurance by amount (EUR 30-90)",
    ),
    RefinementRule(
        name="bank_fees",
        target_category="Bankkosten",
        source_categories=_finance_sources("Bankkosten"),
        merchant_patterns=_BANK_INSURER,
        amount_range=(Decimal("1"), Decimal("30")),
        priority=50,
        description="Bank fees (EUR 1-30)",
    ),
)


# ---- Matching ------------------------------------------------------------------------------


def extract_time(description: str | None) -> tuple[int, int] | None:
    """Return ``(hour, minute)`` from the first ``HH:MM[:SS]`` in ``description``.

    Only the first occurrence is considered; an out-of-range hour or minute
    yields ``None``.
    """

    if not description:
        return None
    m = _TIME_RE.search(description)
    if m is None:
        return None
    hour, minute = int(m.group(1)), int(m.group(2))
    if 0 <= hour <= 23 and 0 <= minute <= 59:
        return hour, minute
    return None


def hour_in_range(hour: int, time_range: tuple[int, int]) -> bool:
    start, end = time_range
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


def ordered_rules(rules: Iterable[RefinementRule]) -> list[RefinementRule]:
    # Stable: equal priorities keep their list order.
    return sorted(rules, key=lambda r: -r.priority)


def plan_refinements(
    transactions: Iterable[TransactionView],
    categories: Sequence[CategoryView],
    rules: Sequence[RefinementRule],
) -> list[tuple[RefinementChange, int]]:
    """Evaluate ``rules`` (already ordered) and return ``(change, target_id)`` pairs.

    Manual and uncategorized transactions are skipped. A rule whose target
    category does not exist, or which targets the transaction's current
    category, is passed over.
    """

    by_id = {c.id: c for c in categories}
    by_name: dict[str, CategoryView] = {}
    for c in categories:
        by_name.setdefault(c.name.casefold(), c)

    out: list[tuple[RefinementChange, int]] = []
    for txn in transactions:
        if txn.is_manual or txn.category_id is None:
            continue
        current = by_id.get(txn.category_id)
        current_name = current.name if current is not None else None
        hm = extract_time(txn.description)
        hour = hm[0] if hm is not None else None
        for rule in rules:
            target = by_name.get(rule.target_category.casefold())
            if target is None or target.id == txn.category_id:
                continue
            if not rule.matches(txn, category_name=current_name, hour=hour):
                continue
            change = RefinementChange(
                transaction_id=txn.id,
                merchant_name=txn.merchant_label,
                amount=txn.amount,
                time=f"{hm[0]:02d}:{hm[1]:02d}" if hm is not None else None,
                from_category=current_name,
                to_category=target.name,
                rule=rule.name,
            )
            out.append((change, target.id))
            break
    return out


# ---- Operation ------------------------------------------------------------------------------


def refine_context(
    user_id: str,
    *,
    progress_store: ProgressStore,
    dry_run: bool = False,
    rules: Sequence[RefinementRule] | None = None,
    database_url: str | None = None,
    on_progress: Callable[[ProgressPayload], None] | None = None,
    batch_size: int = _BATCH_SIZE,
) -> RefinementResult:
    """Refine categorized, non-manual transactions for ``user_id``.

    Each batch of changes is written in its own session with source
    ``refinement`` and confidence 0.85. Cancellation is checked between
    batches; completed batches stay committed. A flag set before the run
    starts stops it before the first batch, and the flag is cleared when the
    run returns. Rows that turn manual while the run is in flight are not
    written and are left out of ``changes``.
    """

    user_id = require_user_id(user_id)
    if batch_size <= 0:
        raise ValueError("Invalid input: batch_size must be positive")
    try:
        return _refine(
            user_id,
            progress_store=progress_store,
            dry_run=dry_run,
            rules=rules,
            database_url=database_url,
            on_progress=on_progress,
            batch_size=batch_size,
        )
    finally:
        progress_store.set_cancellation(user_id, False)


def _refine(
    user_id: str,
    *,
    progress_store: ProgressStore,
    dry_run: bool,
    rules: Sequence[RefinementRule] | None,
    database_url: str | None,
    on_progress: Callable[[ProgressPayload], None] | None,
    batch_size: int,
) -> RefinementResult:
    t0 = time.perf_counter()
    ordered = ordered_rules(DEFAULT_RULES if rules is None else rules)

    with session_scope(database_url=database_url) as session:
        categories = load_categories(session, user_id)
        transactions = [
            t
            for t in load_transactions(session, user_id, categorized_only=True)
            if not t.is_manual
        ]

    result = RefinementResult(dry_run=dry_run)
    total = len(transactions)
    batches = [transactions[i : i + batch_size] for i in range(0, total, batch_size)]
    _logger.info(
        "refine_context:start user_id=%s candidates=%d rules=%d dry_run=%s",
        user_id,
        total,
        len(ordered),
        dry_run,
    )

    def _report(message: str, batch_index: int | None = None) -> None:
        payload = ProgressPayload(
            phase="refinement",
            iteration=1,
            processed=result.total_processed,
            total=total,
            message=message,
            resolved=result.refined,
            counts=dict(result.by_rule),
            batch_index=batch_index,
            total_batches=len(batches),
        )
        progress_store.set_progress(user_id, payload)
        if on_progress is not None:
            on_progress(payload)

    _report(f"Evaluating {total} transactions")
    for batch_index, batch in enumerate(batches):
        if progress_store.is_cancelled(user_id):
            result.status = "stopped"
            break
        planned = plan_refinements(batch, categories, ordered)
        by_target: dict[int, list[int]] = defaultdict(list)
        for change, target_id in planned:
            by_target[target_id].append(change.transaction_id)
        if not dry_run and by_target:
            written: set[int] = set()
            with session_scope(database_url=database_url) as session:
                for target_id, ids in by_target.items():
                    written.update(
                        bulk_set_category(
                            session,
                            ids,
                            target_id,
                            source="refinement",
                            confidence=_REFINED_CONFIDENCE,
                        )
                    )
            # Rows that turned manual since loading were not written.
            planned = [(c, t) for c, t in planned if c.transaction_id in written]
        for change, _ in planned:
            result.changes.append(change)
            result.by_rule[change.rule] = result.by_rule.get(change.rule, 0) + 1
            _logger.debug(
                "refine_context:change transaction_id=%d rule=%s from=%s to=%s",
                change.transaction_id,
                change.rule,
                change.from_category,
                change.to_category,
            )
        result.refined += len(planned)
        result.total_processed += len(batch)
        _report(
            f"Refined {result.refined} of {result.total_processed} evaluated", batch_index
        )

    _report(
        f"Stopped early: {result.refined} refined"
        if result.status == "stopped"
        else f"Done: {result.refined} refined"
    )
    _logger.info(
        "refine_context:done user_id=%s status=%s processed=%d refined=%d dry_run=%s "
        "latency_ms=%.2f",
        user_id,
        result.status,
        result.total_processed,
        result.refined,
        dry_run,
        (time.perf_counter() - t0) * 1000.0,
    )
    return result


__all__ = [
    "DEFAULT_RULES",
    "RefinementRule",
    "extract_time",
    "hour_in_range",
    "ordered_rules",
    "plan_refinements",
    "refine_context",
]
