"""Internal transfer identification.

Public API:
    - :func:`identify_internal_transfers`: pair opposite-signed, equal-magnitude
      transactions that fall within a short date window.
    - :func:`is_transfer_between_persons`: text/account heuristic used to keep
      own-account moves away from the external classifier.

Both are pure functions; callers decide what to do with the results (e.g.,
exclude the returned ids from spending statistics).
"""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Collection, Iterable, Mapping
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from .merchants import normalize_iban

_CENT = Decimal("0.01")

_TRANSFER_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\boverboeking\b",
        r"\btransfer\b",
        r"\bspaarrekening\b",
        r"\beigen rekening\b",
        r"\bsavings\b",
        r"\bown account\b",
        r"\boverschrijving\b",
    )
)


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _to_cents(value: Decimal) -> int:
    """Return ``round(|value|, 2)`` expressed in integer cents (half-up)."""

    return int(abs(value).quantize(_CENT, rounding=ROUND_HALF_UP) * 100)


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def identify_internal_transfers(
    transactions: Iterable[Any],
    window_days: int = 3,
) -> set[Any]:
    """Return the ids of transactions that form internal-transfer pairs.

    Each item needs ``id``, ``date`` and a signed ``amount``; mappings and
    attribute objects are both accepted.

    Transactions are grouped by absolute amount rounded to cents (zero
    amounts excluded) and sorted by date. For every unmatched transaction the
    scan moves forward through unmatched candidates until the date gap exceeds
    ``window_days``; the first opposite-signed candidate becomes its pair.
    The pairing is greedy in date order, not a global optimum.
    """

    if isinstance(window_days, bool) or not isinstance(window_days, int) or window_days < 0:
        raise ValueError(
            f"Invalid input: window_days must be a non-negative integer, got {window_days!r}"
        )

    groups: dict[int, list[tuple[date, Decimal, Any]]] = defaultdict(list)
    for item in transactions:
        amount = Decimal(str(_field(item, "amount")))
        cents = _to_cents(amount)
        if cents == 0:
            continue
        groups[cents].append((_to_date(_field(item, "date")), amount, _field(item, "id")))

    matched: set[Any] = set()
    for members in groups.values():
        if len(members) < 2:
            continue
        # Stable sort keeps input order for same-day entries.
        members.sort(key=lambda m: m[0])
        used = [False] * len(members)
        for i, (day_i, amount_i, id_i) in enumerate(members):
            if used[i]:
                continue
            for j in range(i + 1, len(members)):
                if used[j]:
                    continue
                day_j, amount_j, id_j = members[j]
                if (day_j - day_i).days > window_days:
                    break
                if (amount_i < 0) != (amount_j < 0):
                    used[i] = used[j] = True
                    matched.add(id_i)
                    matched.add(id_j)
                    break
    return matched


def is_transfer_between_persons(
    description: str | None,
    *,
    counterparty_name: str | None = None,
    counterparty_iban: str | None = None,
    own_ibans: Collection[str] = (),
) -> bool:
    """Heuristically flag a transaction as money moved between own accounts."""

    if counterparty_iban and own_ibans:
        own = {normalize_iban(i) for i in own_ibans}
        if normalize_iban(counterparty_iban) in own:
            return True
    text = " ".join(t for t in (description, counterparty_name) if t)
    return any(p.search(text) for p in _TRANSFER_PATTERNS)


__all__ = ["identify_internal_transfers", "is_transfer_between_persons"]
