"""Merchant name cleaning and merchant identity helpers.

Raw bank labels carry transaction references, dates, postal codes, store
numbers and legal suffixes. :func:`clean_merchant_name` strips those and
title-cases the remainder so identical counterparties share one key, which
merchant-name propagation and the merger rely on.
"""

from __future__ import annotations

import re
import unicodedata

from db.models.finance import TiMerchant
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .logging_setup import get_logger

_logger = get_logger("transaction_intelligence.merchants")

# ---- Cleaning patterns -----------------------------------------------------------

_NOT_PROVIDED = re.compile(
    r"^(notprovided|not\s+provided|niet\s+opgegeven|onbekend|unknown"
    r"|n/a|na|geen|none|leeg|empty)\s*$",
    re.IGNORECASE,
)

_BIG_CITIES = (
    "AMSTERDAM",
    "ROTTERDAM",
    "UTRECHT",
    "DEN HAAG",
    "THE HAGUE",
    "HAARLEM",
    "EINDHOVEN",
    "GRONINGEN",
    "TILBURG",
    "ALMERE",
    "BREDA",
    "NIJMEGEN",
    "ENSCHEDE",
    "HAARLEMMERMEER",
    "SGRAVENHAGE",
    "'S-GRAVENHAGE",
)

# Applied in order; each is replaced by an empty string.
_STRIP_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(TRX|TXN|REF|ID)[\s\-]?\d+\b", re.IGNORECASE),
    re.compile(r"\b\d{10,}\b"),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{2}[/\-]\d{2}[/\-]\d{2,4}\b"),
    # "Albert Heijn 1595 Sgravenhage" -> "Albert Heijn"
    re.compile(r"\s+\d+\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\s*$", re.IGNORECASE),
    re.compile(r"\bNL\d+\b", re.IGNORECASE),
    re.compile(r"\b\d{4}\s?[A-Z]{2}\b", re.IGNORECASE),
    re.compile(
        r"(?<![\w'])(" + "|".join(re.escape(c) for c in _BIG_CITIES) + r")\b",
        re.IGNORECASE,
    ),
    re.compile(r"\s+\d+\s*$"),
    re.compile(r"#\d+\b"),
    re.compile(r"\b(STORE|LOC|LOCATION|WINKEL|FILIAAL)[\s\-]?\d+\b", re.IGNORECASE),
    re.compile(r"\s+(BV|NV|B\.V\.|N\.V\.|LTD|LLC|INC|CORP|GMBH|AG)\s*$", re.IGNORECASE),
)

_ABBREVIATIONS = frozenset(
    {
        "AH", "ING", "ASN", "SNS", "RABO", "ABN", "AMRO", "NS", "OV", "TNT",
        "UPS", "DHL", "IBM", "HP", "BMW", "VW", "KLM", "TUI", "TMC",
    }
)  # fmt: skip

_LOWERCASE_WORDS = frozenset(
    {
        "van", "den", "der", "de", "het", "een", "te", "ten", "ter", "op",
        "aan", "in", "uit", "voor", "bij", "over", "onder", "door", "met",
        "tot", "naar", "von", "zu", "und", "die", "das",
    }
)  # fmt: skip

_INITIALS = re.compile(r"^([a-z]\.)+$", re.IGNORECASE)


def _title_word(word: str, index: int) -> str:
    upper = word.upper()
    lower = word.lower()
    if _INITIALS.match(word):
        return upper
    if upper in _ABBREVIATIONS or (2 <= len(word) <= 4 and word == upper and word.isalpha()):
        return upper
    if index > 0 and lower in _LOWERCASE_WORDS:
        return lower
    if "'" in word:
        head, *rest = word.split("'")
        return "'".join([head[:1].upper() + head[1:].lower(), *(p.lower() for p in rest)])
    if "-" in word:
        return "-".join(p[:1].upper() + p[1:].lower() for p in word.split("-"))
    return word[:1].upper() + word[1:].lower()


def clean_merchant_name(raw: str | None) -> str:
    """Return a display-ready merchant name, or ``""`` for placeholder labels.

    Falls back to the stripped input when cleaning removes everything.
    """

    if not raw or not raw.strip():
        return ""
    trimmed = raw.strip()
    if _NOT_PROVIDED.match(trimmed):
        return ""

    cleaned = trimmed
    for pattern in _STRIP_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = " ".join(cleaned.split())
    cleaned = " ".join(_title_word(w, i) for i, w in enumerate(cleaned.split(" ")) if w)
    cleaned = cleaned.strip(" -")
    return cleaned or trimmed


def merchant_key(name: str | None) -> str:
    """Comparison key: cleaned, NFKC-normalized, casefolded, punctuation-free."""

    cleaned = clean_merchant_name(name)
    if not cleaned:
        return ""
    norm = unicodedata.normalize("NFKC", cleaned).casefold()
    norm = re.sub(r"[^\w\s]", " ", norm)
    return " ".join(norm.split())


def normalize_iban(value: str | None) -> str:
    """Strip all whitespace and upper-case an account identifier."""

    if not value:
        return ""
    return re.sub(r"\s+", "", value).upper()


# ---- Storage helpers -----------------------------------------------------------------


def find_or_create_merchant(
    session: Session,
    name: str,
    *,
    iban: str | None = None,
    default_category_id: int | None = None,
) -> int:
    """Return the id of the active merchant named ``name`` (case-insensitive).

    A new merchant is created when none exists. A known IBAN is added to the
    merchant's account list; ``default_category_id`` is only set when the
    merchant has none yet.
    """

    display = name.strip() if name else ""
    if not display:
        raise ValueError("Invalid input: merchant name must be non-empty")

    row = session.execute(
        select(TiMerchant)
        .where(func.lower(TiMerchant.name) == display.lower(), TiMerchant.is_active.is_(True))
        .order_by(TiMerchant.id)
        .limit(1)
    ).scalar_one_or_none()

    norm_iban = normalize_iban(iban)
    if row is None:
        row = TiMerchant(
            name=display,
            keywords=[],
            ibans=[norm_iban] if norm_iban else [],
            default_category_id=default_category_id,
            is_active=True,
        )
        session.add(row)
        session.flush()
        _logger.debug("merchants:created id=%d name=%s", row.id, display)
        return row.id

    if norm_iban and norm_iban not in (row.ibans or []):
        row.ibans = [*(row.ibans or []), norm_iban]
    if default_category_id is not None and row.default_category_id is None:
        row.default_category_id = default_category_id
    return row.id


__all__ = [
    "clean_merchant_name",
    "find_or_create_merchant",
    "merchant_key",
    "normalize_iban",
]
