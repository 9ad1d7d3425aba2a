"""Categorization strategies evaluated by the orchestrator in fixed order.

Every strategy carries a ``name`` tag (used for counters and progress) and a
``source`` tag (stored in ``ti_transactions.category_source``) and exposes
``attempt(txn) -> StrategyMatch | None``. Strategies backed by an external
collaborator also implement ``prime(batch)``, which resolves a whole batch in
one call before ``attempt`` is asked per transaction.

Default cascade:

1. ``keyword``              category keyword lists
2. ``account``              counterparty IBAN -> merchant default category
3. ``merchant_name``        propagate categories of identically named merchants
4. ``merchant_name_rerun``  same index, after step 3 added names
5. ``classifier``           external classifier (optional)
6. ``embedding``            nearest category embedding (optional)
"""

from __future__ import annotations

import re
from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

import numpy as np

from .classifier import Classifier
from .embeddings import Embedder, category_text, cosine_similarity_matrix
from .logging_setup import get_logger
from .merchants import normalize_iban
from .models import (
    CategorySource,
    CategoryView,
    ClassifierResult,
    MerchantView,
    StrategyMatch,
    TransactionView,
)
from .repository import is_uncategorized_name
from .transfers import is_transfer_between_persons

_logger = get_logger("transaction_intelligence.strategies")

_SUBSTRING_MIN_LEN: int = 5
_EXACT_CONFIDENCE: float = 1.0
_MERCHANT_NAME_BASE: float = 0.6
_MERCHANT_NAME_STEP: float = 0.1
_MERCHANT_NAME_CAP: float = 0.95

# Categories the classifier must never pick.
_CLASSIFIER_EXCLUDED_NAMES = frozenset(
    {
        "uncategorized",
        "ongecategoriseerd",
        "niet gecategoriseerd",
        "overig",
        "overboekingen eigen rekeningen",
    }
)


@runtime_checkable
class Strategy(Protocol):
    name: str
    source: CategorySource

    def attempt(self, txn: TransactionView) -> StrategyMatch | None: ...


@runtime_checkable
class BatchStrategy(Strategy, Protocol):
    def prime(self, batch: Sequence[TransactionView]) -> None: ...


# ---- 1. Keyword ------------------------------------------------------------------


class KeywordStrategy:
    """Match category keywords against the cleaned merchant name and description.

    Pass 1 requires the keyword to stand on word boundaries; pass 2 accepts a
    plain substring for keywords of at least five characters. Within a pass,
    categories are tried in taxonomy order and keywords in list order.
    """

    name = "keyword"
    source: CategorySource = "keyword"

    def __init__(self, categories: Iterable[CategoryView]) -> None:
        self._entries: list[tuple[CategoryView, str, re.Pattern[str]]] = []
        for cat in categories:
            if is_uncategorized_name(cat.name):
                continue
            for kw in cat.keywords:
                norm = kw.strip().lower()
                if not norm:
                    continue
                pattern = re.compile(r"(?<!\w)" + re.escape(norm) + r"(?!\w)")
                self._entries.append((cat, norm, pattern))

    def attempt(self, txn: TransactionView) -> StrategyMatch | None:
        text = txn.search_text
        if not text:
            return None
        for cat, kw, pattern in self._entries:
            if pattern.search(text):
                return self._match(txn, cat, kw)
        for cat, kw, _ in self._entries:
            if len(kw) >= _SUBSTRING_MIN_LEN and kw in text:
                return self._match(txn, cat, kw)
        return None

    def _match(self, txn: TransactionView, cat: CategoryView, kw: str) -> StrategyMatch:
        return StrategyMatch(
            transaction_id=txn.id,
            category_id=cat.id,
            confidence=_EXACT_CONFIDENCE,
            source=self.source,
            reason=f"Keyword: {kw}",
        )


# ---- 2. Counterparty account -----------------------------------------------------------


class AccountStrategy:
    name = "account"
    source: CategorySource = "account"

    def __init__(self, merchants: Iterable[MerchantView]) -> None:
        self._by_iban: dict[str, MerchantView] = {}
        for m in merchants:
            if not m.is_active or m.default_category_id is None:
                continue
            for iban in m.ibans:
                # First merchant claiming an IBAN keeps it.
                self._by_iban.setdefault(normalize_iban(iban), m)

    def attempt(self, txn: TransactionView) -> StrategyMatch | None:
        iban = normalize_iban(txn.counterparty_iban)
        if not iban:
            return None
        merchant = self._by_iban.get(iban)
        if merchant is None or merchant.default_category_id is None:
            return None
        return StrategyMatch(
            transaction_id=txn.id,
            category_id=merchant.default_category_id,
            confidence=_EXACT_CONFIDENCE,
            source=self.source,
            reason=f"IBAN: {merchant.name}",
            merchant_id=merchant.id,
        )


# ---- 3/4. Merchant name propagation -----------------------------------------------------


def _name_key(name: str | None) -> str:
    return " ".join(name.split()).lower() if name else ""


class MerchantNameIndex:
    """Category votes per lower-cased cleaned merchant name.

    Shared by both merchant-name strategies and updated by the orchestrator
    after each applied batch, so later passes see names resolved earlier in
    the same run.
    """

    def __init__(self) -> None:
        self._votes: dict[str, Counter[int]] = defaultdict(Counter)
        self._manual: dict[str, set[int]] = defaultdict(set)

    @classmethod
    def from_transactions(
        cls, transactions: Iterable[TransactionView], *, excluded_category_ids: Iterable[int] = ()
    ) -> MerchantNameIndex:
        excluded = set(excluded_category_ids)
        index = cls()
        for t in transactions:
            if t.category_id is None or t.category_id in excluded:
                continue
            index.observe(t.merchant_name_clean, t.category_id, manual=t.is_manual)
        return index

    def observe(self, name: str | None, category_id: int, *, manual: bool = False) -> None:
        key = _name_key(name)
        if not key:
            return
        self._votes[key][category_id] += 1
        if manual:
            self._manual[key].add(category_id)

    def best(self, name: str | None) -> tuple[int, int, bool] | None:
        """Return ``(category_id, count, has_manual)`` for the winning category.

        Categories backed by a manual assignment win; then the highest count;
        then the lowest id for determinism.
        """

        key = _name_key(name)
        votes = self._votes.get(key)
        if not votes:
            return None
        manual = self._manual.get(key, set())
        category_id, count = min(
            votes.items(), key=lambda kv: (kv[0] not in manual, -kv[1], kv[0])
        )
        return category_id, count, category_id in manual

    def __len__(self) -> int:
        return len(self._votes)


class MerchantNameStrategy:
    source: CategorySource = "merchant_name"

    def __init__(self, index: MerchantNameIndex, *, name: str = "merchant_name") -> None:
        self.name = name
        self._index = index

    def attempt(self, txn: TransactionView) -> StrategyMatch | None:
        best = self._index.best(txn.merchant_name_clean)
        if best is None:
            return None
        category_id, count, has_manual = best
        if has_manual:
            confidence = _MERCHANT_NAME_CAP
        else:
            confidence = min(_MERCHANT_NAME_CAP, _MERCHANT_NAME_BASE + _MERCHANT_NAME_STEP * count)
        kind = "manual" if has_manual else "automatic"
        plural = "es" if count > 1 else ""
        return StrategyMatch(
            transaction_id=txn.id,
            category_id=category_id,
            confidence=confidence,
            source=self.source,
            reason=f'Merchant "{txn.merchant_name_clean}" ({count} {kind} match{plural})',
        )


# ---- 5. External classifier -------------------------------------------------------------


class ClassifierStrategy:
    """Delegate unresolved transactions to the external classifier.

    Results below ``min_confidence`` or naming an unknown category are
    recorded in :attr:`rejections` and left unresolved. Transactions that look
    like own-account transfers are never sent.
    """

    name = "classifier"
    source: CategorySource = "classifier"

    def __init__(
        self,
        classifier: Classifier,
        categories: Sequence[CategoryView],
        *,
        min_confidence: float,
        own_ibans: Iterable[str] = (),
    ) -> None:
        self._classifier = classifier
        self._categories = [
            c for c in categories if c.name.strip().casefold() not in _CLASSIFIER_EXCLUDED_NAMES
        ]
        self._by_id = {c.id: c for c in self._categories}
        self._by_name = {c.name.strip().casefold(): c for c in self._categories}
        self._min_confidence = min_confidence
        self._own_ibans = tuple(own_ibans)
        self._results: dict[int, StrategyMatch] = {}
        self.rejections: dict[int, str] = {}
        self.accepted: dict[int, ClassifierResult] = {}

    def _eligible(self, txn: TransactionView) -> bool:
        return not is_transfer_between_persons(
            txn.description,
            counterparty_name=txn.merchant_raw,
            counterparty_iban=txn.counterparty_iban,
            own_ibans=self._own_ibans,
        )

    def _resolve(self, result: ClassifierResult) -> CategoryView | None:
        if result.category_id is not None and result.category_id in self._by_id:
            return self._by_id[result.category_id]
        if result.category_name:
            return self._by_name.get(result.category_name.strip().casefold())
        return None

    def prime(self, batch: Sequence[TransactionView]) -> None:
        """Classify ``batch`` in one call; exceptions propagate to the caller."""

        self._results.clear()
        eligible = [t for t in batch if self._eligible(t)]
        wanted = {t.id for t in eligible}
        for t in batch:
            if t.id not in wanted:
                self.rejections[t.id] = "no_match"
        if not eligible or not self._categories:
            return
        for result in self._classifier.classify(eligible, self._categories):
            if result.transaction_id not in wanted:
                _logger.debug(
                    "classifier:unknown_transaction transaction_id=%s", result.transaction_id
                )
                continue
            category = self._resolve(result)
            if category is None:
                self.rejections[result.transaction_id] = "no_match"
                continue
            if result.confidence < self._min_confidence:
                self.rejections[result.transaction_id] = "below_confidence"
                continue
            self.rejections.pop(result.transaction_id, None)
            self.accepted[result.transaction_id] = result
            self._results[result.transaction_id] = StrategyMatch(
                transaction_id=result.transaction_id,
                category_id=category.id,
                confidence=result.confidence,
                source=self.source,
                reason=f"Classifier ({round(result.confidence * 100)}%)",
                merchant_name_clean=result.cleaned_merchant_name,
            )

    def attempt(self, txn: TransactionView) -> StrategyMatch | None:
        return self._results.get(txn.id)


# ---- 6. Embedding similarity -------------------------------------------------------------


class EmbeddingStrategy:
    """Pick the category whose embedding is closest to the transaction text.

    Categories without a stored vector are embedded once, lazily, from their
    name, description and keywords.
    """

    name = "embedding"
    source: CategorySource = "embedding"

    def __init__(
        self,
        embedder: Embedder,
        categories: Sequence[CategoryView],
        *,
        threshold: float,
    ) -> None:
        self._embedder = embedder
        self._categories = [c for c in categories if not is_uncategorized_name(c.name)]
        self._threshold = threshold
        self._matrix: np.ndarray | None = None
        self._results: dict[int, StrategyMatch] = {}

    def _category_matrix(self) -> np.ndarray:
        if self._matrix is None:
            missing = [c for c in self._categories if not c.embedding]
            computed: dict[int, Sequence[float]] = {}
            if missing:
                vectors = self._embedder.embed([category_text(c) for c in missing])
                computed = {c.id: v for c, v in zip(missing, vectors, strict=True)}
            rows = [c.embedding or computed[c.id] for c in self._categories]
            self._matrix = np.asarray(rows, dtype=float)
        return self._matrix

    def prime(self, batch: Sequence[TransactionView]) -> None:
        self._results.clear()
        texts = [t.search_text for t in batch]
        usable = [(t, text) for t, text in zip(batch, texts, strict=True) if text]
        if not usable or not self._categories:
            return
        matrix = self._category_matrix()
        vectors = np.asarray(self._embedder.embed([text for _, text in usable]), dtype=float)
        sims = cosine_similarity_matrix(vectors, matrix)
        for (txn, _), row in zip(usable, sims, strict=True):
            best = int(np.argmax(row))
            score = float(row[best])
            if score < self._threshold:
                continue
            cat = self._categories[best]
            self._results[txn.id] = StrategyMatch(
                transaction_id=txn.id,
                category_id=cat.id,
                confidence=max(0.0, min(1.0, score)),
                source=self.source,
                reason=f"Embedding: {cat.name} ({score:.2f})",
            )

    def attempt(self, txn: TransactionView) -> StrategyMatch | None:
        return self._results.get(txn.id)


__all__ = [
    "AccountStrategy",
    "BatchStrategy",
    "ClassifierStrategy",
    "EmbeddingStrategy",
    "KeywordStrategy",
    "MerchantNameIndex",
    "MerchantNameStrategy",
    "Strategy",
]
