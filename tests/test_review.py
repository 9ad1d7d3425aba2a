from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from transaction_intelligence import api
from transaction_intelligence.config import ReviewOptions
from transaction_intelligence.models import ClassifierResult, TransactionView
from transaction_intelligence.review import review_low_confidence, select_low_confidence

from tests.helpers.db import add_category, add_transaction, get_transaction

USER = "user-1"
DAY = date(2025, 4, 1)


class _Classifier:
    """Answers ``Koffie`` one transaction at a time; fails on ``fail_on`` descriptions."""

    def __init__(self, *, confidence: float = 0.9, fail_on: frozenset[str] = frozenset()):
        self.max_batch_size = 1
        self.confidence = confidence
        self.fail_on = fail_on
        self.seen: list[int] = []

    def classify(self, batch, categories):
        self.seen.extend(t.id for t in batch)
        if any(t.description in self.fail_on for t in batch):
            raise RuntimeError("upstream 503")
        return [
            ClassifierResult(
                transaction_id=t.id, category_name="Koffie", confidence=self.confidence
            )
            for t in batch
        ]


@pytest.fixture
def categories(db_url: str) -> dict[str, int]:
    return {
        "coffee": add_category(db_url, "Koffie"),
        "bakery": add_category(db_url, "Bakker"),
    }


def _add(db_url: str, categories, description: str, confidence: str, **kw) -> int:
    kw.setdefault("category_id", categories["bakery"])
    return add_transaction(
        db_url,
        USER,
        on=DAY,
        amount="-4.50",
        description=description,
        category_source="merchant_name",
        category_confidence=confidence,
        **kw,
    )


def test_select_orders_by_confidence_and_respects_band_and_cap():
    def view(tid: int, confidence: float | None, *, manual: bool = False) -> TransactionView:
        return TransactionView(
            id=tid,
            user_id=USER,
            date=DAY,
            amount=Decimal("-1.00"),
            is_debit=True,
            category_id=1,
            category_confidence=confidence,
            is_manual=manual,
        )

    txns = [view(1, 0.6), view(2, 0.5), view(3, 0.65), view(4, None), view(5, 0.55, manual=True)]
    assert [t.id for t in select_low_confidence(txns, ReviewOptions())] == [2, 1]
    capped = ReviewOptions(max_transactions=1)
    assert [t.id for t in select_low_confidence(txns, capped)] == [2]


def test_review_writes_only_improvements_and_counts_outcomes(db_url, categories):
    failing = _add(db_url, categories, "Broken Batch", "0.52")
    improved = _add(db_url, categories, "Coffee Corner", "0.55")
    same = _add(db_url, categories, "Espresso Bar", "0.60", category_id=categories["coffee"])
    confident = _add(db_url, categories, "Bakkerij", "0.80")
    manual = _add(db_url, categories, "Cafe", "0.55", is_manual=True)
    fake = _Classifier(fail_on=frozenset({"Broken Batch"}))

    result = review_low_confidence(USER, classifier=fake, database_url=db_url)

    assert fake.seen == [failing, improved, same]
    assert (result.total_candidates, result.processed) == (3, 2)
    assert (result.improved, result.unchanged, result.errors) == (1, 1, 1)
    [change] = result.changes
    assert (change.transaction_id, change.from_category, change.to_category) == (
        improved,
        "Bakker",
        "Koffie",
    )
    assert (change.old_confidence, change.new_confidence) == (0.55, 0.9)

    row = get_transaction(db_url, improved)
    assert (row.category_id, row.category_source) == (categories["coffee"], "classifier")
    assert row.category_confidence == Decimal("0.90")
    assert get_transaction(db_url, failing).category_id == categories["bakery"]
    assert get_transaction(db_url, confident).category_id == categories["bakery"]
    assert get_transaction(db_url, manual).category_id == categories["bakery"]


def test_weak_second_opinion_leaves_rows_alone(db_url, categories):
    tid = _add(db_url, categories, "Coffee Corner", "0.55")
    result = review_low_confidence(
        USER, classifier=_Classifier(confidence=0.7), database_url=db_url
    )
    assert (result.improved, result.unchanged, result.changes) == (0, 1, [])
    assert get_transaction(db_url, tid).category_confidence == Decimal("0.55")


def test_missing_classifier_returns_warning_without_reading(db_url, categories):
    _add(db_url, categories, "Coffee Corner", "0.55")
    result = api.review_low_confidence(USER, database_url=db_url)
    assert result.warnings == ["classifier unavailable; review skipped"]
    assert result.total_candidates == 0


def test_invalid_band_is_rejected():
    with pytest.raises(ValueError, match="below max_confidence"):
        ReviewOptions(min_confidence=0.7, max_confidence=0.6)
    with pytest.raises(ValueError, match="Invalid input"):
        review_low_confidence(" ", classifier=_Classifier())
