from __future__ import annotations

import json
from datetime import date
from decimal import Decimal

import pytest

import transaction_intelligence.classifier as classifier_mod
from transaction_intelligence.classifier import (
    OpenAIClassifier,
    build_default_classifier,
    build_text_config,
    parse_results,
)
from transaction_intelligence.embeddings import OpenAIEmbedder, build_default_embedder
from transaction_intelligence.models import CategoryView, TransactionView

from tests.helpers.openai_stub import HTTPStatusError, OpenAIStub

CATEGORIES = [
    CategoryView(id=1, name="Boodschappen", keywords=("albert heijn",)),
    CategoryView(id=2, name="Koffie"),
]


def _batch(n: int = 2) -> list[TransactionView]:
    return [
        TransactionView(
            id=100 + i,
            user_id="u1",
            date=date(2025, 2, 1),
            amount=Decimal("-3.20"),
            is_debit=True,
            description=f"ALBERT HEIJN {1000 + i}",
            merchant_raw="ALBERT HEIJN",
        )
        for i in range(n)
    ]


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    slept: list[float] = []
    monkeypatch.setattr(classifier_mod.time, "sleep", slept.append)
    return slept


def test_classify_aligns_results_by_idx():
    stub = OpenAIStub(lambda item: ("Boodschappen", 0.92, "Albert Heijn"))
    clf = OpenAIClassifier(client=stub, model="test-model")
    results = clf.classify(_batch(), CATEGORIES)

    assert [r.transaction_id for r in results] == [100, 101]
    assert all(r.category_name == "Boodschappen" for r in results)
    assert results[0].cleaned_merchant_name == "Albert Heijn"
    call = stub.calls[0]
    assert call["model"] == "test-model"
    assert call["text"]["format"]["strict"] is True
    sent = json.loads(call["input"].split("BEGIN_TRANSACTIONS_JSON\n")[1].split("\nEND_")[0])
    assert [item["idx"] for item in sent] == [0, 1]
    assert sent[0]["direction"] == "debit"


def test_retries_429_then_succeeds(no_sleep):
    stub = OpenAIStub(
        lambda item: ("Koffie", 0.8, None),
        failures=[HTTPStatusError(429)],
    )
    results = OpenAIClassifier(client=stub).classify(_batch(1), CATEGORIES)
    assert len(stub.calls) == 2
    assert results[0].category_name == "Koffie"
    assert len(no_sleep) == 1
    assert 0.4 <= no_sleep[0] <= 0.6


def test_server_errors_exhaust_attempts(no_sleep):
    stub = OpenAIStub(failures=[HTTPStatusError(503)] * 3)
    with pytest.raises(RuntimeError, match="classifier failed"):
        OpenAIClassifier(client=stub).classify(_batch(1), CATEGORIES)
    assert len(stub.calls) == 3
    assert len(no_sleep) == 2


def test_client_errors_are_not_retried(no_sleep):
    stub = OpenAIStub(failures=[HTTPStatusError(400)])
    with pytest.raises(RuntimeError):
        OpenAIClassifier(client=stub).classify(_batch(1), CATEGORIES)
    assert len(stub.calls) == 1
    assert no_sleep == []


def test_invalid_json_is_terminal(no_sleep):
    stub = OpenAIStub(raw_output="not json")
    with pytest.raises(ValueError, match="not valid JSON"):
        OpenAIClassifier(client=stub).classify(_batch(1), CATEGORIES)
    assert len(stub.calls) == 1


def test_batch_larger_than_limit_is_rejected():
    clf = OpenAIClassifier(client=OpenAIStub(), max_batch_size=1)
    with pytest.raises(ValueError, match="max_batch_size"):
        clf.classify(_batch(2), CATEGORIES)


def test_parse_results_rejects_duplicate_and_out_of_range_idx():
    batch = _batch(1)
    dup = {"results": [{"idx": 0, "category": "Koffie", "confidence": 0.5}] * 2}
    with pytest.raises(ValueError, match="duplicate idx"):
        parse_results(dup, batch)
    with pytest.raises(ValueError, match="out of range"):
        parse_results({"results": [{"idx": 3, "category": "Koffie", "confidence": 0.5}]}, batch)
    with pytest.raises(ValueError, match="failed validation"):
        parse_results({"results": [{"idx": 0, "category": "Koffie", "confidence": 1.5}]}, batch)


def test_text_config_enumerates_category_names():
    cfg = build_text_config(CATEGORIES)
    item = cfg["format"]["schema"]["properties"]["results"]["items"]
    assert item["properties"]["category"]["enum"] == ["Boodschappen", "Koffie"]
    with pytest.raises(ValueError):
        build_text_config([])


def test_defaults_need_an_api_key(monkeypatch: pytest.MonkeyPatch):
    assert build_default_classifier() is None
    assert build_default_embedder() is None
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("TI_CLASSIFIER_MODEL", "gpt-test")
    clf = build_default_classifier(max_batch_size=4)
    assert isinstance(clf, OpenAIClassifier)
    assert (clf.model, clf.max_batch_size) == ("gpt-test", 4)
    assert isinstance(build_default_embedder(), OpenAIEmbedder)


def test_embedder_orders_vectors_by_index():
    stub = OpenAIStub(embed=lambda text: [float(len(text)), 1.0])
    vectors = OpenAIEmbedder(client=stub, model="emb").embed(["a", "bbb"])
    assert vectors == [[1.0, 1.0], [3.0, 1.0]]
    assert OpenAIEmbedder(client=stub).embed([]) == []
