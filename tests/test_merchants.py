from __future__ import annotations

import pytest

from transaction_intelligence.merchants import (
    clean_merchant_name,
    find_or_create_merchant,
    merchant_key,
    normalize_iban,
)

from tests.helpers.db import add_merchant, get_merchant


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("ALBERT HEIJN 1595 SGRAVENHAGE", "Albert Heijn"),
        ("Jumbo Supermarkten BV", "Jumbo Supermarkten"),
        ("bakkerij van den berg", "Bakkerij van den Berg"),
        ("STARBUCKS #1234", "Starbucks"),
        ("KLM REF 998877", "KLM"),
        ("Shell Station 12", "Shell Station"),
    ],
)
def test_clean_merchant_name(raw, expected):
    assert clean_merchant_name(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "notprovided", "Niet opgegeven", "N/A"])
def test_placeholder_labels_clean_to_empty(raw):
    assert clean_merchant_name(raw) == ""


def test_merchant_key_ignores_case_noise_and_punctuation():
    assert merchant_key("ALBERT HEIJN 1595 SGRAVENHAGE") == "albert heijn"
    assert merchant_key("Albert-Heijn") == merchant_key("albert heijn")
    assert merchant_key(None) == ""


def test_normalize_iban():
    assert normalize_iban(" nl91 abna 0417 1643 00 ") == "NL91ABNA0417164300"
    assert normalize_iban(None) == ""


def test_find_or_create_merchant_reuses_case_insensitively(db_url):
    from db.client import session_scope

    existing = add_merchant(db_url, "Albert Heijn")
    with session_scope(database_url=db_url) as session:
        same = find_or_create_merchant(session, "ALBERT HEIJN", iban="nl91 abna 0417 1643 00")
        fresh = find_or_create_merchant(session, "Jumbo")
    assert same == existing
    assert fresh != existing
    assert get_merchant(db_url, existing).ibans == ["NL91ABNA0417164300"]


def test_find_or_create_merchant_rejects_blank_name(db_url):
    from db.client import session_scope

    with session_scope(database_url=db_url) as session, pytest.raises(ValueError):
        find_or_create_merchant(session, "  ")
