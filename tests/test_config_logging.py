from __future__ import annotations

import io
import logging
from decimal import Decimal

import pytest

from transaction_intelligence.config import (
    CategorizationOptions,
    RecurringConfig,
    VariableSpendingConfig,
)
from transaction_intelligence.logging_setup import (
    configure_logging,
    get_logger,
    reset_logging,
    resolve_level,
)

# ---- Config ---------------------------------------------------------------------


def test_options_read_env_and_accept_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TI_MAX_ITERATIONS", "3")
    monkeypatch.setenv("TI_MIN_CONFIDENCE", "0.7")
    opts = CategorizationOptions.from_env(learn_keywords=True)
    assert (opts.max_iterations, opts.min_confidence, opts.learn_keywords) == (3, 0.7, True)
    assert opts.batch_size == 50


def test_invalid_env_value_names_the_variable(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TI_CLASSIFIER_BATCH_SIZE", "ten")
    with pytest.raises(ValueError, match="TI_CLASSIFIER_BATCH_SIZE"):
        CategorizationOptions.from_env()


def test_unknown_override_is_a_type_error():
    with pytest.raises(TypeError, match="bogus"):
        VariableSpendingConfig.from_env(bogus=1)


@pytest.mark.parametrize(
    ("factory", "message"),
    [
        (lambda: CategorizationOptions(max_iterations=0), "max_iterations"),
        (lambda: CategorizationOptions(embedding_threshold=-0.1), "embedding_threshold"),
        (lambda: RecurringConfig(min_occurrences=1), "min_occurrences"),
        (lambda: RecurringConfig(amount_tolerance_abs=Decimal("-1")), "amount_tolerance_abs"),
        (lambda: VariableSpendingConfig(top_n=0), "top_n"),
    ],
)
def test_invalid_values_fail_at_construction(factory, message):
    with pytest.raises(ValueError, match=message):
        factory()


def test_recurring_config_env_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TI_RECURRING_MIN_OCCURRENCES", "3")
    cfg = RecurringConfig.from_env(interval_tolerance_days=5)
    assert (cfg.min_occurrences, cfg.interval_tolerance_days) == (3, 5)
    assert cfg.interval_days["monthly"] == 30


# ---- Logging ----------------------------------------------------------------------


@pytest.mark.parametrize(
    ("value", "expected"),
    [("warning", logging.WARNING), ("15", 15), ("bogus", logging.INFO), (10, 10)],
)
def test_resolve_level(value, expected):
    assert resolve_level(value) == expected


def test_resolve_level_reads_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TRANSACTION_INTELLIGENCE_LOG_LEVEL", "error")
    assert resolve_level() == logging.ERROR


def test_configure_logging_installs_one_handler():
    stream = io.StringIO()
    logger = configure_logging("DEBUG", stream=stream)
    configure_logging("WARNING", stream=io.StringIO())

    handlers = [h for h in logger.handlers if not isinstance(h, logging.NullHandler)]
    assert len(handlers) == 1
    assert logger.propagate is False

    log = get_logger("transaction_intelligence.tests")
    log.info("sample:skipped reason=level")
    log.warning("sample:emitted key=value")
    output = stream.getvalue()
    assert "sample:emitted key=value" in output
    assert "sample:skipped" not in output


def test_library_loggers_are_silent_until_configured():
    reset_logging()
    get_logger("transaction_intelligence.tests")
    pkg = logging.getLogger("transaction_intelligence")
    assert any(isinstance(h, logging.NullHandler) for h in pkg.handlers)
    assert pkg.propagate is True
