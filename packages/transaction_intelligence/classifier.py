"""External classifier contract and its OpenAI Responses implementation.

Public API:
    - :class:`Classifier`: ``classify(batch, categories) -> list[ClassifierResult]``
    - :class:`OpenAIClassifier`: default implementation
    - :func:`build_default_classifier`: ``None`` when ``OPENAI_API_KEY`` is unset

The orchestrator treats any exception raised by ``classify`` as a failure of
that batch only. Retries live here: HTTP 429 and 5xx are retried with a
backoff schedule plus jitter; parsing and validation errors are terminal.
No client is created and no environment is read at import time.
"""

from __future__ import annotations

import json
import os
import random
import time
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from openai import OpenAI
from openai.types.responses import ResponseTextConfigParam
from pydantic import ValidationError

from .config import env_str
from .logging_setup import get_logger
from .models import CategoryView, ClassifierResult, TransactionView

# ---- Tunables (private) ------------------------------------------------------

_MAX_ATTEMPTS: int = 3
_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0)
_JITTER_PCT: float = 0.20
_DEFAULT_MODEL: str = "gpt-5-mini"
_DEFAULT_MAX_BATCH_SIZE: int = 10

BEGIN_MARKER = "BEGIN_TRANSACTIONS_JSON"
END_MARKER = "END_TRANSACTIONS_JSON"

_logger = get_logger("transaction_intelligence.classifier")


@runtime_checkable
class Classifier(Protocol):
    max_batch_size: int

    def classify(
        self,
        batch: Sequence[TransactionView],
        categories: Sequence[CategoryView],
    ) -> list[ClassifierResult]: ...


# ---- Prompt construction -----------------------------------------------------


def serialize_batch(batch: Sequence[TransactionView]) -> str:
    """Serialize a batch with a fixed field order and batch-relative ``idx``."""

    items = [
        {
            "idx": idx,
            "id": t.id,
            "description": t.description,
            "merchant": t.merchant_raw,
            "amount": str(t.amount),
            "date": t.date.isoformat(),
            "direction": "debit" if t.is_debit else "credit",
        }
        for idx, t in enumerate(batch)
    ]
    return json.dumps(items, ensure_ascii=False)


def build_instructions() -> str:
    return (
        "You categorize bank transactions for a personal finance app. Choose exactly one "
        "category per transaction from the provided list and never invent categories. "
        "Also return a short, clean merchant name (no store numbers, cities or references) "
        "and a confidence between 0 and 1. Output JSON only that conforms to the schema."
    )


def build_user_content(batch_json: str, categories: Sequence[CategoryView]) -> str:
    lines = ["Categories:"]
    for c in categories:
        hint = f" ({', '.join(c.keywords[:5])})" if c.keywords else ""
        lines.append(f"- {c.name}{hint}")
    return "\n".join(
        [
            *lines,
            "",
            "Return one result per transaction, aligned by idx.",
            BEGIN_MARKER,
            batch_json,
            END_MARKER,
        ]
    )


def build_text_config(categories: Sequence[CategoryView]) -> ResponseTextConfigParam:
    names = [n for n in dict.fromkeys(c.name for c in categories) if n]
    if not names:
        raise ValueError("Invalid input: classifier requires at least one category")
    return {
        "format": {
            "type": "json_schema",
            "name": "transaction_categories",
            "schema": {
                "type": "object",
                "properties": {
                    "results": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "idx": {"type": "integer"},
                                "category": {"type": "string", "enum": names},
                                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                                "merchant_name": {"type": ["string", "null"]},
                                "reasoning": {"type": ["string", "null"]},
                            },
                            "required": [
                                "idx",
                                "category",
                                "confidence",
                                "merchant_name",
                                "reasoning",
                            ],
                            "additionalProperties": False,
                        },
                    }
                },
                "required": ["results"],
                "additionalProperties": False,
            },
            "strict": True,
        }
    }


# ---- Response handling ---------------------------------------------------------


def _extract_response_json_mapping(resp: Any) -> Mapping[str, Any]:
    """Decode the JSON mapping from a Responses API result.

    Prefers ``resp.output_text``; falls back to ``resp.output[0].content[0].text``.
    Raises ``ValueError`` when no text is found or it is not valid JSON.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        output = getattr(resp, "output", None) or []
        content = getattr(output[0], "content", None) if output else None
        if content:
            node = getattr(content[0], "text", None)
            if isinstance(node, str):
                text = node
            elif isinstance(getattr(node, "value", None), str):
                text = node.value
    if not text or not isinstance(text, str):
        raise ValueError("Unexpected Responses API shape; unable to locate text output")
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError("Model output was not valid JSON per the requested schema") from e
    if not isinstance(decoded, Mapping):
        raise ValueError("Invalid response: top-level JSON must be an object")
    return decoded


def parse_results(
    body: Mapping[str, Any],
    batch: Sequence[TransactionView],
) -> list[ClassifierResult]:
    """Align model results to ``batch`` by ``idx`` and validate each item.

    Out-of-range or duplicate ``idx`` values raise ``ValueError``. Missing
    items are allowed; the orchestrator leaves those transactions unresolved.
    """

    items = body.get("results")
    if not isinstance(items, list):
        raise ValueError("Invalid response: 'results' must be a list")
    seen: set[int] = set()
    out: list[ClassifierResult] = []
    for item in items:
        if not isinstance(item, Mapping):
            raise ValueError("Invalid response: each result must be an object")
        idx = item.get("idx")
        if not isinstance(idx, int) or not (0 <= idx < len(batch)):
            raise ValueError(f"Invalid response: idx {idx!r} out of range")
        if idx in seen:
            raise ValueError(f"Invalid response: duplicate idx {idx}")
        seen.add(idx)
        try:
            out.append(
                ClassifierResult.model_validate(
                    {
                        "transaction_id": batch[idx].id,
                        "category_name": item.get("category"),
                        "confidence": item.get("confidence"),
                        "cleaned_merchant_name": item.get("merchant_name"),
                        "reasoning": item.get("reasoning"),
                    }
                )
            )
        except ValidationError as e:
            raise ValueError(f"Invalid response: result idx {idx} failed validation: {e}") from e
    return out


def _is_retryable(exc: BaseException) -> bool:
    """Return True only for HTTP 429 and 5xx errors."""

    sc = getattr(exc, "status_code", None)
    return isinstance(sc, int) and (sc == 429 or 500 <= sc < 600)


def _sleep_backoff(attempt_no: int) -> None:
    base = _BACKOFF_SCHEDULE_SEC[min(attempt_no - 1, len(_BACKOFF_SCHEDULE_SEC) - 1)]
    jitter = base * _JITTER_PCT
    time.sleep(max(0.0, base + random.uniform(-jitter, jitter)))


# ---- Implementation ------------------------------------------------------------------


class OpenAIClassifier:
    """Classify transactions with the OpenAI Responses API and a strict schema."""

    def __init__(
        self,
        *,
        model: str | None = None,
        client: OpenAI | None = None,
        max_batch_size: int = _DEFAULT_MAX_BATCH_SIZE,
    ) -> None:
        if max_batch_size <= 0:
            raise ValueError("Invalid input: max_batch_size must be positive")
        self.model = model or env_str("TI_CLASSIFIER_MODEL", _DEFAULT_MODEL)
        self.max_batch_size = max_batch_size
        self._client = client

    def _get_client(self) -> OpenAI:
        # Created on first use and reused across batches and retries.
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def classify(
        self,
        batch: Sequence[TransactionView],
        categories: Sequence[CategoryView],
    ) -> list[ClassifierResult]:
        if not batch:
            return []
        if len(batch) > self.max_batch_size:
            raise ValueError(
                f"Invalid input: batch of {len(batch)} exceeds max_batch_size={self.max_batch_size}"
            )
        text_cfg = build_text_config(categories)
        user_content = build_user_content(serialize_batch(batch), categories)
        client = self._get_client()

        attempt = 1
        while True:
            t0 = time.perf_counter()
            try:
                resp = client.responses.create(
                    model=self.model,
                    instructions=build_instructions(),
                    input=user_content,
                    text=text_cfg,
                )
                results = parse_results(_extract_response_json_mapping(resp), batch)
                _logger.info(
                    "classifier:batch_done num_transactions=%d results=%d latency_ms=%.2f",
                    len(batch),
                    len(results),
                    (time.perf_counter() - t0) * 1000.0,
                )
                return results
            except Exception as e:  # noqa: BLE001
                dt_ms = (time.perf_counter() - t0) * 1000.0
                if attempt >= _MAX_ATTEMPTS or not _is_retryable(e):
                    _logger.error(
                        "classifier:batch_failed_terminal num_transactions=%d latency_ms=%.2f "
                        "error=%s attempt=%d",
                        len(batch),
                        dt_ms,
                        e.__class__.__name__,
                        attempt,
                    )
                    if isinstance(e, ValueError):
                        raise
                    raise RuntimeError(
                        f"classifier failed for batch of {len(batch)}: {e}"
                    ) from e
                _logger.warning(
                    "classifier:batch_retry num_transactions=%d latency_ms=%.2f error=%s "
                    "attempt=%d",
                    len(batch),
                    dt_ms,
                    e.__class__.__name__,
                    attempt,
                )
                _sleep_backoff(attempt)
                attempt += 1


def build_default_classifier(*, max_batch_size: int = _DEFAULT_MAX_BATCH_SIZE) -> Classifier | None:
    if not os.getenv("OPENAI_API_KEY"):
        _logger.info("classifier:disabled reason=no_api_key")
        return None
    return OpenAIClassifier(max_batch_size=max_batch_size)


__all__ = [
    "BEGIN_MARKER",
    "END_MARKER",
    "Classifier",
    "OpenAIClassifier",
    "build_default_classifier",
    "build_instructions",
    "build_text_config",
    "build_user_content",
    "parse_results",
    "serialize_batch",
]
