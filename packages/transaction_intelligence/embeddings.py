"""Embedding collaborator for the similarity fallback.

Public API:
    - :class:`Embedder`: ``embed(texts) -> list[list[float]]`` contract
    - :class:`OpenAIEmbedder`: OpenAI Embeddings API implementation
    - :func:`build_default_embedder`: returns ``None`` without ``OPENAI_API_KEY``
    - :func:`cosine_similarity_matrix`, :func:`category_text`

No client is created at import time.
"""

from __future__ import annotations

import os
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import numpy as np
from openai import OpenAI

from .config import env_str
from .logging_setup import get_logger
from .models import CategoryView

_DEFAULT_MODEL: str = "text-embedding-3-small"

_logger = get_logger("transaction_intelligence.embeddings")


@runtime_checkable
class Embedder(Protocol):
    def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


def category_text(category: CategoryView) -> str:
    """Text embedded for a category lacking a stored vector."""

    parts = [category.name]
    if category.description:
        parts.append(category.description)
    if category.keywords:
        parts.append(", ".join(category.keywords))
    return ". ".join(parts)


def cosine_similarity_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Return the ``len(a) x len(b)`` cosine similarity matrix.

    Zero vectors yield similarity 0 rather than NaN.
    """

    a = np.atleast_2d(np.asarray(a, dtype=float))
    b = np.atleast_2d(np.asarray(b, dtype=float))
    a_norm = np.linalg.norm(a, axis=1, keepdims=True)
    b_norm = np.linalg.norm(b, axis=1, keepdims=True)
    a_unit = np.divide(a, a_norm, out=np.zeros_like(a), where=a_norm != 0)
    b_unit = np.divide(b, b_norm, out=np.zeros_like(b), where=b_norm != 0)
    return a_unit @ b_unit.T


class OpenAIEmbedder:
    def __init__(self, *, model: str | None = None, client: OpenAI | None = None) -> None:
        self.model = model or env_str("TI_EMBEDDING_MODEL", _DEFAULT_MODEL)
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        resp = self._get_client().embeddings.create(model=self.model, input=list(texts))
        data = sorted(resp.data, key=lambda d: d.index)
        _logger.debug("embeddings:done model=%s count=%d", self.model, len(data))
        return [list(d.embedding) for d in data]


def build_default_embedder() -> Embedder | None:
    if not os.getenv("OPENAI_API_KEY"):
        _logger.info("embeddings:disabled reason=no_api_key")
        return None
    return OpenAIEmbedder()


__all__ = [
    "Embedder",
    "OpenAIEmbedder",
    "build_default_embedder",
    "category_text",
    "cosine_similarity_matrix",
]
