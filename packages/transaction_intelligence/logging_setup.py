"""Centralized logging configuration for ``transaction_intelligence``.

Public helpers:

- ``configure_logging(...)``: attach one ``StreamHandler`` to the package root
  logger. Only entrypoints (the CLI, a host service) call it, once at startup.
- ``get_logger(name)``: acquire a module logger. Until configuration runs, the
  package root logger carries a ``NullHandler`` so library use stays silent.
- ``reset_logging()``: drop the handler installed by ``configure_logging``;
  used by tests that assert on configuration.

Library modules never attach handlers. They call
``get_logger("transaction_intelligence.<module>")`` and emit structured
``event:phase key=value`` messages, e.g.
``run_categorization:batch_done strategy=keyword batch_index=0 matched=7``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "transaction_intelligence"
_LEVEL_ENV_VAR = "TRANSACTION_INTELLIGENCE_LOG_LEVEL"
_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_handler: logging.Handler | None = None


def resolve_level(level: int | str | None = None) -> int:
    """Resolve a level from an int, a level name or numeric string, or the env.

    Unknown names fall back to ``logging.INFO``.
    """

    if level is None:
        level = os.getenv(_LEVEL_ENV_VAR) or logging.INFO
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    numeric = logging.getLevelName(name)
    return numeric if isinstance(numeric, int) else logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> logging.Logger:
    """Configure the package root logger; repeated calls only adjust the level.

    Parameters
    ----------
    level:
        ``int`` or level name. ``None`` reads ``TRANSACTION_INTELLIGENCE_LOG_LEVEL``
        and defaults to ``INFO``.
    fmt:
        Optional format string; defaults to
        ``"%(asctime)s %(levelname)s %(name)s: %(message)s"``.
    stream:
        Output stream for the handler (``sys.stderr`` by default).
    """

    global _handler
    logger = logging.getLogger(_PKG_LOGGER_NAME)
    resolved = resolve_level(level)

    if _handler is None:
        for h in list(logger.handlers):
            if isinstance(h, logging.NullHandler):
                logger.removeHandler(h)
        _handler = logging.StreamHandler(stream)
        _handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))
        logger.addHandler(_handler)
        # Avoid double emission via the root logger.
        logger.propagate = False

    _handler.setLevel(resolved)
    logger.setLevel(resolved)
    return logger


def reset_logging() -> None:
    global _handler
    logger = logging.getLogger(_PKG_LOGGER_NAME)
    if _handler is not None:
        logger.removeHandler(_handler)
        _handler = None
    logger.propagate = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name, ensuring a silent default for library use."""

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if _handler is None and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "reset_logging", "resolve_level"]
