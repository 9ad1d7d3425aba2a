"""Process-wide SQLAlchemy engine and the ``session_scope`` unit of work.

Every writer in ``transaction_intelligence`` opens one ``session_scope`` per
batch, so a batch commits or rolls back as a whole and a later failure never
undoes earlier batches::

    from db.client import session_scope

    with session_scope(database_url=url) as session:
        session.execute(...)

The engine binds to the first URL it sees. Tests that switch databases call
:func:`dispose_engine` in between.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

_ENGINE: Engine | None = None
_SESSION_MAKER: sessionmaker[Session] | None = None


def _resolve_url(override: str | None) -> str:
    url = override or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; pass database_url or export it")
    return url


def get_engine(*, database_url: str | None = None) -> Engine:
    """Return the shared engine, creating it for ``database_url`` on first use.

    Asking for a different URL while an engine is bound raises instead of
    silently writing to the wrong database.
    """

    global _ENGINE, _SESSION_MAKER
    url = _resolve_url(database_url)
    if _ENGINE is None:
        _ENGINE = create_engine(url, pool_pre_ping=True)
        _SESSION_MAKER = sessionmaker(bind=_ENGINE, expire_on_commit=False)
    elif make_url(url) != _ENGINE.url:
        raise RuntimeError(
            f"engine is bound to {_ENGINE.url.render_as_string(hide_password=True)}; "
            "call dispose_engine() before switching databases"
        )
    return _ENGINE


def dispose_engine() -> None:
    """Close pooled connections and unbind so the next call may pick a new URL."""

    global _ENGINE, _SESSION_MAKER
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    _SESSION_MAKER = None


@contextmanager
def session_scope(*, database_url: str | None = None) -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on any error."""

    get_engine(database_url=database_url)
    assert _SESSION_MAKER is not None
    session = _SESSION_MAKER()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "dispose_engine",
    "get_engine",
    "session_scope",
]
