# ruff: noqa: I001
"""Alembic environment for the ``ti_*`` schema.

The URL comes from ``DATABASE_URL`` (a local ``.env`` is honoured) and falls
back to ``sqlalchemy.url`` from the ini file. Autogenerate only looks at
tables owned by ``db.metadata``, so a database shared with other services
does not produce drop operations for their tables. SQLite runs in batch mode
because it cannot alter check constraints in place.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from dotenv import find_dotenv, load_dotenv

import db as _db_pkg

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

load_dotenv(find_dotenv(usecwd=True), override=False)

db_url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url") or ""
if not db_url:
    raise RuntimeError("DATABASE_URL is not set and alembic.ini has no sqlalchemy.url")

target_metadata = _db_pkg.metadata


def _include_object(obj, name, type_, reflected, compare_to) -> bool:
    if type_ == "table" and reflected and compare_to is None:
        return name in target_metadata.tables
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        include_object=_include_object,
        render_as_batch=db_url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=db_url, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = dict(config.get_section(config.config_ini_section) or {})
    section["sqlalchemy.url"] = db_url
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
