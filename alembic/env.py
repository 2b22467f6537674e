from __future__ import annotations

import os
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import engine_from_config, pool

from db.base import Base
from db.config import is_sqlite_url, load_env_files, normalize_database_url, resolve_database_url
from db.models import (  # noqa: F401  imports trigger Base.metadata registration
    CatalogEntity,
    CatalogEntityChild,
    CatalogEntityTag,
    FetchRun,
    Source,
    Tag,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _migration_url() -> str:
    """
    Resolve the migration target, first match wins:

    1) ``-x db_url=...``
    2) ALEMBIC_DATABASE_URL
    3) sqlalchemy.url from alembic.ini
    4) the application's own resolution (DATABASE_URL, CLOUD_DATABASE_URL, LOCAL_DATABASE_URL)
    """

    load_env_files()

    overrides = (
        context.get_x_argument(as_dictionary=True).get("db_url"),
        os.getenv("ALEMBIC_DATABASE_URL"),
        config.get_main_option("sqlalchemy.url"),
    )
    url = next(
        (normalize_database_url(value.strip()) for value in overrides if value and value.strip()),
        None,
    ) or resolve_database_url()

    if not (url.startswith("postgresql") or is_sqlite_url(url)):
        raise RuntimeError("Migrations target PostgreSQL or SQLite only.")
    return url


def _configure(url: str, **options: Any) -> None:
    # SQLite cannot ALTER most constraints in place; batch mode rebuilds the table.
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        render_as_batch=is_sqlite_url(url),
        **options,
    )


def run_migrations_offline() -> None:
    url = _migration_url()
    _configure(url, url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _migration_url()
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = url
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        _configure(url, connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
