"""Alembic environment configuration for the billing tables."""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import Connection
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError
from sqlmodel import SQLModel

from app.config import settings
from app.core.database import _coerce_sync_database_url
from app.models import payment_event, subscription  # noqa: F401 - ensure models are imported

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("billing.alembic")
logger.setLevel(logging.INFO)
target_metadata = SQLModel.metadata


def _log_database_url(url: str, source: str) -> None:
    rendered = make_url(url).render_as_string(hide_password=True)
    logger.info("Alembic resolved DATABASE_URL from %s: %s", source, rendered)
    config.print_stdout(f"[Alembic] DATABASE_URL source={source}: {rendered}")


def _config_database_url() -> str | None:
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    runtime_section = config.get_section("alembic:runtime")
    if runtime_section:
        return runtime_section.get("sqlalchemy.url")
    return None


def _resolve_database_config() -> tuple[str, dict]:
    candidates = [
        ("environment variable", os.environ.get("DATABASE_URL")),
        ("alembic.ini", _config_database_url()),
        ("app settings", settings.database_url),
    ]
    for source, value in candidates:
        if not value:
            continue
        try:
            normalized, connect_args, _ = _coerce_sync_database_url(make_url(value))
        except ArgumentError as exc:
            raise RuntimeError(f"DATABASE_URL from {source} is not a valid URL.") from exc
        _log_database_url(normalized, source)
        return normalized, connect_args
    raise RuntimeError("DATABASE_URL must be set to run migrations.")


def run_migrations_offline() -> None:
    """Run migrations offline (e.g., CI)."""
    url, _ = _resolve_database_config()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations with a sync engine, matching the application's driver."""
    configuration = config.get_section(config.config_ini_section) or {}
    url, connect_args = _resolve_database_config()
    configuration["sqlalchemy.url"] = url
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args=connect_args,
    )

    try:
        with connectable.connect() as connection:
            do_run_migrations(connection)
    finally:
        connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
