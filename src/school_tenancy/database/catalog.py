"""
Server-level database lifecycle for tenant databases.

PostgreSQL needs the tenant database to exist before anything can connect to
it, so CREATE/DROP DATABASE go through the ``postgres`` maintenance database
with AUTOCOMMIT. SQLite creates its file on first connect; only the directory
has to exist.
"""

from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from school_tenancy.database.naming import maintenance_url
from school_tenancy.logger import get_logger

logger = get_logger(__name__)


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


async def _run_on_server(url: URL, sql: str, params: dict | None = None):
    engine = create_async_engine(
        maintenance_url(url),
        poolclass=NullPool,
        isolation_level="AUTOCOMMIT",
    )
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text(sql), params or {})
            return result.scalar() if result.returns_rows else None
    finally:
        await engine.dispose()


async def database_exists(url: URL) -> bool:
    if url.get_backend_name() == "sqlite":
        return url.database is not None and os.path.exists(url.database)
    found = await _run_on_server(
        url, "SELECT 1 FROM pg_database WHERE datname = :name", {"name": url.database}
    )
    return bool(found)


async def create_database(url: URL) -> None:
    if url.get_backend_name() == "sqlite":
        if url.database:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        return
    await _run_on_server(url, f"CREATE DATABASE {_quote_ident(url.database)}")
    logger.info("Tenant database created", database=url.database)


async def ensure_database(url: URL) -> bool:
    """Create the database if it is missing. Returns True when it was created."""
    if await database_exists(url):
        return False
    try:
        await create_database(url)
    except DBAPIError as e:
        # another process created it between the check and the CREATE
        if "already exists" not in str(e):
            raise
        return False
    return True


async def drop_database(url: URL) -> None:
    if url.get_backend_name() == "sqlite":
        if url.database and os.path.exists(url.database):
            os.remove(url.database)
    else:
        await _run_on_server(url, f"DROP DATABASE IF EXISTS {_quote_ident(url.database)}")
    logger.warning("Tenant database dropped", database=url.database)
