"""
Tenant naming: school code -> database name -> connection URL.

    >>> resolve_database_name("NPS-01")
    'school_nps_01'
"""

from __future__ import annotations

import os
import re

from sqlalchemy.engine import URL, make_url

from school_tenancy.config import normalize_database_url

DATABASE_PREFIX = "school_"
SQLITE_SUFFIX = ".db"

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def resolve_database_name(tenant_code: str) -> str:
    if not isinstance(tenant_code, str) or tenant_code == "":
        raise ValueError("tenant code must be a non-empty string")
    return DATABASE_PREFIX + _NON_ALNUM.sub("_", tenant_code.lower())


def build_tenant_url(base_url: str | URL, database_name: str) -> URL:
    """
    Substitute a tenant database into the shared base URL.

    Server URLs get their path segment replaced when one is present
    (``postgresql+asyncpg://u:p@host/main?ssl=require``) and appended when it
    is not (``postgresql+asyncpg://localhost:5432/``); query parameters are
    kept either way. For SQLite the base database is a directory and each
    tenant is a file inside it.
    """
    url = make_url(normalize_database_url(str(base_url) if isinstance(base_url, str) else base_url.render_as_string(hide_password=False)))

    if url.get_backend_name() == "sqlite":
        directory = url.database or "."
        return url.set(database=os.path.join(directory, database_name + SQLITE_SUFFIX))

    return url.set(database=database_name)


def maintenance_url(url: URL) -> URL:
    """URL of the server's maintenance database, used for CREATE/DROP DATABASE."""
    return url.set(database="postgres")


def render_url(url: URL) -> str:
    return url.render_as_string(hide_password=True)
