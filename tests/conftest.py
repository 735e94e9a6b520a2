import os

import pytest

from school_tenancy.database.registry import ConnectionRegistry, PoolPolicy
from school_tenancy.manager import TenantDatabaseManager


def require_test_db():
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL not set; skipping PostgreSQL-dependent tests")
    return url


@pytest.fixture
def pg_url():
    return require_test_db()


@pytest.fixture
def sqlite_url(tmp_path):
    # each tenant becomes <tmp_path>/school_<code>.db
    return f"sqlite+aiosqlite:///{tmp_path}"


@pytest.fixture
def policy():
    return PoolPolicy(connect_timeout=5.0, socket_timeout=5.0)


@pytest.fixture
async def registry(sqlite_url, policy):
    reg = ConnectionRegistry(sqlite_url, policy=policy)
    await reg.init()
    yield reg
    await reg.close_all()


@pytest.fixture
async def manager(registry):
    yield TenantDatabaseManager(registry)
