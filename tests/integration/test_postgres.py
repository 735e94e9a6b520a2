import asyncio
import uuid

import pytest

from school_tenancy.database.registry import ConnectionRegistry
from school_tenancy.manager import TenantDatabaseManager


@pytest.fixture
async def pg_manager(pg_url):
    manager = await TenantDatabaseManager(ConnectionRegistry(pg_url)).init()
    code = f"T{uuid.uuid4().hex[:8].upper()}"
    try:
        yield manager, code
    finally:
        await manager.drop_tenant(code)
        await manager.close_all()


async def test_provision_and_allocate_on_postgres(pg_manager):
    manager, code = pg_manager

    first = await manager.provision_tenant(code)
    again = await manager.provision_tenant(code)
    assert first == again
    assert await manager.database_exists(code)

    ids = await asyncio.gather(*(manager.generate_user_id(code, "student") for _ in range(25)))
    assert sorted(ids) == [f"{code}{n:04d}" for n in range(1, 26)]

    students = await manager.get_model(code, "students")
    row = await students.insert(user_id=ids[0], data={"name": "Asha"})
    assert (await students.get(id=row["id"]))["data"] == {"name": "Asha"}


async def test_unprovisioned_tenant_sequence_starts_at_one(pg_manager):
    manager, code = pg_manager
    assert await manager.next_sequence(code, "testdetails") == 1
