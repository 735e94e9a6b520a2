"""
TenantDatabaseManager: the narrow interface controllers, importers and
reporting code use to reach a school's database.

    manager = TenantDatabaseManager.from_settings()
    await manager.init()
    await manager.provision_tenant("NPS")
    student_id = await manager.generate_user_id("NPS", "student")   # "NPS0001"
    students = await manager.get_model("NPS", EntityName.STUDENTS)
    await students.insert(user_id=student_id, data={...})
    ...
    await manager.close_all()
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, inspect, select

from school_tenancy.config import Settings, get_settings
from school_tenancy.database.catalog import database_exists, drop_database
from school_tenancy.database.models import ModelFactory, TenantModel
from school_tenancy.database.naming import resolve_database_name
from school_tenancy.database.provisioning import ProvisionResult, TenantProvisioner
from school_tenancy.database.registry import ConnectionRegistry, TenantConnection
from school_tenancy.database.schema import EntityName, SchemaRegistry
from school_tenancy.database.sequences import SequenceAllocator
from school_tenancy.identifiers import Role, format_id, sequence_key
from school_tenancy.logger import get_logger

logger = get_logger(__name__)


class TenantDatabaseManager:
    def __init__(
        self,
        registry: ConnectionRegistry,
        schemas: Optional[SchemaRegistry] = None,
    ) -> None:
        self.registry = registry
        self.schemas = schemas or SchemaRegistry()
        self.sequences = SequenceAllocator(registry)
        self.provisioner = TenantProvisioner(registry, self.schemas, self.sequences)
        self.models = ModelFactory(registry, self.schemas)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "TenantDatabaseManager":
        return cls(ConnectionRegistry.from_settings(settings or get_settings()), **kwargs)

    async def init(self) -> "TenantDatabaseManager":
        await self.registry.init()
        return self

    async def __aenter__(self) -> "TenantDatabaseManager":
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close_all()

    # ---- naming & connections ---------------------------------------------

    @staticmethod
    def resolve_database_name(tenant_code: str) -> str:
        return resolve_database_name(tenant_code)

    async def get_connection(self, tenant_code: str) -> TenantConnection:
        return await self.registry.get(tenant_code)

    async def close_connection(self, tenant_code: str) -> None:
        await self.registry.close(tenant_code)

    async def close_all(self) -> List[str]:
        return await self.registry.close_all()

    # ---- provisioning ------------------------------------------------------

    async def provision_tenant(self, tenant_code: str) -> ProvisionResult:
        return await self.provisioner.provision(tenant_code)

    async def database_exists(self, tenant_code: str) -> bool:
        """True when the school database exists and holds at least one table."""
        url = self.registry.tenant_url(tenant_code)
        if not await database_exists(url):
            return False
        conn = await self.registry.get(tenant_code)
        async with conn.engine.connect() as c:
            names = await c.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        return bool(names)

    async def database_stats(self, tenant_code: str) -> Optional[Dict[str, Any]]:
        """Table and row counts for a school database; None if it cannot be read."""
        database_name = resolve_database_name(tenant_code)
        try:
            conn = await self.registry.get(tenant_code)
            async with conn.engine.connect() as c:
                names = await c.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
                documents = 0
                for name in names:
                    if name in self.schemas:
                        table = self.schemas.table_for(name)
                        documents += (await c.execute(select(func.count()).select_from(table))).scalar_one()
        except Exception as e:
            logger.error("Failed to read database stats", tenant_code=tenant_code, database=database_name, error=str(e))
            return None
        return {
            "school_code": tenant_code,
            "database_name": database_name,
            "collections": len(names),
            "documents": documents,
        }

    async def drop_tenant(self, tenant_code: str) -> None:
        """Administrative teardown: close the school's connection and drop its database."""
        url = self.registry.tenant_url(tenant_code)
        await self.registry.close(tenant_code)
        await drop_database(url)
        logger.warning("School database removed", tenant_code=tenant_code, database=url.database)

    # ---- sequences & identifiers -------------------------------------------

    async def next_sequence(self, tenant_code: str, entity_type: str) -> int:
        return await self.sequences.next_sequence(tenant_code, entity_type)

    @staticmethod
    def format_id(tenant_code: str, role: Union[str, Role], sequence: int) -> str:
        return format_id(tenant_code, role, sequence)

    async def generate_user_id(self, tenant_code: str, role: Union[str, Role]) -> str:
        sequence = await self.next_sequence(tenant_code, sequence_key(role))
        return format_id(tenant_code, role, sequence)

    async def generate_test_id(self, tenant_code: str) -> str:
        return await self.generate_user_id(tenant_code, Role.TEST)

    # ---- models ------------------------------------------------------------

    async def get_model(self, tenant_code: str, entity: Union[str, EntityName]) -> TenantModel:
        return await self.models.get_model(tenant_code, entity)
