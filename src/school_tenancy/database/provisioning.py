"""
Bring a newly registered school's database to a ready-to-use state.

Provisioning is idempotent: tables and indexes are created only when missing
and counters are inserted only when absent, so re-running it is both harmless
and the recovery path after a partial failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import Index, Table
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from school_tenancy.database.indexes import index_name, indexes_for
from school_tenancy.database.registry import ConnectionRegistry, TenantConnection
from school_tenancy.database.schema import EntityName, SchemaRegistry
from school_tenancy.database.sequences import KNOWN_ENTITY_TYPES, SequenceAllocator
from school_tenancy.exceptions import ProvisioningError
from school_tenancy.logger import get_logger, tenant_log_context

logger = get_logger(__name__)

REQUIRED_COLLECTIONS: tuple[str, ...] = tuple(str(e) for e in EntityName)


@dataclass(frozen=True)
class ProvisionResult:
    database_name: str
    collections_created: int
    indexes_ensured: int
    sequences: List[str] = field(default_factory=list)


def _already_exists(exc: DBAPIError) -> bool:
    return "already exists" in str(exc.orig if exc.orig is not None else exc).lower()


async def ensure_collection_exists(conn: AsyncConnection, table: Table) -> None:
    """
    Create the table when missing. SQL engines create empty tables natively,
    so no marker row is needed to materialize the collection.
    """
    await conn.run_sync(table.create, checkfirst=True)


async def ensure_index(conn: AsyncConnection, index: Index) -> None:
    try:
        await conn.run_sync(index.create, checkfirst=True)
    except DBAPIError as e:
        # a concurrent provisioner won the race; the index is there
        if not _already_exists(e):
            raise
        logger.debug("Index already exists", index=index.name)


class TenantProvisioner:
    def __init__(
        self,
        registry: ConnectionRegistry,
        schemas: SchemaRegistry,
        sequences: Optional[SequenceAllocator] = None,
        *,
        collections: Sequence[str] = REQUIRED_COLLECTIONS,
        entity_types: Iterable[str] = KNOWN_ENTITY_TYPES,
    ) -> None:
        self._registry = registry
        self._schemas = schemas
        self._sequences = sequences or SequenceAllocator(registry)
        self.collections = tuple(collections)
        self.entity_types = tuple(entity_types)

    async def provision(self, tenant_code: str) -> ProvisionResult:
        conn = await self._registry.get(tenant_code)
        with tenant_log_context(tenant_code, conn.database_name):
            logger.info("Provisioning school database")

            indexes = 0
            for name in self.collections:
                indexes += await self._provision_collection(conn, tenant_code, name)

            try:
                sequences = await self._sequences.initialize_counters(conn, tenant_code, self.entity_types)
            except SQLAlchemyError as e:
                logger.error("Sequence initialization failed", error=str(e))
                raise ProvisioningError(tenant_code, str(e), collection="id_sequences") from e

            result = ProvisionResult(
                database_name=conn.database_name,
                collections_created=len(self.collections),
                indexes_ensured=indexes,
                sequences=sequences,
            )
            logger.info(
                "School database provisioned",
                collections=result.collections_created,
                indexes=result.indexes_ensured,
            )
            return result

    async def _provision_collection(self, conn: TenantConnection, tenant_code: str, name: str) -> int:
        try:
            table = self._schemas.table_for(name)
            by_name = {ix.name: ix for ix in table.indexes}
            wanted = [by_name[index_name(name, spec)] for spec in indexes_for(name) if index_name(name, spec) in by_name]

            async with conn.begin() as c:
                await ensure_collection_exists(c, table)
            for index in wanted:
                async with conn.begin() as c:
                    await ensure_index(c, index)
        except SQLAlchemyError as e:
            logger.error("Collection provisioning failed", collection=name, error=str(e))
            raise ProvisioningError(tenant_code, str(e), collection=name) from e

        logger.debug("Collection ready", collection=name, indexes=len(wanted))
        return len(wanted)
