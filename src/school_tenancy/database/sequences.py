"""
Per-tenant monotonic counters backing the human-readable IDs.

Every tenant database holds an ``id_sequences`` table; the rows sharing id
``"sequences"`` form that tenant's sequence document, one row per entity type.
Allocation is a single atomic upsert:

    INSERT ... VALUES ('sequences', :entity, 1)
    ON CONFLICT (id, entity_type) DO UPDATE SET value = id_sequences.value + 1
    RETURNING value

so two concurrent callers can never read back the same value, and the first
call for a new entity type (or a tenant that was never provisioned) yields 1.
Numbers burnt by failed downstream work are not reused.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from weakref import WeakKeyDictionary, WeakSet

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from school_tenancy.database.registry import ConnectionRegistry, TenantConnection
from school_tenancy.exceptions import SequenceError
from school_tenancy.logger import get_logger

logger = get_logger(__name__)

SEQUENCE_DOCUMENT_ID = "sequences"
KNOWN_ENTITY_TYPES = ("student", "teacher", "admin", "parent", "testdetails")

sequence_metadata = MetaData()

id_sequences = Table(
    "id_sequences",
    sequence_metadata,
    Column("id", String(32), primary_key=True),
    Column("entity_type", String(64), primary_key=True),
    Column("value", Integer),
    Column("school_code", String(64)),
    Column("updated", DateTime(timezone=True), nullable=False),
)

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_KEY = (id_sequences.c.id, id_sequences.c.entity_type)


def normalize_entity_type(entity_type: str) -> str:
    if not isinstance(entity_type, str) or not entity_type.strip():
        raise ValueError("entity type must be a non-empty string")
    return entity_type.strip().lower()


def _is_counter(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _insert_for(conn: TenantConnection):
    try:
        return _INSERTS[conn.dialect_name]
    except KeyError:
        raise NotImplementedError(
            f"Atomic sequence upsert is not available for dialect {conn.dialect_name!r}"
        ) from None


class SequenceAllocator:
    """Hands out strictly increasing integers per (tenant, entity type)."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        self._ready: "WeakSet[TenantConnection]" = WeakSet()
        # held only while a connection's table check is in flight
        self._locks: "WeakKeyDictionary[TenantConnection, asyncio.Lock]" = WeakKeyDictionary()

    async def ensure_table(self, conn: TenantConnection) -> None:
        """Create ``id_sequences`` on first use of a connection."""
        if conn in self._ready:
            return
        lock = self._locks.setdefault(conn, asyncio.Lock())
        async with lock:
            if conn in self._ready:
                return
            async with conn.begin() as c:
                await c.run_sync(id_sequences.create, checkfirst=True)
            self._ready.add(conn)
            self._locks.pop(conn, None)

    async def initialize_counters(
        self,
        conn: TenantConnection,
        tenant_code: str,
        entity_types: Iterable[str] = KNOWN_ENTITY_TYPES,
    ) -> list[str]:
        """Insert missing counters at 0. Existing counters are left untouched."""
        await self.ensure_table(conn)
        now = _utcnow()
        names = [normalize_entity_type(e) for e in entity_types]
        rows = [
            {"id": SEQUENCE_DOCUMENT_ID, "entity_type": name, "value": 0, "school_code": tenant_code, "updated": now}
            for name in names
        ]
        if rows:
            stmt = _insert_for(conn)(id_sequences).values(rows).on_conflict_do_nothing(index_elements=list(_KEY))
            async with conn.begin() as c:
                await c.execute(stmt)
        logger.info("Initialized sequences", tenant_code=tenant_code, database=conn.database_name, entity_types=names)
        return names

    async def _increment(self, conn: TenantConnection, tenant_code: str, entity_type: str) -> Any:
        now = _utcnow()
        stmt = (
            _insert_for(conn)(id_sequences)
            .values(
                id=SEQUENCE_DOCUMENT_ID,
                entity_type=entity_type,
                value=1,
                school_code=tenant_code,
                updated=now,
            )
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_KEY),
            set_={"value": id_sequences.c.value + 1, "updated": now},
        ).returning(id_sequences.c.value)
        async with conn.begin() as c:
            result = await c.execute(stmt)
            return result.scalar_one_or_none()

    async def _reset(self, conn: TenantConnection, tenant_code: str, entity_type: str) -> None:
        now = _utcnow()
        stmt = (
            _insert_for(conn)(id_sequences)
            .values(
                id=SEQUENCE_DOCUMENT_ID,
                entity_type=entity_type,
                value=0,
                school_code=tenant_code,
                updated=now,
            )
        )
        # only an invalid counter is reset; one already healed by a concurrent caller is kept
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_KEY),
            set_={"value": 0, "updated": now},
            where=id_sequences.c.value.is_(None),
        )
        async with conn.begin() as c:
            await c.execute(stmt)

    async def next_sequence(self, tenant_code: str, entity_type: str) -> int:
        """
        Reserve the next value for ``entity_type`` in ``tenant_code``'s database.

        A NULL counter is reset to 0 (only while it is still NULL) and the
        increment is retried exactly once; a second bad read raises
        SequenceError. Connection failures propagate as TenantConnectionError.
        """
        entity_type = normalize_entity_type(entity_type)
        conn = await self._registry.get(tenant_code)

        try:
            await self.ensure_table(conn)
            value = await self._increment(conn, tenant_code, entity_type)
            if _is_counter(value):
                return value

            logger.warning(
                "Sequence counter not numeric, resetting to 0 and retrying",
                tenant_code=tenant_code,
                entity_type=entity_type,
                value=repr(value),
            )
            await self._reset(conn, tenant_code, entity_type)
            value = await self._increment(conn, tenant_code, entity_type)
        except SQLAlchemyError as e:
            logger.error("Sequence allocation failed", tenant_code=tenant_code, entity_type=entity_type, error=str(e))
            raise SequenceError(tenant_code, entity_type, str(e)) from e

        if not _is_counter(value):
            raise SequenceError(tenant_code, entity_type, f"counter still invalid after reset: {value!r}")
        return value

    async def current_value(self, tenant_code: str, entity_type: str) -> Optional[int]:
        """Last issued value, or None when the counter does not exist yet."""
        entity_type = normalize_entity_type(entity_type)
        conn = await self._registry.get(tenant_code)
        await self.ensure_table(conn)
        stmt = select(id_sequences.c.value).where(
            id_sequences.c.id == SEQUENCE_DOCUMENT_ID,
            id_sequences.c.entity_type == entity_type,
        )
        async with conn.engine.connect() as c:
            result = await c.execute(stmt)
            return result.scalar_one_or_none()
