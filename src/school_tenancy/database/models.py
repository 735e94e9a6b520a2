"""
Tenant-scoped data access.

ModelFactory binds a schema from the SchemaRegistry to one tenant's
connection and caches the binding on that connection, so a reopened
connection never reuses a handle bound to a disposed engine.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.sql import ColumnElement

from school_tenancy.database.registry import ConnectionRegistry, TenantConnection
from school_tenancy.database.schema import EntityName, SchemaRegistry
from school_tenancy.logger import get_logger

logger = get_logger(__name__)

OrderBy = Union[None, str, Sequence[str]]


class TenantModel:
    """
    Data-access handle for one entity in one school database.

    Rows come back as plain dicts. Filters are equality matches on column
    names; unknown columns raise ValueError.
    """

    def __init__(self, entity: str, table: Table, connection: TenantConnection) -> None:
        self.entity = entity
        self.table = table
        self.connection = connection

    def __repr__(self) -> str:
        return f"<TenantModel {self.entity} @ {self.connection.database_name}>"

    @property
    def database_name(self) -> str:
        return self.connection.database_name

    def _column(self, key: str):
        if key not in self.table.c:
            raise ValueError(f"Unknown field '{key}' for {self.entity}")
        return self.table.c[key]

    def _where(self, filters: Mapping[str, Any]) -> List[ColumnElement[bool]]:
        return [self._column(k) == v for k, v in filters.items()]

    def _order(self, order_by: OrderBy) -> List[Any]:
        if order_by is None:
            return []
        keys = [order_by] if isinstance(order_by, str) else list(order_by)
        clauses = []
        for key in keys:
            desc = key.startswith("-")
            col = self._column(key.lstrip("-"))
            clauses.append(col.desc() if desc else col.asc())
        return clauses

    async def insert(self, **values: Any) -> Dict[str, Any]:
        for key in values:
            self._column(key)
        stmt = insert(self.table).values(**values).returning(*self.table.c)
        async with self.connection.begin() as conn:
            result = await conn.execute(stmt)
            row = dict(result.mappings().one())
        logger.debug("Inserted document", database=self.database_name, entity=self.entity, id=row.get("id"))
        return row

    async def get(self, **filters: Any) -> Optional[Dict[str, Any]]:
        stmt = select(self.table).where(*self._where(filters)).limit(1)
        async with self.connection.engine.connect() as conn:
            result = await conn.execute(stmt)
            row = result.mappings().first()
        return dict(row) if row is not None else None

    async def find(
        self,
        *,
        limit: Optional[int] = 100,
        offset: int = 0,
        order_by: OrderBy = None,
        **filters: Any,
    ) -> List[Dict[str, Any]]:
        stmt = select(self.table).where(*self._where(filters)).order_by(*self._order(order_by)).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.connection.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [dict(r) for r in result.mappings().all()]

    async def update(self, filters: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        if not values:
            return 0
        stmt = update(self.table).where(*self._where(filters)).values(
            **{self._column(k).key: v for k, v in values.items()}
        )
        async with self.connection.begin() as conn:
            result = await conn.execute(stmt)
            return result.rowcount

    async def delete(self, **filters: Any) -> int:
        stmt = delete(self.table).where(*self._where(filters))
        async with self.connection.begin() as conn:
            result = await conn.execute(stmt)
            return result.rowcount

    async def count(self, **filters: Any) -> int:
        stmt = select(func.count()).select_from(self.table).where(*self._where(filters))
        async with self.connection.engine.connect() as conn:
            result = await conn.execute(stmt)
            return int(result.scalar_one())


class ModelFactory:
    def __init__(self, registry: ConnectionRegistry, schemas: SchemaRegistry) -> None:
        self._registry = registry
        self.schemas = schemas

    async def get_model(self, tenant_code: str, entity: Union[str, EntityName]) -> TenantModel:
        name = str(entity)
        # resolve the schema first so an unknown entity fails without touching the database
        table = self.schemas.table_for(name)
        conn = await self._registry.get(tenant_code)
        model = conn.models.get(name)
        if model is None:
            model = TenantModel(name, table, conn)
            conn.models[name] = model
            logger.debug("Bound model to tenant connection", database=conn.database_name, entity=name)
        return model

    async def get_all_models(self, tenant_code: str) -> Dict[str, TenantModel]:
        return {name: await self.get_model(tenant_code, name) for name in self.schemas.names()}

    async def has_model(self, tenant_code: str, entity: Union[str, EntityName]) -> bool:
        """True when the entity has already been bound on the tenant's live connection."""
        conn = await self._registry.get(tenant_code)
        return str(entity) in conn.models
