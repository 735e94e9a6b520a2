from .naming import resolve_database_name, build_tenant_url, render_url
from .catalog import database_exists, create_database, ensure_database, drop_database
from .registry import ConnectionRegistry, ConnectionState, PoolPolicy, TenantConnection
from .indexes import COLLECTION_INDEXES, IndexSpec, indexes_for
from .schema import EntityName, SchemaRegistry
from .sequences import SequenceAllocator, id_sequences
from .provisioning import ProvisionResult, TenantProvisioner, REQUIRED_COLLECTIONS
from .models import ModelFactory, TenantModel

__all__ = [
    "resolve_database_name",
    "build_tenant_url",
    "render_url",
    "database_exists",
    "create_database",
    "ensure_database",
    "drop_database",
    "ConnectionRegistry",
    "ConnectionState",
    "PoolPolicy",
    "TenantConnection",
    "COLLECTION_INDEXES",
    "IndexSpec",
    "indexes_for",
    "EntityName",
    "SchemaRegistry",
    "SequenceAllocator",
    "id_sequences",
    "ProvisionResult",
    "TenantProvisioner",
    "REQUIRED_COLLECTIONS",
    "ModelFactory",
    "TenantModel",
]
