from .exceptions import (
    TenancyError,
    TenantConnectionError,
    SequenceError,
    ProvisioningError,
    UnknownEntityError,
    register_exception_handlers,
)
from .identifiers import Role, format_id
from .manager import TenantDatabaseManager

__all__ = [
    "TenancyError",
    "TenantConnectionError",
    "SequenceError",
    "ProvisioningError",
    "UnknownEntityError",
    "register_exception_handlers",
    "Role",
    "format_id",
    "TenantDatabaseManager",
]
