from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


# ───────────────────────── Base & Tenancy Exceptions ─────────────────────────
class TenancyError(Exception):
    """Base class for tenancy errors. Callers map these to HTTP failures; this layer never does routing."""
    code: str = "tenancy_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str
    details: Optional[Dict[str, Any]]

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.__class__.__name__)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message or self.__class__.__name__
        self.details = details


class TenantConnectionError(TenancyError):
    """Tenant database unreachable or not ready within the connect timeout."""
    code = "tenant_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, tenant_code: str, database: str, cause: BaseException | str) -> None:
        reason = cause if isinstance(cause, str) else (str(cause) or cause.__class__.__name__)
        super().__init__(
            f"Could not connect to database {database} for school {tenant_code}: {reason}",
            details={"tenant_code": tenant_code, "database": database, "cause": reason},
        )
        self.tenant_code = tenant_code
        self.database = database


class SequenceError(TenancyError):
    """Counter allocation failed even after the reset-and-retry step."""
    code = "sequence_error"

    def __init__(self, tenant_code: str, entity_type: str, reason: str) -> None:
        super().__init__(
            f"Failed to allocate {entity_type} sequence for school {tenant_code}: {reason}",
            details={"tenant_code": tenant_code, "entity_type": entity_type, "reason": reason},
        )
        self.tenant_code = tenant_code
        self.entity_type = entity_type


class ProvisioningError(TenancyError):
    """Collection/index setup failed partway. Re-running provisioning is safe."""
    code = "provisioning_error"

    def __init__(self, tenant_code: str, reason: str, *, collection: Optional[str] = None) -> None:
        where = f" (collection {collection})" if collection else ""
        super().__init__(
            f"Provisioning failed for school {tenant_code}{where}: {reason}",
            details={"tenant_code": tenant_code, "collection": collection, "reason": reason},
        )
        self.tenant_code = tenant_code
        self.collection = collection


class UnknownEntityError(TenancyError):
    code = "unknown_entity"

    def __init__(self, entity: str) -> None:
        super().__init__(f"No schema registered for entity {entity!r}", details={"entity": entity})
        self.entity = entity


# ───────────────────────────── Helpers ──────────────────────────────────────

def _problem(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]],
    correlation_id: Optional[str],
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    if correlation_id:
        body["correlation_id"] = correlation_id
    return body


def _extract_correlation_id(req: Request) -> Optional[str]:
    return getattr(getattr(req, "state", None), "request_id", None) or req.headers.get("x-request-id")


# ─────────────────────────── Registration ───────────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    """Render tenancy errors as problem JSON on the host application."""

    @app.exception_handler(TenancyError)
    async def handle_tenancy_error(req: Request, exc: TenancyError):
        return JSONResponse(
            status_code=exc.status_code,
            content=_problem(exc.code, exc.message, exc.details, _extract_correlation_id(req)),
        )
