"""
Process-wide cache of tenant database connections.

One AsyncEngine per tenant database, created on first use and reused for the
life of the process. The registry is an ordinary object so applications own
its lifecycle (init -> get -> close_all) and tests can run isolated instances.

Concurrent first access to the same tenant is single-flight: the first caller
starts the open task and every concurrent caller awaits that same task, so a
tenant never ends up with two engines.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from school_tenancy.config import Settings, get_settings, normalize_database_url
from school_tenancy.database.catalog import ensure_database
from school_tenancy.database.naming import build_tenant_url, render_url, resolve_database_name
from school_tenancy.exceptions import TenantConnectionError
from school_tenancy.logger import get_logger, tenant_log_context

logger = get_logger(__name__)

EngineFactory = Callable[..., AsyncEngine]
Clock = Callable[[], float]


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class PoolPolicy:
    """Fixed pool policy applied to every tenant engine."""
    max_pool_size: int = 50
    min_pool_size: int = 5
    idle_timeout: float = 300.0
    server_selection_timeout: float = 5.0
    socket_timeout: float = 45.0
    connect_timeout: float = 10.0
    application_name: str = "school-tenancy"

    @classmethod
    def from_settings(cls, settings: Settings) -> "PoolPolicy":
        return cls(
            max_pool_size=settings.database_max_pool_size,
            min_pool_size=settings.database_min_pool_size,
            idle_timeout=settings.database_idle_timeout_seconds,
            server_selection_timeout=settings.database_server_selection_timeout_seconds,
            socket_timeout=settings.database_socket_timeout_seconds,
            connect_timeout=settings.tenant_connect_timeout_seconds,
            application_name=settings.application_name,
        )

    def engine_kwargs(self, url: URL) -> Dict[str, Any]:
        # pool_size=0 means "unbounded" to QueuePool
        pool_size = max(self.min_pool_size, 1)
        kwargs: Dict[str, Any] = {
            "pool_size": pool_size,
            "max_overflow": max(self.max_pool_size - pool_size, 0),
            "pool_timeout": self.connect_timeout,
            "pool_recycle": int(self.idle_timeout),
            "pool_pre_ping": True,
        }
        backend = url.get_backend_name()
        if backend == "postgresql":
            kwargs["connect_args"] = {
                "timeout": self.server_selection_timeout,
                "command_timeout": self.socket_timeout,
                "server_settings": {"application_name": self.application_name},
            }
        elif backend == "sqlite":
            # sqlite3 busy timeout: concurrent writers wait instead of failing
            kwargs["connect_args"] = {"timeout": self.socket_timeout}
        return kwargs


class TenantConnection:
    """
    Live handle on one tenant database. Owned by the registry; callers use
    it but never close it themselves.
    """

    def __init__(
        self,
        tenant_code: str,
        database_name: str,
        url: URL,
        engine: AsyncEngine,
        policy: PoolPolicy,
        clock: Clock = time.monotonic,
    ) -> None:
        self.tenant_code = tenant_code
        self.database_name = database_name
        self.url = url
        self.engine = engine
        self.policy = policy
        self.state = ConnectionState.CONNECTING
        self._clock = clock
        self.created_at = clock()
        self.last_used = self.created_at
        # per-connection model bindings, filled by ModelFactory
        self.models: Dict[str, Any] = {}
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def __repr__(self) -> str:
        return f"<TenantConnection {self.database_name} state={self.state}>"

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def touch(self) -> None:
        self.last_used = self._clock()

    def idle_for(self, now: Optional[float] = None) -> float:
        return (self._clock() if now is None else now) - self.last_used

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def wait_ready(self) -> None:
        """Block until the database answers. The caller bounds the wait."""
        try:
            await self.ping()
        except BaseException:
            self.state = ConnectionState.ERROR
            raise
        self.state = ConnectionState.READY

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Yield an AsyncSession with automatic rollback on error and proper close.
        """
        async with self._session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    def begin(self):
        """Connection with a transaction that commits on exit (``async with conn.begin() as c``)."""
        return self.engine.begin()

    async def health(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "database": self.database_name,
            "state": str(self.state),
        }
        try:
            await self.ping()
        except Exception as e:
            logger.error("Tenant health check failed", database=self.database_name, error=str(e))
            payload.update(healthy=False, error=str(e))
            return payload

        payload["healthy"] = True
        pool = self.engine.pool
        for name in ("size", "checkedin", "checkedout", "overflow"):
            if hasattr(pool, name):
                payload[name if name != "size" else "pool_size"] = getattr(pool, name)()
        return payload

    async def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        try:
            await self.engine.dispose()
        finally:
            self.state = ConnectionState.CLOSED
            self.models.clear()


def _retrieve_exception(task: "asyncio.Task[TenantConnection]") -> None:
    # every waiter re-raises the failure; this only stops asyncio reporting
    # "exception was never retrieved" when all waiters were cancelled
    if not task.cancelled():
        task.exception()


class ConnectionRegistry:
    """Tenant code -> TenantConnection, keyed by resolved database name."""

    def __init__(
        self,
        base_url: str,
        *,
        policy: Optional[PoolPolicy] = None,
        engine_factory: EngineFactory = create_async_engine,
        auto_create_databases: bool = True,
        clock: Clock = time.monotonic,
    ) -> None:
        self._base_url = normalize_database_url(base_url)
        self.policy = policy or PoolPolicy()
        self._engine_factory = engine_factory
        self._auto_create_databases = auto_create_databases
        self._clock = clock
        self._connections: Dict[str, TenantConnection] = {}
        self._pending: Dict[str, asyncio.Task[TenantConnection]] = {}
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "ConnectionRegistry":
        settings = settings or get_settings()
        return cls(
            settings.database_url,
            policy=PoolPolicy.from_settings(settings),
            auto_create_databases=settings.auto_create_databases,
            **kwargs,
        )

    # ---- lifecycle ---------------------------------------------------------

    async def init(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        logger.info(
            "Connection registry initialized",
            base_url=render_url(make_url(self._base_url)),
            max_pool_size=self.policy.max_pool_size,
            min_pool_size=self.policy.min_pool_size,
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _require_init(self) -> None:
        if not self._initialized:
            raise RuntimeError("Connection registry not initialized. Call init() first.")

    # ---- lookups -----------------------------------------------------------

    def __contains__(self, tenant_code: object) -> bool:
        if not isinstance(tenant_code, str) or not tenant_code:
            return False
        return resolve_database_name(tenant_code) in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def database_names(self) -> List[str]:
        return sorted(self._connections)

    def tenant_url(self, tenant_code: str) -> URL:
        return build_tenant_url(self._base_url, resolve_database_name(tenant_code))

    async def get(self, tenant_code: str) -> TenantConnection:
        self._require_init()
        name = resolve_database_name(tenant_code)

        existing = self._connections.get(name)
        if existing is not None:
            if existing.is_ready:
                existing.touch()
                return existing
            # handle was closed behind the registry's back; reopen
            self._connections.pop(name, None)

        pending = self._pending.get(name)
        if pending is None:
            pending = asyncio.create_task(self._open(tenant_code, name), name=f"open-{name}")
            pending.add_done_callback(_retrieve_exception)
            self._pending[name] = pending

        conn = await asyncio.shield(pending)
        conn.touch()
        return conn

    async def _open(self, tenant_code: str, name: str) -> TenantConnection:
        conn: Optional[TenantConnection] = None
        try:
            url = build_tenant_url(self._base_url, name)
            with tenant_log_context(tenant_code, name):
                logger.info("Connecting to tenant database", url=render_url(url))
                try:
                    # one deadline covers database creation, engine setup and the readiness ping
                    async with asyncio.timeout(self.policy.connect_timeout):
                        if self._auto_create_databases:
                            await ensure_database(url)
                        engine = self._engine_factory(url, **self.policy.engine_kwargs(url))
                        conn = TenantConnection(tenant_code, name, url, engine, self.policy, clock=self._clock)
                        await conn.wait_ready()
                except Exception as e:
                    if conn is not None:
                        await conn.close()
                    reason: BaseException | str = e
                    if isinstance(e, TimeoutError):
                        reason = f"not ready after {self.policy.connect_timeout:g}s"
                    logger.error("Tenant database not ready", error=str(reason))
                    raise TenantConnectionError(tenant_code, name, reason) from e

                self._connections[name] = conn
                logger.info("Tenant connection established")
                return conn
        finally:
            self._pending.pop(name, None)

    # ---- teardown ----------------------------------------------------------

    async def close(self, tenant_code: str) -> None:
        name = resolve_database_name(tenant_code)
        pending = self._pending.get(name)
        if pending is not None:
            # let an in-flight open finish so it cannot publish after the close
            await asyncio.wait({pending})

        conn = self._connections.pop(name, None)
        if conn is None:
            return
        await conn.close()
        logger.info("Closed tenant connection", tenant_code=tenant_code, database=name)

    async def close_all(self) -> List[str]:
        """
        Best-effort shutdown: every connection gets a close attempt even when
        earlier ones fail. Returns the database names whose close failed.
        """
        if self._pending:
            await asyncio.wait(set(self._pending.values()))

        failures: List[str] = []
        for name, conn in list(self._connections.items()):
            try:
                await conn.close()
                logger.debug("Closed tenant connection", database=name)
            except Exception as e:
                logger.error("Error closing tenant connection", database=name, error=str(e))
                failures.append(name)

        closed = len(self._connections) - len(failures)
        self._connections.clear()
        logger.info("All tenant connections closed", closed=closed, failed=len(failures))
        return failures

    async def evict_idle(self, now: Optional[float] = None) -> List[str]:
        """
        Close connections unused for at least the policy's idle timeout.
        Returns the database names this call actually closed.
        """
        now = self._clock() if now is None else now
        stale = [
            (name, conn) for name, conn in self._connections.items()
            if conn.idle_for(now) >= self.policy.idle_timeout
        ]
        evicted: List[str] = []
        for name, conn in stale:
            # a concurrent close() or reopen may have replaced it while we were awaiting
            if self._connections.get(name) is not conn:
                continue
            del self._connections[name]
            await conn.close()
            evicted.append(name)
            logger.info("Evicted idle tenant connection", database=name)
        return evicted
