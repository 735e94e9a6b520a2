import asyncio
from types import SimpleNamespace

import pytest
import structlog
from structlog.testing import LogCapture
from sqlalchemy.ext.asyncio import create_async_engine

from school_tenancy.database import registry as registry_module
from school_tenancy.database.registry import ConnectionRegistry, ConnectionState, PoolPolicy
from school_tenancy.exceptions import TenantConnectionError


class SpyFactory:
    def __init__(self):
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append(url.database)
        return create_async_engine(url, **kwargs)


class _SlowConnect:
    def __init__(self, delay):
        self.delay = delay

    async def __aenter__(self):
        await asyncio.sleep(self.delay)
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement):
        return None


class SlowEngine:
    dialect = SimpleNamespace(name="sqlite")

    def __init__(self, delay=3600):
        self.delay = delay
        self.disposed = False

    def connect(self):
        return _SlowConnect(self.delay)

    async def dispose(self):
        self.disposed = True


async def test_get_requires_init(sqlite_url):
    reg = ConnectionRegistry(sqlite_url)
    with pytest.raises(RuntimeError):
        await reg.get("NPS")


async def test_get_opens_once_and_reuses(sqlite_url, policy):
    spy = SpyFactory()
    reg = ConnectionRegistry(sqlite_url, policy=policy, engine_factory=spy)
    await reg.init()
    try:
        first = await reg.get("NPS")
        second = await reg.get("nps")
        assert first is second
        assert first.is_ready
        assert first.database_name == "school_nps"
        assert len(spy.calls) == 1
        assert "NPS" in reg
        assert reg.database_names() == ["school_nps"]
    finally:
        await reg.close_all()


async def test_concurrent_first_access_is_single_flight(sqlite_url, policy):
    spy = SpyFactory()
    reg = ConnectionRegistry(sqlite_url, policy=policy, engine_factory=spy)
    await reg.init()
    try:
        conns = await asyncio.gather(*(reg.get("NPS") for _ in range(10)))
        assert len({id(c) for c in conns}) == 1
        assert len(spy.calls) == 1
        assert len(reg) == 1
    finally:
        await reg.close_all()


async def test_tenants_are_isolated(registry, tmp_path):
    a = await registry.get("NPS")
    b = await registry.get("DPS")
    assert a is not b
    assert a.engine is not b.engine
    assert a.url.database == str(tmp_path / "school_nps.db")
    assert b.url.database == str(tmp_path / "school_dps.db")


async def test_close_then_get_returns_fresh_connection(registry):
    old = await registry.get("NPS")
    await registry.close("NPS")
    assert old.state is ConnectionState.CLOSED
    assert "NPS" not in registry

    new = await registry.get("NPS")
    assert new is not old
    assert new.is_ready


async def test_close_unknown_tenant_is_noop(registry):
    await registry.close("NOPE")
    assert len(registry) == 0


async def test_externally_closed_handle_is_reopened(registry):
    old = await registry.get("NPS")
    await old.close()
    new = await registry.get("NPS")
    assert new is not old
    assert new.is_ready


async def test_close_all_is_best_effort(registry, monkeypatch):
    a = await registry.get("A")
    b = await registry.get("B")
    c = await registry.get("C")

    real_close = b.close

    async def broken_close():
        await real_close()
        raise RuntimeError("dispose failed")

    monkeypatch.setattr(b, "close", broken_close)

    failures = await registry.close_all()
    assert failures == ["school_b"]
    assert a.state is ConnectionState.CLOSED
    assert c.state is ConnectionState.CLOSED
    assert len(registry) == 0


async def test_engine_creation_failure_is_wrapped(sqlite_url, policy):
    def broken_factory(url, **kwargs):
        raise RuntimeError("driver missing")

    reg = ConnectionRegistry(sqlite_url, policy=policy, engine_factory=broken_factory)
    await reg.init()
    with pytest.raises(TenantConnectionError) as exc_info:
        await reg.get("NPS")
    assert exc_info.value.database == "school_nps"
    assert exc_info.value.tenant_code == "NPS"
    assert "driver missing" in str(exc_info.value)
    assert "NPS" not in reg


async def test_connect_timeout_raises_and_does_not_register(sqlite_url):
    engine = SlowEngine()
    reg = ConnectionRegistry(
        sqlite_url,
        policy=PoolPolicy(connect_timeout=0.1),
        engine_factory=lambda url, **kwargs: engine,
    )
    await reg.init()

    with pytest.raises(TenantConnectionError) as exc_info:
        await reg.get("SLOW")
    assert "not ready after 0.1s" in str(exc_info.value)
    assert engine.disposed
    assert "SLOW" not in reg
    assert len(reg) == 0


async def test_failed_open_can_be_retried(sqlite_url, policy):
    attempts = []

    def flaky_factory(url, **kwargs):
        attempts.append(url)
        if len(attempts) == 1:
            raise OSError("server restarting")
        return create_async_engine(url, **kwargs)

    reg = ConnectionRegistry(sqlite_url, policy=policy, engine_factory=flaky_factory)
    await reg.init()
    try:
        with pytest.raises(TenantConnectionError):
            await reg.get("NPS")
        conn = await reg.get("NPS")
        assert conn.is_ready
        assert len(attempts) == 2
    finally:
        await reg.close_all()


async def test_evict_idle(sqlite_url):
    now = [0.0]
    reg = ConnectionRegistry(
        sqlite_url,
        policy=PoolPolicy(idle_timeout=300, connect_timeout=5.0),
        clock=lambda: now[0],
    )
    await reg.init()
    try:
        a = await reg.get("A")
        now[0] = 200.0
        await reg.get("B")
        now[0] = 400.0

        evicted = await reg.evict_idle()
        assert evicted == ["school_a"]
        assert a.state is ConnectionState.CLOSED
        assert reg.database_names() == ["school_b"]
    finally:
        await reg.close_all()


async def test_health_reports_pool(registry):
    conn = await registry.get("NPS")
    health = await conn.health()
    assert health["healthy"] is True
    assert health["database"] == "school_nps"
    assert health["state"] == "ready"


async def test_contains_guards_bad_input(registry):
    assert "" not in registry
    assert None not in registry


async def test_evict_idle_tolerates_concurrent_close(sqlite_url):
    now = [0.0]
    reg = ConnectionRegistry(
        sqlite_url,
        policy=PoolPolicy(idle_timeout=300, connect_timeout=5.0),
        clock=lambda: now[0],
    )
    await reg.init()
    try:
        a = await reg.get("A")
        b = await reg.get("B")
        now[0] = 400.0

        evicted, closed = await asyncio.gather(reg.evict_idle(), reg.close("B"), return_exceptions=True)
        assert closed is None
        assert evicted == ["school_a"]
        assert a.state is ConnectionState.CLOSED
        assert b.state is ConnectionState.CLOSED
        assert len(reg) == 0
    finally:
        await reg.close_all()


async def test_evict_idle_keeps_a_connection_reopened_meanwhile(sqlite_url):
    now = [0.0]
    reg = ConnectionRegistry(
        sqlite_url,
        policy=PoolPolicy(idle_timeout=300, connect_timeout=5.0),
        clock=lambda: now[0],
    )
    await reg.init()
    try:
        await reg.get("A")
        old_b = await reg.get("B")
        now[0] = 400.0

        async def reopen_b():
            await reg.close("B")
            return await reg.get("B")

        evicted, new_b = await asyncio.gather(reg.evict_idle(), reopen_b())
        assert "school_a" in evicted
        assert new_b is not old_b
        assert new_b.is_ready
        assert "B" in reg
    finally:
        await reg.close_all()


async def test_connect_timeout_bounds_the_whole_open(sqlite_url, monkeypatch):
    # each step fits in the timeout on its own; together they do not
    async def slow_ensure_database(url):
        await asyncio.sleep(0.2)
        return True

    monkeypatch.setattr(registry_module, "ensure_database", slow_ensure_database)
    engine = SlowEngine(delay=0.2)
    reg = ConnectionRegistry(
        sqlite_url,
        policy=PoolPolicy(connect_timeout=0.3),
        engine_factory=lambda url, **kwargs: engine,
    )
    await reg.init()

    with pytest.raises(TenantConnectionError) as exc_info:
        await reg.get("NPS")
    assert "not ready after 0.3s" in str(exc_info.value)
    assert engine.disposed
    assert "NPS" not in reg


async def test_slow_but_timely_open_succeeds(sqlite_url, monkeypatch):
    async def slow_ensure_database(url):
        await asyncio.sleep(0.05)
        return True

    monkeypatch.setattr(registry_module, "ensure_database", slow_ensure_database)
    engine = SlowEngine(delay=0.05)
    reg = ConnectionRegistry(
        sqlite_url,
        policy=PoolPolicy(connect_timeout=2.0),
        engine_factory=lambda url, **kwargs: engine,
    )
    await reg.init()

    conn = await reg.get("NPS")
    assert conn.is_ready
    await reg.close_all()
    assert engine.disposed


async def test_open_logs_carry_tenant_context(registry):
    cap = LogCapture()
    structlog.configure(processors=[structlog.contextvars.merge_contextvars, cap])
    try:
        await registry.get("NPS")
    finally:
        structlog.reset_defaults()

    events = {e["event"]: e for e in cap.entries}
    for event in ("Connecting to tenant database", "Tenant connection established"):
        assert events[event]["tenant_code"] == "NPS"
        assert events[event]["database"] == "school_nps"
    assert "tenant_code" not in structlog.contextvars.get_contextvars()
