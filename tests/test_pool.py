import pytest

from healer_core.exceptions import PoolExhausted
from healer_core.execution.pool import ConnectionPool, RemoteSession

from .conftest import FakeConnection, FakeHost


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def opener(host, opened):
    async def factory(server_id="srv-1"):
        connection = FakeConnection(host)
        opened.append(connection)
        return RemoteSession(server_id=server_id, hostname="web01.example.com", connection=connection)
    return factory


@pytest.mark.asyncio
async def test_released_session_is_reused():
    opened = []
    pool = ConnectionPool(max_size=5)
    factory = opener(FakeHost(), opened)

    first = await pool.acquire("srv-1", factory)
    await pool.release(first)
    second = await pool.acquire("srv-1", factory)

    assert second is first
    assert len(opened) == 1
    assert pool.stats()["in_use"] == 1


@pytest.mark.asyncio
async def test_leased_sessions_are_exclusive():
    opened = []
    pool = ConnectionPool(max_size=5)
    factory = opener(FakeHost(), opened)

    first = await pool.acquire("srv-1", factory)
    second = await pool.acquire("srv-1", factory)

    assert first is not second
    assert pool.stats()["servers"] == {"srv-1": 2}


@pytest.mark.asyncio
async def test_unhealthy_idle_session_is_discarded():
    opened = []
    pool = ConnectionPool(max_size=5)
    factory = opener(FakeHost(), opened)

    first = await pool.acquire("srv-1", factory)
    await pool.release(first)
    first.connection.alive = False

    second = await pool.acquire("srv-1", factory)

    assert second is not first
    assert first.closed
    assert first.connection.closed
    assert pool.stats()["total"] == 1


@pytest.mark.asyncio
async def test_exhausted_pool_raises():
    pool = ConnectionPool(max_size=2)
    factory = opener(FakeHost(), [])

    await pool.acquire("srv-1", factory)
    await pool.acquire("srv-2", factory)

    with pytest.raises(PoolExhausted) as exc:
        await pool.acquire("srv-1", factory)
    assert exc.value.retryable


@pytest.mark.asyncio
async def test_full_pool_evicts_oldest_idle_session_for_another_server():
    clock = Clock()
    opened = []
    pool = ConnectionPool(max_size=2, clock=clock)
    factory = opener(FakeHost(), opened)

    older = await pool.acquire("srv-1", lambda: factory("srv-1"))
    clock.now += 1
    newer = await pool.acquire("srv-2", lambda: factory("srv-2"))
    await pool.release(older)
    clock.now += 1
    await pool.release(newer)

    third = await pool.acquire("srv-3", lambda: factory("srv-3"))

    assert third.server_id == "srv-3"
    assert older.closed
    assert older.connection.closed
    assert not newer.closed
    assert pool.stats()["servers"] == {"srv-2": 1, "srv-3": 1}


@pytest.mark.asyncio
async def test_failed_open_frees_its_slot():
    pool = ConnectionPool(max_size=1)

    async def broken_factory():
        raise OSError("connection refused")

    with pytest.raises(OSError):
        await pool.acquire("srv-1", broken_factory)

    session = await pool.acquire("srv-1", opener(FakeHost(), []))
    assert session.in_use


@pytest.mark.asyncio
async def test_sweep_evicts_only_idle_expired_sessions():
    clock = Clock()
    pool = ConnectionPool(max_size=5, max_idle_seconds=300, clock=clock)
    factory = opener(FakeHost(), [])

    idle = await pool.acquire("srv-1", factory)
    busy = await pool.acquire("srv-1", factory)
    await pool.release(idle)

    clock.now += 299
    assert await pool.sweep() == 0

    clock.now += 2
    assert await pool.sweep() == 1
    assert idle.closed
    assert not busy.closed
    assert pool.stats()["total"] == 1


@pytest.mark.asyncio
async def test_broken_session_is_closed_on_release():
    pool = ConnectionPool(max_size=5)
    session = await pool.acquire("srv-1", opener(FakeHost(), []))
    session.broken = True

    await pool.release(session)

    assert session.closed
    assert pool.stats()["total"] == 0


@pytest.mark.asyncio
async def test_stop_closes_everything():
    pool = ConnectionPool(max_size=5, sweep_interval=3600)
    await pool.start()
    sessions = [await pool.acquire("srv-1", opener(FakeHost(), [])) for _ in range(3)]

    await pool.stop()

    assert all(s.closed for s in sessions)
    assert pool.stats()["total"] == 0
