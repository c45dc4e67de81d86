"""Unit tests for the bounded browser pool.

Covers:
- Launch on demand, reuse after release, never destroy on release
- Waiting for a free handle and PoolExhausted on timeout
- Launch failure restores the reservation and raises JoinError
- A cancelled acquire returns its reservation and closes the late browser
- Idle cleanup down to the warm floor, oldest released first
- Shutdown destroys every handle and refuses further acquires
"""

from __future__ import annotations

import asyncio

import pytest

from src.meetbot.bots.errors import JoinError, PoolExhausted
from src.meetbot.bots.pool import BrowserHandle, BrowserPool, HandleState
from tests.fakes import FakeLauncher


def make_pool(launcher: FakeLauncher, max_instances: int = 2, acquire_timeout: float = 0.5) -> BrowserPool:
    return BrowserPool(
        launcher,
        max_instances=max_instances,
        acquire_timeout=acquire_timeout,
        poll_interval=0.01,
        cleanup_interval=300.0,
    )


# ── Acquire / Release ───────────────────────────────────────────────────────


class TestAcquireRelease:
    """Borrowing and returning handles."""

    @pytest.mark.asyncio
    async def test_acquire_launches_browser_when_pool_empty(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher)

        handle = await pool.acquire(owner="m1")

        assert handle.state == HandleState.IN_USE
        assert handle.owner == "m1"
        assert launcher.launched == 1
        stats = pool.stats()
        assert (stats.total, stats.available, stats.in_use, stats.launching) == (1, 0, 1, 0)

    @pytest.mark.asyncio
    async def test_released_handle_is_reused_not_destroyed(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher)

        first = await pool.acquire(owner="m1")
        await pool.release(first)
        assert launcher.closed == []
        assert pool.stats().available == 1

        second = await pool.acquire(owner="m2")

        assert second.id == first.id
        assert second.owner == "m2"
        assert launcher.launched == 1

    @pytest.mark.asyncio
    async def test_double_release_is_ignored(self):
        pool = make_pool(FakeLauncher())
        handle = await pool.acquire()

        await pool.release(handle)
        await pool.release(handle)

        stats = pool.stats()
        assert stats.available == 1
        assert stats.in_use == 0
        assert stats.total == 1

    @pytest.mark.asyncio
    async def test_release_of_unknown_handle_is_ignored(self):
        pool = make_pool(FakeLauncher())
        stranger = BrowserHandle(id="not-from-this-pool", browser=object())

        await pool.release(stranger)

        assert pool.stats().total == 0

    def test_max_instances_must_be_positive(self):
        with pytest.raises(ValueError):
            BrowserPool(FakeLauncher(), max_instances=0)


# ── Capacity ────────────────────────────────────────────────────────────────


class TestCapacity:
    """Behaviour at max_instances."""

    @pytest.mark.asyncio
    async def test_waiter_gets_handle_after_release(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher, max_instances=1, acquire_timeout=2.0)
        held = await pool.acquire(owner="m1")

        waiter = asyncio.create_task(pool.acquire(owner="m2"))
        await asyncio.sleep(0.05)
        assert not waiter.done()

        await pool.release(held)
        handle = await asyncio.wait_for(waiter, timeout=1.0)

        assert handle.id == held.id
        assert handle.owner == "m2"
        assert launcher.launched == 1

    @pytest.mark.asyncio
    async def test_acquire_times_out_with_pool_exhausted(self):
        pool = make_pool(FakeLauncher(), max_instances=1, acquire_timeout=0.05)
        await pool.acquire(owner="m1")

        with pytest.raises(PoolExhausted):
            await pool.acquire(owner="m2")

    def test_pool_exhausted_is_a_join_error(self):
        assert issubclass(PoolExhausted, JoinError)

    @pytest.mark.asyncio
    async def test_concurrent_acquires_never_exceed_max_instances(self):
        launcher = FakeLauncher(delay=0.02)
        pool = make_pool(launcher, max_instances=3, acquire_timeout=0.2)

        results = await asyncio.gather(
            *(pool.acquire(owner=f"m{i}") for i in range(5)),
            return_exceptions=True,
        )

        handles = [r for r in results if isinstance(r, BrowserHandle)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(handles) == 3
        assert all(isinstance(e, PoolExhausted) for e in errors)
        assert launcher.launched == 3
        assert len({h.id for h in handles}) == 3
        stats = pool.stats()
        assert stats.total + stats.launching <= 3
        assert stats.available + stats.in_use == stats.total

    @pytest.mark.asyncio
    async def test_launch_failure_raises_join_error_and_frees_slot(self):
        launcher = FakeLauncher(fail=True)
        pool = make_pool(launcher, max_instances=1)

        with pytest.raises(JoinError):
            await pool.acquire(owner="m1")

        assert pool.stats().launching == 0
        assert pool.stats().total == 0

        launcher.fail = False
        handle = await pool.acquire(owner="m1")
        assert handle.state == HandleState.IN_USE

    @pytest.mark.asyncio
    async def test_cancelled_acquire_frees_slot_and_closes_late_browser(self):
        launcher = FakeLauncher(delay=0.2)
        pool = make_pool(launcher, max_instances=1)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(pool.acquire(owner="m1"), timeout=0.05)

        assert pool.stats().launching == 0
        await asyncio.sleep(0.3)
        assert launcher.launched == 1
        assert len(launcher.closed) == 1
        assert pool.stats().total == 0

        launcher.delay = 0.0
        handle = await pool.acquire(owner="m2")
        assert handle.owner == "m2"
        assert pool.stats().total == 1


# ── Maintenance ─────────────────────────────────────────────────────────────


class TestMaintenance:
    """Idle cleanup and shutdown."""

    @pytest.mark.asyncio
    async def test_cleanup_idle_keeps_warm_floor(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher, max_instances=3)
        handles = [await pool.acquire(owner=f"m{i}") for i in range(3)]
        for handle in handles:
            await pool.release(handle)

        destroyed = await pool.cleanup_idle()

        assert destroyed == 2
        assert pool.stats().total == 1
        assert len(launcher.closed) == 2
        # Most recently released handle survives
        assert handles[-1].browser not in launcher.closed

    @pytest.mark.asyncio
    async def test_cleanup_idle_leaves_in_use_handles(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher, max_instances=2)
        await pool.acquire(owner="m1")
        await pool.acquire(owner="m2")

        assert await pool.cleanup_idle() == 0
        assert pool.stats().in_use == 2

    @pytest.mark.asyncio
    async def test_shutdown_destroys_all_handles(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher, max_instances=2)
        held = await pool.acquire(owner="m1")
        idle = await pool.acquire(owner="m2")
        await pool.release(idle)

        await pool.shutdown()

        assert pool.stats().total == 0
        assert {id(b) for b in launcher.closed} == {id(held.browser), id(idle.browser)}

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent_and_refuses_acquire(self):
        launcher = FakeLauncher()
        pool = make_pool(launcher)
        await pool.acquire()

        await pool.shutdown()
        await pool.shutdown()

        assert len(launcher.closed) == 1
        with pytest.raises(PoolExhausted):
            await pool.acquire()

    @pytest.mark.asyncio
    async def test_cleanup_loop_starts_and_stops(self):
        pool = BrowserPool(FakeLauncher(), max_instances=2, cleanup_interval=0.01)
        pool.start()
        await asyncio.sleep(0.03)
        await pool.stop()
        await pool.shutdown()
