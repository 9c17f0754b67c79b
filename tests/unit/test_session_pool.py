"""Unit tests for the browser session pool."""

import asyncio
import time

import pytest
import pytest_asyncio

from pagepulse.capture.session_pool import (
    SessionPool, PoolConfig, PoolClosedError, PoolExhaustedError, BrowserLaunchError,
    MIN_IDLE_CHECK_INTERVAL_MS
)

from conftest import FakeBrowserFactory


def make_pool(factory, timeouts, **overrides) -> SessionPool:
    config = PoolConfig(launch_retry_delay_ms=1, **overrides)
    return SessionPool(factory, timeouts, config)


@pytest_asyncio.fixture
async def pool(browser_factory, fast_timeouts):
    """Pool of two sessions over a fake browser."""
    pool = make_pool(browser_factory, fast_timeouts, max_sessions=2)
    yield pool
    await pool.close()


class TestPoolConfig:
    """Tests for PoolConfig validation."""

    def test_defaults(self):
        config = PoolConfig()

        assert config.max_sessions == 5
        assert config.idle_timeout_ms == 300000
        assert config.max_wait_rechecks == 10

    def test_idle_check_interval_has_floor(self):
        config = PoolConfig(idle_check_interval_ms=100)

        assert config.idle_check_interval_ms == MIN_IDLE_CHECK_INTERVAL_MS

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            PoolConfig(max_sessions=0)


class TestAcquireRelease:
    """Tests for leasing and returning sessions."""

    @pytest.mark.asyncio
    async def test_first_acquire_launches_browser(self, pool, browser_factory):
        session = await pool.acquire()

        assert browser_factory.launch_count == 1
        assert pool.leased_count == 1
        assert pool.browser_connected
        assert session.use_count == 1

        await pool.release(session)

    @pytest.mark.asyncio
    async def test_neutral_session_is_reused(self, pool, browser_factory):
        first = await pool.acquire()
        await pool.release(first)

        assert pool.free_count == 1

        second = await pool.acquire()

        assert second is first
        assert second.use_count == 2
        assert pool.stats.sessions_reused == 1
        assert pool.stats.sessions_created == 1
        await pool.release(second)

    @pytest.mark.asyncio
    async def test_navigated_session_is_closed_on_release(self, pool):
        session = await pool.acquire()
        session.page.url = "https://example.com/"

        await pool.release(session)

        assert pool.free_count == 0
        assert pool.leased_count == 0
        assert session.page.is_closed()
        assert pool.size == 0

    @pytest.mark.asyncio
    async def test_discarded_session_is_closed(self, pool):
        session = await pool.acquire()

        await pool.release(session, discard=True)

        assert pool.free_count == 0
        assert session.page.is_closed()

    @pytest.mark.asyncio
    async def test_double_release_is_ignored(self, pool):
        session = await pool.acquire()
        await pool.release(session)

        await pool.release(session)

        assert pool.stats.double_releases == 1
        assert pool.free_count == 1
        assert pool.size == 1

    @pytest.mark.asyncio
    async def test_release_clears_routes_before_reuse(self, pool):
        session = await pool.acquire()
        await session.page.route("**/*", lambda route: None)

        await pool.release(session)

        assert session.page.routes == []
        assert session.page.unroute_behavior == "ignoreErrors"
        assert pool.free_count == 1

    @pytest.mark.asyncio
    async def test_closed_page_is_not_reused(self, pool):
        session = await pool.acquire()
        await pool.release(session)
        await session.page.close()

        fresh = await pool.acquire()

        assert fresh is not session
        assert pool.stats.unhealthy_discarded == 1
        await pool.release(fresh)

    @pytest.mark.asyncio
    async def test_session_context_manager_releases(self, pool):
        async with pool.session() as session:
            assert pool.leased_count == 1

        assert pool.leased_count == 0
        assert pool.free_count == 1
        assert not session.page.is_closed()

    @pytest.mark.asyncio
    async def test_session_context_manager_discards_on_error(self, pool):
        with pytest.raises(RuntimeError):
            async with pool.session() as session:
                raise RuntimeError("capture failed")

        assert pool.free_count == 0
        assert session.page.is_closed()


class TestCapacity:
    """Tests for the capacity bound and FIFO waiting."""

    @pytest.mark.asyncio
    async def test_never_exceeds_capacity(self, pool):
        first = await pool.acquire()
        second = await pool.acquire()

        waiter = asyncio.ensure_future(pool.acquire())
        await asyncio.sleep(0.05)

        assert not waiter.done()
        assert pool.size == 2
        assert pool.waiting_count == 1

        await pool.release(first)
        third = await asyncio.wait_for(waiter, 1)

        assert third is first
        assert pool.size <= pool.capacity
        await pool.release(second)
        await pool.release(third)

    @pytest.mark.asyncio
    async def test_waiters_are_served_in_arrival_order(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts, max_sessions=1)
        order = []
        try:
            holder = await pool.acquire()

            async def lease(name):
                session = await pool.acquire()
                order.append(name)
                await asyncio.sleep(0.01)
                await pool.release(session)

            first = asyncio.ensure_future(lease("first"))
            await asyncio.sleep(0.01)
            second = asyncio.ensure_future(lease("second"))
            await asyncio.sleep(0.01)
            third = asyncio.ensure_future(lease("third"))
            await asyncio.sleep(0.01)

            assert pool.waiting_count == 3

            await pool.release(holder)
            await asyncio.wait_for(asyncio.gather(first, second, third), 2)

            assert order == ["first", "second", "third"]
            assert pool.size == 1
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_lose_slot(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts, max_sessions=1)
        try:
            holder = await pool.acquire()
            abandoned = asyncio.ensure_future(pool.acquire())
            patient = asyncio.ensure_future(pool.acquire())
            await asyncio.sleep(0.01)

            abandoned.cancel()
            await pool.release(holder)
            session = await asyncio.wait_for(patient, 1)

            assert abandoned.cancelled()
            assert pool.leased_count == 1
            await pool.release(session)
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_double_release_wakes_only_one_waiter(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts, max_sessions=1)
        try:
            holder = await pool.acquire()
            first = asyncio.ensure_future(pool.acquire())
            second = asyncio.ensure_future(pool.acquire())
            await asyncio.sleep(0.01)

            await pool.release(holder)
            await pool.release(holder)
            await asyncio.sleep(0.05)

            assert first.done()
            assert not second.done()
            assert pool.stats.double_releases == 1
            assert pool.waiting_count == 1
            assert pool.leased_count == 1
            assert pool.size == 1

            await pool.release(first.result())
            session = await asyncio.wait_for(second, 1)
            await pool.release(session)
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_acquire_gives_up_after_max_rechecks(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts, max_sessions=1, max_wait_rechecks=1)
        try:
            holder = await pool.acquire()
            waiter = asyncio.ensure_future(pool.acquire())
            await asyncio.sleep(0.01)

            # Wake the waiter without freeing a slot
            assert pool._wake_next() is True

            with pytest.raises(PoolExhaustedError) as exc_info:
                await asyncio.wait_for(waiter, 1)

            assert exc_info.value.rechecks == 1
            assert exc_info.value.capacity == 1
            assert pool.waiting_count == 0
            assert pool._wakeups == 0
            assert pool.leased_count == 1

            await pool.release(holder)
            again = await asyncio.wait_for(pool.acquire(), 1)
            assert again is holder
            await pool.release(again)
        finally:
            await pool.close()

    def test_exhausted_error_message(self):
        error = PoolExhaustedError(10, 5)

        assert "maximum wait re-checks (10)" in str(error)
        assert error.capacity == 5


class TestBrowserLifecycle:
    """Tests for launching, relaunching and reclaiming the browser."""

    @pytest.mark.asyncio
    async def test_concurrent_acquires_share_one_launch(self, fast_timeouts):
        factory = FakeBrowserFactory(launch_delay=0.05)
        pool = make_pool(factory, fast_timeouts, max_sessions=3)
        try:
            sessions = await asyncio.gather(*(pool.acquire() for _ in range(3)))

            assert factory.launch_count == 1
            assert len({s.browser for s in sessions}) == 1
            for session in sessions:
                await pool.release(session)
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_launch_is_retried(self, fast_timeouts):
        factory = FakeBrowserFactory(fail_times=1)
        pool = make_pool(factory, fast_timeouts, launch_retries=2)
        try:
            session = await pool.acquire()

            assert factory.launch_attempts == 2
            assert pool.stats.launch_failures == 1
            await pool.release(session)
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_launch_failure_after_retries(self, fast_timeouts):
        factory = FakeBrowserFactory(fail_times=10)
        pool = make_pool(factory, fast_timeouts, launch_retries=2)
        try:
            with pytest.raises(BrowserLaunchError) as exc_info:
                await pool.acquire()

            assert exc_info.value.attempts == 3
            assert pool.size == 0
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_disconnect_triggers_relaunch(self, pool, browser_factory):
        session = await pool.acquire()
        await pool.release(session)

        browser_factory.browsers[0].disconnect()

        assert not pool.browser_connected
        assert pool.stats.disconnects == 1

        fresh = await pool.acquire()

        assert browser_factory.launch_count == 2
        assert fresh.browser is browser_factory.browsers[1]
        assert pool.stats.unhealthy_discarded == 1
        await pool.release(fresh)

    @pytest.mark.asyncio
    async def test_idle_pool_closes_browser(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts, idle_timeout_ms=1000)
        try:
            session = await pool.acquire()
            await pool.release(session)
            pool._last_activity = time.time() - 5

            reclaimed = await pool.check_idle()

            assert reclaimed is True
            assert not pool.browser_connected
            assert pool.free_count == 0
            assert browser_factory.browsers[0].close_calls == 1

            # The pool stays usable and relaunches on demand
            again = await pool.acquire()
            assert browser_factory.launch_count == 2
            await pool.release(again)
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_idle_check_skips_leased_pool(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts, idle_timeout_ms=1000)
        try:
            session = await pool.acquire()
            pool._last_activity = time.time() - 5

            assert await pool.check_idle() is False
            assert pool.browser_connected
            await pool.release(session)
        finally:
            await pool.close()


class TestClose:
    """Tests for pool shutdown."""

    @pytest.mark.asyncio
    async def test_close_rejects_waiters(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts, max_sessions=1)
        await pool.acquire()
        waiter = asyncio.ensure_future(pool.acquire())
        await asyncio.sleep(0.01)

        await pool.close()

        with pytest.raises(PoolClosedError):
            await waiter

    @pytest.mark.asyncio
    async def test_close_closes_sessions_and_browser(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts)
        leased = await pool.acquire()
        idle = await pool.acquire()
        await pool.release(idle)

        await pool.close()

        assert leased.page.is_closed()
        assert idle.page.is_closed()
        assert browser_factory.browsers[0].close_calls == 1
        assert browser_factory.stopped is True
        assert pool.size == 0

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts)
        await pool.acquire()

        await pool.close()
        await pool.close()

        assert pool.is_closed
        assert browser_factory.browsers[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_acquire_after_close_raises(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts)
        await pool.close()

        with pytest.raises(PoolClosedError):
            await pool.acquire()

    @pytest.mark.asyncio
    async def test_release_after_close_is_quiet(self, browser_factory, fast_timeouts):
        pool = make_pool(browser_factory, fast_timeouts)
        session = await pool.acquire()
        await pool.close()

        await pool.release(session)

        assert pool.stats.double_releases == 0
