"""Bounded pool of browser sessions over one shared browser process.

A session is one Playwright page. The pool leases at most ``max_sessions`` of
them at a time, reuses pages that come back in a neutral state and closes the
rest. Callers that find the pool saturated wait in a FIFO queue; every release
path wakes exactly one waiter.

The browser process is launched lazily on the first lease, relaunched after a
disconnect, and closed again when the pool has been idle for longer than
``idle_timeout_ms``.

Usage:
    pool = SessionPool(BrowserFactory(), timeouts)
    session = await pool.acquire()
    try:
        await session.page.goto("https://example.com")
    finally:
        await pool.release(session)
    await pool.close()
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Deque, Dict, List, Optional, Set

from playwright.async_api import Browser, Page

from .browser_factory import BrowserFactory
from .timeouts import TimeoutEngine, is_target_closed_error

logger = logging.getLogger(__name__)


MIN_IDLE_CHECK_INTERVAL_MS = 10000
NEUTRAL_URLS = ("about:blank", "data:,")

STOP_ACTIVITY_SCRIPT = """() => {
    const highest = setTimeout(() => {}, 0);
    for (let id = 0; id <= highest; id++) {
        clearTimeout(id);
        clearInterval(id);
    }
    if (window.stop) { window.stop(); }
}"""


class PoolExhaustedError(Exception):
    """Raised when a lease keeps finding the pool saturated."""

    def __init__(self, rechecks: int, capacity: int):
        self.rechecks = rechecks
        self.capacity = capacity
        super().__init__(
            f"Session pool exceeded maximum wait re-checks ({rechecks}) at capacity {capacity}"
        )


class PoolClosedError(Exception):
    """Raised when the pool is closed while a caller needs a session."""
    pass


class BrowserLaunchError(Exception):
    """Raised when the browser process cannot be started."""

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)


@dataclass
class PoolConfig:
    """Configuration for the session pool."""
    max_sessions: int = 5
    idle_timeout_ms: int = 300000  # 0 disables idle reclamation
    idle_check_interval_ms: int = 30000
    max_wait_rechecks: int = 10
    launch_retries: int = 2
    launch_retry_delay_ms: int = 1000
    session_close_timeout_ms: int = 3000
    shutdown_close_timeout_ms: int = 10000
    browser_close_timeout_ms: int = 5000
    cleanup_timeout_ms: int = 1000
    reuse_check_timeout_ms: int = 500

    def __post_init__(self):
        if self.max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        if self.max_wait_rechecks < 1:
            raise ValueError("max_wait_rechecks must be at least 1")
        if self.idle_timeout_ms < 0:
            raise ValueError("idle_timeout_ms cannot be negative")
        self.idle_check_interval_ms = max(MIN_IDLE_CHECK_INTERVAL_MS, self.idle_check_interval_ms)


@dataclass
class PoolStats:
    """Session pool statistics."""
    sessions_created: int = 0
    sessions_closed: int = 0
    sessions_reused: int = 0
    unhealthy_discarded: int = 0
    browser_launches: int = 0
    launch_failures: int = 0
    disconnects: int = 0
    waits: int = 0
    double_releases: int = 0
    idle_reclaims: int = 0


@dataclass(eq=False)
class Session:
    """A leased browser page."""
    page: Page
    browser: Browser
    id: str
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    use_count: int = 0

    def touch(self) -> None:
        self.last_used = time.time()
        self.use_count += 1

    @property
    def is_open(self) -> bool:
        return not self.page.is_closed()

    @property
    def idle_time(self) -> float:
        return time.time() - self.last_used


class SessionPool:
    """Leases browser pages under a fixed capacity with FIFO waiting."""

    def __init__(
        self,
        browser_factory: BrowserFactory,
        timeouts: Optional[TimeoutEngine] = None,
        config: Optional[PoolConfig] = None,
    ):
        """Initialize the pool. Nothing is launched until the first acquire.

        Args:
            browser_factory: Launches browser processes
            timeouts: Timeout engine used for bounded page closes
            config: Pool configuration
        """
        self.config = config or PoolConfig()
        self.stats = PoolStats()
        self._factory = browser_factory
        self._timeouts = timeouts or TimeoutEngine()

        self._browser: Optional[Browser] = None
        self._launch_task: Optional[asyncio.Future] = None

        self._leased: Set[Session] = set()
        self._free: List[Session] = []
        # Slots held by sessions being created or being released
        self._pending = 0

        self._waiters: Deque[asyncio.Future] = deque()
        # Waiters that were woken but have not resumed yet
        self._wakeups = 0

        self._last_activity = time.time()
        self._idle_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._session_counter = 0
        self._closed = False

    @property
    def capacity(self) -> int:
        return self.config.max_sessions

    @property
    def size(self) -> int:
        """Sessions counted against capacity."""
        return len(self._leased) + len(self._free) + self._pending

    @property
    def leased_count(self) -> int:
        return len(self._leased)

    @property
    def free_count(self) -> int:
        return len(self._free)

    @property
    def waiting_count(self) -> int:
        return sum(1 for f in self._waiters if not f.done())

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def browser_connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    def _touch(self) -> None:
        self._last_activity = time.time()

    def _ensure_open(self) -> None:
        if self._closed:
            raise PoolClosedError("Session pool is closed")

    # Acquire

    async def acquire(self) -> Session:
        """Lease a healthy session.

        Returns:
            Leased session

        Raises:
            PoolExhaustedError: If the pool stayed saturated across every re-check
            PoolClosedError: If the pool is or becomes closed
            BrowserLaunchError: If the browser process cannot be started
        """
        self._ensure_open()
        self._touch()
        self._start_idle_task()

        # Arrivals queue behind existing waiters so leases stay FIFO
        must_wait = bool(self._waiters or self._wakeups)
        rechecks = 0

        while True:
            if not must_wait:
                session = await self._pop_healthy_free()
                if session is not None:
                    self.stats.sessions_reused += 1
                    return self._lease(session)
                if self.size < self.capacity:
                    return await self._create_session()

            must_wait = False
            if rechecks >= self.config.max_wait_rechecks:
                logger.error(f"Session pool exhausted after {rechecks} re-checks")
                raise PoolExhaustedError(rechecks, self.capacity)
            rechecks += 1
            await self._wait_for_slot()
            self._ensure_open()

    def _lease(self, session: Session) -> Session:
        session.touch()
        self._leased.add(session)
        self._touch()
        logger.debug(f"Leased {session.id} ({self.leased_count}/{self.capacity} leased)")
        return session

    def _is_healthy(self, session: Session) -> bool:
        return (
            session.browser is self._browser
            and self.browser_connected
            and session.is_open
        )

    async def _pop_healthy_free(self) -> Optional[Session]:
        while self._free:
            session = self._free.pop()
            if self._is_healthy(session):
                return session
            self.stats.unhealthy_discarded += 1
            logger.debug(f"Discarding unhealthy session {session.id}")
            await self._close_session(session)
        return None

    async def _wait_for_slot(self) -> None:
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiters.append(waiter)
        self.stats.waits += 1
        logger.debug(f"Waiting for a session ({len(self._waiters)} queued)")

        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.cancelled():
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            elif waiter.exception() is None:
                # Woken and cancelled before resuming; hand the slot on
                self._wakeups -= 1
                self._wake_next()
            raise

        self._wakeups -= 1

    def _wake_next(self) -> bool:
        """Wake the oldest live waiter, if any."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._wakeups += 1
                waiter.set_result(None)
                return True
        return False

    async def _create_session(self) -> Session:
        self._pending += 1
        try:
            browser = await self._get_browser()
            page = await browser.new_page()
        except BaseException:
            self._pending -= 1
            self._wake_next()
            raise
        self._pending -= 1

        self._session_counter += 1
        session = Session(page=page, browser=browser, id=f"session-{self._session_counter}")
        self.stats.sessions_created += 1

        if self._closed:
            await self._close_session(session)
            raise PoolClosedError("Session pool closed while creating a session")

        return self._lease(session)

    # Browser lifecycle

    async def _get_browser(self) -> Browser:
        """Return a connected browser, launching with bounded retries."""
        attempts = self.config.launch_retries + 1
        delay = self.config.launch_retry_delay_ms / 1000

        for attempt in range(1, attempts + 1):
            self._ensure_open()
            try:
                return await self._ensure_browser()
            except (PoolClosedError, asyncio.CancelledError):
                raise
            except Exception as e:
                self.stats.launch_failures += 1
                if attempt >= attempts:
                    logger.error(f"Browser launch failed after {attempt} attempts: {e}")
                    raise BrowserLaunchError(f"Failed to launch browser: {e}", attempt) from e
                logger.warning(f"Browser launch attempt {attempt} failed: {e}, retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                delay *= 2

    async def _ensure_browser(self) -> Browser:
        if self.browser_connected:
            return self._browser

        # Concurrent callers share one in-flight launch
        if self._launch_task is None:
            self._launch_task = asyncio.ensure_future(self._launch())
            self._launch_task.add_done_callback(self._consume_launch_result)
        task = self._launch_task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            # The shared launch was abandoned, not this caller
            self._ensure_open()
            raise RuntimeError("Browser launch was interrupted by a disconnect")
        finally:
            if task.done() and self._launch_task is task:
                self._launch_task = None

    @staticmethod
    def _consume_launch_result(task: asyncio.Future) -> None:
        if not task.cancelled():
            task.exception()

    async def _launch(self) -> Browser:
        browser = await self._factory.launch_browser()
        if self._closed:
            await self._close_browser_process(browser)
            raise PoolClosedError("Session pool closed during browser launch")

        browser.on("disconnected", self._on_disconnected)
        self._browser = browser
        self.stats.browser_launches += 1
        self._touch()
        return browser

    def _on_disconnected(self, browser: Browser) -> None:
        if browser is not self._browser:
            return
        self.stats.disconnects += 1
        logger.warning("Browser disconnected; it will be relaunched on the next lease")
        self._browser = None

        task = self._launch_task
        if task is not None:
            if not task.done():
                task.cancel()
            self._launch_task = None

    async def _close_browser(self) -> None:
        browser = self._browser
        self._browser = None
        if browser is None:
            return
        try:
            browser.remove_listener("disconnected", self._on_disconnected)
        except Exception as e:
            logger.debug(f"Failed to remove disconnect listener: {e}")
        await self._close_browser_process(browser)

    async def _close_browser_process(self, browser: Browser) -> None:
        try:
            await asyncio.wait_for(browser.close(), self.config.browser_close_timeout_ms / 1000)
            logger.info("Browser closed")
        except asyncio.TimeoutError:
            logger.warning(f"Browser close timed out after {self.config.browser_close_timeout_ms}ms")
        except Exception as e:
            if not is_target_closed_error(e):
                logger.warning(f"Error closing browser: {e}")

    # Release

    async def release(self, session: Session, discard: bool = False) -> None:
        """Return a session to the pool.

        Reusable sessions go back to the free list; all others are closed.
        Close failures are logged and absorbed. One waiter is always woken.

        Args:
            session: Session previously returned by acquire
            discard: Close the session even if it could be reused
        """
        if session not in self._leased:
            if self._closed:
                logger.debug(f"Release of {session.id} after pool close")
            else:
                self.stats.double_releases += 1
                logger.warning(f"Release of {session.id} which is not leased (possible double release)")
            return

        self._leased.discard(session)
        self._pending += 1
        self._touch()

        reusable = False
        closed = False
        try:
            if not discard and not self._closed:
                reusable = await self._prepare_for_reuse(session)
            if not reusable:
                await self._close_session(session)
                closed = True
        finally:
            self._pending -= 1
            if reusable and not self._closed and self._is_healthy(session):
                self._free.append(session)
                logger.debug(f"Returned {session.id} to the free list")
            elif not closed:
                self._spawn(self._close_session(session))
            self._wake_next()

    async def _prepare_for_reuse(self, session: Session) -> bool:
        """Stop page activity in place and check whether the page can be reused."""
        page = session.page
        if not self._is_healthy(session):
            return False

        cleanup_timeout = self.config.cleanup_timeout_ms / 1000
        try:
            await asyncio.wait_for(page.evaluate(STOP_ACTIVITY_SCRIPT), cleanup_timeout)
        except Exception as e:
            logger.debug(f"Failed to stop activity on {session.id}: {e}")
        try:
            await asyncio.wait_for(page.unroute_all(behavior="ignoreErrors"), cleanup_timeout)
        except Exception as e:
            logger.debug(f"Failed to clear routes on {session.id}: {e}")

        try:
            await asyncio.wait_for(
                page.evaluate("() => document.readyState"),
                self.config.reuse_check_timeout_ms / 1000,
            )
        except Exception as e:
            logger.debug(f"{session.id} failed the reuse check: {e}")
            return False

        return page.url in NEUTRAL_URLS

    async def _close_session(self, session: Session) -> None:
        """Close a session's page. Never raises except for cancellation."""
        try:
            result = await self._timeouts.close_page(session.page)
            if not result.success:
                logger.warning(f"Failed to close {session.id}: {result.error}")
        except Exception as e:
            if not is_target_closed_error(e):
                logger.warning(f"Error closing {session.id}: {e}")
        self.stats.sessions_closed += 1

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Idle reclamation

    def _start_idle_task(self) -> None:
        if self.config.idle_timeout_ms <= 0:
            return
        if self._idle_task is not None and not self._idle_task.done():
            return
        self._idle_task = asyncio.create_task(self._idle_loop())

    async def _idle_loop(self) -> None:
        interval = self.config.idle_check_interval_ms / 1000
        while not self._closed:
            try:
                await asyncio.sleep(interval)
                if await self.check_idle():
                    break
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in session pool idle check: {e}")

    async def check_idle(self) -> bool:
        """Close the browser if nothing has been leased for longer than the idle timeout.

        Returns:
            True if the browser was reclaimed
        """
        if self._closed or self._browser is None or self.config.idle_timeout_ms <= 0:
            return False
        if self._leased or self._pending:
            self._touch()
            return False

        idle_ms = (time.time() - self._last_activity) * 1000
        if idle_ms <= self.config.idle_timeout_ms:
            return False

        logger.info(f"Session pool idle for {idle_ms / 1000:.0f}s, closing browser")
        self.stats.idle_reclaims += 1
        free, self._free = self._free, []
        for session in free:
            await self._close_session(session)
        await self._close_browser()
        return True

    # Shutdown

    async def close(self) -> None:
        """Close every session and the browser. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        logger.info(f"Closing session pool ({self.leased_count} leased, {self.free_count} free)")

        if self._idle_task is not None:
            self._idle_task.cancel()
            try:
                await self._idle_task
            except asyncio.CancelledError:
                pass
            self._idle_task = None

        waiters, self._waiters = self._waiters, deque()
        self._wakeups = 0
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(PoolClosedError("Session pool closed while waiting"))

        sessions = list(self._leased) + self._free
        self._leased.clear()
        self._free = []
        if sessions:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(self._force_close(s) for s in sessions), return_exceptions=True),
                    self.config.shutdown_close_timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Timed out closing {len(sessions)} sessions during shutdown")

        if self._launch_task is not None and not self._launch_task.done():
            self._launch_task.cancel()
        self._launch_task = None

        await self._close_browser()

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        await self._factory.stop()
        logger.info("Session pool closed")

    async def _force_close(self, session: Session) -> None:
        try:
            await asyncio.wait_for(session.page.close(), self.config.session_close_timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out closing {session.id}")
        except Exception as e:
            if not is_target_closed_error(e):
                logger.warning(f"Error closing {session.id}: {e}")
        self.stats.sessions_closed += 1

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[Session, None]:
        """Context manager that leases a session and always releases it."""
        leased = await self.acquire()
        try:
            yield leased
        except BaseException:
            await self.release(leased, discard=True)
            raise
        else:
            await self.release(leased)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'capacity': self.capacity,
            'leased': self.leased_count,
            'free': self.free_count,
            'pending': self._pending,
            'waiting': self.waiting_count,
            'browser_connected': self.browser_connected,
            'closed': self._closed,
            'sessions_created': self.stats.sessions_created,
            'sessions_closed': self.stats.sessions_closed,
            'sessions_reused': self.stats.sessions_reused,
            'unhealthy_discarded': self.stats.unhealthy_discarded,
            'browser_launches': self.stats.browser_launches,
            'launch_failures': self.stats.launch_failures,
            'disconnects': self.stats.disconnects,
            'waits': self.stats.waits,
            'double_releases': self.stats.double_releases,
            'idle_reclaims': self.stats.idle_reclaims,
        }

    def __repr__(self) -> str:
        status = "closed" if self._closed else "open"
        return (
            f"SessionPool(status={status}, leased={self.leased_count}, "
            f"free={self.free_count}, capacity={self.capacity})"
        )
