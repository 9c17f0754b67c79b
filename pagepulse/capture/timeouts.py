"""Progressive timeout engine for blocking browser operations.

Every blocking automation call (navigate, wait for load state, screenshot,
close) goes through TimeoutEngine.run_with_budget, which races the operation
against three escalating budgets:

    fast -> normal -> slow

Budgets come from a static table per operation type, scaled by an environment
multiplier and by an adaptive multiplier learned from recent latency. When the
fast budget expires the same invocation keeps running against the normal
budget, and then the slow one. If the operation raises before the slow tier,
it is invoked again for the next tier. Exhausting the slow tier yields a
failed TimeoutResult rather than an exception.

Each tier waits its own full budget, so an operation may run for up to
fast + normal + slow before it is abandoned.
"""

import asyncio
import logging
import statistics
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from playwright.async_api import Page

logger = logging.getLogger(__name__)


class OperationType:
    """Operation types with their own budgets and latency history."""
    NAVIGATION = "navigation"
    PAGE_LOAD = "page_load"
    NETWORK_IDLE = "network_idle"
    DOM_CONTENT_LOADED = "dom_content_loaded"
    COOKIE_DETECTION = "cookie_detection"
    SCREENSHOT = "screenshot"
    PAGE_CLOSE = "page_close"


class Tier:
    """Budget tiers, tried in order."""
    FAST = "fast"
    NORMAL = "normal"
    SLOW = "slow"


TIERS = (Tier.FAST, Tier.NORMAL, Tier.SLOW)

EXHAUSTED_STRATEGY = "all-failed"

# fast, normal, slow in milliseconds
BASE_TIMEOUTS_MS: Dict[str, Tuple[int, int, int]] = {
    OperationType.NAVIGATION: (8000, 15000, 30000),
    OperationType.PAGE_LOAD: (5000, 10000, 20000),
    OperationType.NETWORK_IDLE: (3000, 6000, 12000),
    OperationType.DOM_CONTENT_LOADED: (3000, 5000, 8000),
    OperationType.COOKIE_DETECTION: (2000, 4000, 6000),
    OperationType.SCREENSHOT: (2000, 3000, 5000),
    OperationType.PAGE_CLOSE: (1000, 2000, 3000),
}

LOAD_STATE_OPERATIONS = {
    'load': OperationType.PAGE_LOAD,
    'domcontentloaded': OperationType.DOM_CONTENT_LOADED,
    'networkidle': OperationType.NETWORK_IDLE,
}

CLOSED_TARGET_MARKERS = (
    "Target closed",
    "Session closed",
    "No target with given id found",
    "has been closed",
)


def is_target_closed_error(error: BaseException) -> bool:
    """Whether an error only says the page or browser is already gone."""
    message = str(error)
    return any(marker in message for marker in CLOSED_TARGET_MARKERS)


@dataclass
class RetryPolicy:
    """Retry hints for an operation type."""
    max_retries: int
    backoff_multiplier: float


RETRY_POLICIES: Dict[str, RetryPolicy] = {
    OperationType.NAVIGATION: RetryPolicy(1, 2.0),
    OperationType.PAGE_LOAD: RetryPolicy(2, 1.5),
    OperationType.NETWORK_IDLE: RetryPolicy(1, 2.0),
    OperationType.DOM_CONTENT_LOADED: RetryPolicy(3, 1.3),
    OperationType.COOKIE_DETECTION: RetryPolicy(2, 1.5),
    OperationType.SCREENSHOT: RetryPolicy(2, 1.2),
    OperationType.PAGE_CLOSE: RetryPolicy(1, 1.0),
}


@dataclass
class TimeoutConfig:
    """Configuration for the timeout engine."""
    environment_multiplier: float = 1.0
    history_size: int = 20
    adaptive_window: int = 5
    adaptive_threshold: float = 1.2
    max_adaptive_multiplier: float = 2.0
    base_timeouts_ms: Dict[str, List[int]] = field(default_factory=dict)

    def __post_init__(self):
        if self.environment_multiplier <= 0:
            raise ValueError("environment_multiplier must be positive")
        if self.history_size < self.adaptive_window:
            raise ValueError("history_size must be at least adaptive_window")
        for op, values in self.base_timeouts_ms.items():
            if len(values) != 3 or list(values) != sorted(values) or min(values) <= 0:
                raise ValueError(f"base_timeouts_ms[{op}] must be three increasing positive values")


@dataclass
class TimeoutResult:
    """Outcome of a budgeted operation."""
    success: bool
    value: Any = None
    duration_ms: float = 0.0
    attempts: int = 0
    strategy: str = EXHAUSTED_STRATEGY
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'duration_ms': round(self.duration_ms, 1),
            'attempts': self.attempts,
            'strategy': self.strategy,
            'error': self.error,
        }


def _discard(task: asyncio.Future) -> None:
    """Cancel an abandoned operation and make sure its outcome is retrieved."""
    def _consume(t: asyncio.Future) -> None:
        if not t.cancelled():
            t.exception()

    if task.done():
        _consume(task)
    else:
        task.cancel()
        task.add_done_callback(_consume)


class TimeoutEngine:
    """Runs operations under progressive, self-adjusting time budgets."""

    def __init__(self, config: Optional[TimeoutConfig] = None):
        self.config = config or TimeoutConfig()
        self._history: Dict[str, Deque[float]] = {}
        self._stats = {
            'operations': 0,
            'succeeded': 0,
            'exhausted': 0,
            'escalations': 0,
        }

    def _base(self, op_type: str) -> Tuple[int, int, int]:
        override = self.config.base_timeouts_ms.get(op_type)
        if override:
            return tuple(override)
        return BASE_TIMEOUTS_MS.get(op_type, BASE_TIMEOUTS_MS[OperationType.PAGE_LOAD])

    def _adaptive_multiplier(self, op_type: str) -> float:
        history = self._history.get(op_type)
        window = self.config.adaptive_window
        if not history or len(history) < window:
            return 1.0

        recent = list(history)[-window:]
        recent_mean = statistics.mean(recent)
        expected_fast = self._base(op_type)[0] * self.config.environment_multiplier

        if recent_mean > expected_fast * self.config.adaptive_threshold:
            return min(self.config.max_adaptive_multiplier, recent_mean / expected_fast)
        return 1.0

    def get_budgets(self, op_type: str) -> Dict[str, float]:
        """Current fast/normal/slow budgets in milliseconds."""
        multiplier = self.config.environment_multiplier * self._adaptive_multiplier(op_type)
        return {tier: base * multiplier for tier, base in zip(TIERS, self._base(op_type))}

    def get_budget(self, op_type: str, tier: str) -> float:
        """Current budget for one tier in milliseconds."""
        if tier not in TIERS:
            raise ValueError(f"Unknown tier: {tier}")
        return self.get_budgets(op_type)[tier]

    def get_retry_policy(self, op_type: str) -> RetryPolicy:
        return RETRY_POLICIES.get(op_type, RETRY_POLICIES[OperationType.PAGE_LOAD])

    def record_duration(self, op_type: str, duration_ms: float) -> None:
        history = self._history.get(op_type)
        if history is None:
            history = deque(maxlen=self.config.history_size)
            self._history[op_type] = history
        history.append(duration_ms)

    def get_history(self, op_type: str) -> List[float]:
        return list(self._history.get(op_type, ()))

    async def run_with_budget(
        self,
        op_type: str,
        fn: Callable[[], Awaitable[Any]],
        context: str = "",
    ) -> TimeoutResult:
        """Run an operation under escalating budgets.

        Args:
            op_type: Operation type selecting budgets and history
            fn: Zero-argument callable returning an awaitable; called again
                only when a previous invocation raised
            context: Free text included in log messages

        Returns:
            TimeoutResult describing the outcome; never raises for operation
            failures or timeouts
        """
        loop = asyncio.get_running_loop()
        budgets = self.get_budgets(op_type)
        started = loop.time()
        self._stats['operations'] += 1

        task: Optional[asyncio.Future] = None
        last_error: Optional[str] = None

        try:
            for attempt, tier in enumerate(TIERS, 1):
                if attempt > 1:
                    self._stats['escalations'] += 1

                if task is None:
                    try:
                        task = asyncio.ensure_future(fn())
                    except Exception as e:
                        last_error = f"{type(e).__name__}: {e}"
                        continue

                # Each tier gets its full window, even for a continuing invocation
                await asyncio.wait({task}, timeout=budgets[tier] / 1000)

                if not task.done():
                    last_error = f"{tier} budget of {budgets[tier]:.0f}ms exceeded"
                    logger.debug(f"{op_type} {context}: {last_error}")
                    continue

                if task.cancelled():
                    last_error = "operation cancelled"
                    task = None
                    continue

                error = task.exception()
                if error is not None:
                    last_error = f"{type(error).__name__}: {error}"
                    logger.debug(f"{op_type} {context}: {tier} attempt failed: {last_error}")
                    task = None
                    continue

                duration_ms = (loop.time() - started) * 1000
                self.record_duration(op_type, duration_ms)
                self._stats['succeeded'] += 1
                return TimeoutResult(
                    success=True,
                    value=task.result(),
                    duration_ms=duration_ms,
                    attempts=attempt,
                    strategy=tier,
                )
        finally:
            if task is not None and not task.done():
                _discard(task)

        duration_ms = (loop.time() - started) * 1000
        self.record_duration(op_type, duration_ms)
        self._stats['exhausted'] += 1
        logger.warning(
            f"{op_type} {context}: all budgets exhausted after {duration_ms:.0f}ms ({last_error})"
        )
        return TimeoutResult(
            success=False,
            duration_ms=duration_ms,
            attempts=len(TIERS),
            strategy=EXHAUSTED_STRATEGY,
            error=last_error,
        )

    async def navigate(self, page: Page, url: str, wait_until: str = "domcontentloaded") -> TimeoutResult:
        """Navigate a page under navigation budgets."""
        return await self.run_with_budget(
            OperationType.NAVIGATION,
            lambda: page.goto(url, wait_until=wait_until, timeout=0),
            context=url,
        )

    async def wait_for_load_state(self, page: Page, state: str = "load") -> TimeoutResult:
        """Wait for a page load state under the matching budgets."""
        op_type = LOAD_STATE_OPERATIONS.get(state)
        if op_type is None:
            raise ValueError(f"Unknown load state: {state}")
        return await self.run_with_budget(
            op_type,
            lambda: page.wait_for_load_state(state, timeout=0),
            context=state,
        )

    async def wait_for_network_idle(self, page: Page) -> TimeoutResult:
        return await self.wait_for_load_state(page, "networkidle")

    async def screenshot(self, page: Page, **options) -> TimeoutResult:
        """Take a screenshot under screenshot budgets; the value is the image bytes."""
        return await self.run_with_budget(
            OperationType.SCREENSHOT,
            lambda: page.screenshot(timeout=0, **options),
        )

    async def close_page(self, page: Page) -> TimeoutResult:
        """Close a page under close budgets. Closing a gone page counts as success."""
        async def _close() -> bool:
            if page.is_closed():
                return False
            try:
                await page.close()
            except Exception as e:
                if is_target_closed_error(e):
                    return False
                raise
            return True

        return await self.run_with_budget(OperationType.PAGE_CLOSE, _close)

    def get_performance_stats(self) -> Dict[str, Dict[str, Any]]:
        """Summarize latency history per operation type."""
        stats = {}
        for op_type, history in self._history.items():
            durations = list(history)
            if not durations:
                continue
            ordered = sorted(durations)
            p95_index = min(len(ordered) - 1, int(len(ordered) * 0.95))
            stats[op_type] = {
                'avg_ms': statistics.mean(durations),
                'p95_ms': ordered[p95_index],
                'count': len(durations),
                'trend': self._trend(durations),
                'budgets_ms': self.get_budgets(op_type),
            }
        return stats

    @staticmethod
    def _trend(durations: List[float]) -> str:
        if len(durations) < 4:
            return "stable"
        half = len(durations) // 2
        older = statistics.mean(durations[:half])
        recent = statistics.mean(durations[half:])
        if recent > older * 1.1:
            return "degrading"
        if recent < older * 0.9:
            return "improving"
        return "stable"

    def clear_history(self, op_type: Optional[str] = None) -> None:
        """Forget recorded latency for one operation type, or all of them."""
        if op_type is None:
            self._history.clear()
        else:
            self._history.pop(op_type, None)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            'environment_multiplier': self.config.environment_multiplier,
            'tracked_operations': sorted(self._history),
        }

    def __repr__(self) -> str:
        return (
            f"TimeoutEngine(env_multiplier={self.config.environment_multiplier}, "
            f"operations={self._stats['operations']}, exhausted={self._stats['exhausted']})"
        )
