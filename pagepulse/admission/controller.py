"""Admission control for capture runs.

The AdmissionController decides whether a new run may start. Two limits are
checked in order:

1. A global cap on concurrently active runs.
2. A fixed window of requests per client (60 per 60 seconds by default).

Admission and registration are separate calls so callers can check first and
register later, or register internal sub-runs without a check. A periodic
sweep drops runs that were never ended and expired client windows.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class AdmissionConfig:
    """Configuration for admission control."""
    max_concurrent_runs: int = 5
    max_requests_per_window: int = 60
    window_ms: int = 60000
    stale_run_ms: int = 300000
    sweep_interval_ms: int = 60000

    def __post_init__(self):
        if self.max_concurrent_runs < 1:
            raise ValueError("max_concurrent_runs must be at least 1")
        if self.max_requests_per_window < 1:
            raise ValueError("max_requests_per_window must be at least 1")
        if self.window_ms <= 0 or self.sweep_interval_ms <= 0:
            raise ValueError("window_ms and sweep_interval_ms must be positive")


@dataclass
class AdmissionDecision:
    """Outcome of an admission check."""
    allowed: bool
    reason: Optional[str] = None
    retry_after_ms: Optional[int] = None


@dataclass
class ClientWindow:
    """Request count for one client within the current window."""
    count: int
    reset_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.reset_at


@dataclass
class ActiveRun:
    """A registered, not yet ended run."""
    run_id: str
    started_at: float
    client_key: Optional[str] = None
    url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def age(self, now: float) -> float:
        return now - self.started_at


class AdmissionController:
    """Concurrency cap plus per-client request window."""

    def __init__(self, config: Optional[AdmissionConfig] = None):
        self.config = config or AdmissionConfig()
        self._active: Dict[str, ActiveRun] = {}
        self._windows: Dict[str, ClientWindow] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._stats = {
            'admitted': 0,
            'rejected_concurrency': 0,
            'rejected_rate': 0,
            'stale_removed': 0,
        }

    @property
    def active_count(self) -> int:
        return len(self._active)

    def try_admit(self, client_key: Optional[str] = None) -> AdmissionDecision:
        """Decide whether a run for this client may start now.

        Args:
            client_key: Client identifier, e.g. a remote address. None skips
                the rate check.

        Returns:
            AdmissionDecision; a rejection carries a reason
        """
        if len(self._active) >= self.config.max_concurrent_runs:
            self._stats['rejected_concurrency'] += 1
            return AdmissionDecision(
                allowed=False,
                reason=f"Maximum concurrent runs reached ({self.config.max_concurrent_runs})",
            )

        if client_key is not None:
            now = time.time()
            window = self._windows.get(client_key)
            if window is not None and window.is_expired(now):
                del self._windows[client_key]
                window = None
            if window is not None and window.count >= self.config.max_requests_per_window:
                self._stats['rejected_rate'] += 1
                return AdmissionDecision(
                    allowed=False,
                    reason=f"Rate limit exceeded for {client_key}",
                    retry_after_ms=int((window.reset_at - now) * 1000),
                )

        self._stats['admitted'] += 1
        return AdmissionDecision(allowed=True)

    def register_start(self, run_id: str, client_key: Optional[str] = None,
                       url: Optional[str] = None, **metadata: Any) -> None:
        """Record a run as active and count it against its client's window."""
        now = time.time()
        if run_id in self._active:
            logger.warning(f"Run {run_id} registered twice")
        self._active[run_id] = ActiveRun(
            run_id=run_id,
            started_at=now,
            client_key=client_key,
            url=url,
            metadata=metadata,
        )

        if client_key is not None:
            window = self._windows.get(client_key)
            if window is None or window.is_expired(now):
                self._windows[client_key] = ClientWindow(
                    count=1,
                    reset_at=now + self.config.window_ms / 1000,
                )
            else:
                window.count += 1

        logger.debug(f"Run {run_id} started ({len(self._active)} active)")

    def register_end(self, run_id: str) -> Optional[float]:
        """Remove a run from the active set.

        Returns:
            Run duration in seconds, or None if the run was not active
        """
        run = self._active.pop(run_id, None)
        if run is None:
            logger.debug(f"Run {run_id} ended but was not registered")
            return None
        duration = run.age(time.time())
        logger.info(f"Run {run_id} ended after {duration:.1f}s ({len(self._active)} active)")
        return duration

    def sweep(self) -> Dict[str, int]:
        """Drop stale runs and expired client windows."""
        now = time.time()
        stale_after = self.config.stale_run_ms / 1000

        stale = [rid for rid, run in self._active.items() if run.age(now) > stale_after]
        for run_id in stale:
            del self._active[run_id]
            logger.warning(f"Removed stale run {run_id} that was never ended")
        self._stats['stale_removed'] += len(stale)

        expired = [key for key, window in self._windows.items() if window.is_expired(now)]
        for key in expired:
            del self._windows[key]

        if stale or expired:
            logger.debug(f"Admission sweep removed {len(stale)} runs and {len(expired)} windows")
        return {'stale_runs': len(stale), 'expired_windows': len(expired)}

    def start(self) -> None:
        """Start the periodic sweep. Requires a running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(
                self._sweep_loop(self.config.sweep_interval_ms / 1000)
            )

    async def _sweep_loop(self, interval: float):
        while True:
            try:
                await asyncio.sleep(interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in admission sweep: {e}")

    async def shutdown(self) -> None:
        """Stop the sweep and clear all state."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self._active.clear()
        self._windows.clear()
        logger.info("Admission controller shut down")

    def get_status(self) -> Dict[str, Any]:
        return {
            'active_runs': len(self._active),
            'max_concurrent_runs': self.config.max_concurrent_runs,
            'system_load': round(len(self._active) / self.config.max_concurrent_runs * 100),
            'tracked_clients': len(self._windows),
            **self._stats,
        }

    def get_active_runs(self) -> List[Dict[str, Any]]:
        now = time.time()
        return [
            {
                'run_id': run.run_id,
                'client_key': run.client_key,
                'url': run.url,
                'age_seconds': round(run.age(now), 1),
            }
            for run in self._active.values()
        ]

    def __repr__(self) -> str:
        return (
            f"AdmissionController(active={len(self._active)}/"
            f"{self.config.max_concurrent_runs}, clients={len(self._windows)})"
        )
