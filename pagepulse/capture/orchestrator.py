"""Capture orchestrator driving a single run end to end.

A run moves through these stages:

    created -> session_acquired -> configured -> navigation_complete
            -> capabilities_running -> aggregated -> completed | failed

Any stage may short-circuit to failed on error, timeout or cancellation.
stream_run() is an async generator that yields a ProgressEvent on every
transition, forwards every capability event, and always ends with exactly one
terminal event (complete, timeout, cancelled or error) carrying the RunRecord.

Capabilities run concurrently and write tagged events into one queue per
run; the orchestrator is the only reader. A hard per-run timeout races the
whole capability phase. Whatever the outcome, the resource filter is removed,
the session is released exactly once and the record is handed to the result
store before the terminal event is emitted.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set
)

from playwright.async_api import Page

from .session_pool import SessionPool, Session
from .timeouts import TimeoutEngine
from .devices import DeviceConfigurator
from .resource_filter import ResourceFilter
from .capabilities.base import Capability, CapabilityName
from ..models.capture import (
    CaptureSpec, ResultBag, RunRecord, RunStage, RunStatus, generate_run_id
)
from ..models.events import (
    CapabilityEvent, CapabilityEventKind, ProgressEvent, RunEventStatus
)
from ..persistence.store import ResultStore, DEFAULT_CACHE_TTL_MS

logger = logging.getLogger(__name__)


RESULT_SLOTS = set(ResultBag.model_fields)


class NavigationError(Exception):
    """Raised when the target page cannot be navigated to."""

    def __init__(self, url: str, reason: Optional[str]):
        self.url = url
        self.reason = reason
        super().__init__(f"Navigation to {url} failed: {reason}")


class OrchestratorClosedError(Exception):
    """Raised when a run is started after shutdown."""
    pass


class RunCancelledError(Exception):
    """Raised inside a run when its cancellation signal fires."""
    pass


@dataclass
class OrchestratorConfig:
    """Configuration for capture runs."""
    performance_timeout_ms: int = 30000
    default_timeout_ms: int = 45000
    filter_removal_timeout_ms: int = 3000
    persistence_timeout_ms: int = 3000
    cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS
    low_resource: Optional[bool] = False
    artifacts_dir: Optional[str] = None
    drain_timeout_ms: int = 1000

    def __post_init__(self):
        if self.performance_timeout_ms <= 0 or self.default_timeout_ms <= 0:
            raise ValueError("Run timeouts must be positive")


class _Settled:
    """Queue marker written when one capability stream ends."""

    def __init__(self, name: str):
        self.name = name


class _PhaseOutcome:
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    def __init__(self):
        self.value = self.COMPLETED


class CaptureOrchestrator:
    """Runs one capture from session lease to persistence."""

    def __init__(
        self,
        pool: SessionPool,
        timeouts: TimeoutEngine,
        capabilities: Dict[str, Capability],
        devices: Optional[DeviceConfigurator] = None,
        store: Optional[ResultStore] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        """Initialize the orchestrator.

        Args:
            pool: Session pool to lease pages from
            timeouts: Timeout engine for navigation
            capabilities: Capability registry keyed by CapabilityName
            devices: Device-profile collaborator
            store: Result store; None disables persistence
            config: Run configuration
        """
        self.config = config or OrchestratorConfig()
        self._pool = pool
        self._timeouts = timeouts
        self._capabilities = capabilities
        self._devices = devices or DeviceConfigurator()
        self._store = store

        self._runs: Dict[str, asyncio.Event] = {}
        self._tasks: Set[asyncio.Future] = set()
        self._closed = False
        self._stats = {
            'started': 0,
            'completed': 0,
            'failed': 0,
            'timed_out': 0,
            'cancelled': 0,
            'persistence_failures': 0,
        }

    def _track(self, task: asyncio.Future) -> asyncio.Future:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def select_capabilities(self, spec: CaptureSpec) -> List[str]:
        """Names of the capabilities a run needs, in launch order."""
        if spec.is_performance:
            names = [CapabilityName.METRICS, CapabilityName.COOKIE_DETECTION]
        else:
            names = [CapabilityName.COOKIE_HANDLING]
        names.append(CapabilityName.CONSOLE_ERRORS)
        if spec.include_screenshots:
            names.append(CapabilityName.SCREENSHOTS)

        selected = []
        for name in names:
            if name in self._capabilities:
                selected.append(name)
            else:
                logger.debug(f"Capability {name} not registered, skipping")
        return selected

    def run_timeout_ms(self, spec: CaptureSpec) -> int:
        if spec.is_performance:
            return self.config.performance_timeout_ms
        return self.config.default_timeout_ms

    def _event(self, record: RunRecord, status: RunEventStatus, message: str = "",
               **data: Any) -> ProgressEvent:
        return ProgressEvent(run_id=record.id, status=status, message=message, data=data)

    @staticmethod
    def _checkpoint(cancel: asyncio.Event) -> None:
        if cancel.is_set():
            raise RunCancelledError("Run cancelled")

    def _abandon(self, task: asyncio.Future,
                 on_late_result: Optional[Callable[[Any], Awaitable[None]]] = None) -> None:
        """Cancel a step; if it still produces a result, hand it to on_late_result."""
        def _done(t: asyncio.Future) -> None:
            if t.cancelled() or t.exception() is not None:
                return
            if on_late_result is not None:
                self._track(asyncio.ensure_future(on_late_result(t.result())))

        task.cancel()
        task.add_done_callback(_done)

    async def _until_cancelled(self, coro: Awaitable[Any], cancel: asyncio.Event,
                               on_late_result: Optional[Callable[[Any], Awaitable[None]]] = None) -> Any:
        """Await a step unless the run's cancellation signal fires first."""
        task = asyncio.ensure_future(coro)
        watcher = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._abandon(task, on_late_result)
            raise
        finally:
            watcher.cancel()

        if task.done():
            return task.result()
        self._abandon(task, on_late_result)
        raise RunCancelledError("Run cancelled")

    async def _link_cancel(self, external: asyncio.Event, internal: asyncio.Event) -> None:
        await external.wait()
        internal.set()

    async def stream_run(self, spec: CaptureSpec,
                         cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[ProgressEvent]:
        """Run one capture, yielding progress events.

        Args:
            spec: What to capture
            cancel_event: Optional signal; setting it cancels the run

        Yields:
            ProgressEvent values; the last one is terminal and carries the record

        Raises:
            OrchestratorClosedError: If called after shutdown
        """
        if self._closed:
            raise OrchestratorClosedError("Orchestrator has been shut down")

        run_id = spec.run_id or generate_run_id()
        record = RunRecord.from_spec(spec, run_id)
        cancel = asyncio.Event()
        self._runs[run_id] = cancel
        self._stats['started'] += 1

        link = None
        if cancel_event is not None:
            if cancel_event.is_set():
                cancel.set()
            else:
                link = self._track(asyncio.ensure_future(self._link_cancel(cancel_event, cancel)))

        session: Optional[Session] = None
        resource_filter: Optional[ResourceFilter] = None
        discard = False

        try:
            yield self._event(record, RunEventStatus.STARTING,
                              f"Starting {spec.run_kind.value} run for {spec.url}",
                              url=spec.url, device_profile=spec.device_profile)
            try:
                self._checkpoint(cancel)
                session = await self._until_cancelled(
                    self._pool.acquire(), cancel,
                    on_late_result=lambda s: self._pool.release(s, discard=True),
                )
                record.advance(RunStage.SESSION_ACQUIRED)
                yield self._event(record, RunEventStatus.SESSION_ACQUIRED,
                                  "Browser session acquired", session_id=session.id)

                self._checkpoint(cancel)
                profile = await self._devices.configure(session.page, spec.device_profile)
                record.advance(RunStage.CONFIGURED)
                yield self._event(record, RunEventStatus.CONFIGURED,
                                  f"Device configured as {profile.name}",
                                  width=profile.width, height=profile.height)

                self._checkpoint(cancel)
                if self.config.low_resource:
                    resource_filter = ResourceFilter()
                    await resource_filter.install(session.page)

                navigation = await self._until_cancelled(
                    self._timeouts.navigate(session.page, spec.url), cancel
                )
                if not navigation.success:
                    raise NavigationError(spec.url, navigation.error)
                record.advance(RunStage.NAVIGATION_COMPLETE)
                yield self._event(record, RunEventStatus.NAVIGATION_COMPLETE,
                                  "Navigation complete", **navigation.to_dict())

                self._checkpoint(cancel)
                names = self.select_capabilities(spec)
                record.capabilities_run = names
                record.advance(RunStage.CAPABILITIES_RUNNING)
                yield self._event(record, RunEventStatus.CAPABILITIES_RUNNING,
                                  f"Running {len(names)} capabilities", capabilities=names)

                outcome = _PhaseOutcome()
                timeout_ms = self.run_timeout_ms(spec)
                phase = self._run_capabilities(record, session.page, names,
                                               timeout_ms, cancel, outcome)
                try:
                    async for event in phase:
                        yield event
                finally:
                    await phase.aclose()

                if outcome.value == _PhaseOutcome.TIMEOUT:
                    discard = True
                    record.finalize(RunStatus.FAILED, termination="timeout",
                                    error=f"Run exceeded {timeout_ms}ms")
                    terminal_status = RunEventStatus.TIMEOUT
                    self._stats['timed_out'] += 1
                    logger.warning(f"[{run_id}] run timed out after {timeout_ms}ms")
                elif outcome.value == _PhaseOutcome.CANCELLED:
                    raise RunCancelledError("Run cancelled")
                else:
                    record.advance(RunStage.AGGREGATED)
                    yield self._event(record, RunEventStatus.AGGREGATED, "Results aggregated",
                                      populated=record.results.populated_slots)
                    record.finalize(RunStatus.COMPLETED)
                    terminal_status = RunEventStatus.COMPLETE
                    self._stats['completed'] += 1

            except RunCancelledError:
                discard = True
                record.finalize(RunStatus.FAILED, termination="cancelled", error="Run cancelled")
                terminal_status = RunEventStatus.CANCELLED
                self._stats['cancelled'] += 1
                logger.info(f"[{run_id}] run cancelled")
            except Exception as e:
                discard = True
                record.finalize(RunStatus.FAILED, termination="error", error=str(e))
                terminal_status = RunEventStatus.ERROR
                self._stats['failed'] += 1
                logger.error(f"[{run_id}] run failed: {e}")

            await self._settle(record, spec, session, resource_filter, discard)
            session = None

            yield ProgressEvent(
                run_id=run_id,
                status=terminal_status,
                message=record.error or "Run complete",
                data={
                    'total_duration_ms': record.duration_ms,
                    'capabilities_run': record.capabilities_run,
                    'populated': record.results.populated_slots,
                    'capability_errors': dict(record.capability_errors),
                },
                record=record,
            )
        finally:
            if session is not None:
                # Stream abandoned or task cancelled mid-run
                record.finalize(RunStatus.FAILED, termination="cancelled", error="Run abandoned")
                await self._settle(record, spec, session, resource_filter, discard=True,
                                   persist=False)
            self._runs.pop(run_id, None)
            if link is not None:
                link.cancel()

    async def _run_capabilities(
        self,
        record: RunRecord,
        page: Page,
        names: List[str],
        timeout_ms: int,
        cancel: asyncio.Event,
        outcome: _PhaseOutcome,
    ) -> AsyncIterator[ProgressEvent]:
        """Fan out to capabilities and merge their events until all settle."""
        queue: asyncio.Queue = asyncio.Queue()
        runners = [
            self._track(asyncio.ensure_future(
                self._pump(name, self._capabilities[name], page, record.id, queue)
            ))
            for name in names
        ]

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        open_streams = len(runners)
        watcher = asyncio.ensure_future(cancel.wait())

        try:
            while open_streams:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    outcome.value = _PhaseOutcome.TIMEOUT
                    break

                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, watcher}, timeout=remaining,
                                             return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    if watcher in done:
                        outcome.value = _PhaseOutcome.CANCELLED
                    else:
                        outcome.value = _PhaseOutcome.TIMEOUT
                    break

                item = getter.result()
                if isinstance(item, _Settled):
                    open_streams -= 1
                    continue

                self._merge(record, item)
                yield ProgressEvent(
                    run_id=record.id,
                    status=RunEventStatus.CAPABILITY_PROGRESS,
                    message=item.message or "",
                    capability=item.capability,
                    data={'kind': item.kind.value, **item.payload},
                )

            if outcome.value == _PhaseOutcome.COMPLETED and cancel.is_set():
                outcome.value = _PhaseOutcome.CANCELLED
        finally:
            watcher.cancel()
            pending = [r for r in runners if not r.done()]
            for runner in pending:
                runner.cancel()
            if pending:
                await asyncio.wait(pending, timeout=self.config.drain_timeout_ms / 1000)

    async def _pump(self, name: str, capability: Capability, page: Page, run_id: str,
                    queue: asyncio.Queue) -> None:
        try:
            async for event in capability.run(page, run_id):
                queue.put_nowait(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{run_id}] capability {name} failed: {e}")
            queue.put_nowait(CapabilityEvent.error(name, f"{type(e).__name__}: {e}"))
        finally:
            queue.put_nowait(_Settled(name))

    def _merge(self, record: RunRecord, event: CapabilityEvent) -> None:
        if event.kind == CapabilityEventKind.COMPLETE:
            if event.slot in RESULT_SLOTS:
                setattr(record.results, event.slot, event.payload)
            else:
                logger.warning(f"[{record.id}] {event.capability} completed with unknown slot {event.slot}")
        elif event.kind == CapabilityEventKind.ERROR:
            record.capability_errors[event.capability] = event.message or "unknown error"

    async def _settle(self, record: RunRecord, spec: CaptureSpec, session: Optional[Session],
                      resource_filter: Optional[ResourceFilter], discard: bool,
                      persist: bool = True) -> None:
        """Remove the filter, release the session once and persist the record."""
        if resource_filter is not None and resource_filter.is_installed:
            try:
                await asyncio.wait_for(resource_filter.remove(),
                                       self.config.filter_removal_timeout_ms / 1000)
            except Exception as e:
                logger.warning(f"[{record.id}] failed to remove resource filter: {e}")
                discard = True

        if session is not None:
            await self._pool.release(session, discard=discard)

        if persist:
            await self._persist(record, spec)

    async def _persist(self, record: RunRecord, spec: CaptureSpec) -> None:
        if self._store is None:
            return
        budget = self.config.persistence_timeout_ms / 1000
        try:
            await asyncio.wait_for(
                self._store.cache_temporarily(record.id, spec, record, self.config.cache_ttl_ms),
                budget,
            )
            if spec.user_id:
                record.persisted_id = await asyncio.wait_for(
                    self._store.save(spec.user_id, spec, record), budget
                )
        except Exception as e:
            self._stats['persistence_failures'] += 1
            logger.warning(f"[{record.id}] failed to persist result: {e}")

    async def run(self, spec: CaptureSpec, cancel_event: Optional[asyncio.Event] = None,
                  on_event: Optional[Callable[[ProgressEvent], None]] = None) -> RunRecord:
        """Run one capture to completion and return its record."""
        record = None
        stream = self.stream_run(spec, cancel_event)
        try:
            async for event in stream:
                if on_event is not None:
                    on_event(event)
                if event.is_terminal:
                    record = event.record
        finally:
            await stream.aclose()
        return record

    def cancel_run(self, run_id: str) -> bool:
        """Signal cancellation of an active run."""
        cancel = self._runs.get(run_id)
        if cancel is None:
            return False
        cancel.set()
        return True

    @property
    def active_runs(self) -> List[str]:
        return list(self._runs)

    async def shutdown(self) -> None:
        """Cancel every active run and tracked task. New runs are refused."""
        self._closed = True
        for cancel in self._runs.values():
            cancel.set()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        self._tasks.clear()
        if tasks:
            await asyncio.wait(tasks, timeout=self.config.drain_timeout_ms / 1000)
        logger.info(f"Capture orchestrator shut down ({len(tasks)} tasks cancelled)")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            'active_runs': len(self._runs),
            'tracked_tasks': len(self._tasks),
        }

    def __repr__(self) -> str:
        return (
            f"CaptureOrchestrator(active={len(self._runs)}, "
            f"capabilities={sorted(self._capabilities)})"
        )
