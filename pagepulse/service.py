"""Service facade exposing StartRun, StartBatch and Shutdown.

CaptureService owns one instance of every long-lived component and wires them
together explicitly:

    AdmissionController   TimeoutEngine -> SessionPool
            |                    \\            |
            v                     CaptureOrchestrator -> ResultStore
       CaptureService  ------------------^
            |
            v
       BatchCoordinator

Admission is checked before a run or batch starts; a rejection is reported as
a terminal ``rejected`` event rather than an exception.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Union

from .admission.controller import AdmissionController
from .capture.batch import BatchCoordinator
from .capture.browser_factory import BrowserFactory
from .capture.capabilities import create_default_capabilities
from .capture.config import PagePulseConfig, load_config
from .capture.devices import DeviceConfigurator
from .capture.orchestrator import CaptureOrchestrator
from .capture.session_pool import SessionPool
from .capture.timeouts import TimeoutEngine
from .models.batch import BatchSpec, generate_batch_id
from .models.capture import CaptureSpec, generate_run_id
from .models.events import (
    BatchEventStatus, BatchProgressEvent, ProgressEvent, RunEventStatus
)
from .persistence.store import ResultStore, create_result_store

logger = logging.getLogger(__name__)


class CaptureService:
    """Entry point for starting runs and batches."""

    def __init__(
        self,
        admission: AdmissionController,
        pool: SessionPool,
        timeouts: TimeoutEngine,
        orchestrator: CaptureOrchestrator,
        batches: BatchCoordinator,
        store: Optional[ResultStore] = None,
    ):
        self.admission = admission
        self.pool = pool
        self.timeouts = timeouts
        self.orchestrator = orchestrator
        self.batches = batches
        self.store = store
        self._started = False
        self._shut_down = False

    @classmethod
    def from_config(cls, config: Optional[PagePulseConfig] = None,
                    config_path: Optional[Union[str, Path]] = None) -> "CaptureService":
        """Build every component from configuration."""
        config = config or load_config(config_path)

        timeouts = TimeoutEngine(config.get_timeout_config())
        pool = SessionPool(
            BrowserFactory(config.get_browser_config()),
            timeouts,
            config.get_pool_config(),
        )
        orchestrator_config = config.get_orchestrator_config()
        persistence = config.get_persistence_settings()
        store = create_result_store(persistence.pop('backend'), **persistence)
        orchestrator = CaptureOrchestrator(
            pool,
            timeouts,
            create_default_capabilities(timeouts, orchestrator_config.artifacts_dir),
            devices=DeviceConfigurator(),
            store=store,
            config=orchestrator_config,
        )
        admission = AdmissionController(config.get_admission_config())
        batches = BatchCoordinator(orchestrator, config.get_batch_config(), admission=admission)

        logger.info(f"Capture service configured for environment '{config.environment}'")
        return cls(admission, pool, timeouts, orchestrator, batches, store)

    def _ensure_started(self) -> None:
        if self._shut_down:
            raise RuntimeError("Capture service has been shut down")
        if not self._started:
            self.admission.start()
            self._started = True

    async def start_run(self, spec: CaptureSpec,
                        cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[ProgressEvent]:
        """Admit and run one capture, yielding its progress events."""
        self._ensure_started()
        if spec.run_id is None:
            spec = spec.model_copy(update={'run_id': generate_run_id()})

        if cancel_event is not None and cancel_event.is_set():
            yield ProgressEvent(run_id=spec.run_id, status=RunEventStatus.CANCELLED,
                                message="Run cancelled before admission")
            return

        decision = self.admission.try_admit(spec.client_key)
        if not decision.allowed:
            logger.info(f"Run {spec.run_id} rejected: {decision.reason}")
            yield ProgressEvent(run_id=spec.run_id, status=RunEventStatus.REJECTED,
                                message=decision.reason or "Rejected",
                                data={'retry_after_ms': decision.retry_after_ms})
            return

        self.admission.register_start(spec.run_id, client_key=spec.client_key, url=spec.url)
        try:
            async for event in self.orchestrator.stream_run(spec, cancel_event):
                yield event
        finally:
            self.admission.register_end(spec.run_id)

    async def start_batch(self, spec: BatchSpec,
                          cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[BatchProgressEvent]:
        """Admit and run a batch, yielding its progress events."""
        self._ensure_started()
        if spec.batch_id is None:
            spec = spec.model_copy(update={'batch_id': generate_batch_id()})

        if cancel_event is not None and cancel_event.is_set():
            yield BatchProgressEvent(batch_id=spec.batch_id, status=BatchEventStatus.BATCH_CANCELLED,
                                     message="Batch cancelled before admission")
            return

        decision = self.admission.try_admit(spec.client_key)
        if not decision.allowed:
            logger.info(f"Batch {spec.batch_id} rejected: {decision.reason}")
            yield BatchProgressEvent(batch_id=spec.batch_id, status=BatchEventStatus.BATCH_REJECTED,
                                     message=decision.reason or "Rejected",
                                     data={'retry_after_ms': decision.retry_after_ms})
            return

        # Item runs register themselves without a client key
        self.admission.register_start(spec.batch_id, client_key=spec.client_key,
                                      items=len(spec.items))
        try:
            async for event in self.batches.stream_batch(spec, cancel_event):
                yield event
        finally:
            self.admission.register_end(spec.batch_id)

    async def shutdown(self) -> None:
        """Release every resource. Safe to call more than once."""
        if self._shut_down:
            return
        self._shut_down = True
        logger.info("Shutting down capture service")
        await self.orchestrator.shutdown()
        await self.pool.close()
        await self.admission.shutdown()

    def get_status(self) -> Dict[str, Any]:
        return {
            'admission': self.admission.get_status(),
            'pool': self.pool.get_stats(),
            'orchestrator': self.orchestrator.get_stats(),
            'batches': self.batches.get_stats(),
            'timeouts': self.timeouts.get_performance_stats(),
        }

    async def __aenter__(self) -> "CaptureService":
        self._ensure_started()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
