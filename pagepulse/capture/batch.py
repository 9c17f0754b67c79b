"""Batch coordinator running many capture runs as one unit.

Sequential mode runs items one at a time and checks the cancellation signal
before each item. Bounded-parallel mode splits the items into chunks of
``min(max_concurrency, item count)``; the items of a chunk run concurrently
and the next chunk starts only once every item of the current one settled.
Progress is reported per item in sequential mode and per chunk otherwise.

Item failures are recorded on the item and never abort the batch. An overall
safety timeout bounds the whole batch; on expiry every unsettled item is
marked failed, so the final result always enumerates every item.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .orchestrator import CaptureOrchestrator
from ..admission.controller import AdmissionController
from ..models.batch import (
    BatchJob, BatchResult, BatchSpec, ExecutionMode, ItemStatus, generate_batch_id
)
from ..models.capture import RunStatus
from ..models.events import BatchEventStatus, BatchProgressEvent

logger = logging.getLogger(__name__)


@dataclass
class BatchConfig:
    """Configuration for batch execution."""
    max_concurrency: int = 5
    safety_timeout_ms: int = 600000
    drain_timeout_ms: int = 5000

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.safety_timeout_ms <= 0:
            raise ValueError("safety_timeout_ms must be positive")


class BatchCoordinator:
    """Drives the runs of a batch through the orchestrator."""

    def __init__(
        self,
        orchestrator: CaptureOrchestrator,
        config: Optional[BatchConfig] = None,
        admission: Optional[AdmissionController] = None,
    ):
        """Initialize the coordinator.

        Args:
            orchestrator: Runs each item
            config: Batch configuration
            admission: When given, every item run is registered as active
        """
        self.config = config or BatchConfig()
        self._orchestrator = orchestrator
        self._admission = admission
        self._stats = {
            'batches': 0,
            'items_completed': 0,
            'items_failed': 0,
            'timeouts': 0,
        }

    def chunk_size(self, spec: BatchSpec) -> int:
        limit = spec.max_concurrency or self.config.max_concurrency
        return max(1, min(limit, len(spec.items)))

    @staticmethod
    def _event(job: BatchJob, status: BatchEventStatus, message: str = "",
               item_index: Optional[int] = None, **data: Any) -> BatchProgressEvent:
        return BatchProgressEvent(
            batch_id=job.batch_id,
            status=status,
            message=message,
            item_index=item_index,
            data=data,
        )

    async def stream_batch(self, spec: BatchSpec,
                           cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[BatchProgressEvent]:
        """Run a batch, yielding progress events.

        Args:
            spec: Items and shared per-run settings
            cancel_event: Optional signal; stops the batch at the next item or chunk

        Yields:
            BatchProgressEvent values; the last one is terminal and carries the result
        """
        batch_id = spec.batch_id or generate_batch_id()
        job = BatchJob(spec, batch_id)
        self._stats['batches'] += 1
        loop = asyncio.get_running_loop()

        logger.info(f"Batch {batch_id} started: {job.total} items, mode={spec.mode.value}")
        yield self._event(job, BatchEventStatus.BATCH_STARTED,
                          f"Processing {job.total} URLs ({spec.mode.value})",
                          total=job.total, mode=spec.mode.value,
                          chunk_size=self.chunk_size(spec))

        queue: asyncio.Queue = asyncio.Queue()
        worker = asyncio.ensure_future(self._process(job, cancel_event, queue))
        deadline = loop.time() + self.config.safety_timeout_ms / 1000
        timed_out = False

        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, worker}, timeout=deadline - loop.time(),
                                             return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()

                if worker in done:
                    while not queue.empty():
                        yield queue.get_nowait()
                    break

                timed_out = True
                break
        finally:
            if not worker.done():
                worker.cancel()
                await asyncio.wait({worker}, timeout=self.config.drain_timeout_ms / 1000)

        cancelled = False
        if timed_out:
            self._stats['timeouts'] += 1
            unsettled = job.settle_remaining(ItemStatus.FAILED, "Batch safety timeout exceeded")
            logger.error(f"Batch {batch_id} timed out with {unsettled} unsettled items")
            status = BatchEventStatus.BATCH_TIMEOUT
        elif worker.cancelled():
            job.settle_remaining(ItemStatus.FAILED, "Batch worker cancelled")
            status = BatchEventStatus.BATCH_CANCELLED
        elif worker.exception() is not None:
            error = worker.exception()
            logger.error(f"Batch {batch_id} failed: {error}")
            job.settle_remaining(ItemStatus.FAILED, f"Batch error: {error}")
            status = BatchEventStatus.BATCH_COMPLETE
        else:
            cancelled = worker.result()
            status = BatchEventStatus.BATCH_CANCELLED if cancelled else BatchEventStatus.BATCH_COMPLETE

        result = job.to_result(timed_out=timed_out)
        self._stats['items_completed'] += result.completed
        self._stats['items_failed'] += result.failed
        logger.info(
            f"Batch {batch_id} finished: {result.completed} completed, {result.failed} failed, "
            f"{result.cancelled} cancelled in {result.total_duration_ms / 1000:.1f}s"
        )

        yield BatchProgressEvent(
            batch_id=batch_id,
            status=status,
            message=f"{result.completed}/{result.total} URLs completed",
            data={
                'total_urls': result.total,
                'completed': result.completed,
                'failed': result.failed,
                'cancelled': result.cancelled,
                'total_duration_ms': result.total_duration_ms,
                'average_time_per_url_ms': result.average_time_per_item_ms,
            },
            result=result,
        )

    async def _process(self, job: BatchJob, cancel_event: Optional[asyncio.Event],
                       queue: asyncio.Queue) -> bool:
        """Run every item. Returns True if the batch was cancelled."""
        if job.spec.mode == ExecutionMode.SEQUENTIAL:
            return await self._process_sequential(job, cancel_event, queue)
        return await self._process_chunked(job, cancel_event, queue)

    @staticmethod
    def _is_cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    async def _process_sequential(self, job: BatchJob, cancel_event: Optional[asyncio.Event],
                                  queue: asyncio.Queue) -> bool:
        for index, item in enumerate(job.items):
            if self._is_cancelled(cancel_event):
                skipped = job.settle_remaining(ItemStatus.CANCELLED, "Batch cancelled")
                logger.info(f"Batch {job.batch_id} cancelled, {skipped} items skipped")
                return True

            queue.put_nowait(self._event(job, BatchEventStatus.ITEM_STARTED,
                                         f"Starting {item.url}", item_index=index,
                                         url=item.url, label=item.label, run_id=item.run_id))
            await self._run_item(job, index, cancel_event)

            settled = job.items[index]
            if settled.status == ItemStatus.COMPLETED:
                queue.put_nowait(self._event(job, BatchEventStatus.ITEM_COMPLETED,
                                             f"Completed {item.url}", item_index=index,
                                             url=item.url, run_id=item.run_id))
            else:
                queue.put_nowait(self._event(job, BatchEventStatus.ITEM_FAILED,
                                             settled.error or f"Failed {item.url}",
                                             item_index=index, url=item.url,
                                             run_id=item.run_id, status=settled.status.value))
            queue.put_nowait(self._event(job, BatchEventStatus.BATCH_PROGRESS,
                                         "Batch progress", **job.progress()))
        return False

    async def _process_chunked(self, job: BatchJob, cancel_event: Optional[asyncio.Event],
                               queue: asyncio.Queue) -> bool:
        size = self.chunk_size(job.spec)
        chunks: List[List[int]] = [
            list(range(start, min(start + size, job.total)))
            for start in range(0, job.total, size)
        ]

        for number, indices in enumerate(chunks, 1):
            if self._is_cancelled(cancel_event):
                skipped = job.settle_remaining(ItemStatus.CANCELLED, "Batch cancelled")
                logger.info(f"Batch {job.batch_id} cancelled, {skipped} items skipped")
                return True

            await asyncio.gather(*(self._run_item(job, i, cancel_event) for i in indices))
            queue.put_nowait(self._event(job, BatchEventStatus.BATCH_PROGRESS,
                                         f"Chunk {number}/{len(chunks)} settled",
                                         chunk=number, chunks=len(chunks), **job.progress()))
        return False

    async def _run_item(self, job: BatchJob, index: int,
                        cancel_event: Optional[asyncio.Event]) -> None:
        """Run one item and record its outcome. Only cancellation propagates."""
        item = job.items[index]
        job.mark_running(index)

        if self._admission is not None:
            self._admission.register_start(item.run_id, url=item.url, batch_id=job.batch_id)
        try:
            spec = job.spec.item_spec(index, item.run_id)
            record = await self._orchestrator.run(spec, cancel_event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Batch {job.batch_id} item {index + 1} failed: {e}")
            job.settle(index, ItemStatus.FAILED, error=str(e))
            return
        finally:
            if self._admission is not None:
                self._admission.register_end(item.run_id)

        if record is None:
            job.settle(index, ItemStatus.FAILED, error="Run produced no result")
        elif record.status == RunStatus.COMPLETED:
            job.settle(index, ItemStatus.COMPLETED, record=record)
        elif record.termination == "cancelled":
            job.settle(index, ItemStatus.CANCELLED, record=record, error=record.error)
        else:
            job.settle(index, ItemStatus.FAILED, record=record, error=record.error)

    async def run_batch(self, spec: BatchSpec, cancel_event: Optional[asyncio.Event] = None,
                        on_event: Optional[Callable[[BatchProgressEvent], None]] = None) -> BatchResult:
        """Run a batch to completion and return its result."""
        result = None
        stream = self.stream_batch(spec, cancel_event)
        try:
            async for event in stream:
                if on_event is not None:
                    on_event(event)
                if event.is_terminal:
                    result = event.result
        finally:
            await stream.aclose()
        return result

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)

    def __repr__(self) -> str:
        return f"BatchCoordinator(max_concurrency={self.config.max_concurrency})"
