"""PagePulse: time-boxed browser capture runs over a shared Playwright pool.

The package is organised around a small set of long-lived components that are
constructed once at process start and injected into each other:

- TimeoutEngine: progressive fast/normal/slow budgets with adaptive learning
- SessionPool: bounded set of leased browser pages over one browser process
- AdmissionController: global concurrency cap plus per-client rate window
- CaptureOrchestrator: drives one run from lease to persistence
- BatchCoordinator: drives many runs sequentially or in bounded chunks

Usage:
    from pagepulse import CaptureService, CaptureSpec

    service = CaptureService.from_config()
    async for event in service.start_run(CaptureSpec(url="https://example.com")):
        print(event.status)
    await service.shutdown()
"""

__version__ = "1.0.0"

__all__ = [
    "CaptureService",
    "CaptureSpec",
    "BatchSpec",
    "RunRecord",
    "BatchResult",
    "ProgressEvent",
    "BatchProgressEvent",
    "PagePulseConfig",
    "load_config",
]

from .models import (
    CaptureSpec,
    BatchSpec,
    RunRecord,
    BatchResult,
    ProgressEvent,
    BatchProgressEvent,
)
from .capture.config import PagePulseConfig, load_config
from .service import CaptureService
