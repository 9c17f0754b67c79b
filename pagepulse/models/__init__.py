"""PagePulse data models package."""

from .capture import (
    RunKind,
    RunStatus,
    RunStage,
    CaptureSpec,
    ResultBag,
    RunRecord,
    generate_run_id,
)

from .batch import (
    ExecutionMode,
    ItemStatus,
    BatchItem,
    BatchSpec,
    BatchItemResult,
    BatchResult,
    BatchJob,
    generate_batch_id,
)

from .events import (
    CapabilityEventKind,
    CapabilityEvent,
    RunEventStatus,
    ProgressEvent,
    BatchEventStatus,
    BatchProgressEvent,
)

__all__ = [
    # Capture models
    'RunKind',
    'RunStatus',
    'RunStage',
    'CaptureSpec',
    'ResultBag',
    'RunRecord',
    'generate_run_id',

    # Batch models
    'ExecutionMode',
    'ItemStatus',
    'BatchItem',
    'BatchSpec',
    'BatchItemResult',
    'BatchResult',
    'BatchJob',
    'generate_batch_id',

    # Events
    'CapabilityEventKind',
    'CapabilityEvent',
    'RunEventStatus',
    'ProgressEvent',
    'BatchEventStatus',
    'BatchProgressEvent',
]
