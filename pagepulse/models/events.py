"""Progress event models emitted by runs, batches and capabilities.

Capabilities emit CapabilityEvent values into a run's channel. The
orchestrator merges the completion payloads into the RunRecord and forwards
everything upstream as ProgressEvent values. Batches emit BatchProgressEvent.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Any

from pydantic import BaseModel, Field

from .capture import RunRecord
from .batch import BatchResult


class CapabilityEventKind(str, Enum):
    """Tag of a capability stream element."""
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class CapabilityEvent(BaseModel):
    """Tagged element of a capability's event sequence."""

    kind: CapabilityEventKind = Field(description="Event tag")
    capability: str = Field(description="Name of the emitting capability")
    slot: Optional[str] = Field(
        default=None,
        description="Result bag slot the completion payload belongs to"
    )
    message: Optional[str] = Field(default=None, description="Human readable detail")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event data")

    @classmethod
    def progress(cls, capability: str, message: str, **data: Any) -> "CapabilityEvent":
        return cls(kind=CapabilityEventKind.PROGRESS, capability=capability,
                   message=message, payload=data)

    @classmethod
    def complete(cls, capability: str, slot: str, payload: Dict[str, Any],
                 message: Optional[str] = None) -> "CapabilityEvent":
        return cls(kind=CapabilityEventKind.COMPLETE, capability=capability,
                   slot=slot, payload=payload, message=message)

    @classmethod
    def error(cls, capability: str, message: str) -> "CapabilityEvent":
        return cls(kind=CapabilityEventKind.ERROR, capability=capability, message=message)


class RunEventStatus(str, Enum):
    """Status carried by a run progress event."""
    STARTING = "starting"
    SESSION_ACQUIRED = "session_acquired"
    CONFIGURED = "configured"
    NAVIGATION_COMPLETE = "navigation_complete"
    CAPABILITIES_RUNNING = "capabilities_running"
    CAPABILITY_PROGRESS = "capability_progress"
    AGGREGATED = "aggregated"
    COMPLETE = "complete"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    ERROR = "error"
    REJECTED = "rejected"


TERMINAL_RUN_STATUSES = {
    RunEventStatus.COMPLETE,
    RunEventStatus.TIMEOUT,
    RunEventStatus.CANCELLED,
    RunEventStatus.ERROR,
    RunEventStatus.REJECTED,
}


class ProgressEvent(BaseModel):
    """One element of a run's progress stream."""

    run_id: str = Field(description="Run identifier")
    status: RunEventStatus = Field(description="Event status")
    message: str = Field(default="", description="Human readable detail")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    capability: Optional[str] = Field(
        default=None,
        description="Capability that produced a forwarded event"
    )
    data: Dict[str, Any] = Field(default_factory=dict, description="Event data")
    record: Optional[RunRecord] = Field(
        default=None,
        description="Final run record, present on terminal events only"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class BatchEventStatus(str, Enum):
    """Status carried by a batch progress event."""
    BATCH_STARTED = "batch_started"
    ITEM_STARTED = "item_started"
    ITEM_COMPLETED = "item_completed"
    ITEM_FAILED = "item_failed"
    BATCH_PROGRESS = "batch_progress"
    BATCH_COMPLETE = "batch_complete"
    BATCH_TIMEOUT = "batch_timeout"
    BATCH_CANCELLED = "batch_cancelled"
    BATCH_REJECTED = "batch_rejected"


TERMINAL_BATCH_STATUSES = {
    BatchEventStatus.BATCH_COMPLETE,
    BatchEventStatus.BATCH_TIMEOUT,
    BatchEventStatus.BATCH_CANCELLED,
    BatchEventStatus.BATCH_REJECTED,
}


class BatchProgressEvent(BaseModel):
    """One element of a batch's progress stream."""

    batch_id: str = Field(description="Batch identifier")
    status: BatchEventStatus = Field(description="Event status")
    message: str = Field(default="", description="Human readable detail")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    item_index: Optional[int] = Field(default=None, description="Zero based item index")
    data: Dict[str, Any] = Field(default_factory=dict, description="Event data")
    result: Optional[BatchResult] = Field(
        default=None,
        description="Final batch result, present on terminal events only"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES
