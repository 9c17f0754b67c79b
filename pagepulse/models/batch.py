"""Pydantic models for batch capture jobs."""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator

from .capture import CaptureSpec, RunKind, RunRecord, generate_run_id


class ExecutionMode(str, Enum):
    """How batch items are scheduled."""
    SEQUENTIAL = "sequential"
    BOUNDED_PARALLEL = "bounded-parallel"


class ItemStatus(str, Enum):
    """Status of one batch item."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_ITEM_STATUSES = {ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.CANCELLED}


class BatchItem(BaseModel):
    """A URL with an optional label."""

    url: str = Field(description="Target URL")
    label: Optional[str] = Field(default=None, description="Display label")


class BatchSpec(BaseModel):
    """Request for a batch of capture runs sharing one per-run configuration."""

    items: List[BatchItem] = Field(description="Ordered items to capture")
    mode: ExecutionMode = Field(
        default=ExecutionMode.BOUNDED_PARALLEL,
        description="Execution mode"
    )
    batch_id: Optional[str] = Field(default=None, description="Batch identifier")
    device_profile: str = Field(default="desktop", description="Device profile for every item")
    run_kind: RunKind = Field(default=RunKind.PERFORMANCE, description="Run kind for every item")
    include_screenshots: bool = Field(default=False, description="Capture screenshots per item")
    max_concurrency: Optional[int] = Field(
        default=None,
        ge=1,
        description="Chunk size override for bounded-parallel mode"
    )
    user_id: Optional[str] = Field(default=None, description="Owner of the saved records")
    client_key: Optional[str] = Field(default=None, description="Client identifier")
    allow_private_hosts: bool = Field(default=False)

    @field_validator('items')
    @classmethod
    def validate_items(cls, v: List[BatchItem]) -> List[BatchItem]:
        if not v:
            raise ValueError("Batch must contain at least one item")
        return v

    def item_spec(self, index: int, run_id: str) -> CaptureSpec:
        """Build the capture spec for one item."""
        item = self.items[index]
        return CaptureSpec(
            url=item.url,
            device_profile=self.device_profile,
            run_kind=self.run_kind,
            include_screenshots=self.include_screenshots,
            run_id=run_id,
            user_id=self.user_id,
            client_key=self.client_key,
            allow_private_hosts=self.allow_private_hosts,
        )


def generate_batch_id() -> str:
    return generate_run_id(prefix="batch")


class BatchItemResult(BaseModel):
    """Outcome of one batch item."""

    index: int = Field(description="Zero based position in the batch")
    url: str
    label: Optional[str] = None
    run_id: str
    status: ItemStatus = Field(default=ItemStatus.PENDING)
    error: Optional[str] = None
    record: Optional[RunRecord] = None


class BatchResult(BaseModel):
    """Final outcome of a batch; every submitted item is enumerated."""

    batch_id: str
    mode: ExecutionMode
    total: int
    completed: int
    failed: int
    cancelled: int
    timed_out: bool = False
    total_duration_ms: float
    average_time_per_item_ms: float
    items: List[BatchItemResult]


class BatchJob:
    """Mutable batch state owned by one coordinator invocation."""

    def __init__(self, spec: BatchSpec, batch_id: str):
        self.spec = spec
        self.batch_id = batch_id
        self.created_at = datetime.utcnow()
        self.items: List[BatchItemResult] = [
            BatchItemResult(
                index=i,
                url=item.url,
                label=item.label,
                run_id=f"{batch_id}-{i + 1}",
            )
            for i, item in enumerate(spec.items)
        ]

    @property
    def total(self) -> int:
        return len(self.items)

    def count(self, status: ItemStatus) -> int:
        return sum(1 for item in self.items if item.status == status)

    @property
    def completed(self) -> int:
        return self.count(ItemStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self.count(ItemStatus.FAILED)

    @property
    def settled(self) -> int:
        return sum(1 for item in self.items if item.status in TERMINAL_ITEM_STATUSES)

    def mark_running(self, index: int) -> None:
        self.items[index].status = ItemStatus.RUNNING

    def settle(self, index: int, status: ItemStatus, record: Optional[RunRecord] = None,
               error: Optional[str] = None) -> None:
        """Record an item's terminal outcome. Settled items are not overwritten."""
        item = self.items[index]
        if item.status in TERMINAL_ITEM_STATUSES:
            return
        item.status = status
        item.record = record
        item.error = error

    def settle_remaining(self, status: ItemStatus, error: str) -> int:
        """Give every unsettled item a terminal status. Returns how many changed."""
        changed = 0
        for item in self.items:
            if item.status not in TERMINAL_ITEM_STATUSES:
                item.status = status
                item.error = error
                changed += 1
        return changed

    def progress(self) -> Dict[str, Any]:
        settled = self.settled
        return {
            'completed': self.completed,
            'failed': self.failed,
            'remaining': self.total - settled,
            'total': self.total,
            'percentage': round(settled / self.total * 100) if self.total else 100,
        }

    def to_result(self, timed_out: bool = False) -> BatchResult:
        duration_ms = (datetime.utcnow() - self.created_at).total_seconds() * 1000
        return BatchResult(
            batch_id=self.batch_id,
            mode=self.spec.mode,
            total=self.total,
            completed=self.completed,
            failed=self.failed,
            cancelled=self.count(ItemStatus.CANCELLED),
            timed_out=timed_out,
            total_duration_ms=duration_ms,
            average_time_per_item_ms=duration_ms / self.total if self.total else 0.0,
            items=[item.model_copy() for item in self.items],
        )
