"""Pydantic models for capture runs and their aggregated results.

This module defines the request side of a run (CaptureSpec), the mutable
RunRecord the orchestrator fills in while capabilities settle, and the
ResultBag holding one optional slot per capability.
"""

import random
import string
import time
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator


MAX_URL_LENGTH = 2000
ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0"}


class RunKind(str, Enum):
    """Kind of measurement a run performs."""
    PERFORMANCE = "performance"
    COOKIES = "cookies"
    CONSOLE = "console"
    FULL = "full"


class RunStatus(str, Enum):
    """Overall status of a run record."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStage(str, Enum):
    """Lifecycle stage reached by a run."""
    CREATED = "created"
    SESSION_ACQUIRED = "session_acquired"
    CONFIGURED = "configured"
    NAVIGATION_COMPLETE = "navigation_complete"
    CAPABILITIES_RUNNING = "capabilities_running"
    AGGREGATED = "aggregated"
    COMPLETED = "completed"
    FAILED = "failed"


def generate_run_id(prefix: str = "run") -> str:
    """Generate a run identifier of the form ``run-<epoch ms>-<7 chars>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


class CaptureSpec(BaseModel):
    """Request for a single capture run."""

    url: str = Field(description="Target page URL")
    device_profile: str = Field(
        default="desktop",
        description="Device profile name applied before navigation"
    )
    run_kind: RunKind = Field(
        default=RunKind.PERFORMANCE,
        description="Kind of measurement to perform"
    )
    include_screenshots: bool = Field(
        default=False,
        description="Capture a screenshot frame sequence"
    )
    run_id: Optional[str] = Field(
        default=None,
        description="Externally supplied run identifier"
    )
    user_id: Optional[str] = Field(
        default=None,
        description="Owner the finished record is saved for"
    )
    client_key: Optional[str] = Field(
        default=None,
        description="Client identifier used for rate limiting"
    )
    allow_private_hosts: bool = Field(
        default=False,
        description="Permit localhost and loopback targets"
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL scheme, host and length."""
        if len(v) > MAX_URL_LENGTH:
            raise ValueError(f"URL exceeds {MAX_URL_LENGTH} characters")
        parsed = urlparse(v)
        if parsed.scheme not in ALLOWED_SCHEMES:
            raise ValueError(f"Unsupported URL scheme: {parsed.scheme or '(none)'}")
        if not parsed.netloc:
            raise ValueError(f"Invalid URL format: {v}")
        return v

    @model_validator(mode='after')
    def validate_host(self) -> "CaptureSpec":
        """Reject blocked hosts unless private targets are allowed."""
        if not self.allow_private_hosts:
            host = (urlparse(self.url).hostname or "").lower()
            if host in BLOCKED_HOSTS:
                raise ValueError(f"Blocked host: {host}")
        return self

    @property
    def is_performance(self) -> bool:
        return self.run_kind == RunKind.PERFORMANCE


class ResultBag(BaseModel):
    """One optional slot per capability; an unset slot means it did not finish."""

    metrics: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Page performance metrics"
    )
    cookie_handling: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Cookie consent detection or handling outcome"
    )
    console_errors: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Console errors observed on the page"
    )
    screenshots: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Screenshot frame manifest"
    )

    @property
    def populated_slots(self) -> List[str]:
        return [name for name, value in self.model_dump().items() if value is not None]


class RunRecord(BaseModel):
    """One capture attempt, owned by the orchestrator until persisted."""

    id: str = Field(description="Run identifier")
    url: str = Field(description="Target URL")
    device_profile: str = Field(description="Device profile applied")
    run_kind: RunKind = Field(description="Kind of measurement")
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        description="Record creation time"
    )
    finished_at: Optional[datetime] = Field(
        default=None,
        description="Time the record was finalized"
    )
    status: RunStatus = Field(
        default=RunStatus.RUNNING,
        description="Overall run status"
    )
    stage: RunStage = Field(
        default=RunStage.CREATED,
        description="Last lifecycle stage reached"
    )
    results: ResultBag = Field(
        default_factory=ResultBag,
        description="Per-capability results"
    )
    capabilities_run: List[str] = Field(
        default_factory=list,
        description="Capabilities launched for this run"
    )
    capability_errors: Dict[str, str] = Field(
        default_factory=dict,
        description="Errors raised by individual capabilities"
    )
    termination: Optional[str] = Field(
        default=None,
        description="Reason the run ended early: timeout, cancelled or error"
    )
    error: Optional[str] = Field(
        default=None,
        description="Error message for failed runs"
    )
    persisted_id: Optional[str] = Field(
        default=None,
        description="Identifier returned by the persistence collaborator"
    )

    @classmethod
    def from_spec(cls, spec: CaptureSpec, run_id: str) -> "RunRecord":
        return cls(
            id=run_id,
            url=spec.url,
            device_profile=spec.device_profile,
            run_kind=spec.run_kind,
        )

    @property
    def is_finished(self) -> bool:
        return self.status != RunStatus.RUNNING

    @property
    def duration_ms(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.created_at).total_seconds() * 1000

    def advance(self, stage: RunStage) -> None:
        self.stage = stage

    def finalize(self, status: RunStatus, termination: Optional[str] = None,
                 error: Optional[str] = None) -> None:
        """Set the terminal status. Later calls are ignored."""
        if self.is_finished:
            return
        self.status = status
        self.stage = RunStage.COMPLETED if status == RunStatus.COMPLETED else RunStage.FAILED
        self.termination = termination
        self.error = error
        self.finished_at = datetime.utcnow()

    def export_summary(self) -> Dict[str, Any]:
        """Export a compact summary of the run."""
        return {
            'id': self.id,
            'url': self.url,
            'status': self.status.value,
            'termination': self.termination,
            'duration_ms': self.duration_ms,
            'capabilities_run': self.capabilities_run,
            'populated': self.results.populated_slots,
            'errors': dict(self.capability_errors),
        }
