"""Unit tests for PagePulse data models."""

import pytest
from pydantic import ValidationError

from pagepulse.models import (
    CaptureSpec, RunKind, RunRecord, RunStatus, RunStage, ResultBag,
    BatchSpec, BatchItem, BatchJob, ExecutionMode, ItemStatus,
    ProgressEvent, RunEventStatus, BatchProgressEvent, BatchEventStatus,
    CapabilityEvent, CapabilityEventKind, generate_run_id
)


class TestCaptureSpec:
    """Tests for CaptureSpec validation."""

    def test_defaults(self):
        spec = CaptureSpec(url="https://example.com")

        assert spec.device_profile == "desktop"
        assert spec.run_kind == RunKind.PERFORMANCE
        assert spec.is_performance is True
        assert spec.include_screenshots is False

    @pytest.mark.parametrize("url", [
        "ftp://example.com/file",
        "example.com",
        "https://",
        "https://example.com/" + "a" * 2000,
    ])
    def test_invalid_urls(self, url):
        with pytest.raises(ValidationError):
            CaptureSpec(url=url)

    def test_blocked_hosts(self):
        with pytest.raises(ValidationError):
            CaptureSpec(url="http://localhost:8000/")
        with pytest.raises(ValidationError):
            CaptureSpec(url="http://127.0.0.1/")

    def test_private_hosts_can_be_allowed(self):
        spec = CaptureSpec(url="http://localhost:8000/", allow_private_hosts=True)

        assert spec.url == "http://localhost:8000/"

    def test_run_id_format(self):
        run_id = generate_run_id()
        prefix, millis, suffix = run_id.split("-")

        assert prefix == "run"
        assert millis.isdigit()
        assert len(suffix) == 7


class TestRunRecord:
    """Tests for RunRecord lifecycle helpers."""

    @pytest.fixture
    def record(self):
        return RunRecord.from_spec(CaptureSpec(url="https://example.com"), "run-1")

    def test_initial_state(self, record):
        assert record.status == RunStatus.RUNNING
        assert record.stage == RunStage.CREATED
        assert record.is_finished is False
        assert record.duration_ms is None
        assert record.results.populated_slots == []

    def test_finalize_is_idempotent(self, record):
        record.finalize(RunStatus.FAILED, termination="timeout", error="Run exceeded 30000ms")
        record.finalize(RunStatus.COMPLETED)

        assert record.status == RunStatus.FAILED
        assert record.stage == RunStage.FAILED
        assert record.termination == "timeout"
        assert record.duration_ms >= 0

    def test_export_summary(self, record):
        record.results.metrics = {'ttfb': 10}
        record.capability_errors['console_errors'] = "boom"
        record.finalize(RunStatus.COMPLETED)

        summary = record.export_summary()

        assert summary['status'] == "completed"
        assert summary['populated'] == ["metrics"]
        assert summary['errors'] == {'console_errors': "boom"}

    def test_result_bag_slots(self):
        bag = ResultBag(console_errors={'count': 0}, screenshots={'frame_count': 2})

        assert bag.populated_slots == ["console_errors", "screenshots"]


class TestBatchModels:
    """Tests for batch specs and job state."""

    def test_empty_batch_is_rejected(self):
        with pytest.raises(ValidationError):
            BatchSpec(items=[])

    def test_zero_concurrency_is_rejected(self):
        with pytest.raises(ValidationError):
            BatchSpec(items=[BatchItem(url="https://a.com")], max_concurrency=0)

    def test_item_spec_inherits_settings(self):
        spec = BatchSpec(items=[BatchItem(url="https://a.com", label="A")],
                         run_kind=RunKind.COOKIES, include_screenshots=True)

        item = spec.item_spec(0, "batch-1-1")

        assert item.url == "https://a.com"
        assert item.run_kind == RunKind.COOKIES
        assert item.include_screenshots is True
        assert item.run_id == "batch-1-1"

    def test_job_settles_each_item_once(self):
        spec = BatchSpec(items=[BatchItem(url=f"https://site{i}.com") for i in range(3)],
                         mode=ExecutionMode.SEQUENTIAL)
        job = BatchJob(spec, "batch-1")

        job.settle(0, ItemStatus.COMPLETED)
        job.settle(0, ItemStatus.FAILED, error="late")
        changed = job.settle_remaining(ItemStatus.CANCELLED, "Batch cancelled")

        assert changed == 2
        assert job.items[0].status == ItemStatus.COMPLETED
        assert [item.run_id for item in job.items] == ["batch-1-1", "batch-1-2", "batch-1-3"]

        result = job.to_result()
        assert result.completed == 1
        assert result.cancelled == 2
        assert result.mode == ExecutionMode.SEQUENTIAL

    def test_progress(self):
        spec = BatchSpec(items=[BatchItem(url=f"https://site{i}.com") for i in range(4)])
        job = BatchJob(spec, "batch-1")
        job.settle(0, ItemStatus.COMPLETED)
        job.settle(1, ItemStatus.FAILED)

        assert job.progress() == {
            'completed': 1, 'failed': 1, 'remaining': 2, 'total': 4, 'percentage': 50,
        }


class TestEvents:
    """Tests for event models."""

    def test_terminal_run_statuses(self):
        for status in (RunEventStatus.COMPLETE, RunEventStatus.TIMEOUT,
                       RunEventStatus.CANCELLED, RunEventStatus.ERROR, RunEventStatus.REJECTED):
            assert ProgressEvent(run_id="r", status=status).is_terminal
        assert not ProgressEvent(run_id="r", status=RunEventStatus.CAPABILITY_PROGRESS).is_terminal

    def test_terminal_batch_statuses(self):
        assert BatchProgressEvent(batch_id="b", status=BatchEventStatus.BATCH_TIMEOUT).is_terminal
        assert not BatchProgressEvent(batch_id="b", status=BatchEventStatus.ITEM_FAILED).is_terminal

    def test_capability_event_constructors(self):
        progress = CapabilityEvent.progress("metrics", "waiting", step=1)
        complete = CapabilityEvent.complete("metrics", "metrics", {'ttfb': 5})
        error = CapabilityEvent.error("metrics", "failed")

        assert progress.kind == CapabilityEventKind.PROGRESS
        assert progress.payload == {'step': 1}
        assert complete.slot == "metrics"
        assert error.message == "failed"

    def test_event_serializes_to_json(self):
        event = ProgressEvent(run_id="r", status=RunEventStatus.STARTING, data={'url': "https://a.com"})

        assert '"status":"starting"' in event.model_dump_json()
