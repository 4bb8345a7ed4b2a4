import pytest
from pathlib import Path
from pydantic import ValidationError
from sdz.domain.models import (
    AdmissionDecision,
    ConversionOutcome,
    ConversionTask,
    ProgressPhase,
    SubmitReceipt,
    TaskState,
    TaskStatus,
    derive_task_key,
)
from sdz.domain.events import ProgressEvent, TaskFailed


@pytest.mark.parametrize("relative,expected", [
    ("slide.svs", "slide"),
    ("a/slide.svs", "a_slide"),
    ("a/b/slide.svs", "a_b_slide"),
    ("case 12/x.y.ndpi", "case 12_x.y"),
])
def test_derive_task_key(relative, expected):
    root = Path("/data/slides")
    assert derive_task_key(root / relative, root) == expected


def test_derive_task_key_outside_root_uses_stem():
    assert derive_task_key(Path("/elsewhere/slide.svs"), Path("/data/slides")) == "slide"


def test_derive_task_key_without_root():
    assert derive_task_key(Path("/data/slides/a/slide.svs"), None) == "slide"


def test_derive_task_key_flattening_collides():
    # Distinct paths can flatten to the same key; they then share one output
    root = Path("/r")
    assert derive_task_key(root / "a_b" / "c.svs", root) == derive_task_key(root / "a" / "b_c.svs", root)


def test_conversion_task_defaults():
    task = ConversionTask(
        source_path=Path("/r/a/s.svs"),
        display_name="s.svs",
        task_key="a_s",
        output_base=Path("/out/a_s"),
    )
    assert task.state == TaskState.QUEUED
    assert task.retry_count == 0
    assert task.attempts == 0
    assert task.output_artifact == Path("/out/a_s.dzi")
    assert not task.is_terminal
    task.state = TaskState.CANCELLED
    assert task.is_terminal


def test_task_status_from_task():
    task = ConversionTask(
        source_path=Path("/r/s.svs"),
        display_name="s.svs",
        task_key="s",
        output_base=Path("/out/s"),
        retry_count=1,
        attempts=2,
        state=TaskState.RUNNING,
        phase=ProgressPhase.TILING,
        progress_percent=62.5,
    )
    status = TaskStatus.from_task(task)
    assert status.task_key == "s"
    assert status.state == TaskState.RUNNING
    assert status.phase == ProgressPhase.TILING
    assert status.percent == 62.5
    assert status.retry_count == 1
    assert status.attempts == 2


def test_submit_receipt_accepted():
    assert SubmitReceipt(task_key="s", decision=AdmissionDecision.ACCEPTED).accepted
    assert not SubmitReceipt(task_key="s", decision=AdmissionDecision.ALREADY_QUEUED).accepted


def test_conversion_outcome_factories():
    assert ConversionOutcome.completed().state == TaskState.COMPLETED
    failed = ConversionOutcome.failed("boom")
    assert failed.state == TaskState.FAILED
    assert failed.error_message == "boom"
    assert ConversionOutcome.cancelled().error_message == "Cancelled"


def test_progress_event_percent_bounds():
    with pytest.raises(ValidationError):
        ProgressEvent(task_key="s", phase=ProgressPhase.TILING, percent=101)
    with pytest.raises(ValidationError):
        ProgressEvent(task_key="s", phase=ProgressPhase.TILING, percent=-1)


def test_task_failed_carries_final_flag():
    event = TaskFailed(task_key="s", error_message="exit 1", attempt=3, final=True)
    assert event.final
    assert event.timestamp is not None
