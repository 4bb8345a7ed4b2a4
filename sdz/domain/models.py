from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field

class TaskState(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})

class ProgressPhase(str, Enum):
    STARTING = "STARTING"
    TRANSFORMING = "TRANSFORMING"
    TILING = "TILING"
    EXTRACTING_METADATA = "EXTRACTING_METADATA"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

class AdmissionDecision(str, Enum):
    ACCEPTED = "ACCEPTED"
    UNSUPPORTED = "UNSUPPORTED"
    ALREADY_CONVERTED = "ALREADY_CONVERTED"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    ALREADY_QUEUED = "ALREADY_QUEUED"
    TOO_RECENT = "TOO_RECENT"
    UNREADABLE = "UNREADABLE"
    SHUTTING_DOWN = "SHUTTING_DOWN"

def derive_task_key(source_path: Path, watch_root: Optional[Path]) -> str:
    """Flattens the path relative to the watch root into an output base name.

    ``root/a/b/slide.svs`` -> ``a_b_slide``; files directly in the root (or
    outside it) keep their stem.
    """
    source_path = Path(source_path)
    stem = source_path.stem
    if watch_root is None:
        return stem
    try:
        rel_dir = source_path.parent.relative_to(watch_root)
    except ValueError:
        return stem
    parts = [p for p in rel_dir.parts if p not in ("", ".")]
    if not parts:
        return stem
    return "_".join(parts + [stem])

class ConversionTask(BaseModel):
    source_path: Path
    display_name: str
    task_key: str
    output_base: Path
    retry_count: int = 0
    attempts: int = 0
    enqueued_at: datetime = Field(default_factory=datetime.now)
    state: TaskState = TaskState.QUEUED
    phase: ProgressPhase = ProgressPhase.STARTING
    progress_percent: float = 0.0
    error_message: Optional[str] = None

    @property
    def output_artifact(self) -> Path:
        return self.output_base.with_name(f"{self.output_base.name}.dzi")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

class TaskStatus(BaseModel):
    """Snapshot returned to status consumers."""
    task_key: str
    state: TaskState
    phase: ProgressPhase
    percent: float
    retry_count: int
    attempts: int
    error_message: Optional[str] = None

    @classmethod
    def from_task(cls, task: ConversionTask) -> "TaskStatus":
        return cls(
            task_key=task.task_key,
            state=task.state,
            phase=task.phase,
            percent=task.progress_percent,
            retry_count=task.retry_count,
            attempts=task.attempts,
            error_message=task.error_message,
        )

class SubmitReceipt(BaseModel):
    task_key: Optional[str]
    decision: AdmissionDecision

    @property
    def accepted(self) -> bool:
        return self.decision == AdmissionDecision.ACCEPTED

class ConversionOutcome(BaseModel):
    """Terminal result of one attempt, as reported by a runner."""
    state: TaskState
    error_message: Optional[str] = None

    @classmethod
    def completed(cls) -> "ConversionOutcome":
        return cls(state=TaskState.COMPLETED)

    @classmethod
    def failed(cls, message: str) -> "ConversionOutcome":
        return cls(state=TaskState.FAILED, error_message=message)

    @classmethod
    def cancelled(cls, message: str = "Cancelled") -> "ConversionOutcome":
        return cls(state=TaskState.CANCELLED, error_message=message)

class QueueEntry(BaseModel):
    """A task waiting for a slot, either queued or waiting out its retry delay."""
    task_key: str
    source_path: Path
    retry_count: int
    enqueued_at: datetime
    retry_pending: bool = False

class PoolOverview(BaseModel):
    """Aggregate view of the orchestrator for dashboards and health checks."""
    active: int
    max_concurrency: int
    queued: int
    retry_pending: int
    running: List[str] = Field(default_factory=list)
    watching: bool = False
    watch_root: Optional[Path] = None
    output_root: Path
