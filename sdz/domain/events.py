"""Domain events for the slide conversion pipeline.

Events represent state changes and notifications that flow through the EventBus,
decoupling the orchestration core from consumers (console reporter, API layer,
desktop shell bridge).

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from datetime import datetime
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field
from .models import ProgressPhase


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    timestamp: datetime = Field(default_factory=datetime.now)


class TaskEvent(Event):
    """Base class for events related to one conversion task."""

    task_key: str


class FileDetected(Event):
    """Emitted when the watcher reports a stable candidate file."""

    path: Path


class FileRemoved(Event):
    """Emitted when a watched source file disappears."""

    path: Path


class TaskQueued(TaskEvent):
    """Emitted when a task is admitted (or re-admitted for a retry)."""

    source_path: Path
    retry_count: int = 0


class TaskStarted(TaskEvent):
    """Emitted when a task is bound to a worker slot."""

    attempt: int


class ProgressEvent(TaskEvent):
    """Normalized progress of a task; percent is monotonic within a phase."""

    phase: ProgressPhase
    percent: float = Field(ge=0.0, le=100.0)
    attempt: Optional[int] = None


class TaskRetryScheduled(TaskEvent):
    """Emitted after a failed attempt that will be retried."""

    retry_count: int
    delay_s: float


class TaskCompleted(TaskEvent):
    """Emitted when a task finished and its output artifact exists."""

    output_path: Path
    attempt: int


class TaskFailed(TaskEvent):
    """Emitted once per failed attempt; `final` marks retries exhausted."""

    error_message: str
    attempt: int
    final: bool


class TaskCancelled(TaskEvent):
    """Emitted when a task is cancelled, queued or running. Never retried."""

    reason: str = "Cancelled"


class QueueUpdated(Event):
    """Emitted when the pending queue changes."""

    pending: List[str]
    running: List[str] = Field(default_factory=list)


class WatcherReady(Event):
    """Emitted after the watcher finished its initial scan."""

    root: Path
    existing_files: int = 0


class WatcherError(Event):
    """Emitted when the watcher hits an error; fatal means the root is gone."""

    message: str
    fatal: bool = False
    path: Optional[Path] = None
