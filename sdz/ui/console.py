import threading
from typing import Dict, Optional
from rich.console import Console
from sdz.infrastructure.event_bus import EventBus
from sdz.domain.events import (
    FileDetected,
    FileRemoved,
    ProgressEvent,
    TaskCancelled,
    TaskCompleted,
    TaskFailed,
    TaskQueued,
    TaskRetryScheduled,
    TaskStarted,
    WatcherError,
    WatcherReady,
)
from sdz.domain.models import ProgressPhase

PHASE_LABELS = {
    ProgressPhase.STARTING: "starting",
    ProgressPhase.TRANSFORMING: "color transform",
    ProgressPhase.TILING: "tiling",
    ProgressPhase.EXTRACTING_METADATA: "metadata",
    ProgressPhase.COMPLETED: "done",
    ProgressPhase.FAILED: "failed",
    ProgressPhase.CANCELLED: "cancelled",
}


class ConsoleReporter:
    """Subscribes to EventBus and prints task lifecycle lines."""

    def __init__(self, bus: EventBus, console: Optional[Console] = None, progress_step: int = 25, verbose: bool = False):
        self.bus = bus
        self.console = console or Console()
        self.progress_step = max(1, progress_step)
        self.verbose = verbose
        self.completed = 0
        self.failed = 0
        self.cancelled = 0
        self._last_bucket: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(WatcherReady, self.on_watcher_ready)
        self.bus.subscribe(WatcherError, self.on_watcher_error)
        self.bus.subscribe(FileDetected, self.on_file_detected)
        self.bus.subscribe(FileRemoved, self.on_file_removed)
        self.bus.subscribe(TaskQueued, self.on_task_queued)
        self.bus.subscribe(TaskStarted, self.on_task_started)
        self.bus.subscribe(ProgressEvent, self.on_progress)
        self.bus.subscribe(TaskRetryScheduled, self.on_retry_scheduled)
        self.bus.subscribe(TaskCompleted, self.on_task_completed)
        self.bus.subscribe(TaskFailed, self.on_task_failed)
        self.bus.subscribe(TaskCancelled, self.on_task_cancelled)

    def _print(self, message: str):
        with self._lock:
            self.console.print(message, highlight=False)

    def on_watcher_ready(self, event: WatcherReady):
        self._print(f"[cyan]Watching[/cyan] {event.root} ({event.existing_files} existing file(s))")

    def on_watcher_error(self, event: WatcherError):
        color = "red" if event.fatal else "yellow"
        self._print(f"[{color}]Watcher: {event.message}[/{color}]")

    def on_file_detected(self, event: FileDetected):
        if self.verbose:
            self._print(f"[dim]Detected {event.path}[/dim]")

    def on_file_removed(self, event: FileRemoved):
        if self.verbose:
            self._print(f"[dim]Removed {event.path}[/dim]")

    def on_task_queued(self, event: TaskQueued):
        suffix = f" (retry {event.retry_count})" if event.retry_count else ""
        self._print(f"[blue]Queued[/blue] {event.task_key}{suffix}")

    def on_task_started(self, event: TaskStarted):
        self._last_bucket.pop(event.task_key, None)
        self._print(f"[bold]Started[/bold] {event.task_key} (attempt {event.attempt})")

    def on_progress(self, event: ProgressEvent):
        if event.phase in (ProgressPhase.FAILED, ProgressPhase.CANCELLED, ProgressPhase.COMPLETED):
            return
        bucket = int(event.percent) // self.progress_step
        if self._last_bucket.get(event.task_key) == bucket:
            return
        self._last_bucket[event.task_key] = bucket
        self._print(f"  {event.task_key}: {PHASE_LABELS[event.phase]} {event.percent:.0f}%")

    def on_retry_scheduled(self, event: TaskRetryScheduled):
        self._print(f"[yellow]Retry[/yellow] {event.task_key} #{event.retry_count} in {event.delay_s:g}s")

    def on_task_completed(self, event: TaskCompleted):
        self.completed += 1
        self._last_bucket.pop(event.task_key, None)
        self._print(f"[green]Completed[/green] {event.task_key} -> {event.output_path}")

    def on_task_failed(self, event: TaskFailed):
        first_line = event.error_message.splitlines()[0] if event.error_message else ""
        if not event.final:
            self._print(f"[yellow]Attempt {event.attempt} failed[/yellow] {event.task_key}: {first_line}")
            return
        self.failed += 1
        self._last_bucket.pop(event.task_key, None)
        self._print(f"[red]Failed[/red] {event.task_key}: {first_line}")

    def on_task_cancelled(self, event: TaskCancelled):
        self.cancelled += 1
        self._last_bucket.pop(event.task_key, None)
        self._print(f"[magenta]Cancelled[/magenta] {event.task_key} ({event.reason})")

    def summary(self) -> str:
        return f"{self.completed} completed, {self.failed} failed, {self.cancelled} cancelled"
