"""Orchestrator wiring the slide conversion core together.

Watcher -> StabilityGate -> TaskQueue -> WorkerPool -> runner (local
PipelineSupervisor or RemoteConversionRunner) -> EventBus.

Key responsibilities:
- Turn stable files reported by the watcher into admitted tasks
- Defer files modified too recently and re-check them later (one timer per path)
- Cancel queued work whose source file disappeared
- Keep the admission store in sync with terminal task states
- Expose submit/status/cancel to consumers (CLI, API layer, desktop shell)
- Clean up intermediates of a crashed run at startup, shut down gracefully

All bookkeeping runs inside the Coordinator; the public methods are safe to
call from any thread.
"""

import logging
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional, Union
from sdz.config.models import AppConfig
from sdz.domain.events import FileDetected, FileRemoved, WatcherError, WatcherReady
from sdz.domain.models import (
    AdmissionDecision,
    ConversionTask,
    PoolOverview,
    QueueEntry,
    SubmitReceipt,
    TaskState,
    TaskStatus,
)
from sdz.infrastructure.event_bus import EventBus
from sdz.infrastructure.file_scanner import FileScanner
from sdz.infrastructure.file_watcher import DirectoryWatcher
from sdz.infrastructure.housekeeping import HousekeepingService
from sdz.pipeline.admission import AdmissionStore, InMemoryAdmissionStore, StabilityGate
from sdz.pipeline.coordinator import Coordinator
from sdz.pipeline.remote_runner import RemoteConversionRunner
from sdz.pipeline.supervisor import PipelineSupervisor
from sdz.pipeline.task_queue import TaskQueue
from sdz.pipeline.worker_pool import ConversionRunner, WorkerPool


class Orchestrator:
    """Slide conversion orchestrator.

    Args:
        config: AppConfig with watch, pool, tools and remote settings.
        event_bus: EventBus receiving every lifecycle and progress event.
        runner: Runner for conversion attempts; defaults to the local
            PipelineSupervisor, or RemoteConversionRunner when remote mode is on.
        store: AdmissionStore tracking live tasks; in-memory by default.
        housekeeping: Service removing stale intermediates at startup.
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        runner: Optional[ConversionRunner] = None,
        store: Optional[AdmissionStore] = None,
        housekeeping: Optional[HousekeepingService] = None,
        coordinator: Optional[Coordinator] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

        watch = config.watch
        self.watch_root = Path(watch.watch_root).absolute() if watch.watch_root else None
        if watch.output_root:
            self.output_root = Path(watch.output_root).absolute()
        elif self.watch_root is not None:
            self.output_root = self.watch_root.parent / "dzi"
        else:
            raise ValueError("Either watch_root or output_root must be configured")

        self.coordinator = coordinator or Coordinator()
        self.store: AdmissionStore = store or InMemoryAdmissionStore()
        self.task_queue = TaskQueue()
        self.scanner = FileScanner(watch.extensions, watch.partial_suffixes, exclude_dirs=[self.output_root])
        self.gate = StabilityGate(
            self.watch_root,
            self.output_root,
            watch.extensions,
            self.store,
            min_file_age_s=watch.min_file_age_s,
        )
        self.runner = runner or self._default_runner()
        self.pool = WorkerPool(
            self.coordinator,
            self.task_queue,
            self.runner,
            event_bus,
            config.pool,
            on_terminal=self._on_terminal,
        )
        self.housekeeping = housekeeping or HousekeepingService()
        self.watcher: Optional[DirectoryWatcher] = None
        self._rechecks: Dict[Path, Optional[threading.Timer]] = {}
        self._history: "OrderedDict[str, TaskStatus]" = OrderedDict()
        self._started = False
        self._stopped = False

    def _default_runner(self) -> ConversionRunner:
        if self.config.remote.enabled:
            self.logger.info(f"Remote conversion enabled: {self.config.remote.url}")
            return RemoteConversionRunner(
                self.config.remote,
                self.event_bus,
                self.output_root,
                watch_root=self.watch_root,
            )
        return PipelineSupervisor(self.config, self.event_bus)

    # --- lifecycle -----------------------------------------------------

    def start(self, watch: bool = True) -> bool:
        """Starts the core and, if configured, the directory watcher.

        Returns False when the watch root cannot be watched; the core keeps
        serving submitted work in that case.
        """
        if self._started:
            return True
        self._started = True
        self.housekeeping.cleanup_intermediates(Path(self.config.tools.intermediate_dir))
        self.output_root.mkdir(parents=True, exist_ok=True)
        self.coordinator.start()
        self.logger.info(
            f"Orchestrator started: output={self.output_root} concurrency={self.config.pool.max_concurrency} "
            f"retries={self.config.pool.max_retries} threads/pipeline={self.config.threads_per_pipeline()}"
        )

        if not watch or self.watch_root is None:
            return True
        self.watcher = DirectoryWatcher(
            self.watch_root,
            self.scanner,
            on_appeared=lambda path: self.coordinator.call_soon(self._on_file_appeared, path),
            on_removed=lambda path: self.coordinator.call_soon(self._on_file_removed, path),
            stability_window_s=self.config.watch.stability_window_s,
            poll_interval_s=self.config.watch.poll_interval_s,
            scan_existing=self.config.watch.scan_existing,
            on_error=self._on_watcher_error,
            on_ready=lambda count: self.event_bus.publish(WatcherReady(root=self.watch_root, existing_files=count)),
        )
        return self.watcher.start()

    def stop(self, timeout: float = 10.0):
        """Stops watching, cancels all work and waits for workers to exit."""
        if not self._started or self._stopped:
            return
        self._stopped = True
        self.logger.info("Orchestrator stopping...")
        if self.watcher is not None:
            self.watcher.stop()
        self.coordinator.call(self._shutdown_core)
        self.pool.join(timeout=timeout)
        self.coordinator.sync(timeout=timeout)
        self.runner.close()
        self.coordinator.stop()
        self.event_bus.flush(timeout=timeout)
        self.logger.info("Orchestrator stopped")

    def _shutdown_core(self):
        for timer in self._rechecks.values():
            self.coordinator.cancel_timer(timer)
        self._rechecks.clear()
        self.pool.shutdown()

    def wait_idle(self, timeout: Optional[float] = None, poll_s: float = 0.05) -> bool:
        """Blocks until nothing is queued, running, awaiting retry or re-check."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self.coordinator.call(self._is_idle):
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                return self.event_bus.flush(timeout=remaining)
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(poll_s)

    def _is_idle(self) -> bool:
        return self.pool.is_idle() and not self._rechecks

    # --- consumer operations -------------------------------------------

    def submit(self, path: Union[str, Path]) -> SubmitReceipt:
        """Runs a path through admission, as if the watcher had reported it."""
        return self.coordinator.call(self._admit, Path(path).absolute())

    def status(self, task_key: str) -> Optional[TaskStatus]:
        return self.coordinator.call(self._status, task_key)

    def cancel(self, task_key: str) -> bool:
        """Cancels a queued, retry-pending or running task; False if none is live."""
        return self.coordinator.call(self.pool.cancel, task_key)

    def task_keys(self) -> List[str]:
        return self.coordinator.call(self.store.keys)

    def overview(self) -> PoolOverview:
        return self.coordinator.call(self._overview)

    def queue(self) -> List[QueueEntry]:
        """Waiting tasks: queued ones in start order, then those awaiting a retry."""
        return self.coordinator.call(self._queue_entries)

    def set_max_concurrency(self, limit: int):
        """Changes the number of conversions allowed to run at once."""
        self.coordinator.call(self.pool.set_max_concurrency, limit)

    # --- coordinator side ----------------------------------------------

    def _overview(self) -> PoolOverview:
        return PoolOverview(
            active=self.pool.active_count,
            max_concurrency=self.pool.max_concurrency,
            queued=self.task_queue.size(),
            retry_pending=len(self.pool.retry_pending_keys()),
            running=self.pool.running_keys(),
            watching=self.watcher is not None and self.watcher.running,
            watch_root=self.watch_root,
            output_root=self.output_root,
        )

    def _queue_entries(self) -> List[QueueEntry]:
        entries = []
        for pending, tasks in ((False, self.task_queue.tasks()), (True, self.pool.retry_pending_tasks())):
            for task in tasks:
                entries.append(QueueEntry(
                    task_key=task.task_key,
                    source_path=task.source_path,
                    retry_count=task.retry_count,
                    enqueued_at=task.enqueued_at,
                    retry_pending=pending,
                ))
        return entries

    def _status(self, task_key: str) -> Optional[TaskStatus]:
        task = self.store.get(task_key)
        if task is not None:
            return TaskStatus.from_task(task)
        return self._history.get(task_key)

    def _admit(self, path: Path) -> SubmitReceipt:
        decision, task = self.gate.evaluate(path)
        if decision == AdmissionDecision.UNSUPPORTED:
            return SubmitReceipt(task_key=None, decision=decision)
        if decision == AdmissionDecision.TOO_RECENT and not self._stopped:
            self._schedule_recheck(path)
        elif decision == AdmissionDecision.ACCEPTED:
            self._cancel_recheck(path)
            self.store.insert(task)
            if not self.pool.enqueue(task):
                self.store.remove(task.task_key)
                self.logger.warning(f"ADMIT_REJECTED: {path.name} (shutting down)")
                return SubmitReceipt(task_key=task.task_key, decision=AdmissionDecision.SHUTTING_DOWN)
        return SubmitReceipt(task_key=self.gate.task_key_for(path), decision=decision)

    def _schedule_recheck(self, path: Path):
        if path in self._rechecks:
            return
        delay = self.config.watch.recheck_delay_s
        self.logger.debug(f"RECHECK_SCHEDULED: {path.name} in {delay}s")
        self._rechecks[path] = self.coordinator.call_later(delay, self._recheck, path)

    def _cancel_recheck(self, path: Path):
        timer = self._rechecks.pop(path, None)
        self.coordinator.cancel_timer(timer)

    def _recheck(self, path: Path):
        if path not in self._rechecks:
            return
        del self._rechecks[path]
        if not path.exists():
            self.logger.debug(f"RECHECK_SKIPPED: {path} no longer exists")
            return
        self._admit(path)

    def _on_file_appeared(self, path: Path):
        self.event_bus.publish(FileDetected(path=path))
        self._admit(path)

    def _on_file_removed(self, path: Path):
        self.event_bus.publish(FileRemoved(path=path))
        self._cancel_recheck(path)
        task_key = self.gate.task_key_for(path)
        task = self.store.get(task_key)
        # Running conversions already hold an open handle; let them finish
        if task is not None and task.source_path == path and task.state == TaskState.QUEUED:
            self.pool.cancel(task_key, reason="Source file removed")

    def _on_terminal(self, task: ConversionTask):
        if self.store.get(task.task_key) is task:
            self.store.remove(task.task_key)
        if self.config.pool.history_size <= 0:
            return
        self._history[task.task_key] = TaskStatus.from_task(task)
        self._history.move_to_end(task.task_key)
        while len(self._history) > self.config.pool.history_size:
            self._history.popitem(last=False)

    def _on_watcher_error(self, message: str, fatal: bool, path: Optional[Path]):
        self.event_bus.publish(WatcherError(message=message, fatal=fatal, path=path))
