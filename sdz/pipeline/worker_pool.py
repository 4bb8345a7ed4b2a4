import concurrent.futures
import itertools
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple
from sdz.config.models import PoolConfig
from sdz.domain.events import (
    ProgressEvent,
    QueueUpdated,
    TaskCancelled,
    TaskCompleted,
    TaskFailed,
    TaskQueued,
    TaskRetryScheduled,
    TaskStarted,
)
from sdz.domain.models import ConversionOutcome, ConversionTask, ProgressPhase, TaskState
from sdz.infrastructure.event_bus import EventBus
from sdz.pipeline.coordinator import Coordinator
from sdz.pipeline.task_queue import TaskQueue


class ConversionRunner(Protocol):
    """Runs one attempt of a task to a terminal outcome, honoring cancel_event."""

    def run(self, task: ConversionTask, cancel_event: threading.Event) -> ConversionOutcome: ...

    def close(self) -> None: ...


class WorkerSlot:
    def __init__(self, index: int):
        self.index = index
        self.task: Optional[ConversionTask] = None
        self.cancel_event = threading.Event()
        self.future: Optional[concurrent.futures.Future] = None

    @property
    def free(self) -> bool:
        return self.task is None


class WorkerPool:
    """Bounded set of worker slots pulling tasks from the TaskQueue.

    All public methods except ``join`` must run inside the coordinator. Each
    bound task executes on an executor thread; its completion is posted back
    to the coordinator, which applies the retry policy and frees the slot.
    ``on_terminal(task)`` is called exactly once per task, after its terminal
    events have been published.
    """

    def __init__(
        self,
        coordinator: Coordinator,
        task_queue: TaskQueue,
        runner: ConversionRunner,
        event_bus: EventBus,
        config: PoolConfig,
        on_terminal: Optional[Callable[[ConversionTask], None]] = None,
    ):
        self.coordinator = coordinator
        self.task_queue = task_queue
        self.runner = runner
        self.event_bus = event_bus
        self.config = config
        self.on_terminal = on_terminal
        self._max_concurrency = config.max_concurrency
        self._slot_ids = itertools.count()
        self.slots = [WorkerSlot(next(self._slot_ids)) for _ in range(config.max_concurrency)]
        self._executor_size = config.max_concurrency
        self._executor = self._new_executor(config.max_concurrency)
        self._retry_pending: Dict[str, Tuple[ConversionTask, Optional[threading.Timer]]] = {}
        self._shutdown = False
        self._draining: List[concurrent.futures.Future] = []
        self.logger = logging.getLogger(__name__)
        event_bus.subscribe(ProgressEvent, self._on_progress)

    @staticmethod
    def _new_executor(size: int) -> concurrent.futures.ThreadPoolExecutor:
        return concurrent.futures.ThreadPoolExecutor(max_workers=size, thread_name_prefix="sdz-worker")

    # --- introspection -------------------------------------------------

    @property
    def active_count(self) -> int:
        return sum(1 for slot in self.slots if not slot.free)

    def running_keys(self) -> List[str]:
        return [slot.task.task_key for slot in self.slots if slot.task is not None]

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def running_tasks(self) -> List[ConversionTask]:
        return [slot.task for slot in self.slots if slot.task is not None]

    def retry_pending_keys(self) -> List[str]:
        return list(self._retry_pending)

    def retry_pending_tasks(self) -> List[ConversionTask]:
        return [task for task, _ in self._retry_pending.values()]

    def is_idle(self) -> bool:
        return self.active_count == 0 and not self._retry_pending and self.task_queue.size() == 0

    # --- scheduling ----------------------------------------------------

    def enqueue(self, task: ConversionTask) -> bool:
        """Adds an admitted task to the queue and fills free slots."""
        if self._shutdown:
            return False
        task.state = TaskState.QUEUED
        if not self.task_queue.enqueue(task):
            return False
        self.logger.info(f"TASK_QUEUED: {task.task_key} ({task.display_name}, retry={task.retry_count})")
        self.event_bus.publish(
            TaskQueued(task_key=task.task_key, source_path=task.source_path, retry_count=task.retry_count)
        )
        self.schedule()
        return True

    def schedule(self):
        """Binds queued tasks to free slots until one of them runs out."""
        if self._shutdown:
            return
        changed = False
        for slot in self.slots:
            if not slot.free:
                continue
            task = self.task_queue.dequeue_next()
            if task is None:
                break
            self._bind(slot, task)
            changed = True
        if changed or self.task_queue.size():
            self._publish_queue()

    def _bind(self, slot: WorkerSlot, task: ConversionTask):
        task.state = TaskState.RUNNING
        task.attempts += 1
        task.phase = ProgressPhase.STARTING
        task.progress_percent = 0.0
        task.error_message = None
        slot.task = task
        slot.cancel_event = threading.Event()
        self.logger.info(f"TASK_START: {task.task_key} slot={slot.index} attempt={task.attempts}")
        self.event_bus.publish(TaskStarted(task_key=task.task_key, attempt=task.attempts))

        cancel_event = slot.cancel_event
        future = self._executor.submit(self._run_attempt, task, cancel_event)
        slot.future = future
        future.add_done_callback(
            lambda f, s=slot, t=task: self.coordinator.call_soon(self._on_attempt_done, s, t, f)
        )

    def _run_attempt(self, task: ConversionTask, cancel_event: threading.Event) -> ConversionOutcome:
        # Worker thread: a runner bug must end as a task failure, not a dead slot
        try:
            return self.runner.run(task, cancel_event)
        except Exception as e:
            self.logger.exception(f"Runner crashed for {task.task_key}")
            return ConversionOutcome.failed(f"Unexpected error: {e}")

    def _on_attempt_done(self, slot: WorkerSlot, task: ConversionTask, future: concurrent.futures.Future):
        if slot.task is not task:
            self.logger.warning(f"Stale completion for {task.task_key} on slot {slot.index}")
            return
        cancel_requested = slot.cancel_event.is_set()
        slot.task = None
        slot.future = None
        self._trim_slots()

        if future.cancelled():
            outcome = ConversionOutcome.cancelled("Shutdown")
        else:
            outcome = future.result()
        if cancel_requested and outcome.state != TaskState.COMPLETED:
            outcome = ConversionOutcome.cancelled(task.error_message or "Cancelled")

        if outcome.state == TaskState.COMPLETED:
            self._finish(task, TaskState.COMPLETED)
        elif outcome.state == TaskState.CANCELLED:
            self._finish(task, TaskState.CANCELLED, outcome.error_message or "Cancelled")
        else:
            self._handle_failure(task, outcome.error_message or "Conversion failed")
        self.schedule()

    def _handle_failure(self, task: ConversionTask, message: str):
        task.error_message = message
        if self._shutdown or task.retry_count >= self.config.max_retries:
            self._finish(task, TaskState.FAILED, message)
            return

        self.logger.warning(f"TASK_FAILED: {task.task_key} attempt={task.attempts} (will retry): {message}")
        self.event_bus.publish(
            TaskFailed(task_key=task.task_key, error_message=message, attempt=task.attempts, final=False)
        )
        task.retry_count += 1
        task.state = TaskState.QUEUED
        delay = self.config.retry_delay_s
        timer = self.coordinator.call_later(delay, self._requeue, task)
        self._retry_pending[task.task_key] = (task, timer)
        self.logger.info(f"TASK_RETRY: {task.task_key} retry {task.retry_count}/{self.config.max_retries} in {delay}s")
        self.event_bus.publish(TaskRetryScheduled(task_key=task.task_key, retry_count=task.retry_count, delay_s=delay))

    def _requeue(self, task: ConversionTask):
        entry = self._retry_pending.get(task.task_key)
        if entry is None or entry[0] is not task:
            return
        del self._retry_pending[task.task_key]
        task.phase = ProgressPhase.STARTING
        task.progress_percent = 0.0
        self.enqueue(task)

    def _finish(self, task: ConversionTask, state: TaskState, message: Optional[str] = None):
        task.state = state
        if state == TaskState.COMPLETED:
            task.error_message = None
            task.phase = ProgressPhase.COMPLETED
            task.progress_percent = 100.0
            self.logger.info(f"TASK_DONE: {task.task_key} attempt={task.attempts} -> {task.output_artifact}")
            self.event_bus.publish(
                TaskCompleted(task_key=task.task_key, output_path=task.output_artifact, attempt=task.attempts)
            )
        elif state == TaskState.FAILED:
            task.error_message = message
            task.phase = ProgressPhase.FAILED
            self.logger.error(f"TASK_FAILED: {task.task_key} after {task.attempts} attempt(s): {message}")
            self.event_bus.publish(
                ProgressEvent(task_key=task.task_key, phase=ProgressPhase.FAILED, percent=task.progress_percent)
            )
            self.event_bus.publish(
                TaskFailed(task_key=task.task_key, error_message=message or "", attempt=task.attempts, final=True)
            )
        else:
            task.error_message = message
            task.phase = ProgressPhase.CANCELLED
            self.logger.info(f"TASK_CANCELLED: {task.task_key} ({message})")
            self.event_bus.publish(
                ProgressEvent(task_key=task.task_key, phase=ProgressPhase.CANCELLED, percent=task.progress_percent)
            )
            self.event_bus.publish(TaskCancelled(task_key=task.task_key, reason=message or "Cancelled"))

        if self.on_terminal is not None:
            try:
                self.on_terminal(task)
            except Exception:
                self.logger.exception(f"Terminal callback failed for {task.task_key}")

    # --- progress --------------------------------------------------------

    def _on_progress(self, event: ProgressEvent):
        # Event bus thread
        self.coordinator.call_soon(self._apply_progress, event)

    def _apply_progress(self, event: ProgressEvent):
        """Copies a running attempt's progress onto its task."""
        for slot in self.slots:
            task = slot.task
            if task is None or task.task_key != event.task_key:
                continue
            if event.attempt is not None and event.attempt != task.attempts:
                return
            task.phase = event.phase
            task.progress_percent = event.percent
            return

    # --- capacity ----------------------------------------------------------

    def set_max_concurrency(self, limit: int):
        """Resizes the pool at runtime.

        Growing binds queued tasks right away. Shrinking never interrupts a
        running attempt: surplus slots are retired as they become free.
        """
        if limit < 1:
            raise ValueError(f"max concurrency must be at least 1, got {limit}")
        previous = self._max_concurrency
        self._max_concurrency = limit
        if limit > self._executor_size:
            # Running attempts finish on the old executor
            self._executor.shutdown(wait=False)
            self._executor = self._new_executor(limit)
            self._executor_size = limit
        while len(self.slots) < limit:
            self.slots.append(WorkerSlot(next(self._slot_ids)))
        self._trim_slots()
        self.logger.info(f"POOL_RESIZE: {previous} -> {limit} (active={self.active_count})")
        self.schedule()

    def _trim_slots(self):
        while len(self.slots) > self._max_concurrency:
            free = next((slot for slot in self.slots if slot.free), None)
            if free is None:
                return
            self.slots.remove(free)

    # --- cancellation --------------------------------------------------

    def cancel(self, task_key: str, reason: str = "Cancelled") -> bool:
        """Cancels a queued, retry-pending or running task.

        Returns False when nothing with that key is live.
        """
        task = self.task_queue.remove(task_key)
        if task is not None:
            self._finish(task, TaskState.CANCELLED, reason)
            self._publish_queue()
            return True

        entry = self._retry_pending.pop(task_key, None)
        if entry is not None:
            task, timer = entry
            self.coordinator.cancel_timer(timer)
            self._finish(task, TaskState.CANCELLED, reason)
            return True

        for slot in self.slots:
            if slot.task is not None and slot.task.task_key == task_key:
                if not slot.cancel_event.is_set():
                    self.logger.info(f"TASK_CANCEL_REQUESTED: {task_key} (slot {slot.index})")
                    slot.task.error_message = reason
                    slot.cancel_event.set()
                return True
        return False

    def shutdown(self, reason: str = "Shutdown"):
        """Stops scheduling, drops queued and retry-pending tasks, cancels running ones."""
        self._shutdown = True
        for task in self.task_queue.clear():
            self._finish(task, TaskState.CANCELLED, reason)
        for task_key in list(self._retry_pending):
            task, timer = self._retry_pending.pop(task_key)
            self.coordinator.cancel_timer(timer)
            self._finish(task, TaskState.CANCELLED, reason)
        for slot in self.slots:
            if slot.task is not None and not slot.cancel_event.is_set():
                slot.task.error_message = reason
                slot.cancel_event.set()
        self._draining = [slot.future for slot in self.slots if slot.future is not None]
        self._publish_queue()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Waits until the attempts cancelled by shutdown() are handed back.

        Returns True once every slot is free again. Must not run in the
        coordinator.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        _, not_done = concurrent.futures.wait(self._draining, timeout=timeout)
        if not_done:
            self._executor.shutdown(wait=False)
            self.logger.warning(f"{len(not_done)} worker(s) still running after {timeout}s")
            return False
        # Done callbacks run after waiters wake up; wait for them to reach the coordinator
        while self.coordinator.call(lambda: self.active_count) > 0:
            if deadline is not None and time.monotonic() >= deadline:
                self.logger.warning(f"Worker completions not processed after {timeout}s")
                return False
            time.sleep(0.01)
        self._executor.shutdown(wait=True)
        return True

    def _publish_queue(self):
        self.event_bus.publish(QueueUpdated(pending=self.task_queue.snapshot(), running=self.running_keys()))
