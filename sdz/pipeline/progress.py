import logging
import threading
import time
from typing import Callable, Optional
from sdz.domain.events import ProgressEvent
from sdz.domain.models import ConversionTask, ProgressPhase
from sdz.infrastructure.event_bus import EventBus

class ProgressReporter:
    """Publishes normalized ProgressEvents for one task attempt.

    Percent never decreases within a phase and, unless forced, at most one
    event per ``interval_s`` is published per phase. The first event of every
    phase always goes out.

    Runs on the worker thread and never touches the task itself; the pool
    copies published progress onto the task inside the coordinator.
    """

    def __init__(
        self,
        task: ConversionTask,
        event_bus: EventBus,
        interval_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.task = task
        self.attempt = task.attempts
        self.event_bus = event_bus
        self.interval_s = interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self._phase: Optional[ProgressPhase] = None
        self._last_percent: Optional[float] = None
        self._last_emit = 0.0
        self.logger = logging.getLogger(__name__)

    def emit(self, phase: ProgressPhase, percent: float, force: bool = False) -> bool:
        percent = round(min(100.0, max(0.0, float(percent))), 1)
        now = self._clock()
        with self._lock:
            if phase != self._phase:
                self._phase = phase
                self._last_percent = None
                force = True
            if self._last_percent is not None and percent <= self._last_percent:
                return False
            if not force and now - self._last_emit < self.interval_s:
                return False
            self._last_percent = percent
            self._last_emit = now

        self.logger.debug(f"PROGRESS: {self.task.task_key} {phase.value} {percent:.1f}%")
        self.event_bus.publish(ProgressEvent(task_key=self.task.task_key, phase=phase, percent=percent, attempt=self.attempt))
        return True

    def stage(self, phase: ProgressPhase, start: float, end: float) -> Callable[[int], None]:
        """Returns a callback mapping a stage's own 0-100 onto [start, end]."""

        def _on_percent(stage_percent: int):
            self.emit(phase, start + (end - start) * stage_percent / 100.0)

        return _on_percent
