import concurrent.futures
import logging
import queue
import threading
from typing import Any, Callable, Optional, Set

_STOP = object()

class Coordinator:
    """Single coordination context for queue, slot and admission bookkeeping.

    Every state mutation of the orchestration core is posted here and executed
    one at a time on the coordinator thread, so check-then-act sequences (dedup
    checks followed by enqueue, slot search followed by binding) are atomic
    without further locking. Deferred work uses timers that post back into the
    mailbox instead of blocking.
    """

    def __init__(self, name: str = "sdz-coordinator"):
        self.name = name
        self._mailbox: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._timers: Set[threading.Timer] = set()
        self._timers_lock = threading.Lock()
        self._stopped = False
        self.logger = logging.getLogger(__name__)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def in_coordinator(self) -> bool:
        return threading.current_thread() is self._thread

    def start(self):
        if self._thread is not None:
            return
        self._stopped = False
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Cancels pending timers, drains the mailbox and stops the thread."""
        self._stopped = True
        with self._timers_lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if self._thread is not None:
            self._mailbox.put(_STOP)
            if not self.in_coordinator():
                self._thread.join(timeout=timeout)
            self._thread = None

    def call_soon(self, fn: Callable[..., Any], *args: Any):
        """Posts fn(*args) to the mailbox."""
        if self._stopped:
            self.logger.debug(f"Coordinator stopped, dropping {getattr(fn, '__name__', fn)}")
            return
        self._mailbox.put((fn, args, None))

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> Optional[threading.Timer]:
        """Posts fn(*args) to the mailbox after delay seconds."""
        if self._stopped:
            return None

        def _fire():
            with self._timers_lock:
                self._timers.discard(timer)
            self.call_soon(fn, *args)

        timer = threading.Timer(max(0.0, delay), _fire)
        timer.daemon = True
        with self._timers_lock:
            self._timers.add(timer)
        timer.start()
        return timer

    def cancel_timer(self, timer: Optional[threading.Timer]):
        if timer is None:
            return
        timer.cancel()
        with self._timers_lock:
            self._timers.discard(timer)

    @property
    def pending_timers(self) -> int:
        with self._timers_lock:
            return len(self._timers)

    def call(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None) -> Any:
        """Runs fn(*args) in the coordinator and returns its result.

        Runs inline when already on the coordinator thread or when the
        coordinator has not been started.
        """
        if self.in_coordinator() or self._thread is None:
            return fn(*args)
        future: "concurrent.futures.Future[Any]" = concurrent.futures.Future()
        self._mailbox.put((fn, args, future))
        return future.result(timeout=timeout)

    def sync(self, timeout: Optional[float] = None):
        """Returns once everything posted before this call has run."""
        self.call(lambda: None, timeout=timeout)

    def _run(self):
        while True:
            item = self._mailbox.get()
            if item is _STOP:
                break
            fn, args, future = item
            try:
                result = fn(*args)
            except Exception as e:
                if future is not None:
                    future.set_exception(e)
                else:
                    self.logger.exception(f"Coordinator task {getattr(fn, '__name__', fn)} failed")
                continue
            if future is not None:
                future.set_result(result)
