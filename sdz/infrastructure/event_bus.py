import logging
import queue
import threading
from typing import Type, Callable, List, Dict, Any, Optional
from sdz.domain.events import Event, TaskEvent

_STOP = object()

class EventBus:
    """Event bus for decoupled communication between the core and its listeners.

    Publishing only appends to a buffer; a dispatcher thread delivers events to
    subscribers in publish order, so a slow or failing subscriber never blocks
    the publisher. Subscriber exceptions are logged and dropped.

    Three channels exist: per event type (matching subclasses), per task key,
    and an aggregate channel receiving every event.

    With ``synchronous=True`` events are delivered inline in the publisher's
    thread (used by tests and one-shot tools).
    """

    def __init__(self, synchronous: bool = False):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}
        self._task_subscribers: Dict[str, List[Callable[[Any], None]]] = {}
        self._all_subscribers: List[Callable[[Any], None]] = []
        self._lock = threading.Lock()
        self._synchronous = synchronous
        self._buffer: "queue.Queue[Any]" = queue.Queue()
        self._pending = 0
        self._idle = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event_type: Type[Event], callback: Optional[Callable[[Any], None]] = None):
        """Subscribes a callback to a specific event type. Can be used as a decorator."""
        if callback is None:
            def decorator(func: Callable[[Any], None]):
                self.subscribe(event_type, func)
                return func
            return decorator

        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)
        return callback

    def subscribe_task(self, task_key: str, callback: Callable[[Any], None]):
        """Subscribes a callback to every event of one task."""
        with self._lock:
            self._task_subscribers.setdefault(task_key, []).append(callback)
        return callback

    def unsubscribe_task(self, task_key: str, callback: Callable[[Any], None]):
        with self._lock:
            callbacks = self._task_subscribers.get(task_key)
            if not callbacks:
                return
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                del self._task_subscribers[task_key]

    def subscribe_all(self, callback: Callable[[Any], None]):
        """Subscribes a callback to the aggregate channel (all events)."""
        with self._lock:
            self._all_subscribers.append(callback)
        return callback

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        if self._synchronous:
            self._deliver(event)
            return
        if self._closed:
            self.logger.debug(f"EventBus closed, dropping {type(event).__name__}")
            return
        with self._idle:
            self._pending += 1
        self._ensure_dispatcher()
        self._buffer.put(event)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Waits until every published event has been delivered."""
        if self._synchronous or threading.current_thread() is self._thread:
            return True
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def close(self, timeout: float = 5.0):
        """Delivers what is buffered, then stops the dispatcher thread."""
        if self._closed:
            return
        self._closed = True
        if self._thread is not None:
            self._buffer.put(_STOP)
            self._thread.join(timeout=timeout)

    def _ensure_dispatcher(self):
        if self._thread is not None:
            return
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._dispatch_loop, name="sdz-event-bus", daemon=True)
                self._thread.start()

    def _dispatch_loop(self):
        while True:
            event = self._buffer.get()
            if event is _STOP:
                break
            try:
                self._deliver(event)
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

    def _callbacks_for(self, event: Event) -> List[Callable[[Any], None]]:
        callbacks: List[Callable[[Any], None]] = []
        with self._lock:
            for event_type in type(event).__mro__:
                callbacks.extend(self._subscribers.get(event_type, ()))
            if isinstance(event, TaskEvent):
                callbacks.extend(self._task_subscribers.get(event.task_key, ()))
            callbacks.extend(self._all_subscribers)
        return callbacks

    def _deliver(self, event: Event):
        for callback in self._callbacks_for(event):
            try:
                callback(event)
            except Exception:
                self.logger.exception(f"Subscriber failed for {type(event).__name__}")
