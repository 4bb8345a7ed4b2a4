import threading
import time
import pytest
from sdz.pipeline.coordinator import Coordinator


@pytest.fixture
def coordinator():
    c = Coordinator()
    c.start()
    yield c
    c.stop()


def test_call_runs_on_coordinator_thread(coordinator):
    name = coordinator.call(lambda: threading.current_thread().name, timeout=5)
    assert name == "sdz-coordinator"


def test_call_soon_preserves_order(coordinator):
    seen = []
    for i in range(100):
        coordinator.call_soon(seen.append, i)
    coordinator.sync(timeout=5)
    assert seen == list(range(100))


def test_call_propagates_exceptions(coordinator):
    def boom():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        coordinator.call(boom, timeout=5)
    # the loop survives
    assert coordinator.call(lambda: 42, timeout=5) == 42


def test_failing_posted_callback_is_logged(coordinator, caplog):
    def boom():
        raise RuntimeError("posted failure")

    coordinator.call_soon(boom)
    coordinator.sync(timeout=5)
    assert "Coordinator task boom failed" in caplog.text


def test_call_later_posts_into_mailbox(coordinator):
    fired = threading.Event()
    names = []

    def record():
        names.append(threading.current_thread().name)
        fired.set()

    coordinator.call_later(0.05, record)
    assert fired.wait(5)
    assert names == ["sdz-coordinator"]
    assert coordinator.pending_timers == 0


def test_cancel_timer(coordinator):
    fired = threading.Event()
    timer = coordinator.call_later(0.2, fired.set)
    assert coordinator.pending_timers == 1

    coordinator.cancel_timer(timer)

    assert coordinator.pending_timers == 0
    assert not fired.wait(0.4)


def test_stop_cancels_timers_and_drops_posts():
    c = Coordinator()
    c.start()
    fired = threading.Event()
    c.call_later(0.2, fired.set)
    c.stop()

    assert not fired.wait(0.4)
    assert c.call_later(0.01, fired.set) is None
    c.call_soon(fired.set)
    assert not fired.is_set()
    assert not c.running


def test_call_runs_inline_before_start():
    c = Coordinator()
    assert c.call(lambda: threading.current_thread().name) == threading.current_thread().name


def test_reentrant_call_does_not_deadlock(coordinator):
    assert coordinator.call(lambda: coordinator.call(lambda: "inner"), timeout=5) == "inner"
