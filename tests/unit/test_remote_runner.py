import threading
import time
import pytest
from pathlib import Path
from unittest.mock import MagicMock
from sdz.config.models import RemoteConfig
from sdz.domain.events import ProgressEvent
from sdz.domain.models import ConversionTask, ProgressPhase, TaskState
from sdz.infrastructure.remote_client import RemoteRejected, RemoteUnavailable
from sdz.pipeline.remote_runner import RemoteConversionRunner, map_remote_phase


def make_task():
    return ConversionTask(
        source_path=Path("/slides/case/s.svs"),
        display_name="s.svs",
        task_key="case_s",
        output_base=Path("/dzi/case_s"),
        attempts=1,
    )


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def runner(client, sync_bus):
    config = RemoteConfig(enabled=True, url="http://lab:3001", poll_interval_s=0.01, max_poll_errors=3)
    return RemoteConversionRunner(config, sync_bus, Path("/dzi"), watch_root=Path("/slides"), client=client)


@pytest.mark.parametrize("phase,expected", [
    ("Starting", ProgressPhase.STARTING),
    ("ICC Color Transform", ProgressPhase.TRANSFORMING),
    ("Creating DZI Tiles", ProgressPhase.TILING),
    ("Extracting Metadata", ProgressPhase.EXTRACTING_METADATA),
    (None, ProgressPhase.STARTING),
])
def test_map_remote_phase(phase, expected):
    assert map_remote_phase(phase) == expected


def test_successful_conversion(runner, client, sync_bus, recorder):
    sync_bus.subscribe_all(recorder)
    client.status.side_effect = [
        {"status": "queued", "queuePosition": 1},
        {"status": "processing", "progress": 20, "phase": "ICC Color Transform"},
        {"status": "processing", "progress": 60, "phase": "Creating DZI Tiles"},
        {"status": "completed", "progress": 100},
    ]

    outcome = runner.run(make_task(), threading.Event())

    assert outcome.state == TaskState.COMPLETED
    client.submit.assert_called_once_with(Path("/slides/case/s.svs"), "case_s", Path("/slides"), Path("/dzi"))
    phases = [(e.phase, e.percent) for e in recorder.of(ProgressEvent)]
    assert phases == [
        (ProgressPhase.STARTING, 0),
        (ProgressPhase.TRANSFORMING, 20),
        (ProgressPhase.TILING, 60),
        (ProgressPhase.COMPLETED, 100),
    ]


def test_remote_failure(runner, client):
    client.status.return_value = {"status": "failed", "error": "vips crashed"}
    outcome = runner.run(make_task(), threading.Event())
    assert outcome.state == TaskState.FAILED
    assert outcome.error_message == "vips crashed"


def test_not_found_after_submit_is_failure(runner, client):
    client.status.return_value = {"status": "not_found"}
    outcome = runner.run(make_task(), threading.Event())
    assert outcome.state == TaskState.FAILED
    assert "not found" in outcome.error_message


def test_unreachable_on_submit_is_failure(runner, client):
    client.submit.side_effect = RemoteUnavailable("connection refused")

    outcome = runner.run(make_task(), threading.Event())

    assert outcome.state == TaskState.FAILED
    assert "unavailable" in outcome.error_message
    client.status.assert_not_called()


def test_rejected_submit_is_failure(runner, client):
    client.submit.side_effect = RemoteRejected("Input file not found", 404)
    outcome = runner.run(make_task(), threading.Event())
    assert outcome.state == TaskState.FAILED


def test_conflict_attaches_to_running_conversion(runner, client):
    client.submit.side_effect = RemoteRejected("already in progress", 409)
    client.status.return_value = {"status": "completed"}

    outcome = runner.run(make_task(), threading.Event())

    assert outcome.state == TaskState.COMPLETED


def test_transient_poll_errors_are_tolerated(runner, client):
    client.status.side_effect = [
        RemoteUnavailable("blip"),
        RemoteUnavailable("blip"),
        {"status": "processing", "progress": 10},
        RemoteUnavailable("blip"),
        {"status": "completed"},
    ]
    assert runner.run(make_task(), threading.Event()).state == TaskState.COMPLETED


def test_consecutive_poll_errors_fail(runner, client):
    client.status.side_effect = RemoteUnavailable("down")

    outcome = runner.run(make_task(), threading.Event())

    assert outcome.state == TaskState.FAILED
    assert client.status.call_count == 3
    assert "Lost contact" in outcome.error_message


def test_cancel_sends_delete_and_stops_polling(runner, client):
    client.status.return_value = {"status": "processing", "progress": 5}
    cancel = threading.Event()
    threading.Timer(0.1, cancel.set).start()

    outcome = runner.run(make_task(), cancel)

    assert outcome.state == TaskState.CANCELLED
    client.cancel.assert_called_once_with("case_s")
    calls = client.status.call_count
    time.sleep(0.1)
    assert client.status.call_count == calls


def test_close_stops_running_poll(runner, client):
    client.status.return_value = {"status": "processing", "progress": 5}
    result = {}
    thread = threading.Thread(target=lambda: result.setdefault("outcome", runner.run(make_task(), threading.Event())))
    thread.start()
    time.sleep(0.1)

    runner.close()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert result["outcome"].state == TaskState.CANCELLED
    client.close.assert_called_once()


def test_run_after_close_fails(runner, client):
    runner.close()
    assert runner.run(make_task(), threading.Event()).state == TaskState.FAILED
    client.submit.assert_not_called()


def test_health_delegates(runner, client):
    client.health.return_value = {"status": "healthy"}
    assert runner.health() == {"status": "healthy"}
