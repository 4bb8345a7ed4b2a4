import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional
from sdz.config.models import RemoteConfig
from sdz.domain.models import ConversionOutcome, ConversionTask, ProgressPhase
from sdz.infrastructure.event_bus import EventBus
from sdz.infrastructure.remote_client import ConversionServerClient, RemoteError, RemoteRejected, RemoteUnavailable
from sdz.pipeline.progress import ProgressReporter

TERMINAL_FAILURE_STATUSES = ("failed", "cancelled")


def map_remote_phase(phase: Optional[str]) -> ProgressPhase:
    """Maps the server's free-text phase ("ICC Color Transform", ...) onto ProgressPhase."""
    text = (phase or "").lower()
    if "metadata" in text:
        return ProgressPhase.EXTRACTING_METADATA
    if "tile" in text or "dzi" in text:
        return ProgressPhase.TILING
    if "icc" in text or "transform" in text or "color" in text:
        return ProgressPhase.TRANSFORMING
    return ProgressPhase.STARTING


class RemoteConversionRunner:
    """Runner delegating attempts to a conversion server.

    Polling happens inside ``run`` on the worker thread, so it ends with the
    attempt; nothing keeps polling after completion, cancellation or close().
    """

    def __init__(
        self,
        config: RemoteConfig,
        event_bus: EventBus,
        output_root: Path,
        watch_root: Optional[Path] = None,
        client: Optional[ConversionServerClient] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.output_root = Path(output_root)
        self.watch_root = Path(watch_root) if watch_root else None
        self.client = client or ConversionServerClient(config.url, timeout_s=config.timeout_s)
        self._closed = threading.Event()
        self.logger = logging.getLogger(__name__)

    def health(self) -> Optional[Dict[str, Any]]:
        return self.client.health()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self.client.close()

    def run(self, task: ConversionTask, cancel_event: threading.Event) -> ConversionOutcome:
        if self._closed.is_set():
            return ConversionOutcome.failed("Remote client is closed")

        reporter = ProgressReporter(task, self.event_bus, interval_s=0)
        reporter.emit(ProgressPhase.STARTING, 0, force=True)
        slides_dir = self.watch_root or task.source_path.parent
        try:
            self.client.submit(task.source_path, task.task_key, slides_dir, self.output_root)
        except RemoteRejected as e:
            if e.status_code != 409:
                return ConversionOutcome.failed(str(e))
            # Already converting on the server side; follow that conversion
            self.logger.info(f"REMOTE_ATTACH: {task.task_key} already in progress on server")
        except RemoteUnavailable as e:
            self.logger.warning(f"REMOTE_UNAVAILABLE: {task.task_key}: {e}")
            return ConversionOutcome.failed(f"Conversion server unavailable: {e}")
        self.logger.info(f"REMOTE_SUBMITTED: {task.task_key} -> {self.config.url}")

        errors = 0
        while True:
            if cancel_event.is_set() or self._closed.is_set():
                self.client.cancel(task.task_key)
                return ConversionOutcome.cancelled()

            try:
                status = self.client.status(task.task_key)
            except RemoteError as e:
                errors += 1
                self.logger.warning(f"REMOTE_POLL_ERROR: {task.task_key} ({errors}/{self.config.max_poll_errors}): {e}")
                if errors >= self.config.max_poll_errors:
                    return ConversionOutcome.failed(f"Lost contact with conversion server: {e}")
            else:
                errors = 0
                outcome = self._apply_status(task, status, reporter)
                if outcome is not None:
                    return outcome

            cancel_event.wait(self.config.poll_interval_s)

    def _apply_status(
        self, task: ConversionTask, status: Dict[str, Any], reporter: ProgressReporter
    ) -> Optional[ConversionOutcome]:
        state = str(status.get("status", "")).lower()
        if state == "completed":
            reporter.emit(ProgressPhase.COMPLETED, 100, force=True)
            self.logger.info(f"REMOTE_DONE: {task.task_key}")
            return ConversionOutcome.completed()
        if state in TERMINAL_FAILURE_STATUSES:
            return ConversionOutcome.failed(status.get("error") or f"Remote conversion {state}")
        if state == "not_found":
            return ConversionOutcome.failed("Conversion not found on server")
        if state == "processing":
            try:
                percent = float(status.get("progress") or 0)
            except (TypeError, ValueError):
                percent = 0.0
            reporter.emit(map_remote_phase(status.get("phase")), percent)
        return None
