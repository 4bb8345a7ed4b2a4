"""Local conversion runner: drives the two libvips stages for one task attempt.

An attempt is: color transform (source -> intermediate), Deep Zoom tiling
(intermediate -> <output_root>/<task_key>.dzi + _files/), then an optional
metadata sidecar. Only one child process is alive at a time, the intermediate
file never survives the attempt, and a failed or cancelled attempt leaves no
partial tiling output behind.
"""

import logging
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Optional, Set
from sdz.config.models import AppConfig
from sdz.domain.models import ConversionOutcome, ConversionTask, ProgressPhase
from sdz.infrastructure.event_bus import EventBus
from sdz.infrastructure.housekeeping import INTERMEDIATE_PREFIX, INTERMEDIATE_SUFFIX
from sdz.infrastructure.vips import StageResult, VipsAdapter
from sdz.infrastructure.vipsheader import HeaderInterrupted, VipsHeaderAdapter
from sdz.pipeline.progress import ProgressReporter

STDERR_TAIL_LINES = 20


def _stderr_tail(stderr: str) -> str:
    lines = [line for line in stderr.strip().splitlines() if line.strip()]
    return "\n".join(lines[-STDERR_TAIL_LINES:])


class ConversionPipeline:
    """Handle for the processes and files of one attempt."""

    def __init__(self, task: ConversionTask, vips: VipsAdapter, intermediate_dir: Path, attempt: int):
        self.task = task
        self.vips = vips
        self.intermediate_path = Path(intermediate_dir) / (
            f"{INTERMEDIATE_PREFIX}{task.task_key}_{os.getpid()}_{attempt}{INTERMEDIATE_SUFFIX}"
        )
        self.logger = logging.getLogger(__name__)

    @property
    def tiles_dir(self) -> Path:
        base = self.task.output_base
        return base.with_name(f"{base.name}_files")

    def transform(self, reporter: ProgressReporter, cancel_event: threading.Event, deadline: Optional[float]) -> StageResult:
        cmd = self.vips.build_transform_command(self.task.source_path, self.intermediate_path)
        reporter.emit(ProgressPhase.TRANSFORMING, 0, force=True)
        return self.vips.run_stage(
            f"transform[{self.task.task_key}]",
            cmd,
            on_percent=reporter.stage(ProgressPhase.TRANSFORMING, 0, 50),
            cancel_event=cancel_event,
            deadline=deadline,
        )

    def tile(self, reporter: ProgressReporter, cancel_event: threading.Event, deadline: Optional[float]) -> StageResult:
        cmd = self.vips.build_tile_command(self.intermediate_path, self.task.output_base)
        reporter.emit(ProgressPhase.TILING, 50, force=True)
        return self.vips.run_stage(
            f"tile[{self.task.task_key}]",
            cmd,
            on_percent=reporter.stage(ProgressPhase.TILING, 50, 90),
            cancel_event=cancel_event,
            deadline=deadline,
        )

    def remove_intermediate(self):
        try:
            self.intermediate_path.unlink()
            self.logger.debug(f"Removed intermediate {self.intermediate_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Failed to remove intermediate {self.intermediate_path}: {e}")

    def remove_partial_output(self):
        artifact = self.task.output_artifact
        try:
            artifact.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Failed to remove partial output {artifact}: {e}")
        if self.tiles_dir.is_dir():
            shutil.rmtree(self.tiles_dir, ignore_errors=True)
        sidecar = self.task.output_base.with_name(f"{self.task.output_base.name}_metadata.json")
        if sidecar.exists():
            try:
                sidecar.unlink()
            except OSError as e:
                self.logger.warning(f"Failed to remove partial sidecar {sidecar}: {e}")

    def cleanup(self, succeeded: bool):
        self.remove_intermediate()
        if not succeeded:
            self.remove_partial_output()


class PipelineSupervisor:
    """Runs conversion attempts locally with the libvips command line tools."""

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        vips: Optional[VipsAdapter] = None,
        metadata: Optional[VipsHeaderAdapter] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.vips = vips or VipsAdapter(
            config.tools,
            threads=config.threads_per_pipeline(),
            kill_grace_s=config.pool.kill_grace_s,
        )
        if metadata is None and config.tools.extract_metadata:
            metadata = VipsHeaderAdapter(config.tools.header_command, kill_grace_s=config.pool.kill_grace_s)
        self.metadata = metadata
        self._live: Set[threading.Event] = set()
        self._live_lock = threading.Lock()
        self._closed = threading.Event()
        self.logger = logging.getLogger(__name__)

    def close(self) -> None:
        """Cancels attempts still running; run() fails fast afterwards."""
        self._closed.set()
        with self._live_lock:
            live = list(self._live)
        for cancel_event in live:
            cancel_event.set()
        if live:
            self.logger.info(f"Local runner closed, cancelled {len(live)} running attempt(s)")

    def run(self, task: ConversionTask, cancel_event: threading.Event) -> ConversionOutcome:
        if self._closed.is_set():
            return ConversionOutcome.failed("Local runner is closed")
        with self._live_lock:
            self._live.add(cancel_event)
        try:
            return self._run(task, cancel_event)
        finally:
            with self._live_lock:
                self._live.discard(cancel_event)

    def _run(self, task: ConversionTask, cancel_event: threading.Event) -> ConversionOutcome:
        reporter = ProgressReporter(task, self.event_bus, self.config.tools.progress_interval_s)
        pipeline = ConversionPipeline(task, self.vips, Path(self.config.tools.intermediate_dir), task.attempts)
        deadline = None
        if self.config.pool.max_runtime_s:
            deadline = time.monotonic() + self.config.pool.max_runtime_s

        succeeded = False
        start_time = time.monotonic()
        try:
            reporter.emit(ProgressPhase.STARTING, 0, force=True)
            task.output_base.parent.mkdir(parents=True, exist_ok=True)

            result = pipeline.transform(reporter, cancel_event, deadline)
            if not result.ok:
                return self._stage_outcome("Color transform", result)

            result = pipeline.tile(reporter, cancel_event, deadline)
            if not result.ok:
                return self._stage_outcome("Tiling", result)
            pipeline.remove_intermediate()

            if not task.output_artifact.exists():
                return ConversionOutcome.failed(f"Tiling finished but {task.output_artifact.name} was not created")

            if self.metadata is not None:
                reporter.emit(ProgressPhase.EXTRACTING_METADATA, 90, force=True)
                self._extract_metadata(task, cancel_event)
            if cancel_event.is_set():
                return ConversionOutcome.cancelled()

            reporter.emit(ProgressPhase.COMPLETED, 100, force=True)
            succeeded = True
            elapsed = time.monotonic() - start_time
            self.logger.info(f"PIPELINE_DONE: {task.task_key} in {elapsed:.1f}s -> {task.output_artifact}")
            return ConversionOutcome.completed()
        finally:
            pipeline.cleanup(succeeded)

    def _stage_outcome(self, stage: str, result: StageResult) -> ConversionOutcome:
        if result.cancelled:
            return ConversionOutcome.cancelled()
        if result.timed_out:
            return ConversionOutcome.failed(result.stderr)
        if result.returncode is None:
            return ConversionOutcome.failed(f"{stage} could not start: {result.stderr}")
        tail = _stderr_tail(result.stderr)
        message = f"{stage} failed (exit code {result.returncode})"
        if tail:
            message = f"{message}: {tail}"
        return ConversionOutcome.failed(message)

    def _extract_metadata(self, task: ConversionTask, cancel_event: threading.Event):
        # Sidecar is best effort; the tiles are already usable without it
        try:
            sidecar = self.metadata.write_sidecar(task.source_path, task.output_base, cancel_event)
            self.logger.debug(f"Metadata sidecar written: {sidecar}")
        except HeaderInterrupted as e:
            self.logger.info(f"Metadata extraction stopped for {task.display_name}: {e}")
        except Exception as e:
            self.logger.warning(f"Metadata extraction failed for {task.display_name}: {e}")
