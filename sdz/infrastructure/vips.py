import os
import subprocess
import re
import logging
import time
import threading
import queue
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional
from pydantic import BaseModel
from sdz.config.models import ToolsConfig

# libvips prints "<image>: 42% complete" with --vips-progress
PROGRESS_REGEX = re.compile(r"(\d+)%\s+complete")
STDERR_MAX_LINES = 200

class StageResult(BaseModel):
    """Exit information of one external stage."""
    returncode: Optional[int] = None
    stderr: str = ""
    cancelled: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.cancelled and not self.timed_out

class VipsAdapter:
    """Wrapper around the libvips command line for slide transform and tiling."""

    def __init__(self, tools: ToolsConfig, threads: int = 1, kill_grace_s: float = 2.0):
        self.tools = tools
        self.threads = max(1, threads)
        self.kill_grace_s = kill_grace_s
        self.logger = logging.getLogger(__name__)

    def environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["VIPS_CONCURRENCY"] = str(self.threads)
        env.setdefault("VIPS_WARNING", "0")
        return env

    def build_transform_command(self, source_path: Path, intermediate_path: Path) -> List[str]:
        """Constructs the color transform command (source -> intermediate .v file)."""
        return [
            *self.tools.vips_command,
            "icc_transform",
            str(source_path),
            str(intermediate_path),
            self.tools.icc_profile,
            "--embedded",
            f"--vips-concurrency={self.threads}",
            "--vips-progress",
        ]

    def build_tile_command(self, intermediate_path: Path, output_base: Path) -> List[str]:
        """Constructs the Deep Zoom tiling command (intermediate -> <output_base>.dzi)."""
        return [
            *self.tools.vips_command,
            "dzsave",
            str(intermediate_path),
            str(output_base),
            "--layout", "dz",
            "--suffix", f".jpg[Q={self.tools.jpeg_quality},strip]",
            "--overlap", str(self.tools.overlap),
            "--tile-size", str(self.tools.tile_size),
            f"--vips-concurrency={self.threads}",
            "--vips-progress",
        ]

    def terminate(self, process: subprocess.Popen):
        """SIGTERM first, SIGKILL once the grace period is over."""
        process.terminate()
        try:
            process.wait(timeout=self.kill_grace_s)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"Process {process.pid} ignored SIGTERM for {self.kill_grace_s}s, killing")
            process.kill()
            process.wait()

    def run_stage(
        self,
        name: str,
        cmd: List[str],
        on_percent: Optional[Callable[[int], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> StageResult:
        """Executes one stage, streaming progress until exit, cancel or deadline."""
        start_time = time.monotonic()
        self.logger.debug(f"STAGE_CMD: {name}: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True,
                bufsize=1,
                env=self.environment(),
            )
        except OSError as e:
            self.logger.error(f"STAGE_SPAWN_FAILED: {name}: {e}")
            return StageResult(returncode=None, stderr=str(e))

        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()
        stderr_lines: "deque[str]" = deque(maxlen=STDERR_MAX_LINES)

        def _reader():
            if not process.stdout:
                output_queue.put(None)
                return
            for line in process.stdout:
                output_queue.put(line)
            output_queue.put(None)

        def _stderr_reader():
            if not process.stderr:
                return
            for line in process.stderr:
                stderr_lines.append(line)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        stderr_thread = threading.Thread(target=_stderr_reader, daemon=True)
        reader_thread.start()
        stderr_thread.start()

        while True:
            if cancel_event is not None and cancel_event.is_set():
                self.logger.info(f"STAGE_INTERRUPTED: {name} (cancel requested)")
                self.terminate(process)
                stderr_thread.join(timeout=1.0)
                return StageResult(returncode=process.returncode, stderr="".join(stderr_lines), cancelled=True)

            if deadline is not None and time.monotonic() > deadline:
                self.logger.warning(f"STAGE_TIMEOUT: {name} (max runtime exceeded)")
                self.terminate(process)
                stderr_thread.join(timeout=1.0)
                return StageResult(
                    returncode=process.returncode,
                    stderr=f"{name} exceeded maximum runtime",
                    timed_out=True,
                )

            try:
                line = output_queue.get(timeout=0.1)
            except queue.Empty:
                if process.poll() is not None and not reader_thread.is_alive():
                    break
                continue

            if line is None:
                break

            match = PROGRESS_REGEX.search(line)
            if match and on_percent is not None:
                on_percent(min(100, int(match.group(1))))

        process.wait()
        stderr_thread.join(timeout=1.0)
        elapsed = time.monotonic() - start_time
        self.logger.debug(f"STAGE_END: {name} code={process.returncode} elapsed={elapsed:.2f}s")
        return StageResult(returncode=process.returncode, stderr="".join(stderr_lines))
