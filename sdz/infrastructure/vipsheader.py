import subprocess
import json
import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

class HeaderInterrupted(RuntimeError):
    """vipsheader was stopped before it finished (cancel or timeout)."""

class VipsHeaderAdapter:
    """Wrapper around vipsheader to extract slide properties."""

    def __init__(self, command: Optional[List[str]] = None, timeout_s: float = 120.0, kill_grace_s: float = 2.0):
        self.command = list(command or ["vipsheader"])
        self.timeout_s = timeout_s
        self.kill_grace_s = kill_grace_s
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def parse_header(text: str) -> Dict[str, str]:
        fields: Dict[str, str] = {}
        for line in text.splitlines():
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            key = key.strip()
            if key:
                fields[key] = value.strip()
        return fields

    def _stop(self, process: subprocess.Popen):
        process.terminate()
        try:
            process.communicate(timeout=self.kill_grace_s)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"vipsheader {process.pid} ignored SIGTERM for {self.kill_grace_s}s, killing")
            process.kill()
            process.communicate()

    def get_header(self, file_path: Path, cancel_event: Optional[threading.Event] = None) -> Dict[str, str]:
        """Executes vipsheader -a and parses its "field: value" lines.

        Raises HeaderInterrupted when cancel_event is set or the timeout
        expires; the child is terminated (then killed) in both cases.
        """
        cmd = [*self.command, "-a", str(file_path)]
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, universal_newlines=True)
        deadline = time.monotonic() + self.timeout_s
        while True:
            try:
                stdout, stderr = process.communicate(timeout=0.1)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    self._stop(process)
                    raise HeaderInterrupted(f"vipsheader cancelled for {file_path}")
                if time.monotonic() > deadline:
                    self._stop(process)
                    raise HeaderInterrupted(f"vipsheader timed out after {self.timeout_s}s for {file_path}")

        if process.returncode != 0:
            raise RuntimeError(f"vipsheader failed for {file_path}: {stderr.strip()}")
        return self.parse_header(stdout)

    def write_sidecar(
        self, source_path: Path, output_base: Path, cancel_event: Optional[threading.Event] = None
    ) -> Path:
        """Writes <output_base>_metadata.json next to the tiled output."""
        header = self.get_header(source_path, cancel_event)
        sidecar = output_base.with_name(f"{output_base.name}_metadata.json")
        payload = {
            "source": str(source_path),
            "width": header.get("width"),
            "height": header.get("height"),
            "header": header,
        }
        sidecar.write_text(json.dumps(payload, indent=2))
        return sidecar
