import logging
import os
from pathlib import Path
from typing import Optional

# Intermediate artifacts are named <prefix><task_key>_<pid>_<attempt>.v
INTERMEDIATE_PREFIX = "sdz_"
INTERMEDIATE_SUFFIX = ".v"

def owner_pid(name: str) -> Optional[int]:
    """Pid embedded in an intermediate file name, None if it cannot be parsed."""
    stem = name[len(INTERMEDIATE_PREFIX):-len(INTERMEDIATE_SUFFIX)]
    parts = stem.rsplit("_", 2)
    if len(parts) != 3:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None

def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # os.kill(pid, 0) terminates the process on Windows; assume alive
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True

class HousekeepingService:
    """Service for cleaning up intermediate artifacts left by a crashed run.

    The intermediate directory may be shared (it defaults to the system temp
    dir), so files whose owning process is still alive are left alone.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def cleanup_intermediates(self, directory: Path) -> int:
        """Removes stale intermediate files (non-recursive) from the intermediate dir."""
        removed = 0
        try:
            entries = os.listdir(directory)
        except OSError as e:
            self.logger.warning(f"Cannot list intermediate dir {directory}: {e}")
            return 0
        for name in entries:
            if not (name.startswith(INTERMEDIATE_PREFIX) and name.endswith(INTERMEDIATE_SUFFIX)):
                continue
            pid = owner_pid(name)
            if pid is not None and pid_alive(pid):
                self.logger.debug(f"Housekeeping: keeping {name} (pid {pid} still running)")
                continue
            try:
                (Path(directory) / name).unlink()
                removed += 1
            except OSError as e:
                self.logger.warning(f"Cannot remove intermediate {name}: {e}")
        if removed:
            self.logger.info(f"Housekeeping: removed {removed} stale intermediate file(s) from {directory}")
        return removed
