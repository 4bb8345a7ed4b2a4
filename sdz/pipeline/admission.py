"""Admission filter deciding whether a detected slide becomes a conversion task.

Checks run in a fixed order and stop at the first match:

1. unsupported extension            -> UNSUPPORTED (ignored silently)
2. output artifact already on disk  -> ALREADY_CONVERTED
3. same task_key running            -> ALREADY_RUNNING
4. same task_key queued / retrying  -> ALREADY_QUEUED
5. cannot stat the file             -> UNREADABLE
6. modified too recently            -> TOO_RECENT (caller re-checks later)
7. otherwise                        -> ACCEPTED with a new ConversionTask

The gate is only consulted from the coordinator, which also performs the
enqueue, so checks 2-4 and the enqueue cannot interleave with another
admission of the same key.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple
from sdz.domain.models import (
    AdmissionDecision,
    ConversionTask,
    TaskState,
    derive_task_key,
)


class AdmissionStore(Protocol):
    """Tracks tasks admitted and not yet terminal, keyed by task_key.

    The default is in-memory; a disk or external index backed store only has
    to implement these methods.
    """

    def exists(self, task_key: str) -> bool: ...

    def get(self, task_key: str) -> Optional[ConversionTask]: ...

    def insert(self, task: ConversionTask) -> None: ...

    def remove(self, task_key: str) -> Optional[ConversionTask]: ...

    def keys(self) -> List[str]: ...


class InMemoryAdmissionStore:
    def __init__(self):
        self._tasks: Dict[str, ConversionTask] = {}

    def exists(self, task_key: str) -> bool:
        return task_key in self._tasks

    def get(self, task_key: str) -> Optional[ConversionTask]:
        return self._tasks.get(task_key)

    def insert(self, task: ConversionTask) -> None:
        self._tasks[task.task_key] = task

    def remove(self, task_key: str) -> Optional[ConversionTask]:
        return self._tasks.pop(task_key, None)

    def keys(self) -> List[str]:
        return list(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)


class StabilityGate:
    def __init__(
        self,
        watch_root: Optional[Path],
        output_root: Path,
        extensions: Iterable[str],
        store: AdmissionStore,
        min_file_age_s: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.watch_root = Path(watch_root) if watch_root else None
        self.output_root = Path(output_root)
        self.extensions = {(e if e.startswith(".") else f".{e}").lower() for e in extensions}
        self.store = store
        self.min_file_age_s = min_file_age_s
        self._clock = clock
        self.logger = logging.getLogger(__name__)

    def task_key_for(self, path: Path) -> str:
        return derive_task_key(Path(path), self.watch_root)

    def output_base_for(self, task_key: str) -> Path:
        return self.output_root / task_key

    def evaluate(self, path: Path) -> Tuple[AdmissionDecision, Optional[ConversionTask]]:
        path = Path(path)
        if path.suffix.lower() not in self.extensions:
            return AdmissionDecision.UNSUPPORTED, None

        task_key = self.task_key_for(path)
        output_base = self.output_base_for(task_key)
        artifact = output_base.with_name(f"{output_base.name}.dzi")
        if artifact.exists():
            self.logger.info(f"ADMIT_SKIP: {path.name} (output exists: {artifact.name})")
            return AdmissionDecision.ALREADY_CONVERTED, None

        existing = self.store.get(task_key)
        if existing is not None and existing.state == TaskState.RUNNING:
            self.logger.info(f"ADMIT_SKIP: {path.name} (already running as {task_key})")
            return AdmissionDecision.ALREADY_RUNNING, None
        if existing is not None and existing.state == TaskState.QUEUED:
            self.logger.info(f"ADMIT_SKIP: {path.name} (already queued as {task_key})")
            return AdmissionDecision.ALREADY_QUEUED, None

        try:
            st = path.stat()
        except OSError as e:
            self.logger.info(f"ADMIT_SKIP: {path.name} (cannot stat: {e})")
            return AdmissionDecision.UNREADABLE, None
        age = self._clock() - st.st_mtime
        if abs(age) < self.min_file_age_s:
            self.logger.info(f"ADMIT_DEFER: {path.name} (modified {age:.1f}s ago, may still be copying)")
            return AdmissionDecision.TOO_RECENT, None

        task = ConversionTask(
            source_path=path,
            display_name=path.name,
            task_key=task_key,
            output_base=output_base,
        )
        return AdmissionDecision.ACCEPTED, task
