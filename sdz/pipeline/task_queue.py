from collections import OrderedDict
from typing import List, Optional
from sdz.domain.models import ConversionTask

class TaskQueue:
    """FIFO holding area for QUEUED tasks, keyed by task_key.

    Not thread-safe by itself; only the coordinator touches it.
    """

    def __init__(self):
        self._items: "OrderedDict[str, ConversionTask]" = OrderedDict()

    def enqueue(self, task: ConversionTask) -> bool:
        """Appends the task; rejects a second task with the same key."""
        if task.task_key in self._items:
            return False
        self._items[task.task_key] = task
        return True

    def dequeue_next(self) -> Optional[ConversionTask]:
        if not self._items:
            return None
        _, task = self._items.popitem(last=False)
        return task

    def remove(self, task_key: str) -> Optional[ConversionTask]:
        return self._items.pop(task_key, None)

    def contains(self, task_key: str) -> bool:
        return task_key in self._items

    def size(self) -> int:
        return len(self._items)

    def snapshot(self) -> List[str]:
        return list(self._items)

    def tasks(self) -> List[ConversionTask]:
        """Queued tasks in dequeue order."""
        return list(self._items.values())

    def clear(self) -> List[ConversionTask]:
        tasks = list(self._items.values())
        self._items.clear()
        return tasks

    def __len__(self) -> int:
        return len(self._items)
