from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ModelNotFound, UserError
from .schemas import ModelDescriptor, Task


class ReadWriteLock:
    """Reader-preferring lock: readers only wait while a writer holds the lock."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class ModelRegistry:
    """Catalog of model descriptors keyed by ``(task, name)`` plus current-model preferences."""

    def __init__(
        self,
        descriptors: Iterable[ModelDescriptor],
        defaults: Optional[Dict[Task, str]] = None,
    ) -> None:
        self._models: Dict[Task, Dict[str, ModelDescriptor]] = {}
        for descriptor in descriptors:
            bucket = self._models.setdefault(descriptor.task, {})
            key = descriptor.name.lower()
            if key in bucket:
                raise ValueError(f"Duplicate model '{descriptor.name}' for {descriptor.task.value}")
            bucket[key] = descriptor
        self._lock = ReadWriteLock()
        self._global: Dict[Task, str] = {}
        self._user: Dict[Tuple[str, Task], str] = {}
        for task, name in (defaults or {}).items():
            self._global[task] = self.get(task, name).name

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, task: Task, name: str) -> ModelDescriptor:
        """Return the descriptor by name (case-insensitive)."""

        entry = self._models.get(task, {}).get((name or "").strip().lower())
        if entry is None:
            raise ModelNotFound(task.value, name)
        return entry

    def list(self, task: Task) -> List[ModelDescriptor]:
        return list(self._models.get(task, {}).values())

    def tasks(self) -> List[Task]:
        return [task for task in Task if task in self._models]

    def current(self, task: Task, user_id: Optional[str] = None) -> ModelDescriptor:
        with self._lock.read():
            name = None
            if user_id is not None:
                name = self._user.get((user_id, task))
            if name is None:
                name = self._global.get(task)
        if name is not None:
            return self.get(task, name)
        entries = self.list(task)
        if not entries:
            raise UserError(f"No models available for {task.value}")
        return entries[0]

    def set_current(self, task: Task, name: str, user_id: Optional[str] = None) -> ModelDescriptor:
        descriptor = self.get(task, name)
        with self._lock.write():
            if user_id is None:
                self._global[task] = descriptor.name
            else:
                self._user[(user_id, task)] = descriptor.name
        return descriptor


__all__ = ["ModelRegistry", "ReadWriteLock"]
