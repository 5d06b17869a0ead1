"""Persistence for the task board.

Every task lives in ``.crew_board/tasks.yaml`` under a top-level ``tasks``
list. Callers open a :meth:`TaskStore.transaction`, which holds both the
cross-process file lock and an in-process lock for the whole
read-modify-write cycle; the file is rewritten only if the block mutated
something and finished without raising.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

from ..constants import TASKS_FILENAME, TASKS_LOCK_FILENAME
from ..io_utils import FileLock, _read_yaml_mapping, _write_yaml_atomic
from .model import Task

STORE_VERSION = 1


class BoardTx:
    """Working copy of the board for one transaction, keyed by task id."""

    def __init__(self, tasks: list[Task]) -> None:
        self._by_id: dict[str, Task] = {}
        for task in tasks:
            self._by_id.setdefault(task.id, task)
        self.dirty = False

    @property
    def tasks(self) -> list[Task]:
        return list(self._by_id.values())

    def get(self, task_id: str) -> Optional[Task]:
        return self._by_id.get(task_id)

    def list_all(self) -> list[Task]:
        return self.tasks

    def ids_with_prefix(self, prefix: str) -> list[str]:
        return sorted(key for key in self._by_id if key.startswith(prefix))

    def find(
        self,
        *,
        status: Optional[str] = None,
        assignee: Optional[str] = None,
        team_id: Optional[str] = None,
        updated_since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[Task]:
        """Newest ``updated_at`` first; ties broken by id, descending."""

        def keep(task: Task) -> bool:
            if status and task.status.value != status:
                return False
            if assignee and not task.is_assigned_to(assignee):
                return False
            if team_id is not None and task.team_id != team_id:
                return False
            return updated_since is None or task.updated_at >= updated_since

        hits = sorted(
            (task for task in self._by_id.values() if keep(task)),
            key=lambda task: (task.updated_at, task.id),
            reverse=True,
        )
        if limit is not None and limit >= 0:
            del hits[limit:]
        return hits

    def add(self, task: Task) -> Task:
        if task.id in self._by_id:
            raise ValueError(f"Task {task.id} already exists")
        self._by_id[task.id] = task
        self.dirty = True
        return task

    def replace(self, task: Task) -> Task:
        if task.id not in self._by_id:
            raise ValueError(f"Task {task.id} does not exist")
        self._by_id[task.id] = task
        self.dirty = True
        return task

    def hard_remove(self, task_id: str) -> bool:
        """Drop the row entirely; there is no tombstone."""
        if self._by_id.pop(task_id, None) is None:
            return False
        self.dirty = True
        return True


class TaskStore:
    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.path = state_dir / TASKS_FILENAME
        self._file_lock = FileLock(state_dir / TASKS_LOCK_FILENAME)
        self._mutex = threading.RLock()

    def _read_rows(self) -> list[dict[str, Any]]:
        data, err = _read_yaml_mapping(self.path, {})
        if err:
            # Saving after this would overwrite whatever is on disk.
            raise RuntimeError(f"Task store is unreadable: {err}")
        rows = data.get("tasks")
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]

    def _load(self) -> list[Task]:
        return [Task.from_dict(row) for row in self._read_rows()]

    def _flush(self, tasks: list[Task]) -> None:
        _write_yaml_atomic(self.path, {"version": STORE_VERSION, "tasks": [t.to_dict() for t in tasks]})
        logger.debug("Wrote {} tasks to {}", len(tasks), self.path)

    @contextmanager
    def transaction(self) -> Iterator[BoardTx]:
        """Locked read-modify-write over the whole board.

        ::

            with store.transaction() as tx:
                task = tx.get(task_id)
                tx.replace(updated)
        """
        with self._mutex, self._file_lock:
            tx = BoardTx(self._load())
            yield tx
            if tx.dirty:
                self._flush(tx.tasks)

    def read_snapshot(self) -> list[Task]:
        with self._mutex, self._file_lock:
            return self._load()

    def get_one(self, task_id: str) -> Optional[Task]:
        return next((task for task in self.read_snapshot() if task.id == task_id), None)
