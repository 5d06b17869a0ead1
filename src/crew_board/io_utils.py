"""Durable state helpers for the ``.crew_board/`` directory.

YAML collections (tasks, sync ledger, presence) are rewritten whole through a
temp file and ``os.replace``; append-only logs (audit, chat) are JSONL.
Readers report parse errors instead of raising so a caller can refuse to
overwrite a file it could not read.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES

if os.name == "nt":
    import msvcrt
else:
    import fcntl


class FileLock:
    """Exclusive advisory lock on a sidecar ``*.lock`` file.

    Re-entering from the thread that already holds the lock only bumps a
    counter, so a reader nested inside a writer on the same thread does not
    deadlock against its own ``flock``.
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._handle: Optional[Any] = None
        self._owner: Optional[int] = None
        self._depth = 0

    def _acquire(self, handle: Any) -> None:
        if os.name == "nt":
            handle.seek(0)
            handle.truncate(WINDOWS_LOCK_BYTES)
            handle.flush()
            msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, WINDOWS_LOCK_BYTES)
        else:
            fcntl.flock(handle, fcntl.LOCK_EX)

    def _release(self, handle: Any) -> None:
        if os.name == "nt":
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)
        else:
            fcntl.flock(handle, fcntl.LOCK_UN)

    def __enter__(self) -> "FileLock":
        me = threading.get_ident()
        if self._owner == me:
            self._depth += 1
            return self
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+")
        try:
            self._acquire(handle)
        except BaseException:
            handle.close()
            raise
        self._handle, self._owner, self._depth = handle, me, 1
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._owner != threading.get_ident():
            return
        self._depth -= 1
        if self._depth:
            return
        handle, self._handle, self._owner = self._handle, None, None
        try:
            self._release(handle)
        finally:
            handle.close()


def _read_yaml_mapping(path: Path, default: dict[str, Any]) -> tuple[dict[str, Any], Optional[str]]:
    """Load a YAML mapping; return ``(data, error)``.

    A missing or empty file gives ``(default, None)``. Anything unreadable
    gives ``(default, "<file>: <reason>")``.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        return default, f"{path.name}: {type(exc).__name__}: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected a mapping, got {type(data).__name__}"
    return data, None


def _write_yaml_atomic(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _append_jsonl(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, default=str, ensure_ascii=False) + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def _iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """Yield object rows oldest first; blank, malformed and non-object lines are skipped."""
    if not path.exists():
        return
    with open(path, "r", encoding="utf-8") as handle:
        for raw in handle:
            if not raw.strip():
                continue
            try:
                row = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(row, dict):
                yield row
