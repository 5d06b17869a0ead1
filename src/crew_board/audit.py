"""Append-only audit ledger for review-field mutations.

Every change to a review-related field (reviewer, approval stamps, review
state, and status moves in or out of ``validating``) is written as one JSONL
line to ``.crew_board/review-audit-ledger.jsonl``. The most recent entries
are also kept in memory for fast queries; older ones stay on disk.
"""

from __future__ import annotations

import json
import threading
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import AUDIT_FILENAME, AUDIT_MAX_IN_MEMORY
from .io_utils import _append_jsonl, _iter_jsonl
from .task_engine.model import Task, TaskStatus
from .utils import _now_ms

REVIEW_TOP_LEVEL_FIELDS = ("reviewer", "status")
REVIEW_METADATA_FIELDS = (
    "reviewer_approved",
    "review_state",
    "approved_by",
    "approved_at",
    "review_last_activity_at",
    "entered_validating_at",
    "review_delta_note",
    "approval_rejected",
)


@dataclass(frozen=True)
class AuditEntry:
    task_id: str
    field: str
    before: Any
    after: Any
    changed_by: Optional[str]
    changed_at: int
    context: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        return cls(
            task_id=str(data["task_id"]),
            field=str(data["field"]),
            before=data.get("before"),
            after=data.get("after"),
            changed_by=data.get("changed_by"),
            changed_at=int(data.get("changed_at") or 0),
            context=data.get("context"),
        )


def _status_value(task: Task) -> str:
    return task.status.value if isinstance(task.status, TaskStatus) else str(task.status)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def diff_review_fields(before: Task, after: Task) -> list[dict[str, Any]]:
    """Return ``[{field, before, after}]`` for every review field that changed.

    Status changes are only reported when either side is ``validating``.
    Identical snapshots always produce an empty list.
    """
    changes: list[dict[str, Any]] = []

    if (before.reviewer or None) != (after.reviewer or None):
        changes.append({"field": "reviewer", "before": before.reviewer, "after": after.reviewer})

    old_status, new_status = _status_value(before), _status_value(after)
    validating = TaskStatus.VALIDATING.value
    if old_status != new_status and validating in (old_status, new_status):
        changes.append({"field": "status", "before": old_status, "after": new_status})

    for name in REVIEW_METADATA_FIELDS:
        old_value = before.metadata.get(name)
        new_value = after.metadata.get(name)
        if _canonical(old_value) != _canonical(new_value):
            changes.append({"field": f"metadata.{name}", "before": old_value, "after": new_value})

    return changes


class AuditLedger:
    """JSONL-backed audit ledger with a bounded in-memory index.

    Parameters
    ----------
    state_dir:
        The ``.crew_board/`` directory; the ledger file lives inside it.
    max_in_memory:
        Number of most recent entries kept in memory.
    """

    def __init__(self, state_dir: Path, *, max_in_memory: int = AUDIT_MAX_IN_MEMORY) -> None:
        self.path = state_dir / AUDIT_FILENAME
        self._lock = threading.Lock()
        self._entries: deque[AuditEntry] = deque(maxlen=max_in_memory)
        self._load()

    def _load(self) -> None:
        loaded = 0
        for payload in _iter_jsonl(self.path):
            try:
                self._entries.append(AuditEntry.from_dict(payload))
                loaded += 1
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed audit entry: {}", payload)
        if loaded:
            logger.debug("Loaded {} audit entries from {}", loaded, self.path)

    def append(self, entry: AuditEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            _append_jsonl(self.path, entry.to_dict())

    def record_mutation(
        self,
        before: Task,
        after: Task,
        *,
        actor: Optional[str],
        context: Optional[str] = None,
        now_ms: Optional[int] = None,
    ) -> list[AuditEntry]:
        """Diff *before*/*after* and append one entry per changed review field."""
        changed_at = now_ms if now_ms is not None else _now_ms()
        entries = [
            AuditEntry(
                task_id=after.id,
                field=change["field"],
                before=change["before"],
                after=change["after"],
                changed_by=actor,
                changed_at=changed_at,
                context=context,
            )
            for change in diff_review_fields(before, after)
        ]
        for entry in entries:
            self.append(entry)
        return entries

    def list_entries(self, task_id: Optional[str] = None, limit: Optional[int] = 100) -> list[AuditEntry]:
        """Most recent first, optionally filtered to one task."""
        with self._lock:
            items = [e for e in self._entries if task_id is None or e.task_id == task_id]
        items.reverse()
        if limit is not None and limit >= 0:
            items = items[:limit]
        return items
