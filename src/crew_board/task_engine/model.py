"""Task model for the shared team board.

A task moves through a small, fixed status graph
(todo → doing → validating → done, with a blocked side-track). Review
evidence and lifecycle stamps live in ``metadata``; see
:mod:`crew_board.task_engine.metadata` for the typed view used by gates.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..utils import _coerce_ms, _now_ms


class TaskStatus(str, Enum):
    TODO = "todo"
    DOING = "doing"
    BLOCKED = "blocked"
    VALIDATING = "validating"
    DONE = "done"


class TaskPriority(str, Enum):
    """Urgency band; ``P0`` sorts first, unset tasks land in ``P3``."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def sort_key(self) -> int:
        return int(self.value[1:])


# Stamped as metadata.eta when a task is created without one.
DEFAULT_ETA_BY_PRIORITY: dict[str, str] = {
    "P0": "~30m",
    "P1": "~2h",
    "P2": "~4h",
    "P3": "~1d",
}

_PRIORITY_VALUES = tuple(p.value for p in TaskPriority)


def _generate_id(now_ms: Optional[int] = None) -> str:
    """Sortable task ID: ``task-<epoch-ms>-<6hex>``."""
    return f"task-{now_ms if now_ms is not None else _now_ms()}-{uuid.uuid4().hex[:6]}"


def _normalize_tags(tags: Any) -> list[str]:
    if not tags:
        return []
    return sorted({str(t).strip().lower() for t in tags if str(t).strip()})


def _enum_or(enum_cls: type[Enum], raw: Any, fallback: Enum) -> Any:
    try:
        return enum_cls(str(raw)) if raw else fallback
    except ValueError:
        return fallback


@dataclass
class Task:
    """A unit of work on the shared board.

    Timestamps are epoch milliseconds. ``tags`` has set semantics and is kept
    sorted and de-duplicated so snapshots compare cleanly.
    """

    id: str = field(default_factory=_generate_id)
    title: str = ""
    description: str = ""

    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.P3
    tags: list[str] = field(default_factory=list)
    team_id: Optional[str] = None

    assignee: Optional[str] = None
    reviewer: Optional[str] = None

    done_criteria: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    comment_count: int = 0

    created_by: Optional[str] = None
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    # Free-form; gates read it through metadata.parse_metadata.
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.tags = _normalize_tags(self.tags)

    @classmethod
    def validate_dict(cls, data: dict[str, Any]) -> list[str]:
        """Problems with a creation draft, one message per field; empty when usable."""
        if not isinstance(data, dict):
            return ["task draft must be an object"]
        problems: list[str] = []
        if not str(data.get("title") or "").strip():
            problems.append("'title' is required and must be non-empty")
        criteria = data.get("done_criteria")
        if not isinstance(criteria, list) or not any(str(c).strip() for c in criteria):
            problems.append("'done_criteria' is required and must contain at least one item")
        if data.get("priority") is not None and data["priority"] not in _PRIORITY_VALUES:
            problems.append(f"'priority' must be one of {list(_PRIORITY_VALUES)}, got {data['priority']!r}")
        if data.get("status") not in (None, TaskStatus.TODO.value):
            problems.append(f"'status' must be 'todo' at creation, got {data['status']!r}")
        problems.extend(
            f"'{name}' must be an array"
            for name in ("tags", "blocked_by")
            if data.get(name) is not None and not isinstance(data[name], (list, tuple, set))
        )
        if data.get("metadata") is not None and not isinstance(data["metadata"], dict):
            problems.append("'metadata' must be an object")
        return problems

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "tags": list(self.tags),
            "team_id": self.team_id,
            "assignee": self.assignee,
            "reviewer": self.reviewer,
            "done_criteria": list(self.done_criteria),
            "blocked_by": list(self.blocked_by),
            "comment_count": self.comment_count,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": copy.deepcopy(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Rebuild a stored row; unknown status or priority values fall back to defaults."""
        now = _now_ms()
        return cls(
            id=str(data.get("id") or _generate_id()),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            status=_enum_or(TaskStatus, data.get("status"), TaskStatus.TODO),
            priority=_enum_or(TaskPriority, data.get("priority"), TaskPriority.P3),
            tags=list(data.get("tags") or []),
            team_id=data.get("team_id"),
            assignee=data.get("assignee"),
            reviewer=data.get("reviewer"),
            done_criteria=[str(c) for c in data.get("done_criteria") or []],
            blocked_by=[str(b) for b in data.get("blocked_by") or []],
            comment_count=int(data.get("comment_count") or 0),
            created_by=data.get("created_by"),
            created_at=_coerce_ms(data.get("created_at")) or now,
            updated_at=_coerce_ms(data.get("updated_at")) or now,
            metadata=copy.deepcopy(dict(data.get("metadata") or {})),
        )

    def copy(self) -> "Task":
        return Task.from_dict(self.to_dict())

    def touch(self, now_ms: Optional[int] = None) -> None:
        self.updated_at = now_ms if now_ms is not None else _now_ms()

    def is_assigned_to(self, agent: Optional[str]) -> bool:
        return bool(agent) and (self.assignee or "").lower() == str(agent).lower()

    @property
    def is_terminal(self) -> bool:
        return self.status == TaskStatus.DONE
