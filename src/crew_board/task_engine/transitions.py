"""Status edge validation.

The status graph is deliberately small::

    todo ──► doing ◄──► blocked
               │  ▲
               ▼  │ (reviewer rejection)
            validating ──► done

Anything else needs an explicit reopen (``metadata.reopen=true`` plus a
``reopen_reason``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..errors import GateError, StateTransitionError
from .metadata import TaskMetadata
from .model import TaskStatus

LEGAL_EDGES: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset({
    (TaskStatus.TODO, TaskStatus.DOING),
    (TaskStatus.DOING, TaskStatus.BLOCKED),
    (TaskStatus.BLOCKED, TaskStatus.DOING),
    (TaskStatus.DOING, TaskStatus.VALIDATING),
    (TaskStatus.VALIDATING, TaskStatus.DOING),
    (TaskStatus.VALIDATING, TaskStatus.DONE),
})


@dataclass(frozen=True)
class TransitionCheck:
    from_status: TaskStatus
    to_status: TaskStatus
    reopened: bool = False
    transition: Optional[dict[str, Any]] = None


def is_legal(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return (from_status, to_status) in LEGAL_EDGES


def legal_targets(from_status: TaskStatus) -> list[str]:
    return sorted(to.value for frm, to in LEGAL_EDGES if frm == from_status)


def check_transition(
    from_status: TaskStatus,
    to_status: TaskStatus,
    request: TaskMetadata,
) -> TransitionCheck:
    """Validate one status edge against the request metadata.

    Raises:
        StateTransitionError: for an illegal edge without a valid reopen.
        GateError: ``transition_metadata`` when doing→blocked lacks
            ``metadata.transition``.
    """
    reopened = False
    if not is_legal(from_status, to_status):
        reason = (request.reopen_reason or "").strip()
        if request.reopen is True and reason:
            reopened = True
        else:
            hint = None
            if request.reopen is True:
                hint = "metadata.reopen_reason must be a non-empty string"
            raise StateTransitionError(from_status.value, to_status.value, hint=hint)

    transition: Optional[dict[str, Any]] = None
    if from_status == TaskStatus.DOING and to_status == TaskStatus.BLOCKED:
        info = request.transition
        if info is None:
            raise GateError(
                "transition_metadata",
                "doing→blocked requires metadata.transition",
                hint='Send metadata.transition = {"type": "pause", "reason": "..."}',
            )
        missing = [name for name in ("type", "reason") if not (getattr(info, name) or "").strip()]
        if missing:
            raise GateError(
                "transition_metadata",
                f"metadata.transition is missing {', '.join(missing)}",
                hint="metadata.transition needs both type and reason",
                details={"missing": missing},
            )
        transition = {"type": info.type.strip(), "reason": info.reason.strip()}

    return TransitionCheck(
        from_status=from_status,
        to_status=to_status,
        reopened=reopened,
        transition=transition,
    )
