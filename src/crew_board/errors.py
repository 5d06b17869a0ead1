"""Error taxonomy for the task lifecycle engine.

Every rejection carries a machine-readable ``code`` (and ``gate`` for gate
failures) plus a human-readable hint naming the concrete missing field.
Mapping these onto HTTP status codes is the web layer's job; ``status_class``
only records which class a gate belongs to.
"""

from __future__ import annotations

from typing import Any, Optional


class CrewBoardError(Exception):
    """Base class for all domain errors raised by crew_board."""

    code = "CREW_BOARD_ERROR"
    status_class = 400

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        if self.hint:
            data["hint"] = self.hint
        return data


class ValidationError(CrewBoardError):
    """Malformed or missing required fields."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, hint: Optional[str] = None) -> None:
        super().__init__(message, hint=hint)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class StateTransitionError(CrewBoardError):
    """An edge outside the legal status graph was requested."""

    code = "STATE_TRANSITION_REJECTED"

    def __init__(self, from_status: str, to_status: str, *, hint: Optional[str] = None) -> None:
        super().__init__(
            f"{self.code}: illegal status transition {from_status}→{to_status}",
            hint=hint or "Set metadata.reopen=true with metadata.reopen_reason to move a task backwards.",
        )
        self.from_status = from_status
        self.to_status = to_status

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["details"] = {"from": self.from_status, "to": self.to_status}
        return data


# gate id -> HTTP status class the caller should map it to
GATE_STATUS_CLASS: dict[str, int] = {
    "transition_metadata": 400,
    "model_validation": 400,
    "action_message_contract": 400,
    "reviewer_identity": 403,
    "wip_cap": 422,
    "artifact_path": 422,
    "review_packet": 422,
    "review_handoff": 422,
    "review_delta": 422,
    "duplicate_evidence": 422,
    "artifacts": 422,
    "reviewer_signoff": 422,
    "pr_link": 422,
    "follow_on_linkage": 422,
}


class GateError(CrewBoardError):
    """A quality gate rejected the mutation."""

    code = "GATE_REJECTED"

    def __init__(
        self,
        gate: str,
        error: str,
        *,
        hint: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(error, hint=hint)
        self.gate = gate
        self.details = details or {}

    @property
    def status_class(self) -> int:  # type: ignore[override]
        return GATE_STATUS_CLASS.get(self.gate, 422)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": False, "error": self.message, "gate": self.gate}
        if self.hint:
            data["hint"] = self.hint
        if self.details:
            data["details"] = self.details
        return data


class NotFoundError(CrewBoardError):
    code = "NOT_FOUND"
    status_class = 404


class AmbiguousPrefixError(CrewBoardError):
    """A short id prefix matched more than one task."""

    code = "AMBIGUOUS_PREFIX"
    status_class = 400

    def __init__(self, prefix: str, suggestions: list[str]) -> None:
        super().__init__(
            f"Task id prefix '{prefix}' is ambiguous ({len(suggestions)} matches)",
            hint="Use a longer prefix or the full task id.",
        )
        self.prefix = prefix
        self.suggestions = suggestions

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["suggestions"] = list(self.suggestions)
        return data
