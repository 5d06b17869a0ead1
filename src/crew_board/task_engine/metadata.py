"""Typed view over ``Task.metadata``.

The metadata bag stays a plain dict on disk, but every key a gate reads is
declared here as an optional, independently typed sub-structure. Parsing
happens once at the mutation boundary so gates never do ad-hoc string-keyed
lookups. Unknown keys are preserved untouched.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictBool
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError

TextOrList = Union[str, list[str]]

# Keys that only describe the request itself and are never stored.
REQUEST_SCOPED_KEYS = frozenset({"reopen", "transition"})

NON_CODE_LANES = frozenset({"design", "docs", "research", "content", "ops"})
CODE_TAGS = frozenset({"code", "backend", "frontend", "api", "bug", "feature", "refactor"})
FOLLOW_ON_TASK_TYPES = frozenset({"spec", "research"})


class _Section(BaseModel):
    model_config = ConfigDict(extra="allow")


class TransitionInfo(_Section):
    type: Optional[str] = None
    reason: Optional[str] = None


class ReviewPacket(_Section):
    task_id: Optional[str] = None
    pr_url: Optional[str] = None
    commit: Optional[str] = None
    changed_files: Optional[list[str]] = None
    artifact_path: Optional[str] = None
    caveats: Optional[TextOrList] = None


class QaBundle(_Section):
    review_packet: Optional[ReviewPacket] = None
    checks: Optional[list[Any]] = None
    screenshots: Optional[list[str]] = None


class ReviewHandoff(_Section):
    task_id: Optional[str] = None
    repo: Optional[str] = None
    artifact_path: Optional[str] = None
    test_proof: Optional[TextOrList] = None
    known_caveats: Optional[TextOrList] = None
    pr_url: Optional[str] = None
    commit_sha: Optional[str] = None
    doc_only: StrictBool = False
    non_code: StrictBool = False

    def fingerprint(self) -> str:
        """Stable hash of the evidence a reviewer would look at."""
        payload = self.model_dump(mode="json", exclude_none=True)
        raw = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class DuplicateOf(_Section):
    task_id: Optional[str] = None


class TaskMetadata(_Section):
    """Every metadata key the lifecycle engine understands."""

    # request-scoped
    transition: Optional[TransitionInfo] = None
    reopen: Optional[StrictBool] = None
    reopen_reason: Optional[str] = None
    wip_override: Optional[Union[StrictBool, str]] = None

    # lane / classification
    lane: Optional[str] = None
    task_type: Optional[str] = None
    eta: Optional[str] = None
    model: Optional[str] = None

    # review evidence
    artifact_path: Optional[str] = None
    qa_bundle: Optional[QaBundle] = None
    review_handoff: Optional[ReviewHandoff] = None
    review_delta_note: Optional[str] = None
    handoff_fingerprint: Optional[str] = None

    # duplicate closure
    auto_closed: Optional[StrictBool] = None
    auto_close_reason: Optional[str] = None
    duplicate_of: Optional[DuplicateOf] = None
    proof: Optional[str] = None

    # review state
    reviewer_approved: Optional[StrictBool] = None
    review_state: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[int] = None
    approval_rejected: Optional[StrictBool] = None
    entered_validating_at: Optional[int] = None
    review_last_activity_at: Optional[int] = None

    # close gates
    artifacts: Optional[list[Any]] = None
    pr_url: Optional[str] = None
    pr_merged: Optional[StrictBool] = None
    pr_waiver: Optional[StrictBool] = None
    pr_waiver_reason: Optional[str] = None
    follow_on_task_id: Optional[str] = None
    follow_on_na: Optional[StrictBool] = None
    follow_on_na_reason: Optional[str] = None

    # lifecycle stamps
    last_transition: Optional[dict[str, Any]] = None
    reopened_at: Optional[int] = None
    reopened_from: Optional[str] = None
    wip_override_used: Optional[StrictBool] = None

    def is_non_code_handoff(self) -> bool:
        handoff = self.review_handoff
        return bool(handoff and (handoff.non_code or handoff.doc_only))

    def effective_pr_url(self) -> Optional[str]:
        if self.pr_url:
            return self.pr_url
        if self.review_handoff and self.review_handoff.pr_url:
            return self.review_handoff.pr_url
        packet = self.qa_bundle.review_packet if self.qa_bundle else None
        return packet.pr_url if packet else None


def parse_metadata(raw: Optional[dict[str, Any]], *, prefix: str = "metadata") -> TaskMetadata:
    """Validate *raw* into :class:`TaskMetadata`.

    Raises:
        ValidationError: naming the first malformed field.
    """
    try:
        return TaskMetadata.model_validate(dict(raw or {}))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(part) for part in first.get("loc", ()))
        field_name = f"{prefix}.{loc}" if loc else prefix
        raise ValidationError(
            f"Malformed {field_name}: {first.get('msg', 'invalid value')}",
            field=field_name,
            hint=f"Check the type of {field_name}.",
        ) from exc


def merge_metadata(current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Shallow-merge a metadata patch; ``None`` values delete keys."""
    merged = dict(current or {})
    for key, value in (patch or {}).items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def is_code_lane(meta: TaskMetadata) -> bool:
    if meta.is_non_code_handoff():
        return False
    return (meta.lane or "code").strip().lower() not in NON_CODE_LANES


def is_code_tagged(tags: list[str], meta: TaskMetadata) -> bool:
    if not is_code_lane(meta):
        return False
    return bool(CODE_TAGS.intersection(tags)) or bool(meta.effective_pr_url())
