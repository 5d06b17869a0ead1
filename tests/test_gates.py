"""Unit tests for the transition validator and individual quality gates."""

from __future__ import annotations

from typing import Any, Optional

import pytest

from crew_board.agents.registry import AgentRegistry
from crew_board.config import DEFAULT_POLICY, policy_from_dict
from crew_board.errors import GateError, StateTransitionError, ValidationError
from crew_board.task_engine.gates import (
    DEFAULT_GATES,
    GateContext,
    artifact_path_gate,
    duplicate_evidence_gate,
    follow_on_linkage_gate,
    lookup_pr_merged,
    model_validation_gate,
    normalize_artifact_path,
    pr_link_gate,
    review_handoff_gate,
    review_packet_gate,
    run_gates,
)
from crew_board.task_engine.metadata import TaskMetadata, parse_metadata
from crew_board.task_engine.model import Task, TaskStatus
from crew_board.task_engine.transitions import LEGAL_EDGES, check_transition, legal_targets

NOW = 1_760_011_200_000


def _ctx(
    before: Task,
    to_status: Optional[TaskStatus],
    *,
    meta: Optional[dict[str, Any]] = None,
    request: Optional[dict[str, Any]] = None,
    tasks: tuple[Task, ...] = (),
    policy=DEFAULT_POLICY,
    pr_merged_remote: Optional[bool] = None,
    actor: Optional[str] = None,
) -> GateContext:
    after = before.copy()
    after.metadata = dict(meta or {})
    if to_status is not None:
        after.status = to_status
    return GateContext(
        before=before,
        after=after,
        request=parse_metadata(request or {}),
        meta=parse_metadata(after.metadata),
        actor=actor,
        to_status=to_status,
        tasks=tasks or (before,),
        registry=AgentRegistry(),
        policy=policy,
        now_ms=NOW,
        pr_merged_remote=pr_merged_remote,
    )


def _task(status: TaskStatus = TaskStatus.DOING, **kwargs: Any) -> Task:
    return Task(id="task-1-abc123", title="t", status=status, done_criteria=["x"], **kwargs)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class TestTransitions:
    def test_legal_graph(self) -> None:
        assert len(LEGAL_EDGES) == 6
        assert legal_targets(TaskStatus.DOING) == ["blocked", "validating"]
        assert legal_targets(TaskStatus.DONE) == []

    @pytest.mark.parametrize("frm,to", [
        (TaskStatus.TODO, TaskStatus.VALIDATING),
        (TaskStatus.DONE, TaskStatus.DOING),
        (TaskStatus.BLOCKED, TaskStatus.DONE),
    ])
    def test_illegal_edges(self, frm: TaskStatus, to: TaskStatus) -> None:
        with pytest.raises(StateTransitionError):
            check_transition(frm, to, TaskMetadata())

    def test_reopen_allows_backward_edge(self) -> None:
        request = parse_metadata({"reopen": True, "reopen_reason": "regression found"})
        check = check_transition(TaskStatus.DONE, TaskStatus.DOING, request)
        assert check.reopened is True

    def test_reopen_must_be_strict_bool(self) -> None:
        with pytest.raises(ValidationError) as exc:
            parse_metadata({"reopen": "yes"})
        assert exc.value.field == "metadata.reopen"

    def test_blocked_transition_payload(self) -> None:
        request = parse_metadata({"transition": {"type": " pause ", "reason": "waiting on keys"}})
        check = check_transition(TaskStatus.DOING, TaskStatus.BLOCKED, request)
        assert check.transition == {"type": "pause", "reason": "waiting on keys"}

    def test_blocked_without_payload(self) -> None:
        with pytest.raises(GateError) as exc:
            check_transition(TaskStatus.DOING, TaskStatus.BLOCKED, TaskMetadata())
        assert exc.value.gate == "transition_metadata"
        assert exc.value.status_class == 400


# ---------------------------------------------------------------------------
# Entry to doing
# ---------------------------------------------------------------------------

class TestModelValidation:
    def test_alias_resolves_to_canonical(self) -> None:
        result = model_validation_gate(_ctx(_task(TaskStatus.TODO), TaskStatus.DOING, meta={"model": "sonnet"}))
        assert result.ok
        assert result.stamps == {"model": "anthropic/claude-sonnet-4-5"}

    def test_unknown_model_rejected(self) -> None:
        result = model_validation_gate(_ctx(_task(TaskStatus.TODO), TaskStatus.DOING, meta={"model": "gpt-2"}))
        assert not result.ok
        assert result.error == "Unknown model identifier: gpt-2"

    def test_default_model_stamped(self) -> None:
        policy = policy_from_dict({"models": {"default": "openai/gpt-5"}})
        result = model_validation_gate(_ctx(_task(TaskStatus.TODO), TaskStatus.DOING, policy=policy))
        assert result.stamps == {"model": "openai/gpt-5"}

    def test_only_on_entry_to_doing(self) -> None:
        result = model_validation_gate(_ctx(_task(), None, meta={"model": "gpt-2"}))
        assert result.ok


# ---------------------------------------------------------------------------
# Entry to validating
# ---------------------------------------------------------------------------

class TestArtifactPath:
    @pytest.mark.parametrize("raw,expected", [
        ("process/TASK-abc.md", "process/TASK-abc.md"),
        ("./process//TASK-abc.md", "process/TASK-abc.md"),
        ("process\\notes\\TASK-abc.md", "process/notes/TASK-abc.md"),
    ])
    def test_normalizes(self, raw: str, expected: str) -> None:
        assert normalize_artifact_path(raw) == (expected, None)

    @pytest.mark.parametrize("raw,needle", [
        ("/etc/passwd", "absolute"),
        ("C:/work/TASK.md", "absolute"),
        ("https://example.com/a.md", "URL"),
        ("process/../secrets.md", ".."),
        ("docs/TASK.md", "process/"),
    ])
    def test_rejects(self, raw: str, needle: str) -> None:
        canonical, error = normalize_artifact_path(raw)
        assert canonical is None
        assert needle in error

    def test_gate_stamps_canonical_path(self) -> None:
        result = artifact_path_gate(_ctx(_task(), TaskStatus.VALIDATING, meta={"artifact_path": "./process/T.md"}))
        assert result.stamps == {"artifact_path": "process/T.md"}

    def test_falls_back_to_handoff_path(self) -> None:
        meta = {"review_handoff": {"artifact_path": "process/T.md"}}
        result = artifact_path_gate(_ctx(_task(), TaskStatus.VALIDATING, meta=meta))
        assert result.ok
        assert result.stamps == {"artifact_path": "process/T.md"}

    def test_missing_path(self) -> None:
        result = artifact_path_gate(_ctx(_task(), TaskStatus.VALIDATING))
        assert not result.ok
        assert "metadata.artifact_path" in result.error


class TestReviewPacketAndHandoff:
    def test_non_code_lane_skips_packet(self) -> None:
        result = review_packet_gate(_ctx(_task(), TaskStatus.VALIDATING, meta={"lane": "design"}))
        assert result.ok

    def test_packet_missing_fields_named(self) -> None:
        meta = {"qa_bundle": {"review_packet": {"task_id": "task-1-abc123", "changed_files": []}}}
        result = review_packet_gate(_ctx(_task(), TaskStatus.VALIDATING, meta=meta))
        assert not result.ok
        assert result.details["missing"] == ["pr_url", "commit", "artifact_path", "caveats", "changed_files"]

    def test_doc_only_handoff_needs_no_pr(self) -> None:
        meta = {"review_handoff": {
            "task_id": "task-1-abc123",
            "repo": "acme/board",
            "artifact_path": "process/T.md",
            "test_proof": "n/a (docs)",
            "known_caveats": "none",
            "doc_only": True,
        }}
        assert review_handoff_gate(_ctx(_task(), TaskStatus.VALIDATING, meta=meta)).ok

    def test_code_handoff_needs_pr_and_commit(self) -> None:
        meta = {"review_handoff": {
            "task_id": "task-1-abc123",
            "repo": "acme/board",
            "artifact_path": "process/T.md",
            "test_proof": "pytest",
            "known_caveats": "none",
            "pr_url": "https://github.com/acme/board/pull/1",
        }}
        result = review_handoff_gate(_ctx(_task(), TaskStatus.VALIDATING, meta=meta))
        assert not result.ok
        assert result.details["missing"] == ["commit_sha"]


# ---------------------------------------------------------------------------
# Duplicate closure
# ---------------------------------------------------------------------------

class TestDuplicateEvidence:
    def test_requires_target_and_proof(self) -> None:
        result = duplicate_evidence_gate(_ctx(_task(), None, meta={"auto_close_reason": "duplicate"}))
        assert not result.ok
        assert result.details["field"] == "metadata.duplicate_of.task_id"

        meta = {"auto_close_reason": "duplicate", "duplicate_of": {"task_id": "task-2-def456"}, "proof": "same"}
        result = duplicate_evidence_gate(_ctx(_task(), None, meta=meta))
        assert result.details["field"] == "metadata.proof"

    def test_self_duplicate_rejected(self) -> None:
        meta = {"auto_close_reason": "dup", "duplicate_of": {"task_id": "task-1-abc123"}, "proof": "x" * 40}
        assert not duplicate_evidence_gate(_ctx(_task(), None, meta=meta)).ok

    def test_valid_proof(self) -> None:
        meta = {
            "auto_closed": True,
            "duplicate_of": {"task_id": "task-2-def456"},
            "proof": "Same done criteria and title as task-2-def456",
        }
        assert duplicate_evidence_gate(_ctx(_task(), None, meta=meta)).ok


# ---------------------------------------------------------------------------
# Close gates
# ---------------------------------------------------------------------------

class _Lookup:
    def __init__(self, merged: Optional[bool]) -> None:
        self.merged = merged
        self.calls: list[str] = []

    def is_merged(self, pr_url: str) -> Optional[bool]:
        self.calls.append(pr_url)
        return self.merged


class TestCloseGates:
    def test_pr_waiver_needs_reason(self) -> None:
        before = _task(TaskStatus.VALIDATING, tags=["backend"])
        result = pr_link_gate(_ctx(before, TaskStatus.DONE, meta={"pr_waiver": True}))
        assert result.details["field"] == "metadata.pr_waiver_reason"
        result = pr_link_gate(_ctx(before, TaskStatus.DONE, meta={"pr_waiver": True, "pr_waiver_reason": "config only"}))
        assert result.ok

    def test_code_task_without_pr(self) -> None:
        before = _task(TaskStatus.VALIDATING, tags=["backend"])
        assert not pr_link_gate(_ctx(before, TaskStatus.DONE)).ok

    def test_docs_task_skips_pr(self) -> None:
        before = _task(TaskStatus.VALIDATING, tags=["docs"])
        assert pr_link_gate(_ctx(before, TaskStatus.DONE)).ok

    def test_explicit_unmerged_when_lookup_unavailable(self) -> None:
        before = _task(TaskStatus.VALIDATING)
        meta = {"pr_url": "https://github.com/acme/board/pull/9", "pr_merged": False}
        assert not pr_link_gate(_ctx(before, TaskStatus.DONE, meta=meta, pr_merged_remote=None)).ok

    def test_remote_merge_state_decides(self) -> None:
        before = _task(TaskStatus.VALIDATING, tags=["backend"])
        meta = {"pr_url": "https://github.com/acme/board/pull/9"}
        assert not pr_link_gate(_ctx(before, TaskStatus.DONE, meta=meta, pr_merged_remote=False)).ok
        assert pr_link_gate(_ctx(before, TaskStatus.DONE, meta=meta, pr_merged_remote=True)).ok

    def test_lookup_skipped_when_not_needed(self) -> None:
        lookup = _Lookup(True)
        pr_url = "https://github.com/acme/board/pull/9"
        assert lookup_pr_merged(lookup, ["docs"], parse_metadata({"lane": "docs"})) is None
        assert lookup_pr_merged(lookup, ["backend"], parse_metadata({"pr_url": pr_url, "pr_merged": True})) is None
        assert lookup_pr_merged(None, ["backend"], parse_metadata({"pr_url": pr_url})) is None
        assert lookup.calls == []

        assert lookup_pr_merged(lookup, ["backend"], parse_metadata({"pr_url": pr_url})) is True
        assert lookup.calls == [pr_url]

    def test_follow_on_linkage(self) -> None:
        before = _task(TaskStatus.VALIDATING)
        other = Task(id="task-2-def456", title="build it", done_criteria=["x"])
        tasks = (before, other)

        result = follow_on_linkage_gate(_ctx(before, TaskStatus.DONE, meta={"task_type": "spec"}, tasks=tasks))
        assert not result.ok

        meta = {"task_type": "spec", "follow_on_task_id": "task-2-def456"}
        assert follow_on_linkage_gate(_ctx(before, TaskStatus.DONE, meta=meta, tasks=tasks)).ok

        meta = {"task_type": "research", "follow_on_na": True, "follow_on_na_reason": "no action needed"}
        assert follow_on_linkage_gate(_ctx(before, TaskStatus.DONE, meta=meta, tasks=tasks)).ok

        meta = {"task_type": "spec", "follow_on_task_id": "task-9-missing"}
        assert not follow_on_linkage_gate(_ctx(before, TaskStatus.DONE, meta=meta, tasks=tasks)).ok


class TestRunGates:
    def test_first_failure_short_circuits(self) -> None:
        before = _task(TaskStatus.VALIDATING, reviewer="harmony")
        with pytest.raises(GateError) as exc:
            run_gates(_ctx(before, TaskStatus.DONE), DEFAULT_GATES)
        assert exc.value.gate == "artifacts"
        assert exc.value.to_dict()["success"] is False

    def test_stamps_flow_to_later_gates(self) -> None:
        before = _task(TaskStatus.VALIDATING, reviewer="harmony")
        meta = {"artifacts": ["process/T.md"], "lane": "docs", "reviewer_approved": True}
        ctx = _ctx(before, TaskStatus.DONE, meta=meta, request={"reviewer_approved": True}, actor="harmony")
        stamps = run_gates(ctx, DEFAULT_GATES)
        assert stamps["approved_by"] == "harmony"
        assert stamps["review_state"] == "approved"


class TestMetadataView:
    def test_undeclared_keys_are_carried_as_extras(self) -> None:
        assert "shipped_at" not in TaskMetadata.model_fields
        meta = parse_metadata({"shipped_at": 5, "eta": "~1h"})
        assert meta.eta == "~1h"
