"""Quality gates for task mutations.

Each gate is a plain function ``(GateContext) -> GateResult``. A gate that
does not apply to the mutation at hand simply passes. :func:`run_gates` runs
them in :data:`DEFAULT_GATES` order, stops at the first failure, and threads
the metadata stamps of passing gates into the context seen by later gates.

Gates never touch the store; everything they need is on the context.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, Sequence

from loguru import logger

from ..agents.assignment import check_wip
from ..agents.registry import AgentRegistry
from ..config import PolicyConfig
from ..errors import GateError
from ..pr_status import PrStatusLookup
from .metadata import (
    FOLLOW_ON_TASK_TYPES,
    TaskMetadata,
    is_code_lane,
    is_code_tagged,
    merge_metadata,
    parse_metadata,
)
from .model import Task, TaskStatus

# Minimum non-whitespace characters for duplicate-closure proof.
MIN_DUPLICATE_PROOF_CHARS = 20

ARTIFACT_ROOT = "process/"

_DRIVE_LETTER = re.compile(r"^[A-Za-z]:")


# ---------------------------------------------------------------------------
# Context / result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GateContext:
    """Everything a gate may look at for one mutation.

    ``before`` is the stored task; ``after`` is the proposed task with the
    request applied. ``request`` is the typed view of the patch's own
    metadata, ``meta`` the typed view of the merged (after) metadata.
    ``to_status`` is ``None`` when the patch does not change status.
    ``pr_merged_remote`` is the merge state fetched before the store lock was
    taken (see :func:`lookup_pr_merged`); ``None`` means unknown.
    """

    before: Task
    after: Task
    request: TaskMetadata
    meta: TaskMetadata
    actor: Optional[str]
    to_status: Optional[TaskStatus]
    tasks: tuple[Task, ...]
    registry: AgentRegistry
    policy: PolicyConfig
    now_ms: int
    pr_merged_remote: Optional[bool] = None

    @property
    def from_status(self) -> TaskStatus:
        return self.before.status

    def entering(self, status: TaskStatus) -> bool:
        return self.to_status == status and self.before.status != status


@dataclass
class GateResult:
    gate: str
    ok: bool
    error: Optional[str] = None
    hint: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    stamps: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def passed(cls, gate: str, **stamps: Any) -> "GateResult":
        return cls(gate=gate, ok=True, stamps=stamps)

    @classmethod
    def failed(
        cls,
        gate: str,
        error: str,
        hint: Optional[str] = None,
        **details: Any,
    ) -> "GateResult":
        return cls(gate=gate, ok=False, error=error, hint=hint, details=details)

    def to_error(self) -> GateError:
        return GateError(self.gate, self.error or f"{self.gate} gate failed", hint=self.hint, details=self.details)


Gate = Callable[[GateContext], GateResult]


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


# ---------------------------------------------------------------------------
# Entry to doing
# ---------------------------------------------------------------------------

def model_validation_gate(ctx: GateContext) -> GateResult:
    gate = "model_validation"
    if not ctx.entering(TaskStatus.DOING):
        return GateResult.passed(gate)
    models = ctx.policy.models
    requested = (ctx.meta.model or "").strip()
    if not requested:
        if models.default:
            return GateResult.passed(gate, model=models.default)
        return GateResult.passed(gate)
    canonical = models.aliases.get(requested.lower(), requested)
    known = {m.lower(): m for m in models.known}
    if canonical.lower() not in known:
        return GateResult.failed(
            gate,
            f"Unknown model identifier: {requested}",
            hint=f"Use one of: {', '.join(sorted(models.known))} (aliases: {', '.join(sorted(models.aliases))})",
            model=requested,
        )
    resolved = known[canonical.lower()]
    if resolved != requested:
        return GateResult.passed(gate, model=resolved)
    return GateResult.passed(gate)


def wip_cap_gate(ctx: GateContext) -> GateResult:
    gate = "wip_cap"
    if not ctx.entering(TaskStatus.DOING) or not ctx.after.assignee:
        return GateResult.passed(gate)
    check = check_wip(
        ctx.registry,
        ctx.after.assignee,
        ctx.tasks,
        exclude_id=ctx.before.id,
        override=ctx.request.wip_override,
    )
    if not check.allowed:
        return GateResult.failed(
            gate,
            check.message or "WIP cap reached",
            hint="Include metadata.wip_override with reason to proceed.",
            wip_count=check.wip_count,
            wip_cap=check.wip_cap,
        )
    if check.message:
        logger.info("Task {}: {}", ctx.before.id, check.message)
        return GateResult.passed(gate, wip_override_used=True)
    return GateResult.passed(gate)


# ---------------------------------------------------------------------------
# Entry to validating
# ---------------------------------------------------------------------------

def normalize_artifact_path(raw: str) -> tuple[Optional[str], Optional[str]]:
    """Return ``(canonical_path, error)`` for a proposed artifact path."""
    path = raw.strip().replace("\\", "/")
    if "://" in path or path.lower().startswith(("http:", "https:", "file:")):
        return None, "artifact_path must be a repo-relative path, not a URL"
    if path.startswith("/") or _DRIVE_LETTER.match(path):
        return None, "artifact_path must be repo-relative, not absolute"
    while path.startswith("./"):
        path = path[2:]
    segments = path.split("/")
    if ".." in segments:
        return None, "artifact_path must not contain '..'"
    path = "/".join(s for s in segments if s and s != ".")
    if not path.startswith(ARTIFACT_ROOT) or path == ARTIFACT_ROOT.rstrip("/"):
        return None, f"artifact_path must live under {ARTIFACT_ROOT}"
    return path, None


def artifact_path_gate(ctx: GateContext) -> GateResult:
    gate = "artifact_path"
    if not ctx.entering(TaskStatus.VALIDATING):
        return GateResult.passed(gate)
    raw = ctx.meta.artifact_path
    if _blank(raw) and ctx.meta.review_handoff is not None:
        raw = ctx.meta.review_handoff.artifact_path
    if _blank(raw):
        return GateResult.failed(
            gate,
            "Entering validating requires metadata.artifact_path",
            hint=f"Set metadata.artifact_path to a file under {ARTIFACT_ROOT} (e.g. process/TASK-{ctx.before.id[-6:]}.md)",
            field="metadata.artifact_path",
        )
    canonical, error = normalize_artifact_path(str(raw))
    if error:
        return GateResult.failed(gate, error, hint=f"Use a path like {ARTIFACT_ROOT}TASK-<id>.md", artifact_path=raw)
    if canonical != ctx.meta.artifact_path:
        return GateResult.passed(gate, artifact_path=canonical)
    return GateResult.passed(gate)


_PACKET_FIELDS = ("task_id", "pr_url", "commit", "changed_files", "artifact_path", "caveats")


def review_packet_gate(ctx: GateContext) -> GateResult:
    gate = "review_packet"
    if not ctx.entering(TaskStatus.VALIDATING) or not is_code_lane(ctx.meta):
        return GateResult.passed(gate)
    packet = ctx.meta.qa_bundle.review_packet if ctx.meta.qa_bundle else None
    if packet is None:
        return GateResult.failed(
            gate,
            "Code-lane tasks require metadata.qa_bundle.review_packet before validating",
            hint="Provide qa_bundle.review_packet with " + ", ".join(_PACKET_FIELDS),
            missing=list(_PACKET_FIELDS),
        )
    missing = [name for name in _PACKET_FIELDS if _blank(getattr(packet, name))]
    if packet.changed_files is not None and not packet.changed_files:
        missing.append("changed_files")
    if missing:
        return GateResult.failed(
            gate,
            f"review_packet is missing {', '.join(missing)}",
            hint="Fill in qa_bundle.review_packet." + ", qa_bundle.review_packet.".join(missing),
            missing=missing,
        )
    if packet.task_id != ctx.before.id:
        return GateResult.failed(
            gate,
            f"review packet task mismatch: packet is for {packet.task_id}, task is {ctx.before.id}",
            hint="qa_bundle.review_packet.task_id must equal the task id",
            expected=ctx.before.id,
            actual=packet.task_id,
        )
    return GateResult.passed(gate)


_HANDOFF_FIELDS = ("task_id", "repo", "artifact_path", "test_proof", "known_caveats")


def review_handoff_gate(ctx: GateContext) -> GateResult:
    gate = "review_handoff"
    if not ctx.entering(TaskStatus.VALIDATING):
        return GateResult.passed(gate)
    handoff = ctx.meta.review_handoff
    if handoff is None:
        return GateResult.failed(
            gate,
            "Entering validating requires metadata.review_handoff",
            hint="Provide review_handoff with " + ", ".join(_HANDOFF_FIELDS),
            missing=list(_HANDOFF_FIELDS),
        )
    missing = [name for name in _HANDOFF_FIELDS if _blank(getattr(handoff, name))]
    if missing:
        return GateResult.failed(
            gate,
            f"review_handoff is missing {', '.join(missing)}",
            hint="Fill in review_handoff." + ", review_handoff.".join(missing),
            missing=missing,
        )
    if handoff.task_id != ctx.before.id:
        return GateResult.failed(
            gate,
            f"review_handoff task mismatch: handoff is for {handoff.task_id}, task is {ctx.before.id}",
            hint="review_handoff.task_id must equal the task id",
            expected=ctx.before.id,
            actual=handoff.task_id,
        )
    has_pr = not _blank(handoff.pr_url) and not _blank(handoff.commit_sha)
    if not (has_pr or handoff.doc_only or handoff.non_code):
        return GateResult.failed(
            gate,
            "review_handoff needs pr_url and commit_sha (or doc_only/non_code=true)",
            hint="Add review_handoff.pr_url + review_handoff.commit_sha, or set review_handoff.doc_only=true",
            missing=[n for n in ("pr_url", "commit_sha") if _blank(getattr(handoff, n))],
        )
    return GateResult.passed(gate)


def review_delta_gate(ctx: GateContext) -> GateResult:
    gate = "review_delta"
    if not ctx.entering(TaskStatus.VALIDATING) or ctx.meta.review_handoff is None:
        return GateResult.passed(gate)
    current = ctx.meta.review_handoff.fingerprint()
    previous = ctx.before.metadata.get("handoff_fingerprint")
    if previous and previous == current and _blank(ctx.request.review_delta_note):
        return GateResult.failed(
            gate,
            "Resubmitting an unchanged review handoff requires metadata.review_delta_note",
            hint="Explain what changed since the last review in metadata.review_delta_note",
            fingerprint=current,
        )
    return GateResult.passed(gate, handoff_fingerprint=current)


# ---------------------------------------------------------------------------
# Any mutation
# ---------------------------------------------------------------------------

def _is_duplicate_closure(meta: TaskMetadata) -> bool:
    reason = (meta.auto_close_reason or "").lower()
    if "duplicate" in reason or reason.startswith("dup"):
        return True
    return meta.auto_closed is True and meta.duplicate_of is not None


def duplicate_evidence_gate(ctx: GateContext) -> GateResult:
    gate = "duplicate_evidence"
    if not _is_duplicate_closure(ctx.meta):
        return GateResult.passed(gate)
    target = ctx.meta.duplicate_of.task_id if ctx.meta.duplicate_of else None
    if _blank(target):
        return GateResult.failed(
            gate,
            "Duplicate closure requires metadata.duplicate_of.task_id",
            hint="Point duplicate_of.task_id at the canonical task",
            field="metadata.duplicate_of.task_id",
        )
    if target == ctx.before.id:
        return GateResult.failed(gate, "A task cannot be a duplicate of itself", hint="Use the canonical task id")
    proof = "".join((ctx.meta.proof or "").split())
    if len(proof) < MIN_DUPLICATE_PROOF_CHARS:
        return GateResult.failed(
            gate,
            "Duplicate closure requires metadata.proof explaining the overlap",
            hint=f"Write at least {MIN_DUPLICATE_PROOF_CHARS} characters of proof (links, matching criteria)",
            field="metadata.proof",
        )
    return GateResult.passed(gate)


def reviewer_identity_gate(ctx: GateContext) -> GateResult:
    gate = "reviewer_identity"
    if ctx.request.reviewer_approved is not True:
        return GateResult.passed(gate)
    reviewer = ctx.before.reviewer or ""
    actor = (ctx.actor or "").strip()
    if not reviewer:
        return GateResult.failed(
            gate,
            "Cannot approve a task with no assigned reviewer",
            hint="Set the task's reviewer before approving",
        )
    if not actor or actor.lower() != reviewer.lower():
        return GateResult.failed(
            gate,
            f"Only the assigned reviewer ({reviewer}) may set reviewer_approved",
            hint="Approve as the task's reviewer",
            reviewer=reviewer,
            actor=actor or None,
        )
    return GateResult.passed(
        gate,
        approved_by=actor,
        approved_at=ctx.now_ms,
        review_state="approved",
        approval_rejected=None,
    )


# ---------------------------------------------------------------------------
# Entry to done (close gates)
# ---------------------------------------------------------------------------

def artifacts_gate(ctx: GateContext) -> GateResult:
    gate = "artifacts"
    if not ctx.entering(TaskStatus.DONE):
        return GateResult.passed(gate)
    if not ctx.meta.artifacts:
        return GateResult.failed(
            gate,
            "Closing a task requires metadata.artifacts",
            hint="List the delivered artifacts (paths or links) in metadata.artifacts",
            field="metadata.artifacts",
        )
    return GateResult.passed(gate)


def reviewer_signoff_gate(ctx: GateContext) -> GateResult:
    gate = "reviewer_signoff"
    if not ctx.entering(TaskStatus.DONE):
        return GateResult.passed(gate)
    reviewer = (ctx.after.reviewer or "").lower()
    approved_by = (ctx.meta.approved_by or "").lower()
    if ctx.meta.reviewer_approved is not True or not reviewer or approved_by != reviewer:
        return GateResult.failed(
            gate,
            "Closing a task requires sign-off from its reviewer",
            hint=f"Ask {ctx.after.reviewer or 'the reviewer'} to set metadata.reviewer_approved=true",
            reviewer=ctx.after.reviewer,
            approved_by=ctx.meta.approved_by,
        )
    return GateResult.passed(gate)


def pending_pr_url(tags: Sequence[str], meta: TaskMetadata) -> Optional[str]:
    """PR link whose merge state :func:`pr_link_gate` still needs, if any."""
    if not is_code_tagged(tags, meta) or meta.pr_waiver is True or meta.pr_merged is True:
        return None
    return meta.effective_pr_url() or None


def lookup_pr_merged(lookup: Optional[PrStatusLookup], tags: Sequence[str], meta: TaskMetadata) -> Optional[bool]:
    """Ask *lookup* about the task's PR. Call this without holding the store lock."""
    if lookup is None:
        return None
    pr_url = pending_pr_url(tags, meta)
    if pr_url is None:
        return None
    return lookup.is_merged(pr_url)


def pr_link_gate(ctx: GateContext) -> GateResult:
    gate = "pr_link"
    if not ctx.entering(TaskStatus.DONE) or not is_code_tagged(ctx.after.tags, ctx.meta):
        return GateResult.passed(gate)
    if ctx.meta.pr_waiver is True:
        if _blank(ctx.meta.pr_waiver_reason):
            return GateResult.failed(
                gate,
                "pr_waiver requires metadata.pr_waiver_reason",
                hint="Explain why this code task ships without a merged PR",
                field="metadata.pr_waiver_reason",
            )
        return GateResult.passed(gate)
    pr_url = ctx.meta.effective_pr_url()
    if not pr_url:
        return GateResult.failed(
            gate,
            "Code tasks require a PR link before closing",
            hint="Set metadata.pr_url (or pr_waiver=true with pr_waiver_reason)",
            field="metadata.pr_url",
        )
    if ctx.meta.pr_merged is True:
        return GateResult.passed(gate)
    merged = ctx.pr_merged_remote
    if merged is None and ctx.meta.pr_merged is False:
        merged = False
    if merged is False:
        return GateResult.failed(
            gate,
            f"PR is not merged: {pr_url}",
            hint="Merge the PR before closing, or set pr_waiver=true with pr_waiver_reason",
            pr_url=pr_url,
        )
    if merged is None:
        logger.warning("PR status unavailable for {}; letting {} close", pr_url, ctx.before.id)
    return GateResult.passed(gate)


def follow_on_linkage_gate(ctx: GateContext) -> GateResult:
    gate = "follow_on_linkage"
    if not ctx.entering(TaskStatus.DONE):
        return GateResult.passed(gate)
    if (ctx.meta.task_type or "").strip().lower() not in FOLLOW_ON_TASK_TYPES:
        return GateResult.passed(gate)
    follow_on = (ctx.meta.follow_on_task_id or "").strip()
    if follow_on:
        known = {t.id for t in ctx.tasks}
        if follow_on == ctx.before.id or follow_on not in known:
            return GateResult.failed(
                gate,
                f"follow_on_task_id {follow_on} does not name another existing task",
                hint="Create the follow-on task first and link its id",
                follow_on_task_id=follow_on,
            )
        return GateResult.passed(gate)
    if ctx.meta.follow_on_na is True and not _blank(ctx.meta.follow_on_na_reason):
        return GateResult.passed(gate)
    return GateResult.failed(
        gate,
        f"{ctx.meta.task_type} tasks must link a follow-on task before closing",
        hint="Set metadata.follow_on_task_id, or follow_on_na=true with follow_on_na_reason",
        field="metadata.follow_on_task_id",
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

DEFAULT_GATES: tuple[Gate, ...] = (
    model_validation_gate,
    wip_cap_gate,
    artifact_path_gate,
    review_packet_gate,
    review_handoff_gate,
    review_delta_gate,
    duplicate_evidence_gate,
    reviewer_identity_gate,
    artifacts_gate,
    reviewer_signoff_gate,
    pr_link_gate,
    follow_on_linkage_gate,
)


def run_gates(ctx: GateContext, gates: Sequence[Gate] = DEFAULT_GATES) -> dict[str, Any]:
    """Run *gates* in order and return the accumulated metadata stamps.

    Raises:
        GateError: for the first gate that fails; later gates do not run.
    """
    stamps: dict[str, Any] = {}
    for gate in gates:
        result = gate(ctx)
        if not result.ok:
            logger.info("Gate {} rejected {}: {}", result.gate, ctx.before.id, result.error)
            raise result.to_error()
        if result.stamps:
            stamps.update(result.stamps)
            merged = merge_metadata(ctx.after.metadata, stamps)
            ctx = replace(ctx, meta=parse_metadata(merged))
    return stamps
