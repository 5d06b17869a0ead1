"""Task engine — CRUD plus the gated mutation transaction.

This is the primary entry-point for all task manipulation. A PATCH runs as
one logical transaction::

    resolve id → per-id lock → PR merge lookup (closes only) → store lock
        → transition check → gates → write → (after commit) audit + sync

The PR lookup is network I/O, so it runs before the board-wide store lock
is taken; only the per-id lock is held while it waits.

Gates see a single consistent before-snapshot and the write only happens
when every gate passes. Audit/sync failures after commit are logged and
reported in :attr:`MutationResult.side_effect_errors`; they never undo the
write.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, NoReturn, Optional

from loguru import logger

from ..agents.assignment import AssignmentEngine
from ..agents.registry import AgentRegistry
from ..config import DEFAULT_POLICY, PolicyConfig
from ..errors import AmbiguousPrefixError, NotFoundError, ValidationError
from ..pr_status import PrStatusLookup
from ..utils import _now_ms
from .gates import DEFAULT_GATES, Gate, GateContext, lookup_pr_merged, run_gates
from .metadata import REQUEST_SCOPED_KEYS, merge_metadata, parse_metadata
from .model import DEFAULT_ETA_BY_PRIORITY, Task, TaskPriority, TaskStatus, _generate_id
from .store import TaskStore
from .transitions import check_transition

if TYPE_CHECKING:
    from ..audit import AuditEntry, AuditLedger
    from ..sync_ledger import SyncLedger

SYNC_RECORD_TYPE = "task"

# Written only by the engine/gates; ignored when a client sends them.
SYSTEM_STAMPED_KEYS = frozenset({
    "approved_by",
    "approved_at",
    "reopened_at",
    "reopened_from",
    "last_transition",
    "wip_override_used",
    "handoff_fingerprint",
    "entered_validating_at",
})

# Review outcome; only a patch that passes reviewer_identity may set these.
REVIEW_OUTCOME_KEYS = frozenset({"reviewer_approved", "review_state", "approval_rejected"})

_APPROVAL_CLEARED: dict[str, Any] = {"reviewer_approved": None, "approved_by": None, "approved_at": None}

_PATCHABLE_FIELDS = frozenset({
    "title",
    "description",
    "status",
    "priority",
    "tags",
    "team_id",
    "assignee",
    "reviewer",
    "done_criteria",
    "blocked_by",
    "comment_count",
    "metadata",
})
_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "created_by", "updated_at"})


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class MutationResult:
    task: Task
    changed_fields: list[str] = field(default_factory=list)
    audit_entries: list["AuditEntry"] = field(default_factory=list)
    side_effect_errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": True,
            "task": self.task.to_dict(),
            "changed_fields": list(self.changed_fields),
        }
        if self.side_effect_errors:
            data["side_effect_errors"] = list(self.side_effect_errors)
        return data


class _KeyedLocks:
    """One ``threading.Lock`` per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _clean_list(values: Any, field_name: str) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple, set)):
        raise ValidationError(f"'{field_name}' must be an array", field=field_name)
    out: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in out:
            out.append(text)
    return out


def _client_metadata(raw: Any, field_name: str = "metadata") -> dict[str, Any]:
    """Drop system-stamped keys from client-supplied metadata."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(f"'{field_name}' must be an object", field=field_name)
    dropped = SYSTEM_STAMPED_KEYS.intersection(raw)
    if dropped:
        logger.debug("Ignoring system-stamped metadata keys from client: {}", sorted(dropped))
    return {k: v for k, v in raw.items() if k not in SYSTEM_STAMPED_KEYS}


def _parse_status(value: Any) -> TaskStatus:
    try:
        return TaskStatus(str(value))
    except ValueError:
        valid = ", ".join(s.value for s in TaskStatus)
        raise ValidationError(f"Unknown status '{value}' (valid: {valid})", field="status") from None


def _parse_priority(value: Any) -> TaskPriority:
    try:
        return TaskPriority(str(value))
    except ValueError:
        raise ValidationError(f"Unknown priority '{value}' (valid: P0, P1, P2, P3)", field="priority") from None


def _would_cycle(tasks_by_id: dict[str, Task], task_id: str, blocked_by: list[str]) -> bool:
    """True if *task_id* is reachable from any of its proposed blockers."""
    visited: set[str] = set()
    queue: deque[str] = deque(blocked_by)
    while queue:
        current = queue.popleft()
        if current == task_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        node = tasks_by_id.get(current)
        if node:
            queue.extend(node.blocked_by)
    return False


def _changed_fields(before: Task, after: Task) -> list[str]:
    old, new = before.to_dict(), after.to_dict()
    return sorted(k for k in new if k != "updated_at" and old.get(k) != new.get(k))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TaskEngine:
    """Manage the lifecycle of tasks on the shared board.

    Parameters
    ----------
    state_dir:
        Path to the ``.crew_board/`` directory.
    policy:
        Immutable policy (model catalog, thresholds).
    registry:
        Agent roles used for WIP caps and reviewer auto-assignment.
    audit, sync:
        Optional side-effect sinks invoked after each committed mutation.
    pr_lookup:
        Optional PR merge-status lookup for the ``pr_link`` close gate.
    clock:
        Returns "now" in epoch ms; tests pin it.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        policy: PolicyConfig = DEFAULT_POLICY,
        registry: Optional[AgentRegistry] = None,
        audit: Optional["AuditLedger"] = None,
        sync: Optional["SyncLedger"] = None,
        pr_lookup: Optional[PrStatusLookup] = None,
        clock: Optional[Callable[[], int]] = None,
        gates: tuple[Gate, ...] = DEFAULT_GATES,
    ) -> None:
        self.store = TaskStore(state_dir)
        self.policy = policy
        self.registry = registry or AgentRegistry(policy.agents)
        self.assignment = AssignmentEngine(self.registry)
        self.audit = audit
        self.sync = sync
        self.pr_lookup = pr_lookup
        self.gates = gates
        self._clock = clock or _now_ms
        self._locks = _KeyedLocks()

    def now(self) -> int:
        return self._clock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, id_or_prefix: str) -> Task:
        """Look a task up by full id or unique id prefix.

        Raises:
            NotFoundError: nothing matches.
            AmbiguousPrefixError: the prefix matches several tasks.
        """
        key = (id_or_prefix or "").strip()
        if not key:
            raise NotFoundError("Task id is required")
        with self.store.transaction() as tx:
            task = tx.get(key)
            if task is not None:
                return task
            matches = tx.ids_with_prefix(key)
            if len(matches) == 1:
                return tx.get(matches[0])
        if len(matches) > 1:
            raise AmbiguousPrefixError(key, matches[:10])
        return self._not_found(key)

    @staticmethod
    def _not_found(key: str) -> NoReturn:
        raise NotFoundError(f"Task not found: {key}", hint="Check the id with `crew-board task list`.")

    def list_tasks(
        self,
        status: Optional[str] = None,
        assignee: Optional[str] = None,
        team_id: Optional[str] = None,
        updated_since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[Task]:
        if status is not None:
            status = _parse_status(status).value
        with self.store.transaction() as tx:
            return tx.find(
                status=status,
                assignee=assignee,
                team_id=team_id,
                updated_since=updated_since,
                limit=limit,
            )

    def next_task(self, agent: str) -> Optional[Task]:
        """Next available todo task for *agent* (priority, then age)."""
        return self.assignment.next_task(agent, self.store.read_snapshot())

    # ------------------------------------------------------------------
    # Create / delete
    # ------------------------------------------------------------------

    def create_task(self, draft: dict[str, Any], actor: Optional[str] = None) -> Task:
        """Validate and persist a new ``todo`` task.

        Raises:
            ValidationError: missing title/done_criteria, bad enum values,
                unknown ``blocked_by`` ids, or malformed metadata.
        """
        errors = Task.validate_dict(draft)
        if errors:
            raise ValidationError("; ".join(errors), hint="Tasks need a title and at least one done_criteria item.")

        # A new task has no reviewer sign-off yet, whatever the draft says.
        metadata = {
            k: v for k, v in _client_metadata(draft.get("metadata")).items()
            if k not in REQUEST_SCOPED_KEYS and k not in REVIEW_OUTCOME_KEYS
        }
        parse_metadata(metadata)

        now = self.now()
        priority = _parse_priority(draft.get("priority") or TaskPriority.P3.value)
        if not metadata.get("eta"):
            metadata["eta"] = DEFAULT_ETA_BY_PRIORITY[priority.value]

        task = Task(
            id=_generate_id(now),
            title=str(draft["title"]).strip(),
            description=str(draft.get("description") or ""),
            status=TaskStatus.TODO,
            priority=priority,
            tags=_clean_list(draft.get("tags"), "tags"),
            team_id=draft.get("team_id"),
            assignee=draft.get("assignee") or None,
            reviewer=draft.get("reviewer") or None,
            done_criteria=_clean_list(draft.get("done_criteria"), "done_criteria"),
            blocked_by=_clean_list(draft.get("blocked_by"), "blocked_by"),
            created_by=draft.get("created_by") or actor,
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )

        with self.store.transaction() as tx:
            unknown = [dep for dep in task.blocked_by if tx.get(dep) is None]
            if unknown:
                raise ValidationError(
                    f"blocked_by references unknown task(s): {', '.join(unknown)}",
                    field="blocked_by",
                )
            if task.reviewer:
                task.reviewer = self.assignment.resolve_reviewer(task.reviewer, task, tx.list_all(), now_ms=now)
            tx.add(task)

        logger.info("Created task {} ({})", task.id, task.title)
        self._mark_sync_pending(task, [])
        return task

    def delete_task(self, id_or_prefix: str, actor: Optional[str] = None) -> bool:
        """Remove a task and drop it from other tasks' ``blocked_by`` lists."""
        task_id = self.get_task(id_or_prefix).id
        with self._locks.get(task_id):
            with self.store.transaction() as tx:
                if not tx.hard_remove(task_id):
                    self._not_found(task_id)
                for other in tx.list_all():
                    if task_id in other.blocked_by:
                        other.blocked_by = [b for b in other.blocked_by if b != task_id]
                        other.touch(self.now())
        self._locks.discard(task_id)
        logger.info("Deleted task {} (by {})", task_id, actor or "unknown")
        self._mark_sync_pending(Task(id=task_id, updated_at=self.now()), [])
        return True

    # ------------------------------------------------------------------
    # Patch
    # ------------------------------------------------------------------

    def patch_task(
        self,
        id_or_prefix: str,
        partial: dict[str, Any],
        actor: Optional[str] = None,
        *,
        context: Optional[str] = None,
    ) -> MutationResult:
        """Apply a partial update through the transition validator and gates.

        Raises:
            ValidationError: malformed patch or metadata.
            StateTransitionError: illegal status edge without reopen.
            GateError: the first failing gate.
            NotFoundError / AmbiguousPrefixError: bad id.
        """
        if not isinstance(partial, dict):
            raise ValidationError("Patch body must be an object")
        immutable = _IMMUTABLE_FIELDS.intersection(partial)
        if immutable:
            raise ValidationError(f"Field(s) cannot be changed: {', '.join(sorted(immutable))}", field=sorted(immutable)[0])
        unknown = set(partial) - _PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

        request_raw = _client_metadata(partial.get("metadata"))
        request = parse_metadata(request_raw)

        task_id = self.get_task(id_or_prefix).id
        with self._locks.get(task_id):
            pr_merged_remote = self._prefetch_pr_state(task_id, partial, request_raw)
            with self.store.transaction() as tx:
                before = tx.get(task_id)
                if before is None:
                    self._not_found(task_id)
                now = self.now()

                to_status: Optional[TaskStatus] = None
                check = None
                if "status" in partial:
                    target = _parse_status(partial["status"])
                    if target != before.status:
                        to_status = target
                        check = check_transition(before.status, target, request)

                after = before.copy()
                self._apply_fields(after, partial, tx.list_all(), now)

                persisted = {k: v for k, v in request_raw.items() if k not in REQUEST_SCOPED_KEYS}
                after.metadata = merge_metadata(before.metadata, persisted)
                if to_status is not None:
                    after.status = to_status

                ctx = GateContext(
                    before=before,
                    after=after,
                    request=request,
                    meta=parse_metadata(after.metadata),
                    actor=actor,
                    to_status=to_status,
                    tasks=tuple(tx.list_all()),
                    registry=self.registry,
                    policy=self.policy,
                    now_ms=now,
                    pr_merged_remote=pr_merged_remote,
                )
                stamps = run_gates(ctx, self.gates)
                stamps.update(self._lifecycle_stamps(before, after, check, request, now))
                after.metadata = merge_metadata(after.metadata, stamps)

                changed = _changed_fields(before, after)
                if not changed:
                    return MutationResult(task=before)
                after.touch(now)
                tx.replace(after)

        logger.info("Patched task {} ({}) by {}", task_id, ", ".join(changed), actor or "unknown")
        result = MutationResult(task=after, changed_fields=changed)
        self._run_side_effects(before, after, actor, context, result)
        return result

    def _prefetch_pr_state(self, task_id: str, partial: dict[str, Any], request_raw: dict[str, Any]) -> Optional[bool]:
        """Merge state of the PR a close would be gated on, fetched outside the store lock.

        The caller holds the per-id lock, so the task's tags and metadata
        cannot move between this read and the transaction.
        """
        if self.pr_lookup is None or "status" not in partial:
            return None
        if _parse_status(partial["status"]) != TaskStatus.DONE:
            return None
        current = self.store.get_one(task_id)
        if current is None or current.status == TaskStatus.DONE:
            return None
        tags = current.tags
        if "tags" in partial:
            tags = sorted({t.lower() for t in _clean_list(partial["tags"], "tags")})
        persisted = {k: v for k, v in request_raw.items() if k not in REQUEST_SCOPED_KEYS}
        meta = parse_metadata(merge_metadata(current.metadata, persisted))
        return lookup_pr_merged(self.pr_lookup, tags, meta)

    def _apply_fields(self, task: Task, partial: dict[str, Any], tasks: list[Task], now: int) -> None:
        if "title" in partial:
            title = str(partial["title"] or "").strip()
            if not title:
                raise ValidationError("'title' must be non-empty", field="title")
            task.title = title
        if "description" in partial:
            task.description = str(partial["description"] or "")
        if "priority" in partial:
            task.priority = _parse_priority(partial["priority"])
        if "tags" in partial:
            task.tags = sorted({t.lower() for t in _clean_list(partial["tags"], "tags")})
        if "team_id" in partial:
            task.team_id = partial["team_id"] or None
        if "assignee" in partial:
            task.assignee = partial["assignee"] or None
        if "done_criteria" in partial:
            criteria = _clean_list(partial["done_criteria"], "done_criteria")
            if not criteria:
                raise ValidationError("'done_criteria' must contain at least one item", field="done_criteria")
            task.done_criteria = criteria
        if "comment_count" in partial:
            try:
                task.comment_count = max(0, int(partial["comment_count"]))
            except (TypeError, ValueError):
                raise ValidationError("'comment_count' must be an integer", field="comment_count") from None
        if "blocked_by" in partial:
            task.blocked_by = self._validate_blocked_by(task.id, _clean_list(partial["blocked_by"], "blocked_by"), tasks)
        if "reviewer" in partial:
            task.reviewer = self.assignment.resolve_reviewer(partial["reviewer"] or None, task, tasks, now_ms=now)

    @staticmethod
    def _validate_blocked_by(task_id: str, blocked_by: list[str], tasks: list[Task]) -> list[str]:
        if task_id in blocked_by:
            raise ValidationError("A task cannot block itself", field="blocked_by")
        by_id = {t.id: t for t in tasks}
        unknown = [dep for dep in blocked_by if dep not in by_id]
        if unknown:
            raise ValidationError(f"blocked_by references unknown task(s): {', '.join(unknown)}", field="blocked_by")
        if _would_cycle(by_id, task_id, blocked_by):
            raise ValidationError("blocked_by would create a dependency cycle", field="blocked_by")
        return blocked_by

    @staticmethod
    def _lifecycle_stamps(
        before: Task,
        after: Task,
        check: Any,
        request: Any,
        now: int,
    ) -> dict[str, Any]:
        stamps: dict[str, Any] = {}
        if check is not None:
            reason = None
            kind = "status_change"
            if check.transition:
                kind, reason = check.transition["type"], check.transition["reason"]
            elif check.reopened:
                kind, reason = "reopen", request.reopen_reason
            stamps["last_transition"] = {
                "type": kind,
                "reason": reason,
                "at": now,
                "from": check.from_status.value,
                "to": check.to_status.value,
            }
            if check.reopened:
                stamps.update(
                    reopened_at=now,
                    reopened_from=check.from_status.value,
                    review_state=None,
                    **_APPROVAL_CLEARED,
                )

            if check.to_status == TaskStatus.VALIDATING:
                # Each review round needs its own sign-off.
                stamps.update(
                    review_state="queued",
                    entered_validating_at=now,
                    review_last_activity_at=now,
                    **_APPROVAL_CLEARED,
                )
            elif check.from_status == TaskStatus.VALIDATING and check.to_status == TaskStatus.DOING:
                stamps.update(
                    review_state="changes_requested",
                    approval_rejected=True,
                    **_APPROVAL_CLEARED,
                )
        elif after.status == TaskStatus.VALIDATING and before.to_dict() != after.to_dict():
            stamps["review_last_activity_at"] = now
        return stamps

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _run_side_effects(
        self,
        before: Task,
        after: Task,
        actor: Optional[str],
        context: Optional[str],
        result: MutationResult,
    ) -> None:
        if self.audit is not None:
            try:
                result.audit_entries = self.audit.record_mutation(
                    before, after, actor=actor, context=context or "patch_task", now_ms=after.updated_at
                )
            except Exception as exc:
                logger.exception("Audit append failed for {}", after.id)
                result.side_effect_errors.append(f"audit: {exc}")
        self._mark_sync_pending(after, result.side_effect_errors)

    def _mark_sync_pending(self, task: Task, errors: list[str]) -> None:
        if self.sync is None:
            return
        try:
            self.sync.mark_pending(SYNC_RECORD_TYPE, task.id, task.updated_at)
        except Exception as exc:
            logger.exception("Sync ledger update failed for {}", task.id)
            errors.append(f"sync: {exc}")
