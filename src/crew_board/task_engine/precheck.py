"""Transition precheck — tell an agent what a move will need before trying it.

The precheck dry-runs the real gate pipeline against the stored task (every
gate, not just the first failure) and adds a few advisory items plus
auto-defaults such as a suggested ETA or artifact path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from ..errors import CrewBoardError, GateError, ValidationError
from .engine import TaskEngine
from .gates import GateContext, lookup_pr_merged
from .metadata import TaskMetadata, parse_metadata
from .model import DEFAULT_ETA_BY_PRIORITY, TaskStatus
from .transitions import check_transition


@dataclass
class PrecheckItem:
    field: str
    severity: str  # error | warning | info
    message: str
    hint: Optional[str] = None
    gate: Optional[str] = None
    auto_default: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class PrecheckResult:
    task_id: str
    current_status: str
    target_status: str
    items: list[PrecheckItem] = field(default_factory=list)
    auto_defaults: dict[str, Any] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return not any(item.severity == "error" for item in self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "current_status": self.current_status,
            "target_status": self.target_status,
            "ready": self.ready,
            "items": [i.to_dict() for i in self.items],
            "auto_defaults": dict(self.auto_defaults),
        }


def suggested_artifact_path(task_id: str) -> str:
    return f"process/TASK-{task_id.split('-')[-1]}.md"


def precheck(
    engine: TaskEngine,
    task_id: str,
    target_status: str,
    actor: Optional[str] = None,
) -> PrecheckResult:
    """Report every requirement for moving *task_id* to *target_status*.

    Raises:
        NotFoundError / AmbiguousPrefixError: for a bad id.
        ValidationError: for an unknown target status.
    """
    task = engine.get_task(task_id)
    try:
        target = TaskStatus(target_status)
    except ValueError:
        raise ValidationError(f"Unknown status '{target_status}'", field="target_status") from None

    result = PrecheckResult(task_id=task.id, current_status=task.status.value, target_status=target.value)
    meta = parse_metadata(task.metadata)

    if target != task.status:
        try:
            check_transition(task.status, target, TaskMetadata())
        except GateError as exc:
            result.items.append(PrecheckItem("metadata.transition", "error", exc.message, exc.hint, exc.gate))
        except CrewBoardError as exc:
            result.items.append(PrecheckItem("status", "error", exc.message, exc.hint))

    if target == TaskStatus.DOING and not (meta.eta or "").strip():
        eta = DEFAULT_ETA_BY_PRIORITY[task.priority.value]
        result.items.append(PrecheckItem(
            "metadata.eta",
            "warning",
            f'ETA missing; default "{eta}" for {task.priority.value}',
            "Provide an explicit ETA or accept the default.",
            auto_default=eta,
        ))
        result.auto_defaults["metadata.eta"] = eta

    if target == TaskStatus.VALIDATING:
        if not (meta.artifact_path or "").strip():
            result.auto_defaults["metadata.artifact_path"] = suggested_artifact_path(task.id)
        bundle = meta.qa_bundle
        if bundle is None or not bundle.checks:
            result.items.append(PrecheckItem(
                "metadata.qa_bundle.checks",
                "warning",
                "qa_bundle.checks recommended (e.g. test run summary)",
            ))
        if not (task.reviewer or "").strip():
            result.items.append(PrecheckItem(
                "reviewer",
                "warning",
                "No reviewer assigned; nobody can sign this task off",
                'Set reviewer (or "auto").',
            ))

    after = task.copy()
    after.status = target
    ctx = GateContext(
        before=task,
        after=after,
        request=TaskMetadata(),
        meta=meta,
        actor=actor,
        to_status=target if target != task.status else None,
        tasks=tuple(engine.store.read_snapshot()),
        registry=engine.registry,
        policy=engine.policy,
        now_ms=engine.now(),
        pr_merged_remote=lookup_pr_merged(engine.pr_lookup, task.tags, meta) if target == TaskStatus.DONE else None,
    )
    for gate in engine.gates:
        gate_result = gate(ctx)
        if gate_result.ok:
            continue
        item = PrecheckItem(
            field=str(gate_result.details.get("field") or gate_result.gate),
            severity="error",
            message=gate_result.error or gate_result.gate,
            hint=gate_result.hint,
            gate=gate_result.gate,
        )
        if gate_result.gate == "artifact_path":
            item.auto_default = result.auto_defaults.get("metadata.artifact_path")
        result.items.append(item)
    return result
