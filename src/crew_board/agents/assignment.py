"""Assignment engine — suggest who should take a task.

Scoring per agent (rounded to two decimals)::

    score = affinity + wip_penalty + throughput

- ``affinity``: affinity tags matched by the task's keywords, normalised so
  roughly a third of the keywords matching is a perfect fit (capped at 1.0).
- ``wip_penalty``: -0.5 at or over the WIP cap, otherwise -0.1 per doing task.
- ``throughput``: +0.05 per recent completion, capped at 0.2.

``always_route`` domains short-circuit scoring; ``never_route`` domains remove
an agent from the candidate list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from loguru import logger

from ..constants import HOUR_MS
from ..task_engine.model import Task, TaskStatus
from ..utils import _now_ms
from .registry import AgentRegistry, AgentRoleConfig

_KEYWORD_SPLIT = re.compile(r"[\s/\-_:,.()+]+")

THROUGHPUT_WINDOW_MS = 7 * 24 * HOUR_MS
AUTO_REVIEWER = "auto"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class AssignmentScore:
    agent: str
    score: float
    affinity: float
    wip_penalty: float
    throughput: float
    wip_count: int
    wip_cap: int

    @property
    def over_cap(self) -> bool:
        return self.wip_count >= self.wip_cap

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "score": self.score,
            "breakdown": {
                "affinity": self.affinity,
                "wip_penalty": self.wip_penalty,
                "throughput": self.throughput,
            },
            "wip_count": self.wip_count,
            "wip_cap": self.wip_cap,
            "over_cap": self.over_cap,
        }


@dataclass
class Suggestion:
    suggested: Optional[str]
    scores: list[AssignmentScore] = field(default_factory=list)
    protected_match: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "suggested": self.suggested,
            "scores": [s.to_dict() for s in self.scores],
        }
        if self.protected_match:
            data["protected_match"] = self.protected_match
        return data


@dataclass
class WipCheck:
    allowed: bool
    wip_count: int
    wip_cap: Optional[int]
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def extract_keywords(title: str, tags: Iterable[str] = (), done_criteria: Iterable[str] = ()) -> list[str]:
    """Lower-cased scoring keywords (words longer than two characters)."""
    text = " ".join([title or "", *tags, *done_criteria]).lower()
    return [w for w in _KEYWORD_SPLIT.split(text) if len(w) > 2]


def _matches(keywords: list[str], domain: str) -> bool:
    return any(domain in kw or kw in domain for kw in keywords)


def count_wip(tasks: Iterable[Task], agent: str, *, exclude_id: Optional[str] = None) -> int:
    """Number of ``doing`` tasks assigned to *agent* (case-insensitive)."""
    return sum(
        1 for t in tasks
        if t.status == TaskStatus.DOING and t.is_assigned_to(agent) and t.id != exclude_id
    )


def count_recent_completions(tasks: Iterable[Task], agent: str, now_ms: int) -> int:
    cutoff = now_ms - THROUGHPUT_WINDOW_MS
    return sum(
        1 for t in tasks
        if t.status == TaskStatus.DONE and t.is_assigned_to(agent) and t.updated_at >= cutoff
    )


def score_agent(
    role: AgentRoleConfig,
    keywords: list[str],
    wip_count: int,
    recent_completions: int = 0,
) -> AssignmentScore:
    matched = [tag for tag in role.affinity_tags if _matches(keywords, tag)]
    affinity = min(len(matched) / max(len(keywords) * 0.3, 1), 1.0) if matched else 0.0

    if wip_count >= role.wip_cap:
        wip_penalty = -0.5
    elif wip_count > 0:
        wip_penalty = round(-0.1 * wip_count, 2)
    else:
        wip_penalty = 0.0

    throughput = min(recent_completions * 0.05, 0.2)
    return AssignmentScore(
        agent=role.name,
        score=round(affinity + wip_penalty + throughput, 2),
        affinity=round(affinity, 2),
        wip_penalty=wip_penalty,
        throughput=round(throughput, 2),
        wip_count=wip_count,
        wip_cap=role.wip_cap,
    )


def check_wip(
    registry: AgentRegistry,
    agent: str,
    tasks: Iterable[Task],
    *,
    exclude_id: Optional[str] = None,
    override: Any = None,
) -> WipCheck:
    """WIP-cap check for moving one more task into ``doing`` for *agent*.

    Unknown agents have no cap.
    """
    role = registry.get(agent)
    if role is None:
        return WipCheck(allowed=True, wip_count=0, wip_cap=None)
    wip = count_wip(tasks, agent, exclude_id=exclude_id)
    if wip < role.wip_cap:
        return WipCheck(allowed=True, wip_count=wip, wip_cap=role.wip_cap)
    if override:
        return WipCheck(
            allowed=True,
            wip_count=wip,
            wip_cap=role.wip_cap,
            message=f"WIP cap ({role.wip_cap}) exceeded with override: {override}",
        )
    return WipCheck(
        allowed=False,
        wip_count=wip,
        wip_cap=role.wip_cap,
        message=f"WIP cap reached: {agent} has {wip}/{role.wip_cap} doing tasks",
    )


def is_available(task: Task, agent: Optional[str], done_ids: set[str]) -> bool:
    """A todo task the agent may pick up: unassigned or theirs, with no open blockers."""
    if task.status != TaskStatus.TODO:
        return False
    if task.assignee and not task.is_assigned_to(agent):
        return False
    return all(dep in done_ids for dep in task.blocked_by)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AssignmentEngine:
    """Rank agents for a task and pick work for an agent."""

    def __init__(self, registry: AgentRegistry) -> None:
        self.registry = registry

    def suggest(
        self,
        task: Task,
        tasks: list[Task],
        *,
        exclude: Iterable[str] = (),
        now_ms: Optional[int] = None,
    ) -> Suggestion:
        """Suggest the best assignee for *task*.

        Parameters
        ----------
        task:
            The task (or draft) being routed.
        tasks:
            Snapshot of the board, used for WIP and throughput.
        exclude:
            Agent names that must not be suggested (e.g. the assignee when
            picking a reviewer).
        """
        now = now_ms if now_ms is not None else _now_ms()
        excluded = {e.lower() for e in exclude if e}
        keywords = extract_keywords(task.title, task.tags, task.done_criteria)

        candidates = [
            r for r in self.registry.list_roles()
            if r.name not in excluded and not any(_matches(keywords, d) for d in r.never_route)
        ]

        for role in candidates:
            hit = next((d for d in role.always_route if _matches(keywords, d)), None)
            if hit:
                logger.debug("Task {} routed to {} via protected domain {}", task.id, role.name, hit)
                return Suggestion(
                    suggested=role.name,
                    protected_match=f'Protected domain "{hit}" → {role.name}',
                )

        scores = [
            score_agent(
                role,
                keywords,
                count_wip(tasks, role.name, exclude_id=task.id),
                count_recent_completions(tasks, role.name, now),
            )
            for role in candidates
        ]
        scores.sort(key=lambda s: (-s.score, s.wip_count, s.agent))

        top = scores[0] if scores else None
        suggested = top.agent if top and top.score > 0 and not top.over_cap else None
        return Suggestion(suggested=suggested, scores=scores)

    def resolve_reviewer(
        self,
        reviewer: Optional[str],
        task: Task,
        tasks: list[Task],
        *,
        now_ms: Optional[int] = None,
    ) -> Optional[str]:
        """Resolve ``reviewer="auto"`` to a concrete agent other than the assignee.

        Any other value is returned unchanged. Falls back to the first agent
        whose role is ``reviewer`` when no agent scores above zero.
        """
        if (reviewer or "").strip().lower() != AUTO_REVIEWER:
            return reviewer
        exclude = [task.assignee] if task.assignee else []
        suggestion = self.suggest(task, tasks, exclude=exclude, now_ms=now_ms)
        if suggestion.suggested:
            return suggestion.suggested
        for role in self.registry.list_roles():
            if role.role == "reviewer" and not task.is_assigned_to(role.name):
                return role.name
        logger.warning("Could not resolve an automatic reviewer for {}", task.id)
        return None

    def next_task(self, agent: str, tasks: list[Task]) -> Optional[Task]:
        """Highest-priority, oldest todo task *agent* can start right now."""
        done_ids = {t.id for t in tasks if t.is_terminal}
        available = [t for t in tasks if is_available(t, agent, done_ids)]
        available.sort(key=lambda t: (t.priority.sort_key, t.created_at, t.id))
        return available[0] if available else None
