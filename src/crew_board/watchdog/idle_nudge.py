"""Idle-nudge decisions.

For each agent with presence, decide whether to stay quiet (``none``), send
a reminder (``warn``) or escalate to the leads (``escalate``). Every
decision records the reason it was reached, checked in this order:

    excluded → offline → below-warn-threshold → recent-activity-suppressed
    → task-validating → recent-shipped-cooldown → task-focus-window
    → cooldown-active → queue-clear | lane-ambiguous | lane-mismatch
    → eligible

Only the last group produces a message.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ..agents.assignment import is_available
from ..collab import Presence
from ..config import IdleNudgeConfig, TeamConfig
from ..constants import MINUTE_MS
from ..task_engine.model import Task, TaskStatus
from .snapshot import TeamSnapshot
from .status_format import STATUS_TEMPLATE, reports_shipped

_ETA = re.compile(r"^~?\s*(\d+(?:\.\d+)?)\s*(m|min|mins|minutes?|h|hr|hrs|hours?|d|days?)?$", re.IGNORECASE)
_UNIT_MINUTES = {"m": 1, "h": 60, "d": 24 * 60}


def parse_eta_minutes(eta: Optional[str]) -> Optional[int]:
    """``"~30m"`` → 30, ``"2h"`` → 120, ``"~1d"`` → 1440; anything else → None."""
    match = _ETA.match((eta or "").strip())
    if not match:
        return None
    value, unit = match.groups()
    return int(float(value) * _UNIT_MINUTES[(unit or "m")[0].lower()])


@dataclass(frozen=True)
class NudgeState:
    last_nudge_at: int
    last_tier: int  # 1 = warn, 2 = escalate


@dataclass(frozen=True)
class LaneResolution:
    state: str  # ok | no-active-lane | ambiguous-lane | presence-task-mismatch
    task_id: Optional[str] = None
    stale: bool = False
    candidates: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "task_id": self.task_id,
            "stale": self.stale,
            "candidates": list(self.candidates),
        }


@dataclass
class IdleNudgeDecision:
    agent: str
    decision: str  # none | warn | escalate
    reason: str
    idle_minutes: Optional[int]
    lane: LaneResolution
    tier: int = 0
    rendered_message: Optional[str] = None
    at: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def task_id(self) -> Optional[str]:
        return self.lane.task_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "decision": self.decision,
            "reason": self.reason,
            "idle_minutes": self.idle_minutes,
            "lane": self.lane.to_dict(),
            "rendered_message": self.rendered_message,
            "at": self.at,
        }


# ---------------------------------------------------------------------------
# Lane resolution
# ---------------------------------------------------------------------------

def resolve_lane(
    snapshot: TeamSnapshot,
    presence: Presence,
    config: IdleNudgeConfig,
    now_ms: int,
) -> LaneResolution:
    """Work out which doing task the agent is on right now."""
    doing = sorted(
        snapshot.tasks_for(presence.agent, TaskStatus.DOING),
        key=lambda t: t.updated_at,
        reverse=True,
    )
    ids = tuple(t.id for t in doing)
    max_age_ms = config.active_task_max_age_min * MINUTE_MS
    fresh = [t for t in doing if now_ms - t.updated_at <= max_age_ms]

    if presence.current_task:
        match = next((t for t in doing if t.id == presence.current_task), None)
        if match is None:
            return LaneResolution("presence-task-mismatch", presence.current_task, candidates=ids)
        return LaneResolution("ok", match.id, stale=match not in fresh, candidates=ids)
    if len(fresh) > 1:
        return LaneResolution("ambiguous-lane", None, candidates=tuple(t.id for t in fresh))
    if len(fresh) == 1:
        return LaneResolution("ok", fresh[0].id, candidates=ids)
    if doing:
        return LaneResolution("ok", doing[0].id, stale=True, candidates=ids)
    return LaneResolution("no-active-lane", None)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def _intro(agent: str, idle: int, tier: int, team: TeamConfig) -> str:
    if tier == 1:
        return f"@{agent} system reminder: you appear idle for {idle}m."
    leads = " ".join(f"@{lead}" for lead in team.escalate_to if lead != agent)
    prefix = f"@{agent} {leads}".strip()
    return f"{prefix} system escalation: {idle}m idle."


def render_message(
    agent: str,
    idle: int,
    tier: int,
    reason: str,
    lane: LaneResolution,
    team: TeamConfig,
    next_task: Optional[Task] = None,
) -> str:
    intro = _intro(agent, idle, tier, team)
    if reason == "queue-clear":
        if next_task is not None:
            pointer = (
                f"No active task on the board. Next available: {next_task.id} "
                f'"{next_task.title}" ({next_task.priority.value}). Claim it or post what you are picking up.'
            )
        else:
            pointer = "No active task and the queue is clear. Post what you are picking up next."
        return f"{intro} {pointer}"
    if reason == "lane-ambiguous":
        return (
            f"{intro} You have {len(lane.candidates)} active tasks ({', '.join(lane.candidates)}). "
            "Set your current task so the board knows which one you are on."
        )
    if reason == "lane-mismatch":
        doing = ", ".join(lane.candidates) or "none"
        return (
            f"{intro} Presence says {lane.task_id} but your doing tasks are: {doing}. "
            "Update your presence or the task status."
        )
    return f"{intro} Post a quick status update now.\nTask: {lane.task_id}\n{STATUS_TEMPLATE}"


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

def _minutes(now_ms: int, then_ms: Optional[int]) -> Optional[int]:
    if not then_ms:
        return None
    return max(0, (now_ms - then_ms) // MINUTE_MS)


def _focus_started_at(task: Task) -> int:
    last = task.metadata.get("last_transition")
    if isinstance(last, dict) and last.get("to") == TaskStatus.DOING.value and last.get("at"):
        return int(last["at"])
    return task.updated_at


def decide_for_agent(
    snapshot: TeamSnapshot,
    presence: Presence,
    config: IdleNudgeConfig,
    team: TeamConfig,
    now_ms: int,
    nudge_state: Mapping[str, NudgeState],
) -> IdleNudgeDecision:
    agent = presence.agent.lower()
    lane = resolve_lane(snapshot, presence, config, now_ms)
    lane_task = snapshot.task(lane.task_id) if lane.state == "ok" else None
    last_message = snapshot.last_message_from(agent)

    activity = [presence.last_update, last_message.timestamp if last_message else 0]
    if lane_task is not None:
        activity.append(lane_task.updated_at)
    idle = _minutes(now_ms, max(activity))
    tier = 2 if idle is not None and idle >= config.escalate_min else 1

    def none(reason: str, **details: Any) -> IdleNudgeDecision:
        return IdleNudgeDecision(agent, "none", reason, idle, lane, at=now_ms, details=details)

    if agent in config.excluded:
        return none("excluded")
    if presence.is_offline:
        return none("offline")
    if idle is None or idle < config.warn_min:
        return none("below-warn-threshold")

    suppress_ms = config.suppress_recent_min * MINUTE_MS
    if last_message and now_ms - last_message.timestamp < suppress_ms:
        return none("recent-activity-suppressed", source="chat")
    if lane.task_id:
        recent_comment = any(now_ms - c.timestamp < suppress_ms for c in snapshot.comments_on(lane.task_id))
        if recent_comment:
            return none("recent-activity-suppressed", source="task-comment")

    if lane.state != "ok" and snapshot.tasks_for(agent, TaskStatus.VALIDATING):
        return none("task-validating")

    ship_ms = config.ship_cooldown_min * MINUTE_MS
    shipped = [m for m in snapshot.messages_from(agent) if reports_shipped(m.content)]
    if shipped and now_ms - shipped[-1].timestamp < ship_ms and lane_task is not None and not lane.stale:
        return none("recent-shipped-cooldown")

    if lane_task is not None and not lane.stale:
        eta = parse_eta_minutes(lane_task.metadata.get("eta"))
        if eta:
            window = min(eta, config.active_task_max_age_min) * MINUTE_MS
            if now_ms - _focus_started_at(lane_task) < window:
                return none("task-focus-window", eta_minutes=eta)

    state = nudge_state.get(agent)
    if state is not None:
        since = now_ms - state.last_nudge_at
        if since < config.cooldown_min * MINUTE_MS and state.last_tier >= tier:
            return none("cooldown-active")

    next_task = None
    if lane.state == "no-active-lane":
        reason = "queue-clear"
        done_ids = {t.id for t in snapshot.tasks if t.is_terminal}
        available = [t for t in snapshot.tasks if is_available(t, agent, done_ids)]
        available.sort(key=lambda t: (t.priority.sort_key, t.created_at, t.id))
        next_task = available[0] if available else None
    elif lane.state == "ambiguous-lane":
        reason = "lane-ambiguous"
    elif lane.state == "presence-task-mismatch":
        reason = "lane-mismatch"
    else:
        reason = "eligible"

    return IdleNudgeDecision(
        agent=agent,
        decision="warn" if tier == 1 else "escalate",
        reason=reason,
        idle_minutes=idle,
        lane=lane,
        tier=tier,
        rendered_message=render_message(agent, idle, tier, reason, lane, team, next_task),
        at=now_ms,
    )


def evaluate_idle_nudges(
    snapshot: TeamSnapshot,
    config: IdleNudgeConfig,
    team: TeamConfig,
    now_ms: int,
    nudge_state: Optional[Mapping[str, NudgeState]] = None,
) -> list[IdleNudgeDecision]:
    """One decision per agent with presence, sorted by agent name."""
    state = nudge_state or {}
    return [
        decide_for_agent(snapshot, presence, config, team, now_ms, state)
        for presence in sorted(snapshot.presence, key=lambda p: p.agent)
        if presence.agent
    ]
