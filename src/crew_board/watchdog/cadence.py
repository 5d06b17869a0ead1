"""Cadence watchdog — are the trio posting status on schedule?

Per trio agent the age of the last *valid* status update in the team
channel is compared with the role's cadence (leads 60m, workers 45m)::

    age > cadence              → violation
    age >= cadence - margin    → warning
    otherwise                  → ok

Violations, unresolved blockers and trio-wide silence (at or past its
threshold) become incidents, each of which renders one alert message keyed
for cooldown bookkeeping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import CadenceConfig, TeamConfig
from ..constants import MINUTE_MS
from ..task_engine.model import TaskStatus
from .snapshot import TeamSnapshot
from .status_format import is_status_update, reports_cleared_blocker, reports_open_blocker

# Reported age when an agent has never posted a valid status.
NEVER_POSTED_MIN = 9999


@dataclass(frozen=True)
class CadenceStatus:
    agent: str
    task_id: Optional[str]
    last_valid_status_at: Optional[int]
    age_min: int
    expected_cadence_min: int
    state: str  # ok | warning | violation

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class CadenceIncident:
    type: str  # stale-working | blocked-overdue | trio-silence
    agent: str
    task_id: Optional[str]
    minutes_over: int
    escalate_to: tuple[str, ...]
    opened_at: int
    message: str

    @property
    def key(self) -> str:
        return f"{self.type}:{self.agent}:{self.task_id or '-'}"

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.__dict__)
        data["escalate_to"] = list(self.escalate_to)
        data["key"] = self.key
        return data


@dataclass
class CadenceReport:
    agents: list[CadenceStatus] = field(default_factory=list)
    incidents: list[CadenceIncident] = field(default_factory=list)
    trio_silence_min: int = 0
    oldest_blocker_min: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agents": [a.to_dict() for a in self.agents],
            "incidents": [i.to_dict() for i in self.incidents],
            "trio_silence_min": self.trio_silence_min,
            "oldest_blocker_min": self.oldest_blocker_min,
        }


def _age_min(now_ms: int, then_ms: int) -> int:
    return max(0, (now_ms - then_ms) // MINUTE_MS)


def _mentions(names: tuple[str, ...], *, skip: str = "") -> str:
    return " ".join(f"@{n}" for n in names if n != skip)


def classify(age_min: int, expected_min: int, margin_min: int) -> str:
    if age_min > expected_min:
        return "violation"
    if age_min >= max(0, expected_min - margin_min):
        return "warning"
    return "ok"


def evaluate_cadence(
    snapshot: TeamSnapshot,
    config: CadenceConfig,
    team: TeamConfig,
    now_ms: int,
) -> CadenceReport:
    report = CadenceReport()
    channel = config.channel

    for agent in team.trio:
        expected = config.lead_max_min if agent in team.leads else config.worker_max_min
        valid = [m for m in snapshot.messages_from(agent, channel) if is_status_update(m.content)]
        last_at = max((m.timestamp for m in valid), default=None)
        age = _age_min(now_ms, last_at) if last_at else NEVER_POSTED_MIN
        doing = sorted(snapshot.tasks_for(agent, TaskStatus.DOING), key=lambda t: t.updated_at, reverse=True)
        task_id = doing[0].id if doing else None
        state = classify(age, expected, config.warning_margin_min)
        report.agents.append(CadenceStatus(agent, task_id, last_at, age, expected, state))

        if state == "violation" and task_id:
            report.incidents.append(CadenceIncident(
                type="stale-working",
                agent=agent,
                task_id=task_id,
                minutes_over=age - expected,
                escalate_to=team.escalate_to,
                opened_at=(last_at or doing[0].updated_at) + expected * MINUTE_MS,
                message=(
                    f"@{agent} {_mentions(team.escalate_to, skip=agent)} system watchdog: status=working "
                    f"with no valid #{channel} update for {age}m on {task_id} (cadence {expected}m). "
                    "Post required status now: 1) shipped 2) blocker 3) next+ETA."
                ).replace("  ", " "),
            ))

        blockers = [m for m in snapshot.messages_from(agent) if reports_open_blocker(m.content)]
        if blockers:
            latest = blockers[-1]
            cleared = any(
                m.timestamp > latest.timestamp and reports_cleared_blocker(m.content)
                for m in snapshot.messages_from(agent)
            )
            blocker_age = _age_min(now_ms, latest.timestamp)
            if not cleared:
                report.oldest_blocker_min = max(report.oldest_blocker_min, blocker_age)
            if not cleared and blocker_age > config.blocked_escalation_min:
                report.incidents.append(CadenceIncident(
                    type="blocked-overdue",
                    agent=agent,
                    task_id=(latest.task_ids or [None])[0],
                    minutes_over=blocker_age - config.blocked_escalation_min,
                    escalate_to=team.escalate_to,
                    opened_at=latest.timestamp + config.blocked_escalation_min * MINUTE_MS,
                    message=(
                        f"@{agent} {_mentions(team.escalate_to, skip=agent)} system watchdog: blocker reported "
                        f"{blocker_age}m ago is still open (threshold {config.blocked_escalation_min}m). "
                        "Unblock or re-plan now."
                    ).replace("  ", " "),
                ))

    # No trio post in the window means the silence clock has not started.
    # Unlike per-agent cadence, silence alerts once it reaches the threshold.
    trio_posts = [m.timestamp for a in team.trio for m in snapshot.messages_from(a, channel)]
    if trio_posts:
        last_trio = max(trio_posts)
        report.trio_silence_min = _age_min(now_ms, last_trio)
        if report.trio_silence_min >= config.trio_silence_max_min:
            report.incidents.append(CadenceIncident(
                type="trio-silence",
                agent="trio",
                task_id=None,
                minutes_over=report.trio_silence_min - config.trio_silence_max_min,
                escalate_to=team.trio,
                opened_at=last_trio + config.trio_silence_max_min * MINUTE_MS,
                message=(
                    f"{_mentions(team.trio)} system watchdog: no #{channel} update from trio for "
                    f"{report.trio_silence_min}m (threshold {config.trio_silence_max_min}m). "
                    "Post status now using 1) shipped 2) blocker 3) next+ETA."
                ),
            ))

    report.incidents.sort(key=lambda i: i.opened_at, reverse=True)
    return report
