"""Thin delivery runner around the pure watchdog decision functions.

The runner owns everything stateful about a tick: reading the snapshot,
quiet hours, posting messages through the chat store and remembering when
it last nudged, alerted or rescued so cooldowns hold across ticks.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from ..collab import ChatStore, PresenceStore
from ..config import DEFAULT_POLICY, PolicyConfig
from ..constants import MINUTE_MS, SYSTEM_SENDER
from ..task_engine.store import TaskStore
from ..utils import _now_ms
from .cadence import evaluate_cadence
from .idle_nudge import NudgeState, evaluate_idle_nudges
from .mention_rescue import evaluate_mention_rescue
from .quiet_hours import in_quiet_hours
from .snapshot import SNAPSHOT_MESSAGE_LIMIT, TeamSnapshot

TICK_IDLE_NUDGE = "idle-nudge"
TICK_CADENCE = "cadence"
TICK_MENTION_RESCUE = "mention-rescue"
TICK_KINDS = (TICK_IDLE_NUDGE, TICK_CADENCE, TICK_MENTION_RESCUE)


@dataclass
class TickResult:
    kind: str
    at: int
    dry_run: bool = False
    suppressed: bool = False
    reason: Optional[str] = None
    decisions: list[dict[str, Any]] = field(default_factory=list)
    delivered: list[str] = field(default_factory=list)
    delivery_errors: list[str] = field(default_factory=list)
    report: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "at": self.at,
            "dry_run": self.dry_run,
            "suppressed": self.suppressed,
        }
        if self.reason:
            data["reason"] = self.reason
        if not self.suppressed:
            data["decisions"] = self.decisions
            data["delivered"] = self.delivered
            data["delivery_errors"] = self.delivery_errors
        if self.report is not None:
            data["report"] = self.report
        return data


class WatchdogRunner:
    """Run watchdog ticks against the board's stores.

    Args:
        store: Task store read once per tick.
        presence: Presence collaborator.
        chat: Chat collaborator; alerts are posted through it as ``system``.
        policy: Thresholds and team layout.
        clock: Returns "now" in epoch ms when a tick does not pin ``now_ms``.
    """

    def __init__(
        self,
        store: TaskStore,
        presence: PresenceStore,
        chat: ChatStore,
        policy: PolicyConfig = DEFAULT_POLICY,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.presence = presence
        self.chat = chat
        self.policy = policy
        self._clock = clock or _now_ms
        self._lock = threading.Lock()
        self.nudge_state: dict[str, NudgeState] = {}
        self.alert_state: dict[str, int] = {}
        self.rescue_state: dict[str, int] = {}

    def snapshot(self, now_ms: int) -> TeamSnapshot:
        return TeamSnapshot(
            tasks=tuple(self.store.read_snapshot()),
            presence=tuple(self.presence.all()),
            messages=tuple(self.chat.messages(limit=SNAPSHOT_MESSAGE_LIMIT)),
            taken_at=now_ms,
        )

    def _enabled(self, kind: str) -> bool:
        section = {
            TICK_IDLE_NUDGE: self.policy.idle_nudge,
            TICK_CADENCE: self.policy.cadence,
            TICK_MENTION_RESCUE: self.policy.mention_rescue,
        }[kind]
        return bool(section.enabled)

    def run_tick(
        self,
        kind: str,
        dry_run: bool = False,
        force: bool = False,
        now_ms: Optional[int] = None,
    ) -> TickResult:
        """Evaluate one watchdog tick and deliver its messages.

        ``dry_run`` evaluates without posting or touching cooldown state.
        ``force`` ignores quiet hours (a disabled tick stays disabled).
        """
        if kind not in TICK_KINDS:
            raise ValueError(f"Unknown tick kind: {kind} (expected one of {', '.join(TICK_KINDS)})")
        now = now_ms if now_ms is not None else self._clock()
        result = TickResult(kind=kind, at=now, dry_run=dry_run)

        if not self._enabled(kind):
            result.suppressed, result.reason = True, "disabled"
            return result
        if not force and in_quiet_hours(self.policy.quiet_hours, now):
            logger.debug("Tick {} suppressed by quiet hours", kind)
            result.suppressed, result.reason = True, "quiet-hours"
            return result

        with self._lock:
            snap = self.snapshot(now)
            if kind == TICK_IDLE_NUDGE:
                self._idle_nudge(snap, result)
            elif kind == TICK_CADENCE:
                self._cadence(snap, result)
            else:
                self._mention_rescue(snap, result)

        logger.debug(
            "Tick {} at {}: {} decision(s), {} delivered",
            kind, now, len(result.decisions), len(result.delivered),
        )
        return result

    # ------------------------------------------------------------------
    # Tick bodies
    # ------------------------------------------------------------------

    def _deliver(
        self,
        result: TickResult,
        content: str,
        channel: str,
        thread_id: Optional[str] = None,
    ) -> bool:
        if result.dry_run:
            return False
        try:
            message = self.chat.post(
                SYSTEM_SENDER,
                content,
                channel=channel,
                thread_id=thread_id,
                timestamp=result.at,
            )
        except Exception as exc:
            logger.exception("Watchdog delivery failed on #{}", channel)
            result.delivery_errors.append(f"{type(exc).__name__}: {exc}")
            return False
        result.delivered.append(message.id)
        return True

    def _idle_nudge(self, snap: TeamSnapshot, result: TickResult) -> None:
        config = self.policy.idle_nudge
        decisions = evaluate_idle_nudges(snap, config, self.policy.team, result.at, self.nudge_state)
        for decision in decisions:
            result.decisions.append(decision.to_dict())
            if decision.decision == "none" or not decision.rendered_message:
                continue
            logger.debug("Idle nudge {} for {} ({})", decision.decision, decision.agent, decision.reason)
            if self._deliver(result, decision.rendered_message, config.channel):
                self.nudge_state[decision.agent] = NudgeState(result.at, decision.tier)

    def _cadence(self, snap: TeamSnapshot, result: TickResult) -> None:
        config = self.policy.cadence
        report = evaluate_cadence(snap, config, self.policy.team, result.at)
        result.report = report.to_dict()
        cooldown_ms = config.alert_cooldown_min * MINUTE_MS
        for incident in report.incidents:
            last = self.alert_state.get(incident.key)
            cooling = last is not None and result.at - last < cooldown_ms
            result.decisions.append({
                "key": incident.key,
                "type": incident.type,
                "alert": not cooling,
                "reason": "cooldown-active" if cooling else "alert",
                "rendered_message": incident.message,
            })
            if cooling:
                continue
            if self._deliver(result, incident.message, config.channel):
                self.alert_state[incident.key] = result.at

    def _mention_rescue(self, snap: TeamSnapshot, result: TickResult) -> None:
        config = self.policy.mention_rescue
        decisions = evaluate_mention_rescue(snap, config, self.policy.team, result.at, self.rescue_state)
        for decision in decisions:
            result.decisions.append(decision.to_dict())
            if not decision.rescued or not decision.rendered_message:
                continue
            if self._deliver(result, decision.rendered_message, config.channel, decision.thread_id):
                self.rescue_state[decision.mention_id] = result.at
