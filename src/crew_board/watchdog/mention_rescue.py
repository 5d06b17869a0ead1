"""Mention rescue — answer for the trio when a watched sender is left hanging.

A mention of one or more trio agents by a watched sender (the human lead)
is rescued once ``delay_min`` has passed without any mentioned agent
replying *in the same thread*. The rescue names only the agents that were
mentioned. The runner's per-mention state enforces ``cooldown_min``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ..collab import ChatMessage
from ..config import MentionRescueConfig, TeamConfig
from ..constants import MINUTE_MS
from .snapshot import TeamSnapshot


@dataclass
class RescueDecision:
    mention_id: str
    mentioned: list[str]
    rescued: bool
    reason: str  # waiting | replied | cooldown-active | rescue
    rendered_message: Optional[str] = None
    thread_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mention_id": self.mention_id,
            "mentioned": list(self.mentioned),
            "rescued": self.rescued,
            "reason": self.reason,
            "rendered_message": self.rendered_message,
        }


def render_rescue(mention: ChatMessage, mentioned: list[str]) -> str:
    names = " ".join(f"@{a}" for a in mentioned)
    verb = "is" if len(mentioned) == 1 else "are"
    return f"[[reply_to:{mention.id}]] system fallback: mention received. {names} {verb} being nudged to respond."


def find_trio_mentions(
    snapshot: TeamSnapshot,
    config: MentionRescueConfig,
    team: TeamConfig,
) -> list[tuple[ChatMessage, list[str]]]:
    trio = set(team.trio)
    watched = set(config.watched_senders)
    found: list[tuple[ChatMessage, list[str]]] = []
    for message in snapshot.messages:
        if message.channel != config.channel or message.sender not in watched:
            continue
        mentioned = [name for name in message.mentions if name in trio]
        if mentioned and message.id:
            found.append((message, mentioned))
    return found


def evaluate_mention_rescue(
    snapshot: TeamSnapshot,
    config: MentionRescueConfig,
    team: TeamConfig,
    now_ms: int,
    rescue_state: Optional[Mapping[str, int]] = None,
) -> list[RescueDecision]:
    state = rescue_state or {}
    delay_ms = config.delay_min * MINUTE_MS
    cooldown_ms = config.cooldown_min * MINUTE_MS
    decisions: list[RescueDecision] = []

    for mention, mentioned in find_trio_mentions(snapshot, config, team):
        def decision(reason: str, **kwargs: Any) -> RescueDecision:
            return RescueDecision(mention.id, mentioned, reason == "rescue", reason, **kwargs)

        if now_ms - mention.timestamp < delay_ms:
            decisions.append(decision("waiting", details={"due_at": mention.timestamp + delay_ms}))
            continue

        replied = any(
            m.sender in mentioned and m.timestamp > mention.timestamp and m.in_thread_of(mention)
            for m in snapshot.messages
        )
        if replied:
            decisions.append(decision("replied"))
            continue

        last = state.get(mention.id)
        if last is not None and now_ms - last < cooldown_ms:
            decisions.append(decision("cooldown-active"))
            continue

        decisions.append(decision(
            "rescue",
            rendered_message=render_rescue(mention, mentioned),
            thread_id=mention.thread_id or mention.id,
        ))
    return decisions
