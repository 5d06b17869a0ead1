"""Point-in-time view of the team for one watchdog tick."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..collab import ChatMessage, Presence
from ..task_engine.model import Task, TaskStatus

# Chat history window read per tick.
SNAPSHOT_MESSAGE_LIMIT = 300


@dataclass(frozen=True)
class TeamSnapshot:
    """Tasks, presence and recent chat captured together at tick start.

    ``messages`` are oldest first.
    """

    tasks: tuple[Task, ...]
    presence: tuple[Presence, ...]
    messages: tuple[ChatMessage, ...]
    taken_at: int

    def tasks_for(self, agent: str, status: Optional[TaskStatus] = None) -> list[Task]:
        return [
            t for t in self.tasks
            if t.is_assigned_to(agent) and (status is None or t.status == status)
        ]

    def task(self, task_id: Optional[str]) -> Optional[Task]:
        if not task_id:
            return None
        return next((t for t in self.tasks if t.id == task_id), None)

    def messages_from(self, agent: str, channel: Optional[str] = None) -> list[ChatMessage]:
        name = agent.lower()
        return [
            m for m in self.messages
            if m.sender == name and (channel is None or m.channel == channel)
        ]

    def last_message_from(self, agent: str, channel: Optional[str] = None) -> Optional[ChatMessage]:
        sent = self.messages_from(agent, channel)
        return max(sent, key=lambda m: m.timestamp) if sent else None

    def comments_on(self, task_id: str) -> list[ChatMessage]:
        return [m for m in self.messages if m.task_id == task_id]
