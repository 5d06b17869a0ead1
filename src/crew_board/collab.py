"""Presence and chat collaborators.

The lifecycle engine and the watchdog only see these narrow interfaces:

- :class:`PresenceStore` — agent → status, last update, current task.
- :class:`ChatStore` — append a message, query by channel/thread/time.

Both ship with an in-memory implementation (tests, embedding) and a small
file-backed one (``.crew_board/chat.jsonl``, ``.crew_board/presence.yaml``)
so the CLI can run ticks against real data.
"""

from __future__ import annotations

import re
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

from loguru import logger

from .constants import ACTION_CHANNELS, DEFAULT_CHANNEL, SYSTEM_SENDER
from .errors import GateError
from .io_utils import FileLock, _append_jsonl, _iter_jsonl, _read_yaml_mapping, _write_yaml_atomic
from .utils import _coerce_ms, _now_ms

TASK_ID_RE = re.compile(r"\btask-[a-z0-9-]+\b", re.IGNORECASE)
MENTION_RE = re.compile(r"@([a-z0-9_][a-z0-9_.-]*)", re.IGNORECASE)

CHAT_FILENAME = "chat.jsonl"
PRESENCE_FILENAME = "presence.yaml"
PRESENCE_LOCK_FILENAME = "presence.lock"


def mentions_in(content: str) -> list[str]:
    """Lower-cased ``@name`` mentions, in order of first appearance."""
    seen: list[str] = []
    for name in MENTION_RE.findall(content or ""):
        name = name.lower().rstrip(".")
        if name not in seen:
            seen.append(name)
    return seen


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Presence:
    agent: str
    status: str = "idle"  # working | idle | reviewing | blocked | offline
    last_update: int = 0
    current_task: Optional[str] = None

    @property
    def is_offline(self) -> bool:
        return self.status.lower() == "offline"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Presence":
        return cls(
            agent=str(data["agent"]).strip().lower(),
            status=str(data.get("status") or "idle"),
            last_update=_coerce_ms(data.get("last_update")) or 0,
            current_task=data.get("current_task") or None,
        )


def _message_id(now_ms: int) -> str:
    return f"msg-{now_ms}-{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class ChatMessage:
    """One chat line.

    ``thread_id`` is the id of the message that started the thread (``None``
    for channel-level messages). ``task_id`` marks task comments.
    """

    sender: str
    content: str
    channel: str = DEFAULT_CHANNEL
    timestamp: int = 0
    id: str = ""
    thread_id: Optional[str] = None
    task_id: Optional[str] = None

    @property
    def mentions(self) -> list[str]:
        return mentions_in(self.content)

    @property
    def task_ids(self) -> list[str]:
        return [m.lower() for m in TASK_ID_RE.findall(self.content or "")]

    def in_thread_of(self, root: "ChatMessage") -> bool:
        """True if this message continues the conversation *root* belongs to."""
        if self.channel != root.channel:
            return False
        if self.thread_id is not None and self.thread_id == root.id:
            return True
        return self.thread_id == root.thread_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(data.get("id") or ""),
            sender=str(data.get("sender") or data.get("from") or "").lower(),
            content=str(data.get("content") or ""),
            channel=str(data.get("channel") or DEFAULT_CHANNEL),
            timestamp=_coerce_ms(data.get("timestamp")) or 0,
            thread_id=data.get("thread_id") or None,
            task_id=data.get("task_id") or None,
        )


def check_action_message(message: ChatMessage) -> None:
    """Messages in action channels must name an owner and a task.

    Raises:
        GateError: ``action_message_contract`` when either is missing.
    """
    if message.channel not in ACTION_CHANNELS or message.sender == SYSTEM_SENDER:
        return
    missing = []
    if not message.mentions:
        missing.append("@owner")
    if not message.task_ids:
        missing.append("task id")
    if missing:
        raise GateError(
            "action_message_contract",
            f"#{message.channel} messages must include {' and '.join(missing)}",
            hint="Mention the owner (@owner) and reference the task (task-…) so the action is routable.",
            details={"channel": message.channel, "missing": missing},
        )


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class PresenceStore(ABC):
    @abstractmethod
    def all(self) -> list[Presence]:
        ...

    @abstractmethod
    def update(self, presence: Presence) -> Presence:
        ...

    def get(self, agent: str) -> Optional[Presence]:
        key = (agent or "").lower()
        return next((p for p in self.all() if p.agent == key), None)


class ChatStore(ABC):
    @abstractmethod
    def _append(self, message: ChatMessage) -> ChatMessage:
        ...

    @abstractmethod
    def _all(self) -> list[ChatMessage]:
        ...

    def append(self, message: ChatMessage) -> ChatMessage:
        """Validate, stamp id/timestamp, and store *message*."""
        check_action_message(message)
        ts = message.timestamp or _now_ms()
        stamped = ChatMessage(
            id=message.id or _message_id(ts),
            sender=(message.sender or "").lower(),
            content=message.content,
            channel=message.channel or DEFAULT_CHANNEL,
            timestamp=ts,
            thread_id=message.thread_id,
            task_id=message.task_id,
        )
        return self._append(stamped)

    def post(
        self,
        sender: str,
        content: str,
        *,
        channel: str = DEFAULT_CHANNEL,
        thread_id: Optional[str] = None,
        task_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> ChatMessage:
        return self.append(ChatMessage(
            sender=sender,
            content=content,
            channel=channel,
            thread_id=thread_id,
            task_id=task_id,
            timestamp=timestamp or 0,
        ))

    def messages(
        self,
        *,
        channel: Optional[str] = None,
        thread_id: Optional[str] = None,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[ChatMessage]:
        """Oldest first; ``limit`` keeps the most recent *limit* matches."""
        out = [
            m for m in self._all()
            if (channel is None or m.channel == channel)
            and (thread_id is None or m.thread_id == thread_id or m.id == thread_id)
            and (since is None or m.timestamp >= since)
        ]
        out.sort(key=lambda m: (m.timestamp, m.id))
        if limit is not None and limit >= 0:
            out = out[-limit:] if limit else []
        return out


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryPresenceStore(PresenceStore):
    def __init__(self, presences: Iterable[Presence] = ()) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, Presence] = {p.agent.lower(): p for p in presences}

    def all(self) -> list[Presence]:
        with self._lock:
            return sorted(self._items.values(), key=lambda p: p.agent)

    def update(self, presence: Presence) -> Presence:
        with self._lock:
            self._items[presence.agent.lower()] = presence
        return presence


class InMemoryChatStore(ChatStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: list[ChatMessage] = []

    def _append(self, message: ChatMessage) -> ChatMessage:
        with self._lock:
            self._items.append(message)
        return message

    def _all(self) -> list[ChatMessage]:
        with self._lock:
            return list(self._items)


# ---------------------------------------------------------------------------
# File-backed implementations
# ---------------------------------------------------------------------------

class FilePresenceStore(PresenceStore):
    """Presence rows in ``presence.yaml``."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / PRESENCE_FILENAME
        self._lock = FileLock(state_dir / PRESENCE_LOCK_FILENAME)

    def _load(self) -> dict[str, Presence]:
        data, err = _read_yaml_mapping(self.path, {})
        if err:
            raise RuntimeError(f"Presence file is unreadable: {err}")
        items: dict[str, Presence] = {}
        for raw in data.get("agents") or []:
            if isinstance(raw, dict) and raw.get("agent"):
                presence = Presence.from_dict(raw)
                items[presence.agent] = presence
        return items

    def all(self) -> list[Presence]:
        with self._lock:
            return sorted(self._load().values(), key=lambda p: p.agent)

    def update(self, presence: Presence) -> Presence:
        with self._lock:
            items = self._load()
            items[presence.agent.lower()] = presence
            _write_yaml_atomic(self.path, {"agents": [p.to_dict() for p in items.values()]})
        return presence


class JsonlChatStore(ChatStore):
    """Append-only chat log in ``chat.jsonl``."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / CHAT_FILENAME
        self._lock = threading.Lock()

    def _append(self, message: ChatMessage) -> ChatMessage:
        with self._lock:
            _append_jsonl(self.path, message.to_dict())
        logger.debug("Chat #{} <{}>: {}", message.channel, message.sender, message.content[:80])
        return message

    def _all(self) -> list[ChatMessage]:
        return [ChatMessage.from_dict(row) for row in _iter_jsonl(self.path)]
