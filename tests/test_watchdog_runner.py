"""Tests for watchdog tick delivery, cooldown state and suppression."""

from __future__ import annotations

from pathlib import Path

import pytest

from crew_board.collab import ChatMessage, InMemoryChatStore, InMemoryPresenceStore, Presence
from crew_board.config import policy_from_dict
from crew_board.constants import MINUTE_MS
from crew_board.task_engine.model import Task, TaskStatus
from crew_board.task_engine.store import TaskStore
from crew_board.watchdog.mention_rescue import render_rescue
from crew_board.watchdog.runner import (
    TICK_CADENCE,
    TICK_IDLE_NUDGE,
    TICK_MENTION_RESCUE,
    WatchdogRunner,
)

NOW = 1_760_011_200_000  # 2025-10-09 12:00 UTC
TWO_AM_UTC = 1_759_975_200_000
STATUS_OK = "task-1-aaaaaa\n1) Shipped: login form\n2) Blocker: none\n3) Next: tests ~1h"


def at(minutes: int) -> int:
    return NOW + minutes * MINUTE_MS


class FlakyChatStore(InMemoryChatStore):
    """Chat store that refuses system posts."""

    def _append(self, message: ChatMessage) -> ChatMessage:
        if message.sender == "system":
            raise OSError("disk full")
        return super()._append(message)


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / ".crew_board")


@pytest.fixture
def chat() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def presence() -> InMemoryPresenceStore:
    return InMemoryPresenceStore()


def _runner(store, presence, chat, **overrides) -> WatchdogRunner:
    raw = {"quiet_hours": {"enabled": False}}
    raw.update(overrides)
    return WatchdogRunner(store, presence, chat, policy=policy_from_dict(raw), clock=lambda: NOW)


def _add_doing(store: TaskStore, task_id: str, agent: str, updated_at: int) -> None:
    with store.transaction() as tx:
        tx.add(Task(
            id=task_id,
            title="Dashboard polish",
            status=TaskStatus.DOING,
            assignee=agent,
            done_criteria=["x"],
            created_at=updated_at,
            updated_at=updated_at,
        ))


def _system_messages(chat: InMemoryChatStore) -> list[ChatMessage]:
    return [m for m in chat.messages() if m.sender == "system"]


class TestMentionRescue:
    def test_rescue_after_delay_names_only_mentioned_agent(self, store, presence, chat) -> None:
        runner = _runner(store, presence, chat)
        mention = chat.post("ryan", "@pixel ping", timestamp=NOW)

        early = runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(2))
        assert [d["reason"] for d in early.decisions] == ["waiting"]
        assert early.delivered == []

        due = runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(10))
        assert [d["reason"] for d in due.decisions] == ["rescue"]
        assert len(due.delivered) == 1

        [posted] = _system_messages(chat)
        assert posted.content == render_rescue(mention, ["pixel"])
        assert posted.content.startswith(f"[[reply_to:{mention.id}]]")
        assert "@pixel" in posted.content
        assert "@kai" not in posted.content and "@link" not in posted.content
        assert posted.thread_id == mention.id
        assert posted.timestamp == at(10)

    def test_render_for_several_agents(self) -> None:
        mention = ChatMessage(sender="ryan", content="@kai @link ping", id="msg-1")
        assert render_rescue(mention, ["kai", "link"]) == (
            "[[reply_to:msg-1]] system fallback: mention received. @kai @link are being nudged to respond."
        )

    def test_reply_in_other_thread_does_not_cancel(self, store, presence, chat) -> None:
        runner = _runner(store, presence, chat)
        chat.post("ryan", "@pixel ping", timestamp=NOW)
        chat.post("pixel", "answering elsewhere", thread_id="msg-elsewhere", timestamp=at(5))

        result = runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(10))
        assert [d["reason"] for d in result.decisions] == ["rescue"]

    def test_same_thread_reply_cancels(self, store, presence, chat) -> None:
        runner = _runner(store, presence, chat)
        mention = chat.post("ryan", "@pixel ping", timestamp=NOW)
        chat.post("pixel", "on it", thread_id=mention.id, timestamp=at(5))

        result = runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(10))
        assert [d["reason"] for d in result.decisions] == ["replied"]
        assert _system_messages(chat) == []

    def test_reply_from_unmentioned_agent_does_not_cancel(self, store, presence, chat) -> None:
        runner = _runner(store, presence, chat)
        mention = chat.post("ryan", "@pixel ping", timestamp=NOW)
        chat.post("link", "pixel is heads down", thread_id=mention.id, timestamp=at(5))

        result = runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(10))
        assert [d["reason"] for d in result.decisions] == ["rescue"]

    def test_cooldown_between_rescues(self, store, presence, chat) -> None:
        runner = _runner(store, presence, chat)
        chat.post("ryan", "@pixel ping", timestamp=NOW)

        runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(10))
        again = runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(15))
        assert [d["reason"] for d in again.decisions] == ["cooldown-active"]
        later = runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(21))
        assert [d["reason"] for d in later.decisions] == ["rescue"]
        assert len(_system_messages(chat)) == 2

    def test_dry_run_posts_nothing(self, store, presence, chat) -> None:
        runner = _runner(store, presence, chat)
        chat.post("ryan", "@pixel ping", timestamp=NOW)

        result = runner.run_tick(TICK_MENTION_RESCUE, dry_run=True, now_ms=at(10))
        assert result.decisions[0]["rendered_message"].startswith("[[reply_to:")
        assert result.delivered == []
        assert runner.rescue_state == {}
        assert _system_messages(chat) == []

    def test_unwatched_sender_ignored(self, store, presence, chat) -> None:
        runner = _runner(store, presence, chat)
        chat.post("kai", "@pixel ping", timestamp=NOW)
        assert runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(10)).decisions == []

    def test_delivery_failure_is_reported(self, store, presence) -> None:
        chat = FlakyChatStore()
        runner = _runner(store, presence, chat)
        chat.post("ryan", "@pixel ping", timestamp=NOW)

        result = runner.run_tick(TICK_MENTION_RESCUE, now_ms=at(10))
        assert result.delivered == []
        assert result.delivery_errors == ["OSError: disk full"]
        assert runner.rescue_state == {}


class TestSuppression:
    def test_disabled_tick(self, store, presence, chat) -> None:
        runner = _runner(store, presence, chat, mention_rescue={"enabled": False})
        chat.post("ryan", "@pixel ping", timestamp=NOW)

        result = runner.run_tick(TICK_MENTION_RESCUE, force=True, now_ms=at(10))
        assert result.suppressed
        assert result.reason == "disabled"
        assert "decisions" not in result.to_dict()

    def test_quiet_hours(self, store, presence, chat) -> None:
        runner = _runner(store, presence, chat, quiet_hours={"enabled": True, "timezone": "UTC"})
        chat.post("ryan", "@pixel ping", timestamp=TWO_AM_UTC - 20 * MINUTE_MS)

        quiet = runner.run_tick(TICK_MENTION_RESCUE, now_ms=TWO_AM_UTC)
        assert quiet.suppressed
        assert quiet.reason == "quiet-hours"
        assert quiet.decisions == []
        assert _system_messages(chat) == []

        forced = runner.run_tick(TICK_MENTION_RESCUE, force=True, now_ms=TWO_AM_UTC)
        assert not forced.suppressed
        assert len(forced.delivered) == 1

    def test_unknown_kind(self, store, presence, chat) -> None:
        with pytest.raises(ValueError, match="Unknown tick kind"):
            _runner(store, presence, chat).run_tick("standup")

    def test_clock_used_when_now_not_given(self, store, presence, chat) -> None:
        result = _runner(store, presence, chat).run_tick(TICK_CADENCE)
        assert result.at == NOW


class TestIdleNudgeTick:
    def test_warn_then_cooldown_then_escalate(self, store, presence, chat) -> None:
        _add_doing(store, "task-1-aaaaaa", "pixel", at(-50))
        presence.update(Presence("pixel", "working", at(-50), "task-1-aaaaaa"))
        runner = _runner(store, presence, chat)

        first = runner.run_tick(TICK_IDLE_NUDGE, now_ms=NOW)
        assert [d["decision"] for d in first.decisions] == ["warn"]
        assert len(first.delivered) == 1
        assert runner.nudge_state["pixel"].last_tier == 1

        second = runner.run_tick(TICK_IDLE_NUDGE, now_ms=at(5))
        assert [d["reason"] for d in second.decisions] == ["cooldown-active"]
        assert second.delivered == []

        third = runner.run_tick(TICK_IDLE_NUDGE, now_ms=at(15))
        assert [d["decision"] for d in third.decisions] == ["escalate"]
        assert runner.nudge_state["pixel"].last_tier == 2

        posted = _system_messages(chat)
        assert len(posted) == 2
        assert posted[1].content.startswith("@pixel @kai system escalation: 65m idle.")


class TestCadenceTick:
    def test_alert_cooldown_by_incident(self, store, presence, chat) -> None:
        _add_doing(store, "task-1-aaaaaa", "pixel", at(-50))
        chat.post("pixel", STATUS_OK, timestamp=at(-50))
        runner = _runner(store, presence, chat)

        first = runner.run_tick(TICK_CADENCE, now_ms=NOW)
        assert [(d["key"], d["alert"]) for d in first.decisions] == [("stale-working:pixel:task-1-aaaaaa", True)]
        assert first.report["agents"][2]["state"] == "violation"
        assert len(first.delivered) == 1

        second = runner.run_tick(TICK_CADENCE, now_ms=at(9))
        assert [d["reason"] for d in second.decisions] == ["cooldown-active"]
        assert second.delivered == []

        third = runner.run_tick(TICK_CADENCE, now_ms=at(31))
        alerts = {d["key"]: d["alert"] for d in third.decisions}
        assert alerts == {"stale-working:pixel:task-1-aaaaaa": True, "trio-silence:trio:-": True}
        assert len(third.delivered) == 2
