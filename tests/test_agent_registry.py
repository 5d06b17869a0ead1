"""Tests for agent roles, the registry, and assignment suggestions."""

import pytest

from crew_board.agents.assignment import (
    AssignmentEngine,
    check_wip,
    count_recent_completions,
    extract_keywords,
    score_agent,
)
from crew_board.agents.registry import (
    BUILTIN_AGENT_ROLES,
    AgentRegistry,
    AgentRoleConfig,
    role_from_dict,
)
from crew_board.constants import HOUR_MS
from crew_board.errors import ValidationError
from crew_board.task_engine.model import Task, TaskPriority, TaskStatus

NOW = 1_760_011_200_000


def _task(id, title="t", status=TaskStatus.TODO, assignee=None, **kwargs):
    return Task(id=id, title=title, status=status, assignee=assignee, done_criteria=["x"], **kwargs)


class TestAgentRoles:
    def test_builtin_team(self):
        names = {r.name for r in BUILTIN_AGENT_ROLES}
        assert names == {"link", "pixel", "sage", "echo", "harmony", "scout"}

    def test_builtin_caps_and_protected_domains(self):
        registry = AgentRegistry()
        assert registry.get("link").wip_cap == 2
        assert registry.get("pixel").wip_cap == 1
        assert registry.get("sage").always_route == ("deploy", "ci", "release")
        assert registry.get("harmony").role == "reviewer"

    def test_lookup_is_case_insensitive(self):
        registry = AgentRegistry()
        assert registry.get("PIXEL").name == "pixel"
        assert registry.has("Sage")
        assert not registry.has("nobody")
        assert registry.get(None) is None

    def test_protected_domains_alias(self):
        role = role_from_dict({"name": "Vault", "role": "security", "protected_domains": ["Secrets"]})
        assert role.name == "vault"
        assert role.always_route == ("secrets",)

    def test_unknown_keys_kept_in_metadata(self):
        role = role_from_dict({"name": "vault", "timezone": "UTC"})
        assert role.metadata == {"timezone": "UTC"}
        assert role.role == "agent"

    def test_bad_wip_cap(self):
        with pytest.raises(ValidationError, match="wip_cap"):
            role_from_dict({"name": "vault", "wip_cap": "lots"})
        with pytest.raises(ValidationError, match="negative"):
            role_from_dict({"name": "vault", "wip_cap": -1})


class TestAgentRegistry:
    def test_config_entries_merge_onto_builtins(self):
        registry = AgentRegistry([{"name": "pixel", "wip_cap": 3}, {"name": "vault", "role": "security"}])
        pixel = registry.get("pixel")
        assert pixel.wip_cap == 3
        assert "css" in pixel.affinity_tags
        assert registry.get("vault").role == "security"

    def test_bad_entry_is_skipped(self):
        registry = AgentRegistry([{"name": "pixel", "wip_cap": "many"}])
        assert registry.get("pixel").wip_cap == 1

    def test_without_builtins(self):
        registry = AgentRegistry([{"name": "solo"}], include_builtin=False)
        assert registry.names() == ["solo"]

    def test_update_role(self):
        registry = AgentRegistry()
        updated = registry.update_role("Pixel", wip_cap=2, never_route=["deploy"])
        assert updated.wip_cap == 2
        assert registry.get("pixel").never_route == ("deploy",)

    def test_update_unknown_role(self):
        with pytest.raises(KeyError, match="Unknown agent"):
            AgentRegistry().update_role("ghost", wip_cap=1)

    def test_register(self):
        registry = AgentRegistry(include_builtin=False)
        registry.register(AgentRoleConfig(name="Ops2", role="ops"))
        assert registry.get("ops2").role == "ops"


class TestScoring:
    def test_extract_keywords_drops_short_words(self):
        assert extract_keywords("Fix CSS on dashboard", ["ui"], ["it works"]) == [
            "fix", "css", "dashboard", "works",
        ]

    def test_wip_penalty(self):
        role = AgentRoleConfig(name="a", role="builder", affinity_tags=("api",), wip_cap=2)
        assert score_agent(role, ["api"], 0).wip_penalty == 0.0
        assert score_agent(role, ["api"], 1).wip_penalty == -0.1
        at_cap = score_agent(role, ["api"], 2)
        assert at_cap.wip_penalty == -0.5
        assert at_cap.over_cap

    def test_throughput_capped(self):
        role = AgentRoleConfig(name="a", role="builder")
        assert score_agent(role, [], 0, recent_completions=10).throughput == 0.2

    def test_recent_completions_window(self):
        tasks = [
            _task("t1", status=TaskStatus.DONE, assignee="link", updated_at=NOW - HOUR_MS),
            _task("t2", status=TaskStatus.DONE, assignee="link", updated_at=NOW - 8 * 24 * HOUR_MS),
        ]
        assert count_recent_completions(tasks, "link", NOW) == 1

    def test_check_wip(self):
        registry = AgentRegistry()
        tasks = [_task("t1", status=TaskStatus.DOING, assignee="pixel")]
        blocked = check_wip(registry, "pixel", tasks)
        assert not blocked.allowed
        assert blocked.message == "WIP cap reached: pixel has 1/1 doing tasks"
        assert check_wip(registry, "pixel", tasks, exclude_id="t1").allowed
        assert check_wip(registry, "pixel", tasks, override="incident").allowed
        assert check_wip(registry, "stranger", tasks).wip_cap is None


class TestAssignmentEngine:
    @pytest.fixture
    def assigner(self):
        return AssignmentEngine(AgentRegistry())

    def test_suggests_by_affinity(self, assigner):
        task = _task("t1", title="Fix CSS layout on dashboard")
        suggestion = assigner.suggest(task, [task], now_ms=NOW)
        assert suggestion.suggested == "pixel"
        top = suggestion.scores[0]
        assert top.agent == "pixel"
        assert top.to_dict()["breakdown"]["affinity"] == 1.0

    def test_always_route_short_circuits(self, assigner):
        task = _task("t1", title="Deploy the release")
        suggestion = assigner.suggest(task, [task], now_ms=NOW)
        assert suggestion.suggested == "sage"
        assert "deploy" in suggestion.protected_match
        assert suggestion.scores == []

    def test_never_route_excludes(self):
        assigner = AssignmentEngine(AgentRegistry([{"name": "pixel", "never_route": ["dashboard"]}]))
        task = _task("t1", title="Fix CSS layout on dashboard")
        suggestion = assigner.suggest(task, [task], now_ms=NOW)
        assert "pixel" not in [s.agent for s in suggestion.scores]

    def test_over_cap_agent_not_suggested(self, assigner):
        busy = _task("t0", title="Modal polish", status=TaskStatus.DOING, assignee="pixel")
        task = _task("t1", title="Fix CSS layout on dashboard")
        suggestion = assigner.suggest(task, [busy, task], now_ms=NOW)
        assert suggestion.suggested != "pixel"

    def test_no_match_suggests_nobody(self, assigner):
        task = _task("t1", title="zzz qqq")
        assert assigner.suggest(task, [task], now_ms=NOW).suggested is None

    def test_resolve_reviewer_auto(self, assigner):
        task = _task("t1", title="Audit login flow", assignee="link")
        assert assigner.resolve_reviewer("auto", task, [task], now_ms=NOW) == "harmony"
        assert assigner.resolve_reviewer("echo", task, [task], now_ms=NOW) == "echo"

    def test_resolve_reviewer_falls_back_to_reviewer_role(self, assigner):
        task = _task("t1", title="zzz qqq", assignee="link")
        assert assigner.resolve_reviewer("AUTO", task, [task], now_ms=NOW) == "harmony"

    def test_resolve_reviewer_never_picks_assignee(self, assigner):
        task = _task("t1", title="zzz qqq", assignee="harmony")
        assert assigner.resolve_reviewer("auto", task, [task], now_ms=NOW) is None

    def test_next_task(self, assigner):
        done = _task("t0", status=TaskStatus.DONE)
        tasks = [
            done,
            _task("t1", priority=TaskPriority.P2, created_at=1),
            _task("t2", priority=TaskPriority.P0, created_at=5, blocked_by=["t9"]),
            _task("t3", priority=TaskPriority.P1, created_at=3, blocked_by=["t0"]),
            _task("t4", priority=TaskPriority.P0, created_at=2, assignee="pixel"),
        ]
        assert assigner.next_task("link", tasks).id == "t3"
        assert assigner.next_task("pixel", tasks).id == "t4"
