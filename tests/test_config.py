from pathlib import Path

import pytest
import yaml

from crew_board.config import DEFAULT_POLICY, apply_env_overrides, load_policy, policy_from_dict


def _write_config(project_dir: Path, text: str) -> None:
    state_dir = project_dir / ".crew_board"
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / "config.yaml").write_text(text, encoding="utf-8")


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    policy, err = load_policy(tmp_path, env={})
    assert err is None
    assert policy == DEFAULT_POLICY
    assert policy.idle_nudge.warn_min == 45
    assert policy.quiet_hours.timezone == "America/Vancouver"


def test_partial_yaml_merges_onto_defaults(tmp_path: Path) -> None:
    _write_config(tmp_path, yaml.safe_dump({
        "idle_nudge": {"warn_min": 30, "excluded": ["Ryan", "ops"]},
        "team": {"trio": ["kai", "link", "pixel", "sage"]},
        "agents": [{"name": "pixel", "wip_cap": 2}],
    }))
    policy, err = load_policy(tmp_path, env={})
    assert err is None
    assert policy.idle_nudge.warn_min == 30
    assert policy.idle_nudge.escalate_min == 60
    assert policy.idle_nudge.excluded == ("ryan", "ops")
    assert policy.team.trio == ("kai", "link", "pixel", "sage")
    assert policy.team.leads == ("kai",)
    assert policy.agents == ({"name": "pixel", "wip_cap": 2},)


def test_env_overrides_file_values(tmp_path: Path) -> None:
    _write_config(tmp_path, "quiet_hours:\n  start_hour: 22\n")
    policy, _ = load_policy(tmp_path, env={
        "WATCHDOG_QUIET_HOURS_START_HOUR": "21",
        "WATCHDOG_QUIET_HOURS_ENABLED": "false",
        "IDLE_NUDGE_EXCLUDE": "ryan, Bot ,",
    })
    assert policy.quiet_hours.start_hour == 21
    assert policy.quiet_hours.enabled is False
    assert policy.idle_nudge.excluded == ("ryan", "bot")


def test_invalid_env_value_is_ignored() -> None:
    data = apply_env_overrides({}, env={"IDLE_NUDGE_WARN_MIN": "soon"})
    assert data == {}


def test_bad_yaml_yields_defaults_and_error(tmp_path: Path) -> None:
    _write_config(tmp_path, "idle_nudge: [unclosed\n")
    policy, err = load_policy(tmp_path, env={})
    assert err
    assert policy == DEFAULT_POLICY


def test_unknown_keys_are_ignored() -> None:
    policy = policy_from_dict({"cadence": {"worker_max_min": 30, "bogus": 1}, "nonsense": {"x": 1}})
    assert policy.cadence.worker_max_min == 30
    assert not hasattr(policy.cadence, "bogus")


def test_policy_is_immutable() -> None:
    with pytest.raises(AttributeError):
        DEFAULT_POLICY.idle_nudge.warn_min = 1  # type: ignore[misc]
