"""Load board policy from `.crew_board/config.yaml`.

The file is optional. Values are deep-merged onto :data:`DEFAULT_POLICY`, then
environment variables override individual thresholds (handy for CI and for
one-off runs). The result is an immutable :class:`PolicyConfig` that is read
at evaluation time and never mutated by the engine.
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

from .constants import CONFIG_FILE, STATE_DIR_NAME
from .io_utils import _read_yaml_mapping


@dataclass(frozen=True)
class QuietHoursConfig:
    enabled: bool = True
    start_hour: int = 23
    end_hour: int = 8
    timezone: str = "America/Vancouver"


@dataclass(frozen=True)
class IdleNudgeConfig:
    enabled: bool = True
    warn_min: int = 45
    escalate_min: int = 60
    cooldown_min: int = 20
    suppress_recent_min: int = 20
    ship_cooldown_min: int = 30
    active_task_max_age_min: int = 180
    excluded: tuple[str, ...] = ("ryan", "diag", "system")
    channel: str = "general"


@dataclass(frozen=True)
class CadenceConfig:
    enabled: bool = True
    worker_max_min: int = 45
    lead_max_min: int = 60
    blocked_escalation_min: int = 20
    trio_silence_max_min: int = 60
    warning_margin_min: int = 10
    alert_cooldown_min: int = 30
    channel: str = "general"


@dataclass(frozen=True)
class MentionRescueConfig:
    enabled: bool = True
    delay_min: int = 10
    cooldown_min: int = 10
    watched_senders: tuple[str, ...] = ("ryan",)
    channel: str = "general"


@dataclass(frozen=True)
class TeamConfig:
    trio: tuple[str, ...] = ("kai", "link", "pixel")
    leads: tuple[str, ...] = ("kai",)
    escalate_to: tuple[str, ...] = ("kai",)


@dataclass(frozen=True)
class ModelsConfig:
    known: tuple[str, ...] = (
        "anthropic/claude-sonnet-4-5",
        "anthropic/claude-opus-4-1",
        "openai/gpt-5",
        "openai/gpt-5-codex",
    )
    aliases: Mapping[str, str] = field(default_factory=lambda: {
        "sonnet": "anthropic/claude-sonnet-4-5",
        "opus": "anthropic/claude-opus-4-1",
        "gpt-5": "openai/gpt-5",
        "codex": "openai/gpt-5-codex",
    })
    default: Optional[str] = None


@dataclass(frozen=True)
class PolicyConfig:
    quiet_hours: QuietHoursConfig = field(default_factory=QuietHoursConfig)
    idle_nudge: IdleNudgeConfig = field(default_factory=IdleNudgeConfig)
    cadence: CadenceConfig = field(default_factory=CadenceConfig)
    mention_rescue: MentionRescueConfig = field(default_factory=MentionRescueConfig)
    team: TeamConfig = field(default_factory=TeamConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    # Raw agent role dicts; parsed by agents.registry.AgentRegistry.
    agents: tuple[dict[str, Any], ...] = ()
    pr_lookup_timeout_seconds: float = 3.0


DEFAULT_POLICY = PolicyConfig()

_SECTIONS: dict[str, type] = {
    "quiet_hours": QuietHoursConfig,
    "idle_nudge": IdleNudgeConfig,
    "cadence": CadenceConfig,
    "mention_rescue": MentionRescueConfig,
    "team": TeamConfig,
    "models": ModelsConfig,
}

# env var -> (section, key, caster)
_ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "WATCHDOG_QUIET_HOURS_ENABLED": ("quiet_hours", "enabled", "bool"),
    "WATCHDOG_QUIET_HOURS_START_HOUR": ("quiet_hours", "start_hour", int),
    "WATCHDOG_QUIET_HOURS_END_HOUR": ("quiet_hours", "end_hour", int),
    "WATCHDOG_QUIET_HOURS_TZ": ("quiet_hours", "timezone", str),
    "IDLE_NUDGE_ENABLED": ("idle_nudge", "enabled", "bool"),
    "IDLE_NUDGE_WARN_MIN": ("idle_nudge", "warn_min", int),
    "IDLE_NUDGE_ESCALATE_MIN": ("idle_nudge", "escalate_min", int),
    "IDLE_NUDGE_COOLDOWN_MIN": ("idle_nudge", "cooldown_min", int),
    "IDLE_NUDGE_SUPPRESS_RECENT_MIN": ("idle_nudge", "suppress_recent_min", int),
    "IDLE_NUDGE_SHIP_COOLDOWN_MIN": ("idle_nudge", "ship_cooldown_min", int),
    "IDLE_NUDGE_ACTIVE_TASK_MAX_AGE_MIN": ("idle_nudge", "active_task_max_age_min", int),
    "IDLE_NUDGE_EXCLUDE": ("idle_nudge", "excluded", "csv"),
    "CADENCE_WATCHDOG_ENABLED": ("cadence", "enabled", "bool"),
    "CADENCE_SILENCE_MIN": ("cadence", "trio_silence_max_min", int),
    "CADENCE_WORKING_STALE_MIN": ("cadence", "worker_max_min", int),
    "CADENCE_ALERT_COOLDOWN_MIN": ("cadence", "alert_cooldown_min", int),
    "MENTION_RESCUE_ENABLED": ("mention_rescue", "enabled", "bool"),
    "MENTION_RESCUE_DELAY_MIN": ("mention_rescue", "delay_min", int),
    "MENTION_RESCUE_COOLDOWN_MIN": ("mention_rescue", "cooldown_min", int),
}


def _deep_merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if value is None:
            continue
        if isinstance(value, Mapping) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _section_to_dict(section: Any) -> dict[str, Any]:
    return {f.name: getattr(section, f.name) for f in fields(section)}


def _build_section(cls: type, data: Mapping[str, Any]) -> Any:
    known = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown config key {}.{}", cls.__name__, key)
            continue
        if isinstance(value, list):
            value = tuple(str(v).strip().lower() if isinstance(v, str) else v for v in value)
        kwargs[key] = value
    return cls(**kwargs)


def _cast_env(raw: str, caster: Any) -> Any:
    if caster == "bool":
        return raw.strip().lower() not in {"false", "0", "no", "off"}
    if caster == "csv":
        return [s.strip().lower() for s in raw.split(",") if s.strip()]
    return caster(raw)


def apply_env_overrides(data: dict[str, Any], env: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Overlay threshold env vars onto a raw policy dict."""
    env = os.environ if env is None else env
    out = copy.deepcopy(data)
    for name, (section, key, caster) in _ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        try:
            out.setdefault(section, {})[key] = _cast_env(raw, caster)
        except ValueError:
            logger.warning("Ignoring invalid value for {}: {!r}", name, raw)
    return out


def policy_from_dict(data: Mapping[str, Any]) -> PolicyConfig:
    """Build a :class:`PolicyConfig` from a (partial) raw mapping."""
    base: dict[str, Any] = {name: _section_to_dict(getattr(DEFAULT_POLICY, name)) for name in _SECTIONS}
    merged = _deep_merge(base, {k: v for k, v in data.items() if k in _SECTIONS})
    sections = {name: _build_section(cls, merged[name]) for name, cls in _SECTIONS.items()}
    agents = data.get("agents") or ()
    if not isinstance(agents, (list, tuple)):
        logger.warning("Config 'agents' must be a list; ignoring")
        agents = ()
    timeout = data.get("pr_lookup_timeout_seconds", DEFAULT_POLICY.pr_lookup_timeout_seconds)
    return PolicyConfig(
        agents=tuple(dict(a) for a in agents if isinstance(a, Mapping)),
        pr_lookup_timeout_seconds=float(timeout),
        **sections,
    )


def load_policy(
    project_dir: Path,
    env: Optional[Mapping[str, str]] = None,
) -> tuple[PolicyConfig, str | None]:
    """Load the optional policy file.

    Args:
        project_dir: Repository root directory.
        env: Environment mapping for overrides (defaults to ``os.environ``).

    Returns:
        A tuple of `(policy, error_message)`. A missing file yields defaults and
        no error; an unreadable file yields defaults plus the parse error.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    data, err = _read_yaml_mapping(path, {})
    if err:
        logger.warning("Failed to load {}: {}", path, err)
        data = {}
    return policy_from_dict(apply_env_overrides(data, env)), err
