"""Agent role registry — who does what, and how much of it at once.

Each :class:`AgentRoleConfig` names one agent on the team, the work it has an
affinity for, and its WIP cap (maximum parallel ``doing`` tasks). Roles are
read from the ``agents:`` block of the policy file and merged onto the
built-in team; after load they change only through :meth:`AgentRegistry.update_role`.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional

from loguru import logger

from ..errors import ValidationError


# ---------------------------------------------------------------------------
# Role config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AgentRoleConfig:
    """Immutable routing profile for one agent."""
    name: str
    role: str
    affinity_tags: tuple[str, ...] = ()
    wip_cap: int = 1

    # Hard routing rules (domain keywords)
    always_route: tuple[str, ...] = ()   # these domains go only to this agent
    never_route: tuple[str, ...] = ()    # this agent never receives these domains

    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role,
            "affinity_tags": list(self.affinity_tags),
            "wip_cap": self.wip_cap,
            "always_route": list(self.always_route),
            "never_route": list(self.never_route),
            "description": self.description,
        }


BUILTIN_AGENT_ROLES: tuple[AgentRoleConfig, ...] = (
    AgentRoleConfig(
        name="link",
        role="builder",
        affinity_tags=(
            "backend", "api", "integration", "bug", "test", "webhook", "server",
            "typescript", "task-lifecycle", "watchdog", "database",
        ),
        wip_cap=2,
    ),
    AgentRoleConfig(
        name="pixel",
        role="designer",
        affinity_tags=(
            "dashboard", "ui", "css", "visual", "animation", "frontend", "layout",
            "ux", "modal", "chart",
        ),
        wip_cap=1,
    ),
    AgentRoleConfig(
        name="sage",
        role="ops",
        affinity_tags=(
            "ci", "deploy", "ops", "merge", "infra", "github-actions", "docker",
            "pipeline", "release", "codeowners",
        ),
        always_route=("deploy", "ci", "release"),
        wip_cap=1,
    ),
    AgentRoleConfig(
        name="echo",
        role="voice",
        affinity_tags=(
            "content", "docs", "landing", "copy", "brand", "marketing", "social",
            "blog", "readme", "onboarding",
        ),
        wip_cap=1,
    ),
    AgentRoleConfig(
        name="harmony",
        role="reviewer",
        affinity_tags=(
            "qa", "review", "validation", "audit", "security", "compliance",
            "testing", "quality",
        ),
        always_route=("security", "audit"),
        wip_cap=2,
    ),
    AgentRoleConfig(
        name="scout",
        role="analyst",
        affinity_tags=(
            "research", "analysis", "metrics", "monitoring", "analytics", "data",
            "reporting", "benchmark",
        ),
        wip_cap=1,
    ),
)

_LIST_FIELDS = ("affinity_tags", "always_route", "never_route")


def _as_lower_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    return tuple(str(v).strip().lower() for v in value if str(v).strip())


def role_from_dict(entry: Mapping[str, Any], base: Optional[AgentRoleConfig] = None) -> AgentRoleConfig:
    """Build (or merge onto *base*) a role from a config mapping.

    ``protected_domains`` is accepted as an alias of ``always_route``.
    Unrecognised keys are kept in ``metadata``.
    """
    data = dict(entry)
    if "protected_domains" in data and "always_route" not in data:
        data["always_route"] = data.pop("protected_domains")
    else:
        data.pop("protected_domains", None)

    name = str(data.pop("name", base.name if base else "") or "").strip().lower()
    if not name:
        raise ValidationError("Agent role requires a 'name'", field="agents.name")

    known = {"role", "wip_cap", "description", *_LIST_FIELDS}
    kwargs: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in data.items():
        if key in _LIST_FIELDS:
            kwargs[key] = _as_lower_tuple(value)
        elif key == "wip_cap":
            try:
                cap = int(value)
            except (TypeError, ValueError):
                raise ValidationError(f"Agent '{name}' has a non-integer wip_cap", field="agents.wip_cap") from None
            if cap < 0:
                raise ValidationError(f"Agent '{name}' has a negative wip_cap", field="agents.wip_cap")
            kwargs[key] = cap
        elif key in known:
            kwargs[key] = str(value)
        else:
            extra[key] = value

    if base is not None:
        return replace(base, **kwargs, metadata={**base.metadata, **extra})
    return AgentRoleConfig(name=name, role=kwargs.pop("role", "agent"), metadata=extra, **kwargs)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class AgentRegistry:
    """Case-insensitive registry of agent routing profiles.

    Starts from the built-in team; ``entries`` (usually the ``agents:`` config
    block) are merged by name on top of it.
    """

    def __init__(
        self,
        entries: Iterable[Mapping[str, Any]] = (),
        *,
        include_builtin: bool = True,
    ) -> None:
        self._lock = threading.Lock()
        self._roles: dict[str, AgentRoleConfig] = {}
        if include_builtin:
            self._roles.update({r.name: r for r in BUILTIN_AGENT_ROLES})
        for entry in entries:
            try:
                name = str(entry.get("name") or "").strip().lower()
                self._roles[name] = role_from_dict(entry, self._roles.get(name))
            except ValidationError as exc:
                logger.warning("Skipping agent role entry {}: {}", entry, exc)

    # -- query ---------------------------------------------------------------

    def get(self, name: Optional[str]) -> Optional[AgentRoleConfig]:
        if not name:
            return None
        return self._roles.get(str(name).strip().lower())

    def has(self, name: Optional[str]) -> bool:
        return self.get(name) is not None

    def list_roles(self) -> list[AgentRoleConfig]:
        return sorted(self._roles.values(), key=lambda r: r.name)

    def names(self) -> list[str]:
        return sorted(self._roles)

    # -- mutation ------------------------------------------------------------

    def register(self, role: AgentRoleConfig) -> None:
        with self._lock:
            self._roles[role.name.lower()] = role

    def update_role(self, name: str, **changes: Any) -> AgentRoleConfig:
        """Administrative path for changing an agent's routing profile.

        Raises:
            KeyError: if the agent is unknown.
            ValidationError: if a changed value is malformed.
        """
        with self._lock:
            current = self.get(name)
            if current is None:
                available = ", ".join(self.names())
                raise KeyError(f"Unknown agent '{name}' (available: {available})")
            updated = role_from_dict({**changes, "name": current.name}, current)
            self._roles[current.name] = updated
        logger.info("Updated agent role {}: {}", current.name, sorted(changes))
        return updated
