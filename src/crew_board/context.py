"""Explicit wiring of one project's board.

Everything that used to be a module-level singleton (policy, registry,
ledgers, stores) hangs off a :class:`BoardContext` built for a project
directory. Tests build their own with in-memory collaborators.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from .agents.registry import AgentRegistry
from .audit import AuditLedger
from .collab import ChatStore, FilePresenceStore, JsonlChatStore, PresenceStore
from .config import PolicyConfig, load_policy
from .constants import STATE_DIR_NAME
from .pr_status import GitHubPrStatusLookup, PrStatusLookup
from .sync_ledger import SyncLedger
from .task_engine.engine import TaskEngine
from .watchdog.runner import WatchdogRunner


class BoardContext:
    def __init__(
        self,
        project_dir: Path,
        *,
        policy: Optional[PolicyConfig] = None,
        presence: Optional[PresenceStore] = None,
        chat: Optional[ChatStore] = None,
        pr_lookup: Optional[PrStatusLookup] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.state_dir = self.project_dir / STATE_DIR_NAME
        self.state_dir.mkdir(parents=True, exist_ok=True)

        self.config_error: Optional[str] = None
        if policy is None:
            policy, self.config_error = load_policy(self.project_dir)
        self.policy = policy

        self.registry = AgentRegistry(policy.agents)
        self.audit = AuditLedger(self.state_dir)
        self.sync = SyncLedger(self.state_dir)
        self.pr_lookup = pr_lookup or GitHubPrStatusLookup(timeout=policy.pr_lookup_timeout_seconds)
        self.presence = presence or FilePresenceStore(self.state_dir)
        self.chat = chat or JsonlChatStore(self.state_dir)
        self.engine = TaskEngine(
            self.state_dir,
            policy=policy,
            registry=self.registry,
            audit=self.audit,
            sync=self.sync,
            pr_lookup=self.pr_lookup,
            clock=clock,
        )
        self.watchdog = WatchdogRunner(
            self.engine.store,
            self.presence,
            self.chat,
            policy,
            clock=clock,
        )

    @property
    def project_id(self) -> str:
        return self.project_dir.name
