STATE_DIR_NAME = ".crew_board"
CONFIG_FILE = "config.yaml"

TASKS_FILENAME = "tasks.yaml"
TASKS_LOCK_FILENAME = "tasks.lock"
AUDIT_FILENAME = "review-audit-ledger.jsonl"
SYNC_LEDGER_FILENAME = "sync_ledger.yaml"
SYNC_LEDGER_LOCK_FILENAME = "sync_ledger.lock"

WINDOWS_LOCK_BYTES = 4096

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS

AUDIT_MAX_IN_MEMORY = 5000
PR_LOOKUP_TIMEOUT_SECONDS = 3.0

SYSTEM_SENDER = "system"
DEFAULT_CHANNEL = "general"
ACTION_CHANNELS = ("reviews", "blockers")
