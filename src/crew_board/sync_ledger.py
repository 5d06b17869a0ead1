"""Offline reconciliation ledger.

One row per ``(record_type, record_id)`` records whether the local copy has
been pushed to the cloud. Local mutations mark a row ``pending``; the
reconciler marks it ``synced`` (or bumps ``attempt_count`` on failure).
Rows live in ``.crew_board/sync_ledger.yaml`` behind the same file-lock
pattern as the task store.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

from .constants import SYNC_LEDGER_FILENAME, SYNC_LEDGER_LOCK_FILENAME
from .io_utils import FileLock, _read_yaml_mapping, _write_yaml_atomic
from .utils import _now_ms


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"


@dataclass
class SyncLedgerRow:
    record_type: str
    record_id: str
    local_updated_at: int
    cloud_synced_at: Optional[int] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    attempt_count: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return self.record_type, self.record_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_type": self.record_type,
            "record_id": self.record_id,
            "local_updated_at": self.local_updated_at,
            "cloud_synced_at": self.cloud_synced_at,
            "sync_status": self.sync_status.value,
            "attempt_count": self.attempt_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncLedgerRow":
        try:
            status = SyncStatus(str(data.get("sync_status") or "pending"))
        except ValueError:
            status = SyncStatus.PENDING
        return cls(
            record_type=str(data["record_type"]),
            record_id=str(data["record_id"]),
            local_updated_at=int(data.get("local_updated_at") or 0),
            cloud_synced_at=data.get("cloud_synced_at"),
            sync_status=status,
            attempt_count=int(data.get("attempt_count") or 0),
        )


class SyncLedger:
    """File-backed sync ledger.

    Parameters
    ----------
    state_dir:
        Path to the ``.crew_board/`` directory.
    """

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / SYNC_LEDGER_FILENAME
        self._lock = FileLock(state_dir / SYNC_LEDGER_LOCK_FILENAME)
        self._thread_lock = threading.RLock()

    # -- storage ------------------------------------------------------------

    def _load(self) -> dict[tuple[str, str], SyncLedgerRow]:
        data, err = _read_yaml_mapping(self.path, {})
        if err:
            raise RuntimeError(f"Sync ledger is unreadable: {err}")
        rows: dict[tuple[str, str], SyncLedgerRow] = {}
        for raw in data.get("rows") or []:
            if not isinstance(raw, dict):
                continue
            try:
                row = SyncLedgerRow.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed sync ledger row: {}", raw)
                continue
            rows[row.key] = row
        return rows

    @contextmanager
    def _rows(self, write: bool = True) -> Iterator[dict[tuple[str, str], SyncLedgerRow]]:
        with self._thread_lock:
            with self._lock:
                rows = self._load()
                yield rows
                if write:
                    _write_yaml_atomic(self.path, {"version": 1, "rows": [r.to_dict() for r in rows.values()]})

    # -- mutations ----------------------------------------------------------

    def mark_pending(self, record_type: str, record_id: str, local_updated_at: Optional[int] = None) -> SyncLedgerRow:
        """Upsert a row as ``pending`` after a local mutation."""
        ts = local_updated_at if local_updated_at is not None else _now_ms()
        with self._rows() as rows:
            row = rows.get((record_type, record_id))
            if row is None:
                row = SyncLedgerRow(record_type=record_type, record_id=record_id, local_updated_at=ts)
                rows[row.key] = row
            else:
                row.local_updated_at = ts
                row.sync_status = SyncStatus.PENDING
            return row

    def mark_synced(self, record_type: str, record_id: str, cloud_synced_at: Optional[int] = None) -> SyncLedgerRow:
        ts = cloud_synced_at if cloud_synced_at is not None else _now_ms()
        with self._rows() as rows:
            row = rows.get((record_type, record_id))
            if row is None:
                row = SyncLedgerRow(record_type=record_type, record_id=record_id, local_updated_at=ts)
                rows[row.key] = row
            row.sync_status = SyncStatus.SYNCED
            row.cloud_synced_at = ts
            row.attempt_count += 1
            return row

    def mark_failed(self, record_type: str, record_id: str) -> Optional[SyncLedgerRow]:
        """Record a failed push attempt; the row stays ``pending``."""
        with self._rows() as rows:
            row = rows.get((record_type, record_id))
            if row is None:
                logger.warning("mark_failed for unknown sync row {}/{}", record_type, record_id)
                return None
            row.attempt_count += 1
            row.sync_status = SyncStatus.PENDING
            return row

    # -- queries ------------------------------------------------------------

    def get(self, record_type: str, record_id: str) -> Optional[SyncLedgerRow]:
        with self._rows(write=False) as rows:
            return rows.get((record_type, record_id))

    def sync_status(self) -> dict[str, int]:
        """Row counts by status (plus ``total``)."""
        with self._rows(write=False) as rows:
            counts = {s.value: 0 for s in SyncStatus}
            for row in rows.values():
                counts[row.sync_status.value] += 1
            counts["total"] = len(rows)
            return counts

    def pending_rows(self, limit: Optional[int] = None) -> list[SyncLedgerRow]:
        """Pending rows, oldest local change first."""
        with self._rows(write=False) as rows:
            pending = [r for r in rows.values() if r.sync_status == SyncStatus.PENDING]
        pending.sort(key=lambda r: (r.local_updated_at, r.record_type, r.record_id))
        if limit is not None and limit >= 0:
            pending = pending[:limit]
        return pending
