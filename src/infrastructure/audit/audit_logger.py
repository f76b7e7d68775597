"""Audit Logger.

This module provides an append-only audit trail of record store actions
(save, load, delete, export, import, ...). Each entry records the action,
timestamp, subject record id and free-form details.

Security Impact:
    - Creates an append-only trail of every access to patient data
    - Details never contain record contents, only ids and counts
    - Individual entries cannot be mutated or removed; only a full clear,
      which is itself logged

Architecture:
    - Infrastructure layer component
    - Called by the RecordStore after each successful operation
    - Entries are immutable AuditLogEntry models
    - Entries are collected in memory and flushed in one go (on store close)
      to an optional JSON-lines file, so the trail survives restarts
"""

import logging
import uuid
from pathlib import Path
from typing import Any, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from src.domain.patient_record import AuditLogEntry
from src.domain.ports import utc_now_iso

logger = logging.getLogger(__name__)

# Action names
SAVE_PATIENT = "SAVE_PATIENT"
LOAD_PATIENT = "LOAD_PATIENT"
UPDATE_PATIENT = "UPDATE_PATIENT"
DELETE_PATIENT = "DELETE_PATIENT"
EXPORT_DATA = "EXPORT_DATA"
IMPORT_DATA = "IMPORT_DATA"
MIGRATE_DATA = "MIGRATE_DATA"
RESTORE_BACKUP = "RESTORE_BACKUP"
CLEAR_DATA = "CLEAR_DATA"


class AuditLogger:
    """Append-only logger for record store actions.

    Entries are kept in memory in insertion order. The optional
    ``max_entries`` bound drops the oldest entries once exceeded, which keeps
    long-running processes from growing without limit.

    Example Usage:
        ```python
        audit = AuditLogger()
        audit.log_action(SAVE_PATIENT, patient_id="abc123", backup=False)
        for entry in audit.get_logs(limit=10):
            print(entry.action, entry.patient_id)
        ```
    """

    def __init__(self, max_entries: Optional[int] = 10_000, path: Optional[Union[str, Path]] = None):
        """Initialize audit logger.

        Parameters:
            max_entries: Retention bound (None keeps everything)
            path: Optional JSON-lines file; existing entries are loaded from it
        """
        self._logs: List[AuditLogEntry] = []
        self._max_entries = max_entries
        self.path = Path(path) if path is not None else None
        self._pending: List[AuditLogEntry] = []
        self._rewrite = False
        if self.path is not None and self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    self._logs.append(AuditLogEntry.model_validate_json(line))
                except PydanticValidationError:
                    logger.warning(f"Skipping malformed audit entry at {self.path}:{line_number}")
        self._trim()
        logger.debug(f"Loaded {len(self._logs)} audit entries from {self.path}")

    def _trim(self) -> None:
        if self._max_entries is not None and len(self._logs) > self._max_entries:
            del self._logs[: len(self._logs) - self._max_entries]

    def log_action(self, action: str, patient_id: Optional[str] = None, **details: Any) -> AuditLogEntry:
        """Append one audit entry.

        Parameters:
            action: Action name (SAVE_PATIENT, EXPORT_DATA, ...)
            patient_id: Subject record id, if any
            **details: Free-form detail (ids, counts, flags)

        Returns:
            The appended entry
        """
        entry = AuditLogEntry(
            entry_id=str(uuid.uuid4()),
            action=action,
            timestamp=utc_now_iso(),
            patient_id=patient_id,
            details=details,
        )
        self._logs.append(entry)
        self._pending.append(entry)
        self._trim()
        logger.debug(f"Audit: {action} {patient_id or ''}".rstrip())
        return entry

    def get_logs(self, limit: Optional[int] = 100, action: Optional[str] = None) -> List[AuditLogEntry]:
        """Get audit entries, newest first.

        Parameters:
            limit: Maximum number of entries (None for all)
            action: Only return entries with this action

        Returns:
            List of entries, most recent first
        """
        entries = [e for e in reversed(self._logs) if action is None or e.action == action]
        return entries if limit is None else entries[:limit]

    def clear_logs(self) -> None:
        """Drop every entry and record that the trail was cleared."""
        count = len(self._logs)
        self._logs.clear()
        self._pending.clear()
        self._rewrite = True
        self.log_action(CLEAR_DATA, cleared_entries=count)

    def get_log_count(self) -> int:
        return len(self._logs)

    def has_logs(self) -> bool:
        return len(self._logs) > 0

    def flush(self) -> int:
        """Write unflushed entries to ``path`` (no-op without a path).

        After a clear the file is rewritten instead of appended to.

        Returns:
            Number of entries written
        """
        if self.path is None or (not self._pending and not self._rewrite):
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        mode = "w" if self._rewrite else "a"
        with open(self.path, mode, encoding="utf-8") as f:
            for entry in self._pending:
                f.write(entry.model_dump_json() + "\n")
        written = len(self._pending)
        self._pending.clear()
        self._rewrite = False
        logger.debug(f"Flushed {written} audit entries to {self.path}")
        return written
