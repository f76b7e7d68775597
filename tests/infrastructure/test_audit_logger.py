"""Unit tests for AuditLogger."""

import pytest

from src.infrastructure.audit import AuditLogger
from src.infrastructure.audit.audit_logger import CLEAR_DATA, DELETE_PATIENT, SAVE_PATIENT


class TestAuditLogger:
    """Test suite for AuditLogger."""

    def test_init(self):
        """Test AuditLogger initialization."""
        audit = AuditLogger()
        assert audit.get_log_count() == 0
        assert not audit.has_logs()
        assert audit.path is None

    def test_log_action(self):
        """Test logging a single action."""
        audit = AuditLogger()
        entry = audit.log_action(SAVE_PATIENT, "abc123", backup=True)

        assert audit.get_log_count() == 1
        assert entry.action == SAVE_PATIENT
        assert entry.patient_id == "abc123"
        assert entry.details == {"backup": True}
        assert entry.timestamp.endswith("Z")

    def test_entries_are_immutable(self):
        """Test that logged entries cannot be altered."""
        entry = AuditLogger().log_action(SAVE_PATIENT, "abc123")
        with pytest.raises(Exception):
            entry.action = DELETE_PATIENT

    def test_get_logs_newest_first_with_filter(self):
        """Test ordering, limit and action filter."""
        audit = AuditLogger()
        audit.log_action(SAVE_PATIENT, "a")
        audit.log_action(DELETE_PATIENT, "a")
        audit.log_action(SAVE_PATIENT, "b")

        assert [e.patient_id for e in audit.get_logs()] == ["b", "a", "a"]
        assert [e.patient_id for e in audit.get_logs(action=SAVE_PATIENT)] == ["b", "a"]
        assert len(audit.get_logs(limit=1)) == 1
        assert len(audit.get_logs(limit=None)) == 3

    def test_max_entries_drops_oldest(self):
        """Test the retention bound."""
        audit = AuditLogger(max_entries=2)
        for record_id in ("a", "b", "c"):
            audit.log_action(SAVE_PATIENT, record_id)
        assert [e.patient_id for e in audit.get_logs()] == ["c", "b"]

    def test_clear_logs_records_the_clear(self):
        """Test that clearing leaves exactly one CLEAR_DATA entry."""
        audit = AuditLogger()
        audit.log_action(SAVE_PATIENT, "a")
        audit.log_action(SAVE_PATIENT, "b")

        audit.clear_logs()

        logs = audit.get_logs()
        assert len(logs) == 1
        assert logs[0].action == CLEAR_DATA
        assert logs[0].details == {"cleared_entries": 2}


class TestAuditPersistence:
    """Test suite for flushing to and reloading from a JSON-lines file."""

    def test_flush_without_path_is_noop(self):
        audit = AuditLogger()
        audit.log_action(SAVE_PATIENT, "a")
        assert audit.flush() == 0

    def test_flush_and_reload(self, tmp_path):
        path = tmp_path / "audit" / "log.jsonl"
        audit = AuditLogger(path=path)
        audit.log_action(SAVE_PATIENT, "a")
        audit.log_action(DELETE_PATIENT, "a")

        assert audit.flush() == 2
        assert audit.flush() == 0
        assert len(path.read_text().splitlines()) == 2

        reloaded = AuditLogger(path=path)
        assert [e.action for e in reloaded.get_logs()] == [DELETE_PATIENT, SAVE_PATIENT]

    def test_flush_appends(self, tmp_path):
        path = tmp_path / "log.jsonl"
        first = AuditLogger(path=path)
        first.log_action(SAVE_PATIENT, "a")
        first.flush()

        second = AuditLogger(path=path)
        second.log_action(SAVE_PATIENT, "b")
        second.flush()

        assert AuditLogger(path=path).get_log_count() == 2

    def test_clear_rewrites_file(self, tmp_path):
        path = tmp_path / "log.jsonl"
        audit = AuditLogger(path=path)
        audit.log_action(SAVE_PATIENT, "a")
        audit.flush()

        audit.clear_logs()
        audit.flush()

        reloaded = AuditLogger(path=path)
        assert [e.action for e in reloaded.get_logs()] == [CLEAR_DATA]

    def test_malformed_lines_are_skipped(self, tmp_path):
        path = tmp_path / "log.jsonl"
        audit = AuditLogger(path=path)
        audit.log_action(SAVE_PATIENT, "a")
        audit.flush()
        with open(path, "a", encoding="utf-8") as f:
            f.write("not json\n\n")

        assert AuditLogger(path=path).get_log_count() == 1
