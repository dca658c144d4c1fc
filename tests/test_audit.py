"""Tests for audit logging."""

import json
from unittest.mock import MagicMock, patch

from api.audit import AuditAction, AuditLogger, log_audit


class TestBuildEntry:
    def test_minimal_entry(self):
        entry = AuditLogger(enabled=True).build_entry(AuditAction.VOTE_CAST)

        assert entry["action"] == "vote_cast"
        assert entry["success"] is True
        assert "timestamp" in entry
        assert "client_ip" not in entry

    def test_full_entry(self):
        entry = AuditLogger(enabled=True).build_entry(
            AuditAction.VIDEO_DELETE,
            client_ip="10.0.0.1",
            user_agent="pytest",
            resource_type="video",
            resource_id="v-1",
            resource_name="My Cat",
            details={"votes_removed": 3},
            request_id="req-1",
        )

        assert entry["client_ip"] == "10.0.0.1"
        assert entry["resource_id"] == "v-1"
        assert entry["details"] == {"votes_removed": 3}
        assert entry["request_id"] == "req-1"

    def test_long_values_truncated(self):
        entry = AuditLogger(enabled=True).build_entry(
            AuditAction.VIDEO_UPLOAD, success=False, error="e" * 5000, user_agent="u" * 5000
        )

        assert entry["success"] is False
        assert len(entry["error"]) <= 500
        assert entry["error"].endswith("...")
        assert len(entry["user_agent"]) <= 500


class TestAuditLoggerLog:
    def test_writes_json_line(self):
        audit = AuditLogger(enabled=True)
        with patch.object(audit, "logger", MagicMock()) as fake_logger:
            audit.log(AuditAction.VOTES_RESET, resource_type="vote", details={"deleted": 4})

        line = fake_logger.info.call_args.args[0]
        entry = json.loads(line)
        assert entry["action"] == "votes_reset"
        assert entry["details"] == {"deleted": 4}

    def test_disabled_logger_writes_nothing(self):
        audit = AuditLogger(enabled=False)
        with patch.object(audit, "logger", MagicMock()) as fake_logger:
            audit.log(AuditAction.VOTE_CAST)

        fake_logger.info.assert_not_called()

    def test_sink_errors_do_not_propagate(self, caplog):
        audit = AuditLogger(enabled=True)
        fake_logger = MagicMock()
        fake_logger.info.side_effect = OSError("disk full")
        with patch.object(audit, "logger", fake_logger):
            with caplog.at_level("WARNING", logger="api.audit"):
                audit.log(AuditAction.VOTE_REMOVE)

        assert "Failed to write audit entry" in caplog.text


class TestLogAudit:
    def test_delegates_to_singleton(self):
        with patch("api.audit.audit_logger") as fake_audit:
            log_audit(AuditAction.USER_LOGIN, resource_type="user", resource_id="adminvotelycom")

        fake_audit.log.assert_called_once()
        assert fake_audit.log.call_args.args[0] == AuditAction.USER_LOGIN
        assert fake_audit.log.call_args.kwargs["resource_id"] == "adminvotelycom"
