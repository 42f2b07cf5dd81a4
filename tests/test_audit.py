"""
Tests for the audit trail.
"""

from loguru import logger

from orgadmin.auth.audit import USER_LOGIN, AuditEvent, AuditTrail, LoggingAuditSink


class TestAuditTrail:
    """Test fire-and-forget emission."""

    def test_emit_reaches_sink(self, audit_sink):
        AuditTrail(audit_sink).emit(USER_LOGIN, user_id="u-1", changes={"deviceId": "d1"})

        event = audit_sink.events[0]
        assert event.action == USER_LOGIN
        assert event.status == "success"
        assert event.changes == {"deviceId": "d1"}

    def test_sink_errors_are_swallowed(self):
        class BrokenSink:
            def record(self, event):
                raise OSError("disk full")

        AuditTrail(BrokenSink()).emit(USER_LOGIN, user_id="u-1")

    def test_to_dict(self):
        data = AuditEvent(action=USER_LOGIN, user_id="u-1").to_dict()
        assert data["action"] == USER_LOGIN
        assert isinstance(data["timestamp"], str)


class TestLoggingAuditSink:
    """Test the loguru-backed sink."""

    def test_bound_record(self):
        records = []
        handler_id = logger.add(records.append, format="{message}", filter=lambda r: r["extra"].get("audit"))
        try:
            LoggingAuditSink().record(AuditEvent(action=USER_LOGIN, user_id="u-1"))
        finally:
            logger.remove(handler_id)

        assert len(records) == 1
        assert "AUDIT USER_LOGIN user=u-1" in records[0]
        assert records[0].record["extra"]["event"]["user_id"] == "u-1"
