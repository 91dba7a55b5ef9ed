"""Tests for the audit logger."""

import json
import logging

from starlette.requests import Request

from vdid.audit.logger import AuditEvent, AuditLogger, get_request_id
from vdid.core.logging import JsonFormatter


def make_request(headers: dict[str, str]) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    }
    return Request(scope)


class TestAuditLogger:
    """Tests for AuditLogger buffering and filtering."""

    def test_disabled_logger_records_nothing(self):
        audit = AuditLogger(enabled=False)
        audit.log_auth_success("p1", "password")
        assert audit.get_recent_events() == []

    def test_newest_first(self):
        audit = AuditLogger()
        audit.log(AuditEvent(action="a.first"))
        audit.log(AuditEvent(action="a.second"))
        assert [e["action"] for e in audit.get_recent_events()] == ["a.second", "a.first"]

    def test_filters(self):
        audit = AuditLogger()
        audit.log_auth_success("p1", "wallet")
        audit.log_auth_failure("password", reason="bad_password", subject="p2")
        audit.log_access("wallet.bind", "p1", resource="0xabc")

        assert len(audit.get_recent_events(action_filter="auth.")) == 2
        denied = audit.get_recent_events(status_filter="denied")
        assert len(denied) == 1
        assert denied[0]["principal"] == "anonymous"
        assert denied[0]["resource"] == "p2"
        assert denied[0]["details"]["reason"] == "bad_password"
        assert audit.get_recent_events(limit=1)[0]["action"] == "wallet.bind"

    def test_ring_buffer_bounded(self):
        audit = AuditLogger()
        for i in range(AuditLogger.MAX_BUFFER_SIZE + 10):
            audit.log(AuditEvent(action=f"e.{i}"))
        events = audit.get_recent_events(limit=10_000)
        assert len(events) == AuditLogger.MAX_BUFFER_SIZE
        assert events[-1]["action"] == "e.10"

    def test_emits_to_audit_logger(self, caplog):
        audit = AuditLogger()
        with caplog.at_level(logging.INFO, logger="audit"):
            audit.log_auth_failure("passkey", reason="unknown_credential", request_id="req-1")
        record = next(r for r in caplog.records if r.name == "audit")
        assert record.levelno == logging.WARNING
        assert record.action == "auth.failure"
        assert record.request_id == "req-1"


class TestJsonFormatter:
    """Tests for the structured log formatter."""

    def test_includes_extras(self):
        record = logging.LogRecord("audit", logging.INFO, __file__, 1, "audit: %s", ("x",), None)
        record.action = "wallet.bind"
        record.resource = "0xabc"
        payload = json.loads(JsonFormatter().format(record))
        assert payload["msg"] == "audit: x"
        assert payload["logger"] == "audit"
        assert payload["level"] == "INFO"
        assert payload["action"] == "wallet.bind"
        assert payload["resource"] == "0xabc"
        assert "request_id" not in payload


class TestRequestId:
    """Tests for get_request_id."""

    def test_header_precedence(self):
        assert get_request_id(make_request({"X-Request-ID": "a", "X-Correlation-ID": "b"})) == "a"
        assert get_request_id(make_request({"X-Correlation-ID": "b"})) == "b"

    def test_missing(self):
        assert get_request_id(make_request({})) is None
        assert get_request_id(None) is None
