"""
Tests for structured logging and the audit trail.
"""

import json
import logging
from contextlib import contextmanager

from shared.exceptions import ErrorKind, SessionError
from shared.logging_config import (
    AuditLogger, DetailedFormatter, LogFormat, StructuredFormatter,
    log_structured_error, setup_logging
)


@contextmanager
def preserved_logging():
    """Put root and audit logger configuration back after setup_logging."""
    root = logging.getLogger()
    audit = logging.getLogger('audit')
    saved = (root.handlers[:], root.level, audit.handlers[:], audit.level, audit.propagate)
    try:
        yield
    finally:
        for logger in (root, audit):
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
                handler.close()
        for handler in saved[0]:
            root.addHandler(handler)
        for handler in saved[2]:
            audit.addHandler(handler)
        root.setLevel(saved[1])
        audit.setLevel(saved[3])
        audit.propagate = saved[4]


def make_record(message="hello", **extra):
    record = logging.LogRecord(
        name="client.test", level=logging.WARNING, pathname=__file__, lineno=10,
        msg=message, args=(), exc_info=None, func="test_func"
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_structured_formatter_fields():
    entry = json.loads(StructuredFormatter().format(make_record(request_id="abc")))

    assert entry['level'] == "WARNING"
    assert entry['logger'] == "client.test"
    assert entry['message'] == "hello"
    assert entry["location"]["function"] == "test_func"
    assert entry['extra'] == {'request_id': "abc"}


def test_structured_formatter_error_info():
    error = SessionError(ErrorKind.SERVER_ERROR, "upstream 502", status=502)

    entry = json.loads(StructuredFormatter().format(make_record(error_info=error)))

    assert entry['error']['kind'] == "server_error"
    assert entry['error']['status'] == 502
    assert entry['error']['user_message'] == error.user_message
    assert 'extra' not in entry


def test_detailed_formatter_error_info():
    error = SessionError(ErrorKind.API_ERROR, "teapot", status=418, context={'url': "/login"})

    text = DetailedFormatter().format(make_record(error_info=error))

    assert "error kind: api_error" in text
    assert "http status: 418" in text
    assert '"url": "/login"' in text


def test_audit_authentication_record(caplog):
    caplog.set_level(logging.INFO, logger='audit')

    AuditLogger().log_authentication("alice", success=False, failure_reason="unauthorized_error")

    record = caplog.records[-1]
    assert record.audit_info['event_type'] == "authentication"
    assert record.audit_info['username'] == "alice"
    assert record.audit_info['result'] == "failure"
    assert record.audit_info['context'] == {'failure_reason': "unauthorized_error"}


def test_audit_session_event(caplog):
    caplog.set_level(logging.INFO, logger='audit')

    AuditLogger().log_session_event("logout", details={'backend': "keyring"})

    audit_info = caplog.records[-1].audit_info
    assert audit_info['event_type'] == "session_event"
    assert audit_info['context'] == {'action': "logout", 'backend': "keyring"}


def test_log_structured_error_attaches_error(caplog):
    caplog.set_level(logging.WARNING)
    error = SessionError(ErrorKind.STORE_ERROR, "keyring locked")

    log_structured_error(logging.getLogger("client.test"), error, logging.WARNING)

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "keyring locked"
    assert record.error_info is error


def test_setup_logging_json_file_and_audit_file(tmp_path):
    log_file = tmp_path / "logs" / "client.log"
    audit_file = tmp_path / "logs" / "audit.log"

    with preserved_logging():
        loggers = setup_logging(
            log_level="DEBUG",
            log_format=LogFormat.JSON,
            log_file=str(log_file),
            enable_console=False,
            audit_file=str(audit_file)
        )

        loggers["session"].info("state changed")
        AuditLogger().log_authentication("alice", success=True)

    log_lines = [json.loads(line) for line in log_file.read_text().splitlines()]
    audit_lines = [json.loads(line) for line in audit_file.read_text().splitlines()]

    assert [line['message'] for line in log_lines] == ["state changed"]
    assert audit_lines[0]['audit']['username'] == "alice"
    assert audit_lines[0]['audit']['result'] == "success"
