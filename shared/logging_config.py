"""
Logging setup for the Session Auth Client.

Provides a JSON formatter for machine-readable logs, a detailed text
formatter for debugging, and an audit logger that records login, logout
and session restore events. Audit records carry usernames and outcomes
only, never credentials or token values.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional, Union

from shared.exceptions import SessionError


AUDIT_LOGGER_NAME = "audit"

STANDARD_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class LogFormat(Enum):
    """Output formats understood by setup_logging."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Kinds of audited session events."""
    AUTHENTICATION = "authentication"
    SESSION_EVENT = "session_event"
    ERROR_EVENT = "error_event"


# Attributes every LogRecord has; anything else was passed via ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {
    'message', 'asctime', 'taskName', 'error_info', 'audit_info'
}


def _error_fields(error: SessionError) -> Dict[str, Any]:
    return {
        'kind': error.kind.value,
        'status': error.status,
        'context': error.context,
        'user_message': error.user_message,
    }


class StructuredFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': {
                'module': record.module,
                'function': record.funcName,
                'line': record.lineno,
            },
            'thread': record.threadName,
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info),
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, SessionError):
            entry['error'] = _error_fields(error)

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            entry['audit'] = audit

        if self.include_extra_fields:
            extra = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
            if extra:
                entry['extra'] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """Text formatter with source location and indented error/audit details."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s',
            datefmt=DATE_FORMAT
        )

    def format(self, record: logging.LogRecord) -> str:
        lines = [super().format(record)]

        error = getattr(record, 'error_info', None)
        if isinstance(error, SessionError):
            lines.append(f"    error kind: {error.kind.value}")
            if error.status is not None:
                lines.append(f"    http status: {error.status}")
            if error.context:
                lines.append(f"    context: {json.dumps(error.context, default=str, sort_keys=True)}")

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            lines.append(f"    audit: {json.dumps(audit, default=str, sort_keys=True)}")

        return "\n".join(lines)


class AuditLogger:
    """
    Writes audit records to the ``audit`` logger.

    Each record's ``audit_info`` holds the event type, UTC timestamp,
    username (when known), result and a context mapping.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        username: Optional[str] = None,
        result: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Emit one audit record.

        Args:
            event_type: Kind of event
            message: Human-readable summary
            username: User the event concerns, if known
            result: Outcome such as "success" or "failure"
            context: Extra event details
        """
        audit_info: Dict[str, Any] = {
            'event_type': event_type.value,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'context': context or {},
        }
        if username is not None:
            audit_info['username'] = username
        if result is not None:
            audit_info['result'] = result

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(
        self,
        username: str,
        success: bool = True,
        failure_reason: Optional[str] = None
    ) -> None:
        outcome = "success" if success else "failure"
        self.log_event(
            AuditEventType.AUTHENTICATION,
            f"Login {outcome} for user {username}",
            username=username,
            result=outcome,
            context={'failure_reason': failure_reason} if failure_reason else None
        )

    def log_session_event(
        self,
        action: str,
        result: str = "success",
        username: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record logout, session restore and similar lifecycle events."""
        self.log_event(
            AuditEventType.SESSION_EVENT,
            f"Session {action}: {result}",
            username=username,
            result=result,
            context={'action': action, **(details or {})}
        )

    def log_error(self, error: SessionError) -> None:
        self.log_event(
            AuditEventType.ERROR_EVENT,
            f"Session error: {error.message}",
            result="error",
            context=_error_fields(error)
        )


def _build_formatter(log_format: LogFormat) -> logging.Formatter:
    if log_format == LogFormat.JSON:
        return StructuredFormatter()
    if log_format == LogFormat.DETAILED:
        return DetailedFormatter()
    return logging.Formatter(fmt=STANDARD_FORMAT, datefmt=DATE_FORMAT)


def _rotating_file_handler(
    path: str,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int
) -> logging.Handler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_level: Union[str, int] = logging.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    enable_console: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Configure the root and audit loggers.

    Existing root handlers are replaced. When ``audit_file`` is given,
    audit records are written there as JSON and no longer reach the root
    handlers; otherwise they propagate like any other record.

    Args:
        log_level: Level name (e.g. "DEBUG") or number
        log_format: Output format for console and log file
        log_file: Rotating log file path
        max_file_size: Bytes before a log file rotates
        backup_count: Rotated files to keep
        enable_console: Whether to log to stderr
        audit_file: Rotating audit log file path

    Returns:
        The configured loggers by role
    """
    level = logging.getLevelName(log_level.upper()) if isinstance(log_level, str) else log_level
    if not isinstance(level, int):
        level = logging.INFO

    formatter = _build_formatter(log_format)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        root_logger.addHandler(
            _rotating_file_handler(log_file, formatter, max_file_size, backup_count)
        )

    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
    if audit_file:
        audit_logger.addHandler(
            _rotating_file_handler(audit_file, StructuredFormatter(), max_file_size, backup_count)
        )
    audit_logger.propagate = not audit_file

    return {
        'root': root_logger,
        'session': logging.getLogger('client.auth.session_controller'),
        'api': logging.getLogger('client.api_client'),
        'storage': logging.getLogger('client.auth.token_storage'),
        'audit': audit_logger,
    }


def log_structured_error(
    logger: logging.Logger,
    error: SessionError,
    level: int = logging.ERROR
) -> None:
    """Log a SessionError with its kind, status and context attached as ``error_info``."""
    logger.log(level, error.message, extra={'error_info': error})
