"""
Error taxonomy for the Session Auth Client.

This module defines the closed set of error kinds a session can fail with,
the single structured exception that carries them, and the classifier that
turns transport and HTTP outcomes into exactly one kind.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum

import aiohttp


class ErrorKind(Enum):
    """Flat, exhaustive error taxonomy consumed by the UI layer."""

    NETWORK_ERROR = "network_error"
    UNAUTHORIZED_ERROR = "unauthorized_error"
    SERVER_ERROR = "server_error"
    API_ERROR = "api_error"
    UNKNOWN_ERROR = "unknown_error"

    # Persistence-only
    STORE_ERROR = "store_error"

    # Declared operations that have no server contract yet
    NOT_IMPLEMENTED = "not_implemented"


_USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.UNAUTHORIZED_ERROR: "Invalid credentials. Please check your username and password.",
    ErrorKind.NETWORK_ERROR: "Unable to connect to the server. Please check your connection.",
    ErrorKind.SERVER_ERROR: "The server encountered an error. Please try again later.",
}

_FALLBACK_MESSAGE = "An unexpected error occurred. Please try again."


def user_message_for(kind: ErrorKind) -> str:
    """
    Get the human-readable message shown for an error kind.

    Args:
        kind: Error kind to describe

    Returns:
        Message derived from the kind only, never from transport details
    """
    return _USER_MESSAGES.get(kind, _FALLBACK_MESSAGE)


class SessionError(Exception):
    """
    Structured error raised by the auth client and token stores.

    The error is a tagged value: ``kind`` is the only thing callers branch
    on. There are deliberately no per-kind subclasses.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)

        self.kind = kind
        self.message = message
        self.status = status
        self.context = context or {}
        self.cause = cause
        self.user_message = user_message_for(kind)
        self.timestamp = datetime.now(timezone.utc)

        # Add cause information to context if available
        if cause is not None:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def __repr__(self) -> str:
        return f"SessionError(kind={self.kind.name}, message={self.message!r}, status={self.status})"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary format for serialization."""
        return {
            'error': {
                'kind': self.kind.value,
                'message': self.message,
                'user_message': self.user_message,
                'status': self.status,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
            }
        }


def classify_http_status(status: int) -> Optional[ErrorKind]:
    """
    Map an HTTP status code to an error kind.

    Args:
        status: HTTP response status

    Returns:
        Error kind, or None for 2xx responses
    """
    if 200 <= status < 300:
        return None
    if status == 401:
        return ErrorKind.UNAUTHORIZED_ERROR
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.API_ERROR


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Map an exception raised while talking to the server to an error kind.

    Args:
        exc: Exception raised by the transport or by response handling

    Returns:
        Error kind; every exception lands in exactly one bucket
    """
    if isinstance(exc, SessionError):
        return exc.kind

    if isinstance(exc, aiohttp.ClientResponseError):
        return classify_http_status(exc.status) or ErrorKind.UNKNOWN_ERROR

    # ClientConnectorError is both a ClientError and an OSError
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, TimeoutError, OSError)):
        return ErrorKind.NETWORK_ERROR

    return ErrorKind.UNKNOWN_ERROR


def handle_exception(
    exception: BaseException,
    context: Optional[Dict[str, Any]] = None
) -> SessionError:
    """
    Convert a generic exception to a structured SessionError.

    Args:
        exception: The original exception
        context: Additional context information

    Returns:
        Structured SessionError
    """
    if isinstance(exception, SessionError):
        return exception

    return SessionError(
        kind=classify_exception(exception),
        message=str(exception) or type(exception).__name__,
        context=context,
        cause=exception
    )
