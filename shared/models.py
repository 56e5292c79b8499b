"""
Core data models for the Session Auth Client.

This module defines the credentials, token pair, session states and intent
events exchanged between the UI layer, the session controller, the auth
client and the token store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Union

from shared.exceptions import ErrorKind


# Persisted entry names for the token pair
ACCESS_TOKEN_FIELD = "access_token"
REFRESH_TOKEN_FIELD = "refresh_token"
EXPIRES_AT_FIELD = "expires_at"

TOKEN_FIELDS = (ACCESS_TOKEN_FIELD, REFRESH_TOKEN_FIELD, EXPIRES_AT_FIELD)


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalise a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Credentials:
    """Username/password pair built per submit and discarded after use."""
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class AuthToken:
    """Immutable access/refresh token pair with optional expiry."""
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")
        if not self.refresh_token:
            raise ValueError("Refresh token cannot be empty")
        if self.expires_at is not None:
            object.__setattr__(self, 'expires_at', as_utc(self.expires_at))

    def __repr__(self) -> str:
        # Token values stay out of logs and tracebacks
        return f"AuthToken(access_token=<{len(self.access_token)} chars>, expires_at={self.expires_at})"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """
        Check whether the token has expired.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            False when no expiry is set, otherwise True once now reaches expires_at
        """
        if self.expires_at is None:
            return False
        reference = as_utc(now) if now is not None else utc_now()
        return reference >= self.expires_at

    def to_fields(self) -> Dict[str, Optional[str]]:
        """Project the token onto its three persisted entries."""
        return {
            ACCESS_TOKEN_FIELD: self.access_token,
            REFRESH_TOKEN_FIELD: self.refresh_token,
            EXPIRES_AT_FIELD: self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Optional[str]]) -> Optional['AuthToken']:
        """
        Rebuild a token from its persisted entries.

        Args:
            fields: Mapping of entry name to stored string (missing or None when absent)

        Returns:
            AuthToken, or None if a required entry is missing or unparsable
        """
        access_token = fields.get(ACCESS_TOKEN_FIELD)
        refresh_token = fields.get(REFRESH_TOKEN_FIELD)
        if not isinstance(access_token, str) or not access_token:
            return None
        if not isinstance(refresh_token, str) or not refresh_token:
            return None

        expires_at = None
        expires_at_str = fields.get(EXPIRES_AT_FIELD)
        if expires_at_str:
            if not isinstance(expires_at_str, str):
                return None
            try:
                expires_at = datetime.fromisoformat(expires_at_str)
            except ValueError:
                return None

        return cls(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)


# Session states. Exactly one is current for a controller at any time.

@dataclass(frozen=True)
class Initial:
    """No session decision made, or the last check found no session."""
    name: str = field(default="initial", init=False)


@dataclass(frozen=True)
class Loading:
    """A login attempt or stored-session check is in flight."""
    name: str = field(default="loading", init=False)


@dataclass(frozen=True)
class Authenticated:
    """A valid, unexpired token is active."""
    token: AuthToken
    name: str = field(default="authenticated", init=False)


@dataclass(frozen=True)
class Failed:
    """The most recent attempt failed; no token is active."""
    reason: ErrorKind
    detail: str
    name: str = field(default="failed", init=False)


SessionState = Union[Initial, Loading, Authenticated, Failed]


# Intent events raised by the UI layer

@dataclass(frozen=True)
class Submit:
    """Log in with the given credentials."""
    credentials: Credentials


@dataclass(frozen=True)
class Reset:
    """Return to the initial state; logs out when authenticated."""


@dataclass(frozen=True)
class CheckStoredSession:
    """Restore a previously persisted session if it is still valid."""


SessionEvent = Union[Submit, Reset, CheckStoredSession]


def describe_state(state: SessionState) -> Dict[str, Optional[str]]:
    """
    Describe a session state as plain data for display or JSON output.

    Args:
        state: Session state to describe

    Returns:
        Dictionary with the state name and its safe-to-show details
    """
    description: Dict[str, Optional[str]] = {'state': state.name}
    if isinstance(state, Authenticated):
        expires_at = state.token.expires_at
        description['expires_at'] = expires_at.isoformat() if expires_at else None
    elif isinstance(state, Failed):
        description['reason'] = state.reason.value
        description['detail'] = state.detail
    return description
