"""
Core interfaces for the Session Auth Client.

This module defines the abstract interfaces the session controller depends
on, so that storage, transport and configuration can be substituted.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

from shared.models import AuthToken, Credentials


class ITokenStore(ABC):
    """Interface for durable token pair persistence."""

    @abstractmethod
    def read(self) -> Optional[AuthToken]:
        """Read the stored token, or None when nothing usable is stored."""
        pass

    @abstractmethod
    def write(self, token: AuthToken) -> None:
        """Persist all token entries; raises SessionError on failure."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove all token entries; idempotent."""
        pass


class IAuthClient(ABC):
    """Interface for the remote credential exchange."""

    @abstractmethod
    async def login(self, credentials: Credentials) -> AuthToken:
        """Exchange credentials for a token pair."""
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str) -> AuthToken:
        """Exchange a refresh token for a new token pair."""
        pass

    @abstractmethod
    async def get_current_user(self, access_token: str) -> Dict[str, Any]:
        """Get the profile of the authenticated user."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources."""
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_server_url(self) -> str:
        """Get server URL."""
        pass

    @abstractmethod
    def get_server_timeout(self) -> float:
        """Get request timeout in seconds."""
        pass

    @abstractmethod
    def get_storage_backend(self) -> str:
        """Get token storage backend name."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass
