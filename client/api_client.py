"""
HTTP API Client for the Session Auth Client.

This module exchanges credentials for a token pair with the remote auth
server. Every failure is reported as a SessionError whose kind comes from
the error classifier; requests are never retried.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import aiohttp
from aiohttp import ClientSession, ClientTimeout
from jose import jwt, JWTError

from shared.exceptions import (
    ErrorKind, SessionError, classify_exception, classify_http_status
)
from shared.interfaces import IAuthClient
from shared.models import AuthToken, Credentials

logger = logging.getLogger(__name__)


def parse_token_expiration(token: str) -> Optional[datetime]:
    """
    Parse expiration time from a JWT access token.

    Args:
        token: Access token string, JWT or opaque

    Returns:
        Expiration as aware UTC datetime, or None if the token carries none
    """
    try:
        # Decode without verification to get expiration
        payload = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.debug(f"Access token is not a readable JWT: {e}")
        return None

    expires_at_timestamp = payload.get('exp', payload.get('expires_at'))
    if isinstance(expires_at_timestamp, bool) or not isinstance(expires_at_timestamp, (int, float)):
        return None

    try:
        return datetime.fromtimestamp(expires_at_timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        logger.warning(f"Failed to parse token expiration: {e}")
        return None


class SessionAPIClient(IAuthClient):
    """
    HTTP client for the auth server login endpoint.

    Sends exactly one request per login call. The aiohttp session is
    created lazily and owned by this client unless one is passed in.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        login_path: str = '/login',
        session: Optional[ClientSession] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.login_path = '/' + login_path.lstrip('/')
        self.timeout = ClientTimeout(total=timeout)

        self._session = session
        self._owns_session = session is None

        logger.info(f"API client initialized for server: {self.base_url}")

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    @property
    def login_url(self) -> str:
        return f"{self.base_url}{self.login_path}"

    async def _ensure_session(self) -> ClientSession:
        """Ensure HTTP session is available."""
        if self._session is None or (self._owns_session and self._session.closed):
            self._session = ClientSession(
                timeout=self.timeout,
                headers={'User-Agent': 'SessionAuthClient/1.0'}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    async def login(self, credentials: Credentials) -> AuthToken:
        """
        Exchange credentials for a token pair.

        Args:
            credentials: Username and password to log in with

        Returns:
            Token pair issued by the server

        Raises:
            SessionError: With the classified kind on any failure
        """
        session = await self._ensure_session()
        url = self.login_url
        logger.info(f"Logging in user {credentials.username} at {url}")

        try:
            async with session.post(
                url,
                json={'username': credentials.username, 'password': credentials.password},
                headers={'accept': 'application/json', 'Content-Type': 'application/json'},
                timeout=self.timeout
            ) as response:
                kind = classify_http_status(response.status)
                if kind is not None:
                    detail = await self._get_error_detail(response)
                    raise SessionError(
                        kind,
                        f"Login failed ({response.status}): {detail}",
                        status=response.status,
                        context={'url': url}
                    )

                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise SessionError(
                        ErrorKind.UNAUTHORIZED_ERROR,
                        "Login response is not valid JSON",
                        status=response.status,
                        cause=e
                    )

                token = self._parse_login_response(data, response.status)

        except SessionError as e:
            logger.warning(f"Login failed for user {credentials.username}: {e.message}")
            raise
        except Exception as e:
            kind = classify_exception(e)
            logger.warning(f"Login request for user {credentials.username} failed ({kind.value}): {e!r}")
            raise SessionError(
                kind,
                f"Login request failed: {str(e) or type(e).__name__}",
                status=e.status if isinstance(e, aiohttp.ClientResponseError) else None,
                context={'url': url},
                cause=e
            )

        logger.info(f"Login successful for user {credentials.username}")
        return token

    def _parse_login_response(self, data: Any, status: int) -> AuthToken:
        """Build the token pair from a 2xx login body."""
        if not isinstance(data, dict):
            raise SessionError(
                ErrorKind.UNAUTHORIZED_ERROR, "Login response is not a JSON object", status=status
            )

        if data.get('success') is not True:
            raise SessionError(
                ErrorKind.UNAUTHORIZED_ERROR, "Server rejected the login", status=status
            )

        access_token = data.get('token')
        refresh_token = data.get('refresh')
        if not isinstance(access_token, str) or not access_token:
            raise SessionError(
                ErrorKind.UNAUTHORIZED_ERROR, "Login response has no access token", status=status
            )
        if not isinstance(refresh_token, str) or not refresh_token:
            raise SessionError(
                ErrorKind.UNAUTHORIZED_ERROR, "Login response has no refresh token", status=status
            )

        return AuthToken(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=parse_token_expiration(access_token)
        )

    async def _get_error_detail(self, response: aiohttp.ClientResponse) -> str:
        """Extract error information from response."""
        try:
            body = await response.text()
        except (aiohttp.ClientError, ValueError):
            return response.reason or "Unknown error"
        return body[:200] or response.reason or "Unknown error"

    async def refresh(self, refresh_token: str) -> AuthToken:
        """Token refresh has no server contract yet."""
        raise SessionError(ErrorKind.NOT_IMPLEMENTED, "Token refresh is not implemented")

    async def get_current_user(self, access_token: str) -> Dict[str, Any]:
        """Current-user lookup has no server contract yet."""
        raise SessionError(ErrorKind.NOT_IMPLEMENTED, "Current user lookup is not implemented")
