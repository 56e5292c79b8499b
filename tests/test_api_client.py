"""
Tests for the auth server API client.

The client talks to a real aiohttp application served on a local port, so
request shape, status handling and transport failures are exercised end to
end.
"""

import asyncio
import logging
import socket
import pytest
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import aiohttp
from aiohttp import web
from aiohttp.test_utils import TestServer
from jose import jwt

from client.api_client import SessionAPIClient, parse_token_expiration
from shared.exceptions import ErrorKind, SessionError
from shared.models import Credentials


CREDENTIALS = Credentials(username="alice", password="s3cret")
EXPIRY = datetime(2030, 1, 1, tzinfo=timezone.utc)


@asynccontextmanager
async def login_server(handler, path='/login'):
    """Serve a single login handler and yield the server base URL."""
    app = web.Application()
    app.router.add_post(path, handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url('/'))
    finally:
        await server.close()


def token_response(token="opaque-access", refresh="opaque-refresh", success=True):
    async def handler(request):
        return web.json_response({'refresh': refresh, 'success': success, 'token': token})
    return handler


def status_response(status, body="boom"):
    async def handler(request):
        return web.Response(status=status, text=body)
    return handler


def unused_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


async def login_error(base_url, **kwargs) -> SessionError:
    async with SessionAPIClient(base_url, **kwargs) as client:
        with pytest.raises(SessionError) as exc_info:
            await client.login(CREDENTIALS)
    return exc_info.value


class TestLoginSuccess:
    """Test successful credential exchange."""

    @pytest.mark.asyncio
    async def test_request_shape(self):
        received = []

        async def handler(request):
            headers = {
                'Accept': request.headers.get('Accept'),
                'Content-Type': request.headers.get('Content-Type'),
            }
            received.append((request.method, headers, await request.json()))
            return web.json_response({'refresh': "r", 'success': True, 'token': "a"})

        async with login_server(handler) as base_url:
            async with SessionAPIClient(base_url) as client:
                await client.login(CREDENTIALS)

        assert len(received) == 1
        method, headers, body = received[0]
        assert method == "POST"
        assert headers['Accept'] == "application/json"
        assert headers['Content-Type'].startswith("application/json")
        assert body == {'username': "alice", 'password': "s3cret"}

    @pytest.mark.asyncio
    async def test_opaque_token_has_no_expiry(self):
        async with login_server(token_response()) as base_url:
            async with SessionAPIClient(base_url) as client:
                token = await client.login(CREDENTIALS)

        assert token.access_token == "opaque-access"
        assert token.refresh_token == "opaque-refresh"
        assert token.expires_at is None

    @pytest.mark.asyncio
    async def test_jwt_exp_becomes_expiry(self):
        access = jwt.encode({'sub': "alice", 'exp': int(EXPIRY.timestamp())}, "secret", algorithm="HS256")

        async with login_server(token_response(token=access)) as base_url:
            async with SessionAPIClient(base_url) as client:
                token = await client.login(CREDENTIALS)

        assert token.expires_at == EXPIRY

    @pytest.mark.asyncio
    async def test_custom_login_path(self):
        async with login_server(token_response(), path='/api/auth/login') as base_url:
            async with SessionAPIClient(base_url, login_path='api/auth/login') as client:
                token = await client.login(CREDENTIALS)

        assert token.access_token == "opaque-access"

    @pytest.mark.asyncio
    async def test_password_not_logged(self, caplog):
        caplog.set_level(logging.DEBUG)

        async with login_server(status_response(401)) as base_url:
            await login_error(base_url)
        async with login_server(token_response()) as base_url:
            async with SessionAPIClient(base_url) as client:
                await client.login(CREDENTIALS)

        assert "s3cret" not in caplog.text


class TestLoginFailures:
    """Test classification of failed logins."""

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        async with login_server(status_response(401, '{"detail": "bad credentials"}')) as base_url:
            error = await login_error(base_url)

        assert error.kind == ErrorKind.UNAUTHORIZED_ERROR
        assert error.status == 401
        assert error.user_message == "Invalid credentials. Please check your username and password."

    @pytest.mark.asyncio
    async def test_server_error(self):
        async with login_server(status_response(500)) as base_url:
            error = await login_error(base_url)

        assert error.kind == ErrorKind.SERVER_ERROR
        assert error.status == 500

    @pytest.mark.asyncio
    async def test_other_status_is_api_error(self):
        async with login_server(status_response(403)) as base_url:
            error = await login_error(base_url)

        assert error.kind == ErrorKind.API_ERROR

    @pytest.mark.asyncio
    async def test_missing_route_is_api_error(self):
        async with login_server(token_response(), path='/elsewhere') as base_url:
            error = await login_error(base_url)

        assert error.kind == ErrorKind.API_ERROR
        assert error.status == 404

    @pytest.mark.asyncio
    async def test_success_false_is_unauthorized(self):
        async with login_server(token_response(success=False)) as base_url:
            error = await login_error(base_url)

        assert error.kind == ErrorKind.UNAUTHORIZED_ERROR

    @pytest.mark.asyncio
    async def test_malformed_body_is_unauthorized(self):
        async def handler(request):
            return web.Response(status=200, text="<html>not json</html>", content_type="text/html")

        async with login_server(handler) as base_url:
            error = await login_error(base_url)

        assert error.kind == ErrorKind.UNAUTHORIZED_ERROR

    @pytest.mark.asyncio
    async def test_non_object_body_is_unauthorized(self):
        async def handler(request):
            return web.json_response(["token"])

        async with login_server(handler) as base_url:
            error = await login_error(base_url)

        assert error.kind == ErrorKind.UNAUTHORIZED_ERROR

    @pytest.mark.asyncio
    async def test_missing_refresh_token_is_unauthorized(self):
        async def handler(request):
            return web.json_response({'success': True, 'token': "a"})

        async with login_server(handler) as base_url:
            error = await login_error(base_url)

        assert error.kind == ErrorKind.UNAUTHORIZED_ERROR

    @pytest.mark.asyncio
    async def test_connection_refused_is_network_error(self):
        error = await login_error(f"http://127.0.0.1:{unused_port()}")

        assert error.kind == ErrorKind.NETWORK_ERROR
        assert error.cause is not None
        assert error.user_message == "Unable to connect to the server. Please check your connection."

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self):
        async def handler(request):
            await asyncio.sleep(0.5)
            return web.json_response({'refresh': "r", 'success': True, 'token': "a"})

        async with login_server(handler) as base_url:
            error = await login_error(base_url, timeout=0.05)

        assert error.kind == ErrorKind.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_failed_login_is_not_retried(self):
        calls = []

        async def handler(request):
            calls.append(request)
            return web.Response(status=503)

        async with login_server(handler) as base_url:
            await login_error(base_url)

        assert len(calls) == 1


class TestClientLifecycle:
    """Test session ownership and unimplemented operations."""

    @pytest.mark.asyncio
    async def test_refresh_not_implemented(self):
        async with SessionAPIClient("http://localhost") as client:
            with pytest.raises(SessionError) as exc_info:
                await client.refresh("refresh-token")

        assert exc_info.value.kind == ErrorKind.NOT_IMPLEMENTED

    @pytest.mark.asyncio
    async def test_get_current_user_not_implemented(self):
        async with SessionAPIClient("http://localhost") as client:
            with pytest.raises(SessionError) as exc_info:
                await client.get_current_user("access-token")

        assert exc_info.value.kind == ErrorKind.NOT_IMPLEMENTED

    @pytest.mark.asyncio
    async def test_owned_session_closed(self):
        client = SessionAPIClient("http://localhost")
        async with client:
            session = client._session
            assert session is not None

        assert session.closed

    @pytest.mark.asyncio
    async def test_external_session_left_open(self):
        async with aiohttp.ClientSession() as session:
            async with login_server(token_response()) as base_url:
                client = SessionAPIClient(base_url, session=session)
                await client.login(CREDENTIALS)
                await client.close()

            assert not session.closed


class TestParseTokenExpiration:
    """Test expiry extraction from access tokens."""

    def test_opaque_token(self):
        assert parse_token_expiration("not-a-jwt") is None

    def test_exp_claim(self):
        token = jwt.encode({'exp': int(EXPIRY.timestamp())}, "k", algorithm="HS256")

        assert parse_token_expiration(token) == EXPIRY

    def test_expires_at_claim(self):
        token = jwt.encode({'expires_at': int(EXPIRY.timestamp())}, "k", algorithm="HS256")

        assert parse_token_expiration(token) == EXPIRY

    def test_non_numeric_claim(self):
        token = jwt.encode({'exp': "soon"}, "k", algorithm="HS256")

        assert parse_token_expiration(token) is None

    def test_jwt_without_expiry(self):
        token = jwt.encode({'sub': "alice"}, "k", algorithm="HS256")

        assert parse_token_expiration(token) is None
