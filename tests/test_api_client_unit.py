#!/usr/bin/env python3
"""
Unit tests for the Frontend API client.

Runs the client against a local aiohttp application that mimics the
Frontend API endpoints used by the sync engine.
"""

import pytest
from contextlib import asynccontextmanager

from aiohttp import web
from aiohttp.test_utils import TestServer

from authsync.api_client import FrontendAPIClient, RetryConfig
from authsync.auth.storage import MemoryStorage
from shared.exceptions import TransportError, ErrorCode
from shared.models import SignInStatus
from helpers import make_client, make_session, make_jwt


class FrontendAPIStub:
    """Records requests and serves canned Frontend API responses."""

    def __init__(self):
        self.requests = []
        self.client = make_client([make_session("sess_1"), make_session("sess_2")])
        self.jwt = make_jwt(sid="sess_1")

    async def _record(self, request):
        form = dict(await request.post()) if request.method != 'GET' else {}
        self.requests.append({
            'method': request.method,
            'path': request.path,
            'query': dict(request.query),
            'headers': request.headers.copy(),
            'form': form
        })

    async def environment(self, request):
        await self._record(request)
        return web.json_response(
            {"display_config": {"application_name": "Demo"}, "maintenance_mode": False},
            headers={'Authorization': 'Bearer native-1'}
        )

    async def get_client(self, request):
        await self._record(request)
        return web.json_response({"response": self.client.to_dict(), "client": None})

    async def touch(self, request):
        await self._record(request)
        client = make_client([make_session("sess_1"), make_session("sess_2")],
                             active=request.match_info['session_id'], updated_at=2)
        return web.json_response({"response": {"id": request.match_info['session_id']},
                                  "client": client.to_dict()})

    async def remove_sessions(self, request):
        await self._record(request)
        client = make_client([], active=None, updated_at=3)
        return web.json_response({"response": [], "client": client.to_dict()})

    async def end_session(self, request):
        await self._record(request)
        return web.json_response({"response": {}, "client": None})

    async def token(self, request):
        await self._record(request)
        return web.json_response({"object": "token", "jwt": self.jwt})

    async def template_token(self, request):
        await self._record(request)
        return web.json_response({"object": "token"})

    async def sign_in(self, request):
        await self._record(request)
        if request.path.endswith('attempt_first_factor'):
            return web.json_response({
                "errors": [{
                    "message": "Password is incorrect. Try again, or use another method.",
                    "long_message": "Password is incorrect. Try again, or use another method.",
                    "code": "form_password_incorrect",
                    "meta": {"param_name": "password"}
                }]
            }, status=422)
        return web.json_response({
            "response": {"object": "sign_in_attempt", "id": "sia_1", "status": "needs_first_factor",
                         "identifier": "ada@example.com"},
            "client": self.client.to_dict()
        })

    async def unavailable(self, request):
        await self._record(request)
        return web.Response(status=503, text="upstream unavailable")

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/v1/environment', self.environment)
        app.router.add_get('/v1/client', self.get_client)
        app.router.add_post('/v1/client/sign_ins', self.sign_in)
        app.router.add_post('/v1/client/sign_ins/{sign_in_id}/attempt_first_factor', self.sign_in)
        app.router.add_post('/v1/client/sessions/{session_id}/touch', self.touch)
        app.router.add_post('/v1/client/sessions/{session_id}/end', self.end_session)
        app.router.add_post('/v1/client/sessions/{session_id}/remove', self.unavailable)
        app.router.add_delete('/v1/client/sessions', self.remove_sessions)
        app.router.add_post('/v1/client/sessions/{session_id}/tokens', self.token)
        app.router.add_post('/v1/client/sessions/{session_id}/tokens/{template}', self.template_token)
        return app


@asynccontextmanager
async def running_client(stub, storage=None):
    server = TestServer(stub.build_app())
    await server.start_server()
    api = FrontendAPIClient(
        str(server.make_url('/')),
        storage or MemoryStorage(),
        store_prefix="test_",
        retry_config=RetryConfig(max_retries=0)
    )
    try:
        yield api
    finally:
        await api.close()
        await server.close()


class TestRequests:
    """Test request shape."""

    @pytest.mark.asyncio
    async def test_native_query_and_headers(self):
        stub = FrontendAPIStub()
        async with running_client(stub) as api:
            environment = await api.get_environment()

        request = stub.requests[0]
        assert environment.application_name == "Demo"
        assert request['query']['_is_native'] == '1'
        assert request['headers']['x-mobile'] == '1'
        assert request['headers']['User-Agent'] == 'authsync/0.1'

    @pytest.mark.asyncio
    async def test_authorization_persisted_and_replayed(self):
        """Test the Authorization response header is stored and sent back."""
        stub = FrontendAPIStub()
        storage = MemoryStorage()
        async with running_client(stub, storage) as api:
            await api.get_environment()
            await api.get_client()

        assert 'Authorization' not in stub.requests[0]['headers']
        assert stub.requests[1]['headers']['Authorization'] == 'Bearer native-1'
        assert storage.get("test_authorization") == 'Bearer native-1'

    @pytest.mark.asyncio
    async def test_get_client(self):
        stub = FrontendAPIStub()
        async with running_client(stub) as api:
            client = await api.get_client()

        assert client == stub.client

    @pytest.mark.asyncio
    async def test_form_body_omits_none(self):
        stub = FrontendAPIStub()
        async with running_client(stub) as api:
            await api.create_session_token("sess_1")
            await api.create_session_token("sess_1", organization_id="org_1")

        assert stub.requests[0]['form'] == {}
        assert stub.requests[1]['form'] == {'organization_id': 'org_1'}


class TestClientUpdates:
    """Test forwarding of clients embedded in mutating responses."""

    @pytest.mark.asyncio
    async def test_touch_forwards_client(self):
        stub = FrontendAPIStub()
        received = []

        async def on_update(client):
            received.append(client)

        async with running_client(stub) as api:
            api.set_client_update_callback(on_update)
            client = await api.touch_session("sess_2", "org_1")

        assert client.last_active_session_id == "sess_2"
        assert received == [client]
        assert stub.requests[0]['form'] == {'active_organization_id': 'org_1'}

    @pytest.mark.asyncio
    async def test_remove_all_sessions(self):
        stub = FrontendAPIStub()
        received = []

        async def on_update(client):
            received.append(client)

        async with running_client(stub) as api:
            api.set_client_update_callback(on_update)
            client = await api.remove_client_sessions()

        assert stub.requests[0]['method'] == 'DELETE'
        assert client.sessions == []
        assert received == [client]

    @pytest.mark.asyncio
    async def test_missing_client_forwards_none(self):
        """Test a response without a client reports None to the callback."""
        stub = FrontendAPIStub()
        received = []

        async def on_update(client):
            received.append(client)

        async with running_client(stub) as api:
            api.set_client_update_callback(on_update)
            await api.end_session("sess_1")

        assert received == [None]

    @pytest.mark.asyncio
    async def test_sign_in(self):
        stub = FrontendAPIStub()
        async with running_client(stub) as api:
            sign_in = await api.create_sign_in({"identifier": "ada@example.com"})

        assert sign_in.id == "sia_1"
        assert sign_in.status == SignInStatus.NEEDS_FIRST_FACTOR
        assert stub.requests[0]['form'] == {"identifier": "ada@example.com"}


class TestTokens:
    """Test session token endpoints."""

    @pytest.mark.asyncio
    async def test_create_session_token(self):
        stub = FrontendAPIStub()
        async with running_client(stub) as api:
            token = await api.create_session_token("sess_1")

        assert token == stub.jwt
        assert stub.requests[0]['path'] == '/v1/client/sessions/sess_1/tokens'

    @pytest.mark.asyncio
    async def test_missing_jwt_is_invalid_response(self):
        stub = FrontendAPIStub()
        async with running_client(stub) as api:
            with pytest.raises(TransportError) as exc_info:
                await api.create_session_token_from_template("sess_1", "hasura")

        assert exc_info.value.error_code == ErrorCode.TRANSPORT_INVALID_RESPONSE
        assert stub.requests[0]['path'] == '/v1/client/sessions/sess_1/tokens/hasura'


class TestErrors:
    """Test error mapping."""

    @pytest.mark.asyncio
    async def test_error_payload_parsed(self):
        stub = FrontendAPIStub()
        async with running_client(stub) as api:
            with pytest.raises(TransportError) as exc_info:
                await api.attempt_first_factor("sia_1", {"strategy": "password", "password": "wrong"})

        error = exc_info.value
        assert error.status == 422
        assert error.code == "form_password_incorrect"
        assert error.errors[0].meta == {"param_name": "password"}
        assert error.user_message.startswith("Password is incorrect")

    @pytest.mark.asyncio
    async def test_error_without_json_body(self):
        stub = FrontendAPIStub()
        async with running_client(stub) as api:
            with pytest.raises(TransportError) as exc_info:
                await api.remove_session("sess_1")

        assert exc_info.value.status == 503
        assert exc_info.value.code is None
        assert exc_info.value.errors == []

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        """Test an unreachable server raises TransportError without status."""
        api = FrontendAPIClient("http://127.0.0.1:1", MemoryStorage(),
                                retry_config=RetryConfig(max_retries=1, base_delay=0, jitter=False))
        try:
            with pytest.raises(TransportError) as exc_info:
                await api.get_client()
        finally:
            await api.close()

        assert exc_info.value.status is None
        assert exc_info.value.error_code == ErrorCode.TRANSPORT_CONNECTION_FAILED
        assert "2 attempt(s)" in exc_info.value.message
