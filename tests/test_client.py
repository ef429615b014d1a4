"""
Tests for the XrpcClient facade.

Tests cover login through the facade, strategy swapping with calls in flight,
session listeners and PDS resolution rules.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from aiohttp import web

from social.graze.xrpc.auth.oauth import OAuth2SessionManager
from social.graze.xrpc.auth.password import PasswordSessionManager
from social.graze.xrpc.auth.unauthenticated import UnauthenticatedSessionManager
from social.graze.xrpc.client import XrpcClient
from social.graze.xrpc.config import DEFAULT_SERVICE_URL
from social.graze.xrpc.errors import AuthenticationStateException, RequestCancelledException
from social.graze.xrpc.model.session import Session
from social.graze.xrpc.result import Err, Ok, UsageError, XrpcError

from conftest import (
    ALICE_DID,
    ALICE_HANDLE,
    BOB_DID,
    dead_url,
    did_doc_payload,
    make_settings,
    server_url,
    session_payload,
)


class FakeService:
    """A PDS answering createSession, describeRepo and a slow endpoint."""

    def __init__(self) -> None:
        self.base = ""
        self.describe_calls: List[str] = []
        self.describe_error: Optional[Dict[str, str]] = None
        self.bob_pds: Optional[str] = "https://bob-pds.example.com"
        self.slow_entered = asyncio.Event()
        self.slow_release = asyncio.Event()

    def setup(self, app: web.Application) -> None:
        app.router.add_post("/xrpc/com.atproto.server.createSession", self.create_session)
        app.router.add_get("/xrpc/com.atproto.repo.describeRepo", self.describe_repo)
        app.router.add_get("/xrpc/test.slow", self.slow)

    async def create_session(self, request: web.Request) -> web.Response:
        return web.json_response(session_payload(pds=self.base))

    async def describe_repo(self, request: web.Request) -> web.Response:
        repo = request.query["repo"]
        self.describe_calls.append(repo)
        if self.describe_error is not None:
            return web.json_response(self.describe_error, status=400)
        return web.json_response(
            {
                "handle": "bob.example.com",
                "did": BOB_DID,
                "didDoc": did_doc_payload(BOB_DID, "bob.example.com", self.bob_pds),
                "collections": ["app.bsky.feed.post"],
                "handleIsCorrect": True,
            }
        )

    async def slow(self, request: web.Request) -> web.Response:
        self.slow_entered.set()
        await self.slow_release.wait()
        return web.json_response({"authorization": request.headers.get("Authorization")})


@pytest.fixture
def service() -> FakeService:
    return FakeService()


def alice_session(pds: Optional[str] = None) -> Session:
    return Session.model_validate(session_payload(pds=pds))


class TestAuthentication:
    """Test logging in through the facade."""

    @pytest.mark.asyncio
    async def test_starts_unauthenticated(self):
        async with XrpcClient(make_settings(dead_url())) as client:
            assert isinstance(client.manager, UnauthenticatedSessionManager)
            assert client.session is None
            assert not client.is_authenticated

    @pytest.mark.asyncio
    async def test_preloaded_session(self):
        pds = dead_url()
        settings = make_settings(DEFAULT_SERVICE_URL, use_service_endpoint_upon_login=True)
        async with XrpcClient(settings, session=alice_session(pds)) as client:
            assert isinstance(client.manager, PasswordSessionManager)
            assert client.is_authenticated
            assert client.base_url == pds

    @pytest.mark.asyncio
    async def test_password_login(self, make_server, service):
        server = await make_server(service.setup)
        service.base = server_url(server)
        updates: List[Optional[Session]] = []

        async with XrpcClient(make_settings(service.base)) as client:
            client.add_session_listener(updates.append)
            result = await client.authenticate_with_password(ALICE_HANDLE, "app-password")

            assert isinstance(result, Ok)
            assert client.is_authenticated
            assert client.session.did == ALICE_DID
            assert updates == [client.session]

    @pytest.mark.asyncio
    async def test_login_pivots_to_service_endpoint(self, make_server, service):
        server = await make_server(service.setup)
        # the DID document points at a different origin for the same server
        service.base = server_url(server).replace("127.0.0.1", "localhost")
        settings = make_settings(server_url(server), use_service_endpoint_upon_login=True)

        async with XrpcClient(settings) as client:
            await client.authenticate_with_password(ALICE_HANDLE, "app-password")
            assert client.base_url == service.base

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self, make_server, service):
        server = await make_server(service.setup)
        service.base = server_url(server)
        updates: List[Optional[Session]] = []

        async with XrpcClient(make_settings(service.base)) as client:
            client.add_session_listener(updates.append)
            client.remove_session_listener(updates.append)
            await client.authenticate_with_password(ALICE_HANDLE, "app-password")

        assert updates == []

    @pytest.mark.asyncio
    async def test_oauth_callback_requires_oauth_manager(self):
        async with XrpcClient(make_settings(dead_url())) as client:
            with pytest.raises(AuthenticationStateException) as exc_info:
                await client.authenticate_with_oauth2_callback("?code=c&state=s")
            assert exc_info.value.kind == "NotOAuth2"

    @pytest.mark.asyncio
    async def test_oauth_start_requires_client_id(self):
        async with XrpcClient(make_settings(dead_url())) as client:
            with pytest.raises(AuthenticationStateException) as exc_info:
                await client.start_oauth2_authorization()
            assert exc_info.value.kind == "MissingConfiguration"
            assert isinstance(client.manager, UnauthenticatedSessionManager)

    @pytest.mark.asyncio
    async def test_oauth_start_swaps_manager(self):
        settings = make_settings(
            dead_url(),
            oauth_client_id="https://app.example.com/client-metadata.json",
            oauth_redirect_url="https://app.example.com/callback",
        )
        async with XrpcClient(settings) as client:
            previous = client.manager
            cancellation = asyncio.Event()
            cancellation.set()

            with pytest.raises(RequestCancelledException):
                await client.start_oauth2_authorization(cancellation=cancellation)

            assert isinstance(client.manager, OAuth2SessionManager)
            assert previous.disposed

            result = await client.authenticate_with_oauth2_callback("?code=c&state=s")
            assert result.error == UsageError(
                kind="AuthorizationNotStarted", message="No authorization is pending"
            )

    @pytest.mark.asyncio
    async def test_refresh_unauthenticated(self):
        async with XrpcClient(make_settings(dead_url())) as client:
            assert await client.refresh_session() == Ok(None)


class TestSwapping:
    """Test replacing the session manager while a call is in flight."""

    @pytest.mark.asyncio
    async def test_in_flight_call_completes_on_old_manager(self, make_server, service):
        server = await make_server(service.setup)
        service.base = server_url(server)

        async with XrpcClient(make_settings(service.base)) as client:
            old = client.manager
            in_flight = asyncio.create_task(client.get("/xrpc/test.slow", Dict[str, Any]))
            await service.slow_entered.wait()

            await client.authenticate_with_password(ALICE_HANDLE, "app-password")

            assert client.manager is not old
            assert old.disposed
            assert not old.http.closed

            service.slow_release.set()
            result = await in_flight

            # dispatched anonymously, finished anonymously
            assert result == Ok({"authorization": None})
            assert old.http.closed

            after = await client.get("/xrpc/test.slow", Dict[str, Any])
            assert after == Ok({"authorization": "Bearer access-1"})

    @pytest.mark.asyncio
    async def test_concurrent_logins_both_complete(self, make_server, service):
        server = await make_server(service.setup)
        service.base = server_url(server)
        service.slow_release.set()
        updates: List[Optional[Session]] = []

        async with XrpcClient(make_settings(service.base)) as client:
            client.add_session_listener(updates.append)
            # an opened HTTP session makes disposing the anonymous manager yield
            await client.get("/xrpc/test.slow", Dict[str, Any])

            first, second = await asyncio.gather(
                client.authenticate_with_password(ALICE_HANDLE, "app-password"),
                client.authenticate_with_password(ALICE_HANDLE, "app-password"),
                return_exceptions=True,
            )

            assert isinstance(first, Ok)
            assert isinstance(second, Ok)
            assert isinstance(client.manager, PasswordSessionManager)
            assert client.is_authenticated
            # only the manager installed last speaks for the client
            assert updates == [client.session]


class TestResolveClientForIdentifier:
    """Test PDS resolution rules."""

    @pytest.mark.asyncio
    async def test_default_service_trusted(self):
        settings = make_settings(DEFAULT_SERVICE_URL, trust_default_service=True)
        async with XrpcClient(settings) as client:
            result = await client.resolve_client_for_identifier(BOB_DID)

            assert isinstance(result, Ok)
            assert result.value.client is client
            assert result.value.using_current
            assert result.value.did == BOB_DID

    @pytest.mark.asyncio
    async def test_own_did_needs_no_call(self):
        async with XrpcClient(make_settings(dead_url()), session=alice_session()) as client:
            result = await client.resolve_client_for_identifier(ALICE_DID)

            assert isinstance(result, Ok)
            assert result.value.client is client
            assert result.value.did == ALICE_DID

    @pytest.mark.asyncio
    async def test_own_handle_case_insensitive(self):
        async with XrpcClient(make_settings(dead_url()), session=alice_session()) as client:
            result = await client.resolve_client_for_identifier("@Alice.Example.COM")

            assert isinstance(result, Ok)
            assert result.value.using_current
            assert result.value.did == ALICE_DID

    @pytest.mark.asyncio
    async def test_foreign_did_resolved_once(self, make_server, service):
        server = await make_server(service.setup)
        service.base = server_url(server)

        async with XrpcClient(make_settings(service.base), session=alice_session()) as client:
            result = await client.resolve_client_for_identifier(BOB_DID)

            assert isinstance(result, Ok)
            async with result.value as resolved:
                assert service.describe_calls == [BOB_DID]
                assert not resolved.using_current
                assert resolved.did == BOB_DID
                assert resolved.client.base_url == "https://bob-pds.example.com"
                # never carries credentials to another server
                assert not resolved.client.is_authenticated
                assert resolved.client.session is None

    @pytest.mark.asyncio
    async def test_resolution_failure_propagates(self, make_server, service):
        server = await make_server(service.setup)
        service.describe_error = {"error": "InvalidRequest", "message": "Could not find repo"}

        async with XrpcClient(make_settings(server_url(server))) as client:
            result = await client.resolve_client_for_identifier("nobody.example.com")

            assert isinstance(result, Err)
            assert isinstance(result.error, XrpcError)
            assert result.error.status_code == 400
            assert result.error.message == "Could not find repo"
            assert service.describe_calls == ["nobody.example.com"]

    @pytest.mark.asyncio
    async def test_missing_service_endpoint(self, make_server, service):
        server = await make_server(service.setup)
        service.bob_pds = None

        async with XrpcClient(make_settings(server_url(server))) as client:
            result = await client.resolve_client_for_identifier(BOB_DID)

            assert isinstance(result, Err)
            assert result.error.kind == "NoServiceEndpoint"

    @pytest.mark.asyncio
    async def test_empty_identifier(self):
        async with XrpcClient(make_settings(dead_url())) as client:
            result = await client.resolve_client_for_identifier("  ")
            assert result.error.kind == "InvalidIdentifier"
