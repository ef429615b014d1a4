"""
Unit tests for the aiohttp middleware chain.

Tests cover response capture, authorization headers, client assertions, the
DPoP nonce challenge/retry loop and ChainMiddlewareClient session ownership.
"""

import json
from typing import Any, Dict, List
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import ClientResponse, ClientSession, hdrs
from jwcrypto import jwk, jwt
from multidict import CIMultiDict, CIMultiDictProxy

from social.graze.xrpc.auth.jwt import access_token_hash, generate_dpop_key
from social.graze.xrpc.chain import (
    AuthorizationMiddleware,
    ChainMiddlewareClient,
    ChainMiddlewareContext,
    ChainRequest,
    ChainResponse,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
)


def create_mock_response(
    status: int = 200,
    headers: Dict[str, str] | None = None,
    body: Any = None,
    content_type: str = "application/json",
) -> ClientResponse:
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status

    headers_dict = dict(headers or {})
    headers_dict.setdefault(hdrs.CONTENT_TYPE, content_type)
    mock_response.headers = CIMultiDictProxy(CIMultiDict(headers_dict))

    if isinstance(body, bytes):
        raw = body
    elif isinstance(body, str):
        raw = body.encode("utf-8")
    else:
        raw = json.dumps(body or {}).encode("utf-8")
    mock_response.read = AsyncMock(return_value=raw)
    mock_response.release = Mock()
    mock_response.closed = False
    return mock_response


def proof_claims(request: ChainRequest, dpop_key: jwk.JWK) -> Dict[str, Any]:
    token = jwt.JWT(jwt=request.headers["DPoP"], key=dpop_key)
    return json.loads(token.claims)


class RecordingNext:
    """Terminal chain callback returning canned responses in order."""

    def __init__(self, *responses: ClientResponse) -> None:
        self.responses = list(responses)
        self.requests: List[ChainRequest] = []

    async def __call__(self, request: ChainRequest):
        self.requests.append(ChainRequest.from_chain_request(request))
        response = self.responses.pop(0)
        return response, await ChainResponse.from_aiohttp_response(response)


class TestChainResponse:
    """Test response capture for middleware."""

    @pytest.mark.asyncio
    async def test_success_body_left_unread(self):
        response = create_mock_response(200, body={"ok": True})
        chain_response = await ChainResponse.from_aiohttp_response(response)

        assert chain_response.ok
        assert chain_response.body is None
        response.read.assert_not_called()

    @pytest.mark.asyncio
    async def test_json_error_body_decoded(self):
        response = create_mock_response(400, body={"error": "use_dpop_nonce"})
        chain_response = await ChainResponse.from_aiohttp_response(response)

        assert not chain_response.ok
        assert chain_response.body == {"error": "use_dpop_nonce"}
        assert chain_response.body_matches_kv("error", "use_dpop_nonce")

    @pytest.mark.asyncio
    async def test_text_error_body(self):
        response = create_mock_response(502, body="Bad Gateway", content_type="text/plain")
        chain_response = await ChainResponse.from_aiohttp_response(response)

        assert chain_response.body == "Bad Gateway"
        assert not chain_response.body_matches_kv("error", "x")

    @pytest.mark.asyncio
    async def test_binary_error_body(self):
        response = create_mock_response(
            500, body=b"\xff\xfe", content_type="application/octet-stream"
        )
        chain_response = await ChainResponse.from_aiohttp_response(response)
        assert chain_response.body == b"\xff\xfe"


class TestAuthorizationMiddleware:
    """Test bearer token injection."""

    @pytest.mark.asyncio
    async def test_adds_bearer_token(self):
        next_call = RecordingNext(create_mock_response())
        middleware = AuthorizationMiddleware(lambda: "access-1")

        await middleware.handle(next_call, ChainRequest(method="GET", url="https://a.example"))

        assert next_call.requests[0].headers["Authorization"] == "Bearer access-1"

    @pytest.mark.asyncio
    async def test_explicit_header_wins(self):
        next_call = RecordingNext(create_mock_response())
        middleware = AuthorizationMiddleware(lambda: "access-1")
        request = ChainRequest(
            method="POST",
            url="https://a.example",
            headers={"Authorization": "Bearer refresh-1"},
        )

        await middleware.handle(next_call, request)

        assert next_call.requests[0].headers["Authorization"] == "Bearer refresh-1"

    @pytest.mark.asyncio
    async def test_no_token_no_header(self):
        next_call = RecordingNext(create_mock_response())
        middleware = AuthorizationMiddleware(lambda: None)

        await middleware.handle(next_call, ChainRequest(method="GET", url="https://a.example"))

        assert next_call.requests[0].headers == {}

    @pytest.mark.asyncio
    async def test_retry_copy_has_independent_headers(self):
        request = ChainRequest(method="GET", url="https://a.example")
        copy = ChainRequest.from_chain_request(request)

        copy.headers["DPoP"] = "proof"

        assert request.headers == {}


class TestGenerateClaimAssertionMiddleware:
    """Test client assertion injection into form bodies."""

    @pytest.mark.asyncio
    async def test_adds_assertion_to_form(self):
        signing_key = jwk.JWK.generate(kty="EC", crv="P-256", kid="k1", alg="ES256")
        middleware = GenerateClaimAssertionMiddleware(
            signing_key, "https://app.example/client.json", "https://issuer.example"
        )
        next_call = RecordingNext(create_mock_response())
        form = {"grant_type": "refresh_token"}
        request = ChainRequest(method="POST", url="https://issuer.example/token", kwargs={"data": form})

        await middleware.handle(next_call, request)

        sent = next_call.requests[0].kwargs["data"]
        assert sent["grant_type"] == "refresh_token"
        assert sent["client_assertion_type"].endswith("jwt-bearer")
        claims = json.loads(jwt.JWT(jwt=sent["client_assertion"], key=signing_key).claims)
        assert claims["aud"] == "https://issuer.example"
        # the caller's dict is untouched
        assert "client_assertion" not in form

    @pytest.mark.asyncio
    async def test_ignores_non_form_requests(self):
        signing_key = jwk.JWK.generate(kty="EC", crv="P-256", kid="k1", alg="ES256")
        middleware = GenerateClaimAssertionMiddleware(signing_key, "c", "a")
        next_call = RecordingNext(create_mock_response())

        await middleware.handle(next_call, ChainRequest(method="GET", url="https://a.example"))

        assert next_call.requests[0].kwargs is None


class TestGenerateDpopMiddleware:
    """Test DPoP proofs and nonce challenges."""

    @pytest.mark.asyncio
    async def test_proof_binds_method_and_url_without_query(self):
        dpop_key, _ = generate_dpop_key()
        middleware = GenerateDpopMiddleware(dpop_key)
        next_call = RecordingNext(create_mock_response())

        await middleware.handle(
            next_call,
            ChainRequest(method="GET", url="https://pds.example/xrpc/a.b.c?limit=5"),
        )

        claims = proof_claims(next_call.requests[0], dpop_key)
        assert claims["htm"] == "GET"
        assert claims["htu"] == "https://pds.example/xrpc/a.b.c"
        assert "Authorization" not in next_call.requests[0].headers

    @pytest.mark.asyncio
    async def test_access_token_bound(self):
        dpop_key, _ = generate_dpop_key()
        middleware = GenerateDpopMiddleware(dpop_key, lambda: "at-1")
        next_call = RecordingNext(create_mock_response())

        await middleware.handle(next_call, ChainRequest(method="GET", url="https://pds.example/x"))

        request = next_call.requests[0]
        assert request.headers["Authorization"] == "DPoP at-1"
        assert proof_claims(request, dpop_key)["ath"] == access_token_hash("at-1")

    @pytest.mark.asyncio
    async def test_nonce_challenge_retries_with_nonce(self):
        dpop_key, _ = generate_dpop_key()
        nonces: Dict[str, str] = {}
        middleware = GenerateDpopMiddleware(dpop_key, nonces=nonces)
        next_call = RecordingNext(
            create_mock_response(
                400, headers={"DPoP-Nonce": "server-nonce"}, body={"error": "use_dpop_nonce"}
            ),
            create_mock_response(201, body={"request_uri": "urn:x"}),
        )
        context = ChainMiddlewareContext(
            chain_callback=middleware.handle_gen(next_call),
            chain_request=ChainRequest(method="POST", url="https://auth.example/par", kwargs={}),
            logger=Mock(),
        )

        async with context as (client_response, chain_response):
            assert chain_response.status == 201

        assert len(next_call.requests) == 2
        assert "nonce" not in proof_claims(next_call.requests[0], dpop_key)
        assert proof_claims(next_call.requests[1], dpop_key)["nonce"] == "server-nonce"
        assert nonces == {"https://auth.example": "server-nonce"}

    @pytest.mark.asyncio
    async def test_www_authenticate_challenge(self):
        dpop_key, _ = generate_dpop_key()
        nonces: Dict[str, str] = {}
        middleware = GenerateDpopMiddleware(dpop_key, lambda: "at-1", nonces)
        next_call = RecordingNext(
            create_mock_response(
                401,
                headers={
                    "DPoP-Nonce": "n2",
                    hdrs.WWW_AUTHENTICATE: 'DPoP error="use_dpop_nonce"',
                },
                body="",
                content_type="text/plain",
            ),
            create_mock_response(200),
        )
        context = ChainMiddlewareContext(
            chain_callback=middleware.handle_gen(next_call),
            chain_request=ChainRequest(method="GET", url="https://pds.example/x"),
            logger=Mock(),
        )

        async with context as (_, chain_response):
            assert chain_response.ok

        assert nonces == {"https://pds.example": "n2"}
        assert len(next_call.requests) == 2

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        dpop_key, _ = generate_dpop_key()
        nonces: Dict[str, str] = {}
        middleware = GenerateDpopMiddleware(dpop_key, nonces=nonces)
        next_call = RecordingNext(
            create_mock_response(
                400, headers={"DPoP-Nonce": "n3"}, body={"error": "invalid_grant"}
            )
        )
        context = ChainMiddlewareContext(
            chain_callback=middleware.handle_gen(next_call),
            chain_request=ChainRequest(method="POST", url="https://auth.example/token"),
            logger=Mock(),
        )

        async with context as (_, chain_response):
            assert chain_response.status == 400

        assert len(next_call.requests) == 1
        assert nonces == {"https://auth.example": "n3"}

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        dpop_key, _ = generate_dpop_key()
        middleware = GenerateDpopMiddleware(dpop_key)
        challenge = lambda: create_mock_response(  # noqa: E731
            400, headers={"DPoP-Nonce": "again"}, body={"error": "use_dpop_nonce"}
        )
        next_call = RecordingNext(challenge(), challenge(), challenge(), challenge())
        logger = Mock()
        context = ChainMiddlewareContext(
            chain_callback=middleware.handle_gen(next_call),
            chain_request=ChainRequest(method="POST", url="https://auth.example/par"),
            logger=logger,
        )

        async with context as (_, chain_response):
            assert chain_response.status == 400

        assert len(next_call.requests) == 3
        logger.warning.assert_called_once()


class TestChainMiddlewareClient:
    """Test session ownership rules."""

    @pytest.mark.asyncio
    async def test_owned_session_closed(self):
        client = ChainMiddlewareClient()
        session = client.client_session
        assert not client.closed

        await client.close()

        assert client.closed
        assert session.closed

    @pytest.mark.asyncio
    async def test_owned_session_never_created(self):
        client = ChainMiddlewareClient()
        await client.close()
        assert client.closed

    @pytest.mark.asyncio
    async def test_injected_session_left_open(self):
        async with ClientSession() as session:
            client = ChainMiddlewareClient(client_session=session)
            await client.close()
            assert not session.closed

    @pytest.mark.asyncio
    async def test_with_middleware_shares_session(self):
        client = ChainMiddlewareClient()
        derived = client.with_middleware([])

        assert derived.client_session is client.client_session
        await derived.close()
        assert not client.client_session.closed

        await client.close()
        assert client.client_session.closed
