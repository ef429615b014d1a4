"""
Shared test configuration and fixtures for the XRPC client tests.

Provides a factory for throwaway aiohttp servers standing in for a PDS or an
authorization server, and payload builders for the protocol documents they
serve.
"""

from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

from social.graze.xrpc.chain import ChainMiddlewareClient
from social.graze.xrpc.config import Settings

ALICE_DID = "did:plc:alice1234567890abcdefghij"
ALICE_HANDLE = "alice.example.com"
BOB_DID = "did:plc:bob01234567890abcdefghijk"


def server_url(server: TestServer) -> str:
    return str(server.make_url("/")).rstrip("/")


def did_doc_payload(did: str, handle: str, pds: Optional[str]) -> Dict[str, Any]:
    service: List[Dict[str, str]] = []
    if pds is not None:
        service.append(
            {
                "id": "#atproto_pds",
                "type": "AtprotoPersonalDataServer",
                "serviceEndpoint": pds,
            }
        )
    return {
        "@context": ["https://www.w3.org/ns/did/v1"],
        "id": did,
        "alsoKnownAs": [f"at://{handle}"],
        "verificationMethod": [],
        "service": service,
    }


def session_payload(
    did: str = ALICE_DID,
    handle: str = ALICE_HANDLE,
    pds: Optional[str] = None,
    access_jwt: str = "access-1",
    refresh_jwt: str = "refresh-1",
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "did": did,
        "handle": handle,
        "accessJwt": access_jwt,
        "refreshJwt": refresh_jwt,
        "email": "alice@example.com",
        "active": True,
    }
    if pds is not None:
        payload["didDoc"] = did_doc_payload(did, handle, pds)
    return payload


def dead_url() -> str:
    """A local URL nothing listens on."""
    return f"http://127.0.0.1:{unused_port()}"


def make_settings(base_url: str, **kwargs: Any) -> Settings:
    values: Dict[str, Any] = {
        "base_url": base_url,
        "use_service_endpoint_upon_login": False,
        "trust_default_service": False,
        "request_timeout": 10.0,
    }
    values.update(kwargs)
    return Settings(**values)


@pytest_asyncio.fixture(scope="function")
async def make_server():
    """Start aiohttp servers built by `setup(app)`; all are closed after the test."""
    servers: List[TestServer] = []

    async def factory(setup: Callable[[web.Application], None]) -> TestServer:
        app = web.Application()
        setup(app)
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield factory

    for server in servers:
        await server.close()


@pytest_asyncio.fixture(scope="function")
async def chain_client():
    client = ChainMiddlewareClient()
    yield client
    await client.close()
