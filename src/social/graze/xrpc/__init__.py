"""
XRPC - AT Protocol client core

This package mediates access to AT Protocol services over HTTP (XRPC). It owns
the session/authentication lifecycle, the request transport and the single
result shape every call returns.

Key Components:
- client: XrpcClient facade, strategy swapping and PDS resolution
- auth: Session managers (unauthenticated, password, OAuth2)
- transport: Typed GET/POST/streaming calls through the middleware chain
- chain: aiohttp middleware chain (authorization headers, DPoP nonce retry)
- errors / result: Ok/Err results, error translation and exceptions
- identity: Handle and DID resolution without a PDS
- config: pydantic-settings configuration

Failure Model:
1. Protocol failures (non-2xx responses) are returned as Err(XrpcError)
2. Authentication-state misuse is returned as Err(UsageError), or raised as
   AuthenticationStateException by the facade
3. Network failures raise XrpcNetworkException
4. A fired cancellation signal raises RequestCancelledException
"""

from social.graze.xrpc.client import ResolvedClient, XrpcClient
from social.graze.xrpc.config import DEFAULT_SERVICE_URL, Settings
from social.graze.xrpc.errors import (
    AuthenticationStateException,
    RequestCancelledException,
    XrpcNetworkException,
)
from social.graze.xrpc.model.session import Session
from social.graze.xrpc.result import (
    Blob,
    Err,
    ErrorDetail,
    Ok,
    Result,
    ResultException,
    Success,
    UsageError,
    XrpcError,
)

__all__ = [
    "AuthenticationStateException",
    "Blob",
    "DEFAULT_SERVICE_URL",
    "Err",
    "ErrorDetail",
    "Ok",
    "RequestCancelledException",
    "ResolvedClient",
    "Result",
    "ResultException",
    "Session",
    "Settings",
    "Success",
    "UsageError",
    "XrpcClient",
    "XrpcError",
    "XrpcNetworkException",
]
