"""Exception taxonomy and the HTTP error translator.

Protocol failures never escape as exceptions: `create_error` turns any failed
response into an `XrpcError` value. The exceptions below cover the failure
classes that are deliberately raised instead:

* `XrpcNetworkException` - the request never meaningfully reached the server
  (connection refused, DNS, timeout).
* `RequestCancelledException` - the caller's cancellation signal fired.
* `AuthenticationStateException` - an operation needing a specific session
  manager was invoked on the wrong one.
"""

import logging
from typing import Optional

from aiohttp import ClientResponse
from pydantic import ValidationError

from social.graze.xrpc.result import ErrorDetail, XrpcError

logger = logging.getLogger(__name__)


class XrpcNetworkException(Exception):
    """Transport-level failure, wrapping the underlying aiohttp/asyncio error."""

    def __init__(self, method: str, url: str, cause: BaseException) -> None:
        super().__init__(f"{method} {url} failed: {cause!r}")
        self.method = method
        self.url = url
        self.cause = cause


class RequestCancelledException(Exception):
    """The cancellation signal passed to a call was set before it completed."""

    def __init__(self, method: str, url: str) -> None:
        super().__init__(f"{method} {url} cancelled")
        self.method = method
        self.url = url


class AuthenticationStateException(Exception):
    """
    Raised when the client is asked to do something its current session
    manager cannot do. These indicate caller misuse and are never retried.
    """

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @staticmethod
    def not_oauth2() -> "AuthenticationStateException":
        """The current session manager is not an OAuth2 session manager."""
        return AuthenticationStateException(
            "NotOAuth2",
            "error-xrpc-auth-1000 Session manager is not an OAuth2 session manager",
        )

    @staticmethod
    def disposed() -> "AuthenticationStateException":
        """The session manager was disposed and cannot hand out new leases."""
        return AuthenticationStateException(
            "Disposed", "error-xrpc-auth-1001 Session manager has been disposed"
        )

    @staticmethod
    def did_mismatch(current: str, incoming: str) -> "AuthenticationStateException":
        """A session for a different DID was installed on a manager that holds one."""
        return AuthenticationStateException(
            "DidMismatch",
            f"error-xrpc-auth-1002 Session DID cannot change: {current} != {incoming}",
        )

    @staticmethod
    def missing_oauth_configuration(field: str) -> "AuthenticationStateException":
        """An OAuth2 flow was started without a required setting."""
        return AuthenticationStateException(
            "MissingConfiguration",
            f"error-xrpc-auth-1003 OAuth2 {field} is not configured",
        )

    @staticmethod
    def discovery_failed(msg: str) -> "AuthenticationStateException":
        """OAuth2 authorization server metadata could not be discovered."""
        return AuthenticationStateException(
            "DiscoveryFailed", f"error-xrpc-auth-1004 OAuth2 discovery failed: {msg}"
        )


async def create_error(
    response: ClientResponse, log: Optional[logging.Logger] = None
) -> XrpcError:
    """Translate a failed response into an `XrpcError`.

    An empty body yields an error with only the status code. A body that is
    not a valid `ErrorDetail` document is kept verbatim in `raw_body`.
    """
    log = log or logger

    try:
        body = await response.text()
    except UnicodeDecodeError:
        body = (await response.read()).decode("utf-8", errors="replace")

    if not body:
        error = XrpcError(status_code=response.status)
    else:
        try:
            detail = ErrorDetail.model_validate_json(body)
            error = XrpcError(status_code=response.status, detail=detail)
        except ValidationError:
            error = XrpcError(status_code=response.status, raw_body=body)

    log.error(f"XrpcError: {error.status_code} {error.kind} {error.message}")
    return error
