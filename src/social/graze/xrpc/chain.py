"""
Request middleware over `aiohttp.ClientSession`.

Each request made through a `ChainMiddlewareClient` is passed down its
middleware list before reaching the session. Middleware sees a mutable
`ChainRequest` on the way down and a `(ClientResponse, ChainResponse)` pair on
the way back up. Returning a third element, a new `ChainRequest`, asks
`ChainMiddlewareContext` to send the request again; this is how DPoP nonce
challenges are answered.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import json
import logging
from types import TracebackType
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from jwcrypto import jwk
from multidict import CIMultiDictProxy
from yarl import URL

from social.graze.xrpc.auth.jwt import (
    CLIENT_ASSERTION_TYPE,
    create_client_assertion_jwt,
    create_dpop_jwt,
)

RequestFunc = Callable[..., Awaitable[ClientResponse]]
TokenProvider = Callable[[], Optional[str]]

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: Dict[str, Any] = field(default_factory=dict)
    kwargs: Optional[Dict[str, Any]] = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers),
            kwargs=dict(request.kwargs) if request.kwargs is not None else None,
        )


@dataclass
class ChainResponse:
    """
    Status and headers of a response as seen by middleware.

    Success bodies are left unread on the `ClientResponse` so callers can stream
    them. Error bodies are small and are read eagerly so middleware can react to
    them (e.g. a DPoP nonce challenge); aiohttp caches them, so reading the
    `ClientResponse` again afterwards still works.
    """

    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        if 200 <= status < 300:
            return ChainResponse(status=status, headers=headers)

        raw = await response.read()
        if headers.get(hdrs.CONTENT_TYPE, "").startswith("application/json"):
            try:
                decoded = json.loads(raw)
            except ValueError:
                decoded = None
            if isinstance(decoded, dict):
                return ChainResponse(status=status, headers=headers, body=decoded)

        try:
            return ChainResponse(status=status, headers=headers, body=raw.decode("utf-8"))
        except UnicodeDecodeError:
            return ChainResponse(status=status, headers=headers, body=raw)

    def body_matches_kv(self, key: str, value: Any) -> bool:
        return isinstance(self.body, dict) and self.body.get(key) == value


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class AuthorizationMiddleware(RequestMiddlewareBase):
    """Adds `Authorization: <scheme> <token>` unless the request already carries one."""

    def __init__(self, token_provider: TokenProvider, scheme: str = "Bearer") -> None:
        self._token_provider = token_provider
        self._scheme = scheme

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        token = self._token_provider()
        if token is not None:
            request.headers.setdefault("Authorization", f"{self._scheme} {token}")
        return await next(request)


class GenerateClaimAssertionMiddleware(RequestMiddlewareBase):
    """Adds a signed client assertion to form-encoded token endpoint requests."""

    def __init__(self, signing_key: jwk.JWK, client_id: str, audience: str) -> None:
        self._signing_key = signing_key
        self._client_id = client_id
        self._audience = audience

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.kwargs is None or not isinstance(request.kwargs.get("data"), dict):
            return await next(request)

        # Copy so the caller's form is left untouched.
        data: Dict[str, Any] = dict(request.kwargs["data"])
        data["client_assertion_type"] = CLIENT_ASSERTION_TYPE
        data["client_assertion"] = create_client_assertion_jwt(
            self._signing_key, self._client_id, self._audience
        )
        request.kwargs["data"] = data
        return await next(request)


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """
    Signs a fresh DPoP proof for every request and follows nonce challenges.

    When `access_token_provider` is set the proof is bound to the access token
    (`ath` claim) and the token is sent with the `DPoP` authorization scheme,
    which is what resource servers (PDS instances) expect. Nonces are tracked
    per origin since the authorization server and the PDS issue their own;
    passing the same `nonces` dict to several middleware instances shares them.
    """

    def __init__(
        self,
        dpop_key: jwk.JWK,
        access_token_provider: Optional[TokenProvider] = None,
        nonces: Optional[Dict[str, str]] = None,
    ) -> None:
        self._dpop_key = dpop_key
        self._access_token_provider = access_token_provider
        self._nonces: Dict[str, str] = nonces if nonces is not None else {}

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        url = URL(str(request.url))
        origin = str(url.origin())
        htu = str(url.with_query(None).with_fragment(None))

        access_token = None
        if self._access_token_provider is not None:
            access_token = self._access_token_provider()

        request.headers["DPoP"] = create_dpop_jwt(
            self._dpop_key,
            request.method,
            htu,
            nonce=self._nonces.get(origin),
            access_token=access_token,
        )
        if access_token is not None:
            request.headers.setdefault("Authorization", f"DPoP {access_token}")

        client_response, chain_response, *retry = await next(request)

        nonce = chain_response.headers.get("DPoP-Nonce")
        if nonce:
            self._nonces[origin] = nonce

        if (
            not retry
            and nonce
            and chain_response.status in (400, 401)
            and self._is_nonce_challenge(chain_response)
        ):
            logger.debug(f"DPoP nonce challenge from {origin}, retrying")
            retry = [ChainRequest.from_chain_request(request)]

        if not retry:
            return client_response, chain_response
        return client_response, chain_response, retry[0]

    @staticmethod
    def _is_nonce_challenge(chain_response: ChainResponse) -> bool:
        if chain_response.body_matches_kv(
            "error", "use_dpop_nonce"
        ) or chain_response.body_matches_kv("error", "invalid_dpop_proof"):
            return True
        www_authenticate = chain_response.headers.get(hdrs.WWW_AUTHENTICATE, "")
        return "use_dpop_nonce" in www_authenticate


class EndOfLineChainMiddleware:
    """Last link of the chain: sends the request with the aiohttp session."""

    def __init__(self, request_func: RequestFunc, logger: logging.Logger) -> None:
        self._request_func = request_func
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        self._logger.debug(f"Sending {request.method} {request.url}")
        response: ClientResponse = await self._request_func(
            request.method,
            request.url,
            headers=request.headers,
            **(request.kwargs or {}),
        )
        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    """
    Runs a chain until no middleware asks for a retry, or `attempt_max` is hit.

    Used as `async with context as (client_response, chain_response)`; the
    final response is released on exit, superseded ones as soon as a retry is
    sent.
    """

    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        logger: logging.Logger,
        attempt_max: int = 3,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._logger = logger
        self._attempt_max = attempt_max
        self._client_response: ClientResponse | None = None

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        chain_request = self._chain_request
        attempt = 0

        while True:
            attempt += 1
            self._logger.debug(
                f"Attempt {attempt}/{self._attempt_max}: {chain_request.method} {chain_request.url}"
            )

            client_response, chain_response, *retry = await self._chain_callback(chain_request)
            self._client_response = client_response

            if not retry:
                return client_response, chain_response

            if attempt >= self._attempt_max:
                self._logger.warning(
                    f"Giving up after {attempt} attempts: {chain_request.method} {chain_request.url}"
                )
                return client_response, chain_response

            client_response.release()
            chain_request = retry[0]

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._client_response is not None and not self._client_response.closed:
            self._client_response.release()


class ChainMiddlewareClient:
    """
    aiohttp client wrapper that runs each request through a middleware chain.

    When no `client_session` is given the wrapper creates and owns one, and
    `close()` closes it. An injected session is shared and left open.
    """

    def __init__(
        self,
        client_session: ClientSession | None = None,
        logger: logging.Logger | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        **session_kwargs: Any,
    ) -> None:
        # Owned sessions are created on first use: aiohttp needs a running loop.
        self._owned = client_session is None
        self._client: ClientSession | None = client_session
        self._closed = False
        self._session_kwargs = session_kwargs

        self._middleware = list(middleware or [])
        self._logger = logger or logging.getLogger("xrpc_chain")

    @property
    def client_session(self) -> ClientSession:
        if self._client is None:
            self._client = ClientSession(**self._session_kwargs)
        return self._client

    @property
    def closed(self) -> bool:
        if self._closed:
            return True
        return self._client is not None and self._client.closed

    def with_middleware(
        self, middleware: Sequence[RequestMiddlewareBase]
    ) -> "ChainMiddlewareClient":
        """A new wrapper over the same session, never owning it."""
        return ChainMiddlewareClient(
            client_session=self.client_session,
            logger=self._logger,
            middleware=middleware,
        )

    def request(self, method: str, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=dict(kwargs.pop("headers", None) or {}),
            kwargs=kwargs,
        )

        chain_callback: NextChainCallbackType = EndOfLineChainMiddleware(
            self.client_session.request, self._logger
        ).handle
        for mw in reversed(self._middleware):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            logger=self._logger,
        )

    async def close(self) -> None:
        if not self._owned:
            return
        if not self._closed and self._client is not None:
            await self._client.close()
        self._closed = True
