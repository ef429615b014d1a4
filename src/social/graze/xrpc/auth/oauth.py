"""
AT Protocol OAuth2 session manager.

The flow runs in three stages:

1. `start_authorization`: find the authorization server for the user's PDS,
   generate the PKCE verifier, state and DPoP key, push the authorization
   request (PAR) and return the URL the user has to visit.
2. `complete_authorization`: validate the callback against the pending
   request, exchange the code for DPoP-bound tokens and fetch the session
   (handle, DID document) from the PDS.
3. `refresh_session`: trade the refresh token for a new token pair.

Every request made by this manager carries a DPoP proof signed with the
manager's key. Authorization servers and PDS instances may demand a nonce; the
middleware chain retries with the nonce it was given.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import secrets
from typing import List, Mapping, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from aiohttp import ClientSession, ClientTimeout
from jwcrypto import jwk
from yarl import URL

from social.graze.xrpc.auth.base import (
    SessionListener,
    SessionManager,
    SessionManagerKind,
)
from social.graze.xrpc.auth.jwt import generate_dpop_key, generate_pkce_verifier
from social.graze.xrpc.chain import (
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
    RequestMiddlewareBase,
)
from social.graze.xrpc.endpoints import get_session
from social.graze.xrpc.identity import resolve_subject
from social.graze.xrpc.model.oauth import (
    AuthorizationServerMetadata,
    ProtectedResourceMetadata,
    PushedAuthorizationResponse,
    TokenResponse,
)
from social.graze.xrpc.model.session import Session
from social.graze.xrpc.result import Err, Ok, Result, UsageError
from social.graze.xrpc.transport import Transport

PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"
AUTHORIZATION_SERVER_PATH = "/.well-known/oauth-authorization-server"

# Lifetime of a pending request when the server has no PAR endpoint to tell us.
DEFAULT_PENDING_LIFETIME = 600


@dataclass
class PendingAuthorization:
    """Everything needed to validate the callback and redeem its code."""

    state: str
    pkce_verifier: str
    scopes: List[str]
    client_id: str
    redirect_url: str
    issuer: str
    token_endpoint: str
    instance_url: str
    expires_at: datetime

    @property
    def expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at


@dataclass
class OAuthGrant:
    """Token endpoint coordinates and the current refresh token of a completed flow."""

    client_id: str
    issuer: str
    token_endpoint: str
    instance_url: str
    refresh_token: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None


def _usage(kind: str, message: str = "") -> Err:
    return Err(UsageError(kind=kind, message=message))


def parse_callback(callback_data: str) -> Mapping[str, str]:
    """Parameters of a redirect callback, given as a full URL or a bare query string.

    Servers using `response_mode=fragment` put them in the fragment instead.
    """
    callback_data = callback_data.strip()
    if "://" in callback_data:
        parsed = urlparse(callback_data)
        query = parsed.query or parsed.fragment
    else:
        query = callback_data.lstrip("?#")
    return dict(parse_qsl(query))


def authorization_url(authorization_endpoint: str, params: Mapping[str, str]) -> str:
    parsed_authorization_endpoint = urlparse(authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update(params)
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


class OAuth2SessionManager(SessionManager):
    """
    OAuth2 authorization code flow with PKCE, PAR and DPoP.

    A public client by default. Passing `signing_key` makes it a confidential
    client: token and PAR requests then carry a `private_key_jwt` client
    assertion.
    """

    kind = SessionManagerKind.OAUTH2

    def __init__(
        self,
        base_url: str,
        http_session: Optional[ClientSession] = None,
        logger: Optional[logging.Logger] = None,
        timeout: Optional[ClientTimeout] = None,
        user_agent: Optional[str] = None,
        session: Optional[Session] = None,
        on_session_updated: Optional[SessionListener] = None,
        plc_hostname: str = "plc.directory",
        signing_key: Optional[jwk.JWK] = None,
    ) -> None:
        # middleware() runs inside SessionManager.__init__
        self._dpop_key, _ = generate_dpop_key()
        self._nonces: dict[str, str] = {}
        self._pending: Optional[PendingAuthorization] = None
        # Bumped by each start_authorization; only the latest may install pending state.
        self._attempt = 0
        self._grant: Optional[OAuthGrant] = None
        self._plc_hostname = plc_hostname
        self._signing_key = signing_key

        super().__init__(
            base_url,
            http_session=http_session,
            logger=logger,
            timeout=timeout,
            user_agent=user_agent,
            session=session,
            on_session_updated=on_session_updated,
        )

    @property
    def pending(self) -> Optional[PendingAuthorization]:
        return self._pending

    @property
    def grant(self) -> Optional[OAuthGrant]:
        return self._grant

    @property
    def dpop_key(self) -> jwk.JWK:
        return self._dpop_key

    def middleware(self) -> Sequence[RequestMiddlewareBase]:
        return [GenerateDpopMiddleware(self._dpop_key, self._access_token, self._nonces)]

    def _access_token(self) -> Optional[str]:
        session = self._session
        if session is None:
            return None
        return session.access_jwt

    def _plain_transport(self, base_url: str) -> Transport:
        return Transport(
            self._http.with_middleware([]), base_url, self._logger, self._timeout
        )

    def _token_transport(self, client_id: str, issuer: str) -> Transport:
        middleware: List[RequestMiddlewareBase] = [
            GenerateDpopMiddleware(self._dpop_key, nonces=self._nonces)
        ]
        if self._signing_key is not None:
            middleware.append(
                GenerateClaimAssertionMiddleware(self._signing_key, client_id, issuer)
            )
        return Transport(
            self._http.with_middleware(middleware), issuer, self._logger, self._timeout
        )

    def _bound_transport(self, base_url: str, access_token: str) -> Transport:
        middleware = [
            GenerateDpopMiddleware(self._dpop_key, lambda: access_token, self._nonces)
        ]
        return Transport(
            self._http.with_middleware(middleware), base_url, self._logger, self._timeout
        )

    async def _discover(
        self, instance_url: str, cancellation: Optional[asyncio.Event]
    ) -> Result[AuthorizationServerMetadata]:
        resource = await self._plain_transport(instance_url).get(
            PROTECTED_RESOURCE_PATH, ProtectedResourceMetadata, cancellation=cancellation
        )

        authorization_server = instance_url
        if isinstance(resource, Ok):
            first = next(iter(resource.value.authorization_servers), None)
            if first is not None:
                authorization_server = first.rstrip("/")
        else:
            # Self-hosted PDS instances often are their own authorization server.
            self._logger.debug(
                f"No protected resource metadata at {instance_url}, using it as issuer"
            )

        metadata = await self._plain_transport(authorization_server).get(
            AUTHORIZATION_SERVER_PATH, AuthorizationServerMetadata, cancellation=cancellation
        )
        if isinstance(metadata, Err):
            return metadata

        if URL(metadata.value.issuer).origin() != URL(authorization_server).origin():
            return _usage(
                "IssuerMismatch",
                f"Issuer {metadata.value.issuer} does not match {authorization_server}",
            )
        return metadata

    async def start_authorization(
        self,
        client_id: str,
        redirect_url: str,
        scopes: Sequence[str],
        instance_url: Optional[str] = None,
        login_hint: Optional[str] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[str]:
        """Begin a new authorization and return the URL to send the user to.

        Any earlier pending authorization is discarded. When calls overlap the
        one started last wins; earlier calls return
        `Err(UsageError("AuthorizationSuperseded"))` once they finish.

        Args:
            client_id: URL of the client metadata document
            redirect_url: Redirect URI registered in the client metadata
            scopes: Scopes to request, e.g. `["atproto", "transition:generic"]`
            instance_url: PDS to authorize against; derived from `login_hint`,
                then the manager's base URL, when omitted
            login_hint: Handle or DID of the user, forwarded to the server
            cancellation: Signal that abandons the flow with `RequestCancelledException`

        Returns:
            Ok with the authorization URL, or Err with the discovery, PAR or
            usage error
        """
        self._pending = None
        self._attempt += 1
        attempt = self._attempt

        async with self.lease():
            if instance_url is None and login_hint is not None:
                resolved = await resolve_subject(
                    self._http.client_session, self._plc_hostname, login_hint
                )
                if resolved is not None:
                    instance_url = resolved.pds
                    login_hint = resolved.handle
                else:
                    self._logger.warning(f"Unable to resolve login hint {login_hint}")
            instance_url = (instance_url or self._base_url).rstrip("/")

            discovered = await self._discover(instance_url, cancellation)
            if isinstance(discovered, Err):
                return discovered
            server = discovered.value

            state = secrets.token_urlsafe(32)
            (pkce_verifier, code_challenge) = generate_pkce_verifier()

            params = {
                "response_type": "code",
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
                "state": state,
                "client_id": client_id,
                "redirect_uri": redirect_url,
                "scope": " ".join(scopes),
            }
            if login_hint is not None:
                params["login_hint"] = login_hint

            now = datetime.now(timezone.utc)
            par_url = server.pushed_authorization_request_endpoint
            if par_url is not None:
                pushed = await self._token_transport(client_id, server.issuer).post(
                    par_url,
                    PushedAuthorizationResponse,
                    form=params,
                    cancellation=cancellation,
                )
                if isinstance(pushed, Err):
                    return pushed
                destination = authorization_url(
                    server.authorization_endpoint,
                    {"client_id": client_id, "request_uri": pushed.value.request_uri},
                )
                expires_at = now + timedelta(seconds=pushed.value.expires_in)
            else:
                destination = authorization_url(server.authorization_endpoint, params)
                expires_at = now + timedelta(seconds=DEFAULT_PENDING_LIFETIME)

        if attempt != self._attempt:
            self._logger.debug(f"Authorization against {server.issuer} superseded")
            return _usage("AuthorizationSuperseded", "A newer authorization was started")

        self._pending = PendingAuthorization(
            state=state,
            pkce_verifier=pkce_verifier,
            scopes=list(scopes),
            client_id=client_id,
            redirect_url=redirect_url,
            issuer=server.issuer,
            token_endpoint=server.token_endpoint,
            instance_url=instance_url,
            expires_at=expires_at,
        )
        self._logger.debug(f"Authorization started against {server.issuer}")
        return Ok(destination)

    async def complete_authorization(
        self, callback_data: str, cancellation: Optional[asyncio.Event] = None
    ) -> Result[Session]:
        """Redeem the callback of the pending authorization for a session.

        Args:
            callback_data: Callback URL or its query string
            cancellation: Signal that abandons the token request

        Returns:
            Ok with the session, or Err: `AuthorizationNotStarted` without a
            pending authorization, `StateMismatch` or `IssuerMismatch` for a
            callback that does not belong to it, or the server's error
        """
        pending = self._pending
        if pending is None:
            return _usage("AuthorizationNotStarted", "No authorization is pending")

        params = parse_callback(callback_data)

        error = params.get("error")
        if error is not None:
            self._pending = None
            return _usage("AuthorizationDenied", params.get("error_description", error))

        if params.get("state") != pending.state:
            return _usage("StateMismatch", "Callback state does not match")

        if pending.expired:
            self._pending = None
            return _usage("AuthorizationExpired", "The pending authorization expired")

        issuer = params.get("iss")
        if issuer is not None and issuer != pending.issuer:
            return _usage("IssuerMismatch", f"{issuer} != {pending.issuer}")

        code = params.get("code")
        if code is None:
            return _usage("MissingCode", "Callback carries no authorization code")

        # The code is single use from here on.
        self._pending = None

        async with self.lease():
            tokens = await self._token_transport(pending.client_id, pending.issuer).post(
                pending.token_endpoint,
                TokenResponse,
                form={
                    "grant_type": "authorization_code",
                    "code": code,
                    "code_verifier": pending.pkce_verifier,
                    "redirect_uri": pending.redirect_url,
                    "client_id": pending.client_id,
                },
                cancellation=cancellation,
            )
            if isinstance(tokens, Err):
                return tokens
            token = tokens.value

            info = await get_session(
                self._bound_transport(pending.instance_url, token.access_token),
                cancellation=cancellation,
            )
            if isinstance(info, Err):
                return info

        if token.sub is not None and token.sub != info.value.did:
            return _usage("DidMismatch", f"Token subject {token.sub} != {info.value.did}")

        session = Session(
            did=info.value.did,
            handle=info.value.handle,
            access_jwt=token.access_token,
            refresh_jwt=token.refresh_token or "",
            email=info.value.email,
            active=info.value.active,
            did_doc=info.value.did_doc,
        )

        self._grant = OAuthGrant(
            client_id=pending.client_id,
            issuer=pending.issuer,
            token_endpoint=pending.token_endpoint,
            instance_url=pending.instance_url,
            refresh_token=token.refresh_token,
            scopes=pending.scopes,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=token.expires_in),
        )
        self.base_url = pending.instance_url
        self.set_session(session)
        return Ok(session)

    async def refresh_session(
        self, cancellation: Optional[asyncio.Event] = None
    ) -> Result[Optional[Session]]:
        """Refresh the access token with the refresh token of the current grant."""
        current = self._session
        if current is None:
            return _usage("NoSession", "No session to refresh")

        grant = self._grant
        if grant is None or grant.refresh_token is None:
            return _usage("NoRefreshToken", "The session was not issued a refresh token")

        async with self.lease():
            tokens = await self._token_transport(grant.client_id, grant.issuer).post(
                grant.token_endpoint,
                TokenResponse,
                form={
                    "grant_type": "refresh_token",
                    "refresh_token": grant.refresh_token,
                    "client_id": grant.client_id,
                },
                cancellation=cancellation,
            )

        if isinstance(tokens, Err):
            self._logger.warning(f"Token refresh failed for {current.did}: {tokens.error}")
            return tokens
        token = tokens.value

        if token.sub is not None and token.sub != current.did:
            return _usage("DidMismatch", f"Token subject {token.sub} != {current.did}")

        refresh_token = token.refresh_token or grant.refresh_token
        grant.refresh_token = refresh_token
        grant.expires_at = datetime.now(timezone.utc) + timedelta(seconds=token.expires_in)

        refreshed = current.with_tokens(token.access_token, refresh_token)
        self.set_session(refreshed)
        return Ok(refreshed)

    def _discard_pending_state(self) -> None:
        # Also orphans any start_authorization still in flight.
        self._attempt += 1
        self._pending = None
