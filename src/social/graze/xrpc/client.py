"""
XRPC client facade.

`XrpcClient` owns exactly one session manager at a time. Switching the
authentication strategy installs a new manager and disposes the old one;
calls already in flight keep the lease they took on the old manager and
finish against it.
"""

import asyncio
import logging
import os
from types import TracebackType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type, TypeVar, Union

from aiohttp import ClientSession
from pydantic import BaseModel
from yarl import URL

from social.graze.xrpc.auth.base import SessionListener, SessionManager
from social.graze.xrpc.auth.oauth import OAuth2SessionManager
from social.graze.xrpc.auth.password import PasswordSessionManager
from social.graze.xrpc.auth.unauthenticated import UnauthenticatedSessionManager
from social.graze.xrpc.config import DEFAULT_SERVICE_URL, Settings
from social.graze.xrpc.endpoints import describe_repo
from social.graze.xrpc.errors import AuthenticationStateException
from social.graze.xrpc.identity import parse_input
from social.graze.xrpc.model.session import Session
from social.graze.xrpc.result import Blob, Err, Ok, Result, Success, UsageError
from social.graze.xrpc.transport import Params, RecordCallback, StreamBody, StreamDecoder

T = TypeVar("T")


class ResolvedClient:
    """
    A client able to serve requests about `did`.

    `using_current` is true when no redirection was needed and `client` is the
    client resolution was asked on; closing a `ResolvedClient` only closes
    clients it created.
    """

    def __init__(self, client: "XrpcClient", did: Optional[str], using_current: bool) -> None:
        self.client = client
        self.did = did
        self.using_current = using_current

    async def close(self) -> None:
        if not self.using_current:
            await self.client.close()

    async def __aenter__(self) -> "ResolvedClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"ResolvedClient(base_url={self.client.base_url!r}, did={self.did!r}, using_current={self.using_current})"


class XrpcClient:
    """
    Entry point for talking to an AT Protocol service.

    Starts unauthenticated, or with a password session when `session` is
    given. `http_session` is shared by every manager this client creates and
    is never closed by it.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_session: Optional[ClientSession] = None,
        session: Optional[Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._settings = settings or Settings()
        self._http_session = http_session
        self._logger = logger or logging.getLogger(__name__)
        self._listeners: List[SessionListener] = []

        if session is not None:
            self._manager: SessionManager = self._new_manager(
                PasswordSessionManager, self._login_base_url(session), session=session
            )
        else:
            self._manager = self._new_manager(
                UnauthenticatedSessionManager, self._settings.base_url
            )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def manager(self) -> SessionManager:
        return self._manager

    @property
    def session(self) -> Optional[Session]:
        return self._manager.session

    @property
    def is_authenticated(self) -> bool:
        return self._manager.is_authenticated

    @property
    def base_url(self) -> str:
        return self._manager.base_url

    def add_session_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_session_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _new_manager(
        self,
        manager_class: Type[SessionManager],
        base_url: str,
        session: Optional[Session] = None,
        **kwargs: Any,
    ) -> SessionManager:
        created: List[SessionManager] = []

        def on_session_updated(updated: Optional[Session]) -> None:
            # Replaced managers no longer speak for this client.
            if created and created[0] is self._manager:
                self._publish(updated)

        manager = manager_class(
            base_url,
            http_session=self._http_session,
            logger=self._logger,
            timeout=self._settings.client_timeout,
            user_agent=self._settings.user_agent,
            session=session,
            on_session_updated=on_session_updated,
            **kwargs,
        )
        created.append(manager)
        return manager

    def _publish(self, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            listener(session)

    def _login_base_url(self, session: Session) -> str:
        if self._settings.use_service_endpoint_upon_login and session.pds_endpoint:
            return session.pds_endpoint
        return self._settings.base_url

    async def _swap(self, manager: SessionManager) -> None:
        previous = self._manager
        self._manager = manager
        self._logger.debug(
            f"Session manager swapped: {previous.kind.value} -> {manager.kind.value}"
        )
        await previous.dispose()

    def _pivot(self, manager: SessionManager, session: Session) -> None:
        if not self._settings.use_service_endpoint_upon_login:
            return
        pds = session.pds_endpoint
        if pds is None:
            self._logger.warning(f"No service endpoint in DID document of {session.did}")
            return
        if manager.base_url != pds.rstrip("/"):
            self._logger.debug(f"Pivoting {session.did} to {pds}")
            manager.base_url = pds

    async def authenticate_with_password(
        self,
        identifier: str,
        password: str,
        auth_factor_token: Optional[str] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[Session]:
        manager = self._new_manager(PasswordSessionManager, self._settings.base_url)
        # Leased before the swap: a concurrent swap must not dispose it under us.
        async with manager.lease():
            await self._swap(manager)
            result = await manager.create_session(
                identifier, password, auth_factor_token=auth_factor_token, cancellation=cancellation
            )
        if isinstance(result, Ok):
            self._pivot(manager, result.value)
        return result

    async def start_oauth2_authorization(
        self,
        login_hint: Optional[str] = None,
        instance_url: Optional[str] = None,
        scopes: Optional[Sequence[str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[str]:
        """Switch to OAuth2 and return the URL the user must visit to authorize."""
        client_id = self._settings.oauth_client_id
        if client_id is None:
            raise AuthenticationStateException.missing_oauth_configuration("client_id")
        redirect_url = self._settings.oauth_redirect_url
        if redirect_url is None:
            raise AuthenticationStateException.missing_oauth_configuration("redirect_url")

        manager = self._new_manager(
            OAuth2SessionManager,
            self._settings.base_url,
            plc_hostname=self._settings.plc_hostname,
            signing_key=self._settings.oauth_signing_key,
        )
        async with manager.lease():
            await self._swap(manager)
            return await manager.start_authorization(
                client_id,
                redirect_url,
                list(scopes or self._settings.oauth_scopes),
                instance_url=instance_url,
                login_hint=login_hint,
                cancellation=cancellation,
            )

    async def authenticate_with_oauth2_callback(
        self, callback_data: str, cancellation: Optional[asyncio.Event] = None
    ) -> Result[Session]:
        manager = self._manager
        if not isinstance(manager, OAuth2SessionManager):
            raise AuthenticationStateException.not_oauth2()

        result = await manager.complete_authorization(callback_data, cancellation=cancellation)
        if isinstance(result, Ok):
            self._pivot(manager, result.value)
        return result

    async def refresh_session(
        self, cancellation: Optional[asyncio.Event] = None
    ) -> Result[Optional[Session]]:
        return await self._manager.refresh_session(cancellation=cancellation)

    async def resolve_client_for_identifier(
        self, identifier: str, cancellation: Optional[asyncio.Event] = None
    ) -> Result[ResolvedClient]:
        """
        Find a client that can answer requests about `identifier`.

        The first matching rule wins:

        1. The current service is the default network entry point, which is
           trusted for every identifier (unless `trust_default_service` is off).
        2. `identifier` is the DID of the current session.
        3. `identifier` is the handle of the current session.
        4. Otherwise `describeRepo` is asked for the identifier's DID document
           and a new, unauthenticated client bound to its PDS is returned.

        A failed `describeRepo` call is returned as-is; there is no fallback
        origin.
        """
        manager = self._manager
        parsed = parse_input(identifier)
        if parsed is None:
            return Err(UsageError(kind="InvalidIdentifier", message="Empty identifier"))

        if self._settings.trust_default_service and (
            URL(manager.base_url).host == URL(DEFAULT_SERVICE_URL).host
        ):
            did = parsed.subject if parsed.is_did else None
            return Ok(ResolvedClient(self, did, using_current=True))

        session = manager.session
        if session is not None:
            if parsed.is_did and parsed.subject == session.did:
                return Ok(ResolvedClient(self, session.did, using_current=True))
            if not parsed.is_did and parsed.subject == session.handle.lower():
                return Ok(ResolvedClient(self, session.did, using_current=True))

        async with manager.lease() as transport:
            described = await describe_repo(transport, parsed.subject, cancellation=cancellation)
        if isinstance(described, Err):
            return described

        pds = described.value.did_doc.pds_endpoint
        if pds is None:
            return Err(
                UsageError(
                    kind="NoServiceEndpoint",
                    message=f"DID document of {described.value.did} declares no service endpoint",
                )
            )

        self._logger.debug(f"Resolved {identifier} to {described.value.did} at {pds}")
        settings = self._settings.model_copy(
            update={"base_url": pds.rstrip("/"), "use_service_endpoint_upon_login": False}
        )
        client = XrpcClient(settings=settings, http_session=self._http_session, logger=self._logger)
        return Ok(ResolvedClient(client, described.value.did, using_current=False))

    async def get(
        self,
        path: str,
        response_type: Type[T],
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[T]:
        manager = self._manager
        async with manager.lease() as transport:
            return await transport.get(
                path, response_type, params=params, headers=headers, cancellation=cancellation
            )

    async def post(
        self,
        path: str,
        response_type: Type[T],
        body: Optional[Union[BaseModel, Mapping[str, Any]]] = None,
        stream: Optional[StreamBody] = None,
        content_type: Optional[str] = None,
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[T]:
        manager = self._manager
        async with manager.lease() as transport:
            return await transport.post(
                path,
                response_type,
                body=body,
                stream=stream,
                content_type=content_type,
                params=params,
                headers=headers,
                cancellation=cancellation,
            )

    async def get_blob(
        self,
        path: str,
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[Blob]:
        manager = self._manager
        async with manager.lease() as transport:
            return await transport.get_blob(
                path, params=params, headers=headers, cancellation=cancellation
            )

    async def get_stream_decode(
        self,
        path: str,
        decoder: StreamDecoder,
        on_record: Optional[RecordCallback] = None,
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[Success]:
        manager = self._manager
        async with manager.lease() as transport:
            return await transport.get_stream_decode(
                path,
                decoder,
                on_record=on_record,
                params=params,
                headers=headers,
                cancellation=cancellation,
            )

    async def download(
        self,
        path: str,
        destination: Union[str, os.PathLike],
        params: Optional[Params] = None,
        headers: Optional[Dict[str, str]] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[Success]:
        manager = self._manager
        async with manager.lease() as transport:
            return await transport.download(
                path, destination, params=params, headers=headers, cancellation=cancellation
            )

    async def close(self) -> None:
        await self._manager.dispose()

    async def __aenter__(self) -> "XrpcClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
