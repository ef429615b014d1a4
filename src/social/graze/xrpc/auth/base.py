"""Session manager interface shared by every authentication strategy."""

from abc import ABC, abstractmethod
import asyncio
import contextlib
from enum import Enum
import logging
from typing import AsyncIterator, Callable, Dict, Optional, Sequence

from aiohttp import ClientSession, ClientTimeout, hdrs

from social.graze.xrpc.chain import ChainMiddlewareClient, RequestMiddlewareBase
from social.graze.xrpc.errors import AuthenticationStateException
from social.graze.xrpc.model.session import Session
from social.graze.xrpc.result import Result
from social.graze.xrpc.transport import Transport


SessionListener = Callable[[Optional[Session]], None]


class SessionManagerKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PASSWORD = "password"
    OAUTH2 = "oauth2"


class SessionManager(ABC):
    """
    Owns zero-or-one current Session and the HTTP client lease used for calls
    made under that identity.

    Calls take a lease (`async with manager.lease() as transport`) for their
    whole duration. `dispose()` stops new leases immediately, but the owned
    HTTP session is only closed when the last outstanding lease is returned,
    so a call dispatched before a swap always completes against the manager it
    started with.
    """

    kind: SessionManagerKind

    def __init__(
        self,
        base_url: str,
        http_session: Optional[ClientSession] = None,
        logger: Optional[logging.Logger] = None,
        timeout: Optional[ClientTimeout] = None,
        user_agent: Optional[str] = None,
        session: Optional[Session] = None,
        on_session_updated: Optional[SessionListener] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._logger = logger or logging.getLogger(__name__)
        self._timeout = timeout
        self._session = session
        self._on_session_updated = on_session_updated

        session_kwargs = {}
        if user_agent is not None:
            session_kwargs["headers"] = {hdrs.USER_AGENT: user_agent}
        self._http = ChainMiddlewareClient(
            client_session=http_session,
            logger=self._logger,
            middleware=self.middleware(),
            **session_kwargs,
        )

        self._leases = 0
        self._holders: Dict[Optional[asyncio.Task], int] = {}
        self._disposed = False
        self._released = False

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return (
            self._session is not None
            and self.kind != SessionManagerKind.UNAUTHENTICATED
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @base_url.setter
    def base_url(self, value: str) -> None:
        # Leases taken from now on use the new origin; outstanding ones keep theirs.
        self._base_url = value.rstrip("/")

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def http(self) -> ChainMiddlewareClient:
        return self._http

    @property
    def active_leases(self) -> int:
        return self._leases

    def middleware(self) -> Sequence[RequestMiddlewareBase]:
        """Middleware applied to every call made under this manager's identity."""
        return []

    def transport(self) -> Transport:
        return Transport(self._http, self._base_url, self._logger, self._timeout)

    def set_session(self, session: Optional[Session]) -> None:
        """Install `session` in place of the current one and notify the listener."""
        current = self._session
        if current is not None and session is not None and current.did != session.did:
            raise AuthenticationStateException.did_mismatch(current.did, session.did)

        self._session = session
        self._logger.debug(f"Session updated: {session!r}")

        if self._on_session_updated is not None:
            self._on_session_updated(session)

    @abstractmethod
    async def refresh_session(
        self, cancellation: Optional[asyncio.Event] = None
    ) -> Result[Optional[Session]]:
        """Re-derive the session from the stored refresh token.

        On failure the existing session is kept; the caller decides whether
        the error is fatal.
        """

    @contextlib.asynccontextmanager
    async def lease(self) -> AsyncIterator[Transport]:
        """
        Hold the manager's HTTP client for the duration of a call.

        After `dispose()` no new leases are granted, except to a task that
        already holds one: a call dispatched before the swap may take nested
        leases until it completes.

        Raises:
            AuthenticationStateException: If the manager has been disposed and
                the current task holds no lease on it
        """
        task = asyncio.current_task()
        if self._disposed and task not in self._holders:
            raise AuthenticationStateException.disposed()

        self._leases += 1
        self._holders[task] = self._holders.get(task, 0) + 1
        try:
            yield self.transport()
        finally:
            held = self._holders.pop(task) - 1
            if held:
                self._holders[task] = held
            self._leases -= 1
            if self._disposed and self._leases == 0:
                await self._release()

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._discard_pending_state()

        if self._leases == 0:
            await self._release()
        else:
            self._logger.debug(
                f"Deferring release of {self.kind.value} session manager, {self._leases} calls in flight"
            )

    def _discard_pending_state(self) -> None:
        pass

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._http.close()
