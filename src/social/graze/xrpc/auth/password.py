import asyncio
from typing import Optional, Sequence

from social.graze.xrpc.auth.base import SessionManager, SessionManagerKind
from social.graze.xrpc.chain import AuthorizationMiddleware, RequestMiddlewareBase
from social.graze.xrpc.endpoints import xrpc_path
from social.graze.xrpc.model.server import (
    CREATE_SESSION,
    REFRESH_SESSION,
    CreateSessionInput,
)
from social.graze.xrpc.model.session import Session
from social.graze.xrpc.result import Err, Ok, Result, UsageError


class PasswordSessionManager(SessionManager):
    """
    Identifier + (app) password authentication.

    The access JWT of the current session is sent as a bearer token on every
    call. `refresh_session` trades the refresh JWT for a new pair.
    """

    kind = SessionManagerKind.PASSWORD

    def middleware(self) -> Sequence[RequestMiddlewareBase]:
        return [AuthorizationMiddleware(self._access_token)]

    def _access_token(self) -> Optional[str]:
        session = self._session
        if session is None:
            return None
        return session.access_jwt

    async def create_session(
        self,
        identifier: str,
        password: str,
        auth_factor_token: Optional[str] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Result[Session]:
        """Log in with an identifier and password.

        Args:
            identifier: Handle, DID or email of the account
            password: Account or app password
            auth_factor_token: Emailed two-factor token, if the server asked for one
            cancellation: Signal that abandons the call

        Returns:
            Ok with the new session, which is also stored and published, or Err
            with the XRPC error (e.g. `AuthFactorTokenRequired`)
        """
        payload = CreateSessionInput(
            identifier=identifier,
            password=password,
            auth_factor_token=auth_factor_token,
        )
        async with self.lease() as transport:
            result = await transport.post(
                xrpc_path(CREATE_SESSION),
                Session,
                body=payload,
                cancellation=cancellation,
            )

        if isinstance(result, Err):
            self._logger.warning(f"createSession failed for {identifier}: {result.error}")
            return result

        session = result.value
        if session.active is False:
            # Deactivated accounts still get a session; most calls will be refused.
            self._logger.warning(f"Session for {session.did} is not active")

        self.set_session(session)
        return result

    async def refresh_session(
        self, cancellation: Optional[asyncio.Event] = None
    ) -> Result[Optional[Session]]:
        """Exchange the refresh token for a new session.

        The refreshed session keeps the DID document of the current one when
        the server omits it.
        """
        current = self._session
        if current is None:
            return Err(UsageError(kind="NoSession", message="No session to refresh"))

        async with self.lease() as transport:
            result = await transport.post(
                xrpc_path(REFRESH_SESSION),
                Session,
                headers={"Authorization": f"Bearer {current.refresh_jwt}"},
                cancellation=cancellation,
            )

        if isinstance(result, Err):
            self._logger.warning(f"refreshSession failed for {current.did}: {result.error}")
            return result

        refreshed = result.value
        if refreshed.did != current.did:
            return Err(
                UsageError(
                    kind="DidMismatch",
                    message=f"Refreshed session DID {refreshed.did} != {current.did}",
                )
            )

        if refreshed.did_doc is None:
            refreshed = refreshed.model_copy(update={"did_doc": current.did_doc})

        self.set_session(refreshed)
        return Ok(refreshed)
