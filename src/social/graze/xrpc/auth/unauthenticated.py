import asyncio
from typing import Optional

from social.graze.xrpc.auth.base import SessionManager, SessionManagerKind
from social.graze.xrpc.model.session import Session
from social.graze.xrpc.result import Ok, Result


class UnauthenticatedSessionManager(SessionManager):
    """Anonymous access; there is nothing to authenticate or refresh."""

    kind = SessionManagerKind.UNAUTHENTICATED

    async def refresh_session(
        self, cancellation: Optional[asyncio.Event] = None
    ) -> Result[Optional[Session]]:
        return Ok(None)
