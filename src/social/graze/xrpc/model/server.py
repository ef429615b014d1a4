"""com.atproto.server.* payloads used by the password and OAuth2 session managers."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from social.graze.xrpc.model.session import DidDocument

CREATE_SESSION = "com.atproto.server.createSession"
REFRESH_SESSION = "com.atproto.server.refreshSession"
GET_SESSION = "com.atproto.server.getSession"


class CreateSessionInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identifier: str
    password: str
    auth_factor_token: Optional[str] = Field(default=None, alias="authFactorToken")


class GetSessionOutput(BaseModel):
    """Identity of the bearer of an access token, without the tokens themselves."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    did: str
    handle: str
    email: Optional[str] = None
    active: Optional[bool] = None
    did_doc: Optional[DidDocument] = Field(default=None, alias="didDoc")
