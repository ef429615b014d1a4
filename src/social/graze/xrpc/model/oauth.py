"""OAuth 2.0 discovery documents and token endpoint payloads.

Only the fields the client relies on are declared; servers add plenty more.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class ProtectedResourceMetadata(BaseModel):
    """`/.well-known/oauth-protected-resource` on a PDS."""

    model_config = ConfigDict(extra="ignore")

    resource: Optional[str] = None
    authorization_servers: List[str] = []


class AuthorizationServerMetadata(BaseModel):
    """`/.well-known/oauth-authorization-server` on an authorization server."""

    model_config = ConfigDict(extra="ignore")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: Optional[str] = None
    scopes_supported: List[str] = []


class PushedAuthorizationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    request_uri: str
    expires_in: int = 60


class TokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "DPoP"
    expires_in: int = 1800
    scope: Optional[str] = None
    sub: Optional[str] = None
