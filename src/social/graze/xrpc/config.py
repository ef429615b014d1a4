"""
Client configuration.

`Settings` is loaded from `XRPC_`-prefixed environment variables, with
defaults that talk to the main Bluesky network anonymously. Runtime
collaborators (an `aiohttp.ClientSession`, a preloaded `Session`, a logger)
are not settings; they are passed to `XrpcClient` directly.
"""

from typing import Annotated, List, Optional

from aiohttp import ClientTimeout
from jwcrypto import jwk
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_SERVICE_URL = "https://bsky.social"
DEFAULT_USER_AGENT = "graze-xrpc"


class Settings(BaseSettings):
    """
    Settings for an `XrpcClient`.

    Every field can be set with the upper-cased field name prefixed with
    `XRPC_`, for example `XRPC_BASE_URL=https://pds.example.com`.
    """

    model_config = SettingsConfigDict(
        env_prefix="XRPC_", arbitrary_types_allowed=True, extra="ignore"
    )

    base_url: str = DEFAULT_SERVICE_URL
    """
    Service requests are sent to until a login pivots to the actor's PDS.
    Set with XRPC_BASE_URL environment variable.
    """

    use_service_endpoint_upon_login: bool = True
    """
    After a successful login, send requests to the PDS declared in the
    session's DID document instead of `base_url`.
    """

    trust_default_service: bool = True
    """
    Treat `DEFAULT_SERVICE_URL` as authoritative for every identifier, skipping
    the describeRepo lookup when resolving a client for another actor.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with XRPC_PLC_HOSTNAME environment variable.
    """

    oauth_client_id: Optional[str] = None
    """
    OAuth2 client id, the URL of the client metadata document.
    Required to start an OAuth2 authorization.
    """

    oauth_redirect_url: Optional[str] = None
    """OAuth2 redirect URL registered in the client metadata."""

    oauth_scopes: Annotated[List[str], NoDecode] = ["atproto"]
    """
    OAuth2 scopes to request.
    Set with XRPC_OAUTH_SCOPES environment variable as comma-separated values.
    """

    oauth_signing_key: Annotated[Optional[jwk.JWK], NoDecode] = None
    """
    Private key for `private_key_jwt` client authentication. Only confidential
    clients need one. Can be set to a JWK object or a path to a JSON file
    containing the key.
    """

    user_agent: str = DEFAULT_USER_AGENT

    request_timeout: float = 30.0
    """Total timeout in seconds for a single request, 0 disables it."""

    @field_validator("base_url")
    @classmethod
    def strip_base_url(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("oauth_scopes", mode="before")
    @classmethod
    def decode_oauth_scopes(cls, v) -> List[str]:
        if isinstance(v, str):
            return [scope.strip() for scope in v.split(",") if scope.strip()]
        return v

    @field_validator("oauth_signing_key", mode="before")
    @classmethod
    def decode_oauth_signing_key(cls, v) -> Optional[jwk.JWK]:
        """
        Accepts an existing JWK object or a path to a JSON file holding one.

        Raises:
            ValueError: If the input is neither a JWK nor a path
        """
        if v is None or isinstance(v, jwk.JWK):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                return jwk.JWK.from_json(fd.read())
        raise ValueError("oauth_signing_key must be a JWK object or a JSON file path")

    @property
    def client_timeout(self) -> Optional[ClientTimeout]:
        if self.request_timeout <= 0:
            return None
        return ClientTimeout(total=self.request_timeout)
