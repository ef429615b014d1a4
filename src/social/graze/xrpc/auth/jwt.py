"""
JWT, DPoP and PKCE utilities for AT Protocol OAuth.

Provides helper functions for creating DPoP (Demonstrating Proof of Possession)
JWTs as specified in RFC 9449, client assertions (RFC 7523) for confidential
clients, and PKCE verifier/challenge pairs (RFC 7636).
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from jwcrypto import jwk, jwt
from ulid import ULID

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate PKCE (Proof Key for Code Exchange) verifier and challenge.

    Returns:
        Tuple[str, str]: A tuple containing (pkce_verifier, pkce_challenge)
        - pkce_verifier: The secret verifier sent in the token request
        - pkce_challenge: The S256 challenge sent in the authorization request

    Security considerations:
        - The verifier has 64 bytes of entropy, encoding to 86 characters,
          inside the 43-128 character range RFC 7636 section 4.1 requires
    """
    pkce_token = secrets.token_urlsafe(64)
    return (pkce_token, pkce_challenge_for(pkce_token))


def pkce_challenge_for(verifier: str) -> str:
    hashed = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


def access_token_hash(access_token: str) -> str:
    """The `ath` DPoP claim: base64url(SHA-256(access token)) without padding."""
    hashed = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new DPoP key pair for token binding.

    Returns:
        Tuple[jwk.JWK, Dict[str, Any]]: A tuple containing:
            - dpop_key: The complete JWK including private key for signing
            - public_key_dict: The public key portion for JWT headers
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims binding a proof to one HTTP request.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request, without query or fragment
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)
        nonce: Server-provided nonce, once one has been seen
        access_token: When calling a resource server, the bound access token

    Returns:
        Dict[str, Any]: DPoP JWT claims ready for use with jwcrypto
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims = {
        "jti": secrets.token_urlsafe(32),
        "htm": http_method.upper(),
        "htu": http_uri,
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if nonce is not None:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    return claims


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> str:
    """Create a signed DPoP proof for a single request.

    Usage:
        ```python
        dpop_key, _ = generate_dpop_key()
        headers["DPoP"] = create_dpop_jwt(
            dpop_key, "POST", "https://bsky.social/oauth/token"
        )
        ```
    """
    header = {
        "alg": "ES256",
        "jwk": dpop_key.export_public(as_dict=True),
        "typ": "dpop+jwt",
    }
    claims = create_dpop_claims(
        http_method, http_uri, nonce=nonce, access_token=access_token
    )

    dpop_jwt = jwt.JWT(header=header, claims=claims)
    dpop_jwt.make_signed_token(dpop_key)
    return dpop_jwt.serialize()


def create_client_assertion_jwt(
    signing_key: jwk.JWK,
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
) -> str:
    """Create a `private_key_jwt` client assertion for a confidential client."""
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    header = {"alg": "ES256", "kid": signing_key.key_id}
    claims = {
        "iss": client_id,
        "sub": client_id,
        "aud": audience,
        "jti": secrets.token_urlsafe(32),
        "iat": int(issued_at.timestamp()),
    }
    assertion = jwt.JWT(header=header, claims=claims)
    assertion.make_signed_token(signing_key)
    return assertion.serialize()
