"""
OIDC handshake engine (authorization code flow + PKCE S256).

Discovery and token exchange are single bounded requests over httpx; any
timeout, transport error or non-2xx reply aborts the login with the matching
502 error. ID-token claims are decoded without signature verification; the
token's trust basis is the TLS-protected, PKCE-bound back-channel exchange.
"""

import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt

from app.config import settings
from app.core.exceptions import (
    DiscoveryFailedError,
    InvalidTokenError,
    MissingEmailClaimError,
    TokenExchangeFailedError,
)

logger = logging.getLogger("salesintel.sso.oidc")

WELL_KNOWN_PATH = "/.well-known/openid-configuration"
DEFAULT_SCOPE = "openid email profile groups"
CODE_CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class OidcDiscovery:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str = ""
    jwks_uri: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {
            "issuer": self.issuer,
            "authorization_endpoint": self.authorization_endpoint,
            "token_endpoint": self.token_endpoint,
            "userinfo_endpoint": self.userinfo_endpoint,
            "jwks_uri": self.jwks_uri,
        }


@dataclass(frozen=True)
class OidcIdentity:
    email: str
    first_name: str
    last_name: str
    groups: List[str]


def discovery_url_for(discovery_url: Optional[str], issuer: Optional[str]) -> str:
    """Explicit discovery URL, else the issuer's well-known document."""
    if discovery_url:
        return discovery_url
    return f"{(issuer or '').rstrip('/')}{WELL_KNOWN_PATH}"


def _timeout(timeout: Optional[float]) -> httpx.Timeout:
    return httpx.Timeout(timeout if timeout is not None else settings.SSO_HTTP_TIMEOUT_SECONDS)


async def discover(
    url: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: Optional[float] = None,
) -> OidcDiscovery:
    """Fetch and validate an OpenID Provider configuration document."""
    try:
        async with httpx.AsyncClient(timeout=_timeout(timeout), transport=transport) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
    except httpx.HTTPError as exc:
        logger.warning("OIDC discovery request to %s failed: %s", url, type(exc).__name__)
        raise DiscoveryFailedError("OIDC discovery failed: identity provider unreachable") from exc

    if not response.is_success:
        logger.warning("OIDC discovery at %s returned HTTP %s", url, response.status_code)
        raise DiscoveryFailedError(f"OIDC discovery failed: HTTP {response.status_code}")

    try:
        document = response.json()
    except ValueError as exc:
        raise DiscoveryFailedError("OIDC discovery failed: response is not JSON") from exc
    if not isinstance(document, dict):
        raise DiscoveryFailedError("OIDC discovery failed: unexpected document shape")

    authorization_endpoint = document.get("authorization_endpoint")
    token_endpoint = document.get("token_endpoint")
    if not authorization_endpoint or not token_endpoint:
        raise DiscoveryFailedError("OIDC discovery document is missing required endpoints")

    return OidcDiscovery(
        issuer=document.get("issuer") or "",
        authorization_endpoint=authorization_endpoint,
        token_endpoint=token_endpoint,
        userinfo_endpoint=document.get("userinfo_endpoint") or "",
        jwks_uri=document.get("jwks_uri") or "",
    )


# ═══════════════════════════════════════════
#  PKCE / state
# ═══════════════════════════════════════════

def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(32))


def build_code_challenge(code_verifier: str) -> str:
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def build_authorization_url(
    authorization_endpoint: str,
    *,
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str,
    scope: str = DEFAULT_SCOPE,
) -> str:
    params = urlencode({
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": CODE_CHALLENGE_METHOD,
    })
    separator = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{separator}{params}"


# ═══════════════════════════════════════════
#  Token exchange
# ═══════════════════════════════════════════

async def exchange_code(
    token_endpoint: str,
    *,
    code: str,
    code_verifier: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Redeem an authorization code. Returns the token endpoint's JSON body."""
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "client_secret": client_secret,
        "code_verifier": code_verifier,
    }
    try:
        async with httpx.AsyncClient(timeout=_timeout(timeout), transport=transport) as client:
            response = await client.post(
                token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
    except httpx.HTTPError as exc:
        logger.warning("OIDC token exchange at %s failed: %s", token_endpoint, type(exc).__name__)
        raise TokenExchangeFailedError("Token exchange failed: identity provider unreachable") from exc

    if not response.is_success:
        logger.warning("OIDC token endpoint returned HTTP %s", response.status_code)
        raise TokenExchangeFailedError(f"Token exchange failed: HTTP {response.status_code}")

    try:
        tokens = response.json()
    except ValueError as exc:
        raise TokenExchangeFailedError("Token exchange failed: response is not JSON") from exc
    if not isinstance(tokens, dict):
        raise TokenExchangeFailedError("Token exchange failed: unexpected response shape")
    return tokens


# ═══════════════════════════════════════════
#  ID token claims
# ═══════════════════════════════════════════

def decode_id_token_claims(id_token: Optional[str]) -> Dict[str, Any]:
    """Decode the claim segment of an ID token. The signature is not checked."""
    if not id_token:
        raise InvalidTokenError("Token response did not include an id_token")
    try:
        claims = jwt.get_unverified_claims(id_token)
    except JWTError as exc:
        raise InvalidTokenError("ID token is malformed") from exc
    if not isinstance(claims, dict):
        raise InvalidTokenError("ID token claims are not an object")
    return claims


def validate_id_token_claims(
    claims: Dict[str, Any],
    *,
    issuer: Optional[str],
    client_id: str,
    now: Optional[float] = None,
) -> None:
    """Check ``iss``, ``aud`` and ``exp``. Raises ``InvalidTokenError``."""
    if issuer and claims.get("iss") != issuer:
        raise InvalidTokenError("ID token issuer mismatch")

    aud = claims.get("aud")
    if aud is not None:
        audiences = aud if isinstance(aud, list) else [aud]
        if client_id not in audiences:
            raise InvalidTokenError("ID token audience mismatch")

    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise InvalidTokenError("ID token has no valid expiry")
    current = time.time() if now is None else now
    if exp <= current:
        raise InvalidTokenError("ID token expired")


def _groups_from_claim(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def extract_identity(claims: Dict[str, Any]) -> OidcIdentity:
    email = claims.get("email")
    if not email or not isinstance(email, str):
        raise MissingEmailClaimError("No email claim in ID token")

    first_name = claims.get("given_name") or ""
    last_name = claims.get("family_name") or ""
    if not first_name and not last_name:
        name = (claims.get("name") or "").strip()
        if name:
            first_name, _, last_name = name.partition(" ")
            last_name = last_name.strip()
    if not first_name:
        first_name = email.split("@", 1)[0]

    return OidcIdentity(
        email=email,
        first_name=first_name,
        last_name=last_name,
        groups=_groups_from_claim(claims.get("groups")),
    )
