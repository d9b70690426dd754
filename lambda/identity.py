"""Caller identity extraction for task routes.

Identity comes from one of two places, in order:

1. Claims placed on the event by an API Gateway Cognito authorizer. The
   gateway has already verified the token signature before invoking us.
2. The ``Authorization: Bearer <jwt>`` header, checked by an
   ``IdentityVerifier``. The default verifier validates the signature against
   the user pool JWKS; the decode-only verifier exists for local development
   and must be selected explicitly.

Every failure path yields ``None`` (unauthenticated). Nothing here raises.
"""

from __future__ import annotations

import base64
import json
from typing import Any
from typing import Protocol

import jwt

JWKS_CACHE_SECONDS = 3600


class IdentityVerifier(Protocol):
    def verify(self, token: str) -> str | None:
        ...


def _get_header(event: dict[str, Any], name: str) -> str:
    headers = event.get("headers") or {}
    if not isinstance(headers, dict):
        return ""
    for k, v in headers.items():
        if isinstance(k, str) and k.lower() == name.lower():
            return str(v) if v is not None else ""
    return ""


def bearer_token(event: dict[str, Any]) -> str | None:
    auth = _get_header(event, "authorization").strip()
    if not auth:
        return None
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def unverified_claims(token: str) -> dict[str, Any]:
    parts = str(token or "").split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        raw = base64.urlsafe_b64decode(payload.encode("ascii"))
        parsed = json.loads(raw.decode("utf-8"))
    except Exception:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _sub(claims: dict[str, Any]) -> str | None:
    sub = claims.get("sub")
    if not isinstance(sub, str):
        return None
    sub = sub.strip()
    return sub or None


def authorizer_claims(event: dict[str, Any]) -> dict[str, Any]:
    rc = event.get("requestContext") or {}
    if not isinstance(rc, dict):
        return {}
    auth = rc.get("authorizer") or {}
    if not isinstance(auth, dict):
        return {}
    claims = auth.get("claims")
    if isinstance(claims, dict):
        return claims
    jwt_ctx = auth.get("jwt")
    if isinstance(jwt_ctx, dict) and isinstance(jwt_ctx.get("claims"), dict):
        return jwt_ctx["claims"]
    return {}


class UnverifiedClaimsVerifier:
    """Trusts the payload as asserted. Local development only."""

    def verify(self, token: str) -> str | None:
        return _sub(unverified_claims(token))


class CognitoJwtVerifier:
    def __init__(self, *, user_pool_id: str, client_id: str, region: str = "") -> None:
        pool = str(user_pool_id or "").strip()
        if not pool or not client_id:
            raise ValueError("user_pool_id and client_id are required for token verification")
        region = (region or pool.split("_", 1)[0]).strip()
        self.client_id = client_id
        self.issuer = f"https://cognito-idp.{region}.amazonaws.com/{pool}"
        self._jwks = jwt.PyJWKClient(
            f"{self.issuer}/.well-known/jwks.json",
            cache_keys=True,
            lifespan=JWKS_CACHE_SECONDS,
        )

    def verify(self, token: str) -> str | None:
        try:
            signing_key = self._jwks.get_signing_key_from_jwt(token)
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                issuer=self.issuer,
                options={"require": ["exp", "iss", "sub"], "verify_aud": False},
            )
        except jwt.PyJWTError:
            return None
        # ID tokens carry the app client in aud, access tokens in client_id.
        token_use = claims.get("token_use")
        if token_use == "id":
            if claims.get("aud") != self.client_id:
                return None
        elif token_use == "access":
            if claims.get("client_id") != self.client_id:
                return None
        else:
            return None
        return _sub(claims)


def caller_identity(event: dict[str, Any], verifier: IdentityVerifier | None) -> str | None:
    sub = _sub(authorizer_claims(event))
    if sub:
        return sub
    token = bearer_token(event)
    if not token or verifier is None:
        return None
    try:
        return verifier.verify(token)
    except Exception:
        return None
