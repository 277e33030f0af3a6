"""
Anonymous Access Tokens

This module is responsible for:

1. Issuing short-lived anonymous JWTs to browser clients.
2. Verifying those tokens on protected routes.

Security Model
--------------
- Tokens carry no identity, only `ver`, `scope`, `jti` and the standard
  issuer/audience/time claims. Verification checks signature and expiry.
- The token is read from the `anon_jwt` cookie first, then from a Bearer
  `Authorization` header.
- Without a configured `jwt_secret`, a random per-process key is used, so
  tokens do not survive a restart.
"""

from __future__ import annotations

import secrets
import time
import uuid
from typing import Any, Dict, Optional

import jwt
from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings


ISSUER = "chat-wiki"
AUDIENCE = "api"
TOKEN_COOKIE = "anon_jwt"

security = HTTPBearer(auto_error=False)

_ephemeral_secret: Optional[str] = None


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class AnonTokenError(RuntimeError):
    """Raised when an anonymous token cannot be verified."""


# ---------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------

def _signing_key() -> str:
    global _ephemeral_secret
    configured = settings.jwt_secret.get_secret_value()
    if configured:
        return configured
    if _ephemeral_secret is None:
        _ephemeral_secret = secrets.token_urlsafe(48)
    return _ephemeral_secret


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def create_anon_token(ttl: Optional[int] = None) -> str:
    """
    Issue an anonymous access token.

    Parameters
    ----------
    ttl : Optional[int]
        Lifetime in seconds. Defaults to `settings.jwt_ttl`.
    """
    now = int(time.time())
    payload: Dict[str, Any] = {
        "ver": 1,
        "scope": "access",
        "iss": ISSUER,
        "aud": AUDIENCE,
        "iat": now,
        "exp": now + (ttl or settings.jwt_ttl),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, _signing_key(), algorithm=settings.jwt_algo)


def verify_anon_token(token: str) -> Dict[str, Any]:
    """
    Verify an anonymous token and return its payload.

    Raises
    ------
    AnonTokenError
        If the token is expired, malformed, or signed for another issuer/audience.
    """
    try:
        return jwt.decode(
            token,
            _signing_key(),
            algorithms=[settings.jwt_algo],
            audience=AUDIENCE,
            issuer=ISSUER,
            options={"require": ["iss", "aud", "iat", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AnonTokenError("Token has expired.") from exc
    except jwt.InvalidTokenError as exc:
        raise AnonTokenError("Invalid or malformed token.") from exc


def require_anon_token(
    anon_jwt: Optional[str] = Cookie(default=None),
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Dict[str, Any]]:
    """
    FastAPI dependency guarding the protected API routes.

    Returns the token payload, or None when `settings.auth_enabled` is off.

    Raises
    ------
    HTTPException(401) when the token is missing, invalid or expired.
    """
    if not settings.auth_enabled:
        return None

    token = anon_jwt or (creds.credentials if creds else None)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unauthorized",
        )

    try:
        return verify_anon_token(token)
    except AnonTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid or expired",
        )
