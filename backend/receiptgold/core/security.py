"""Caller authentication for the client-facing routes.

Tokens are verified with python-jose.  Two modes are supported:

* ``AUTH_JWT_SECRET`` set: HS256 tokens signed with that shared secret
  (service-to-service calls and tests);
* otherwise: RS256 tokens verified against the JWKS document at
  ``AUTH_JWKS_URL``, with optional ``aud``/``iss`` checks.

The caller identity is the token's ``sub`` claim.  ``DEV_AUTH_BYPASS``
trusts an ``X-Dev-User`` header and must only be enabled locally.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests
from fastapi import Request
from jose import jwt
from jose.exceptions import JOSEError

from receiptgold.core.config import settings
from receiptgold.core.errors import InternalError, Unauthenticated

logger = logging.getLogger(__name__)

# JWKS cache.  Cleared and refetched once when a token names an unknown kid.
_jwks_cache: Optional[Dict[str, Any]] = None


def get_jwks(refresh: bool = False) -> Dict[str, Any]:
    """Fetch and cache the JWKS used to verify RS256 tokens."""
    global _jwks_cache
    if _jwks_cache is not None and not refresh:
        return _jwks_cache
    if not settings.AUTH_JWKS_URL:
        raise InternalError("AUTH_JWKS_URL is not configured")
    try:
        resp = requests.get(settings.AUTH_JWKS_URL, timeout=5)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise InternalError(f"Failed to fetch JWKS: {exc}") from exc
    if not isinstance(data, dict) or "keys" not in data:
        raise InternalError("Invalid JWKS payload")
    _jwks_cache = data
    return data


def _decode_options() -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"options": {}}
    if settings.AUTH_JWT_AUDIENCE:
        kwargs["audience"] = settings.AUTH_JWT_AUDIENCE
    else:
        kwargs["options"]["verify_aud"] = False
    if settings.AUTH_JWT_ISSUER:
        kwargs["issuer"] = settings.AUTH_JWT_ISSUER
    return kwargs


def decode_token(token: str) -> Dict[str, Any]:
    """Verify ``token`` and return its claims.

    Raises:
        Unauthenticated: the token is malformed, expired or badly signed.
    """
    if settings.AUTH_JWT_SECRET:
        try:
            return jwt.decode(token, settings.AUTH_JWT_SECRET, algorithms=["HS256"], **_decode_options())
        except JOSEError as exc:
            raise Unauthenticated(f"Invalid token: {exc}") from exc

    try:
        header = jwt.get_unverified_header(token)
    except JOSEError as exc:
        raise Unauthenticated(f"Invalid token header: {exc}") from exc
    kid = header.get("kid")
    if not kid:
        raise Unauthenticated("Invalid token: missing kid header")
    key = next((k for k in get_jwks().get("keys", []) if k.get("kid") == kid), None)
    if key is None:
        # Key rotation: refetch once
        key = next((k for k in get_jwks(refresh=True).get("keys", []) if k.get("kid") == kid), None)
        if key is None:
            raise Unauthenticated("Unknown signing key (kid)")
    try:
        return jwt.decode(token, key, algorithms=["RS256"], **_decode_options())
    except JOSEError as exc:
        raise Unauthenticated(f"Invalid token: {exc}") from exc


async def get_caller_id(request: Request) -> str:
    """FastAPI dependency returning the authenticated caller's user id."""
    if settings.DEV_AUTH_BYPASS:
        dev_user = request.headers.get("x-dev-user")
        if dev_user:
            return dev_user
    auth = request.headers.get("authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Missing bearer token")
    claims = decode_token(token.strip())
    subject = claims.get("sub")
    if not subject:
        raise Unauthenticated("Token has no subject")
    return str(subject)


__all__ = ["decode_token", "get_caller_id", "get_jwks"]
