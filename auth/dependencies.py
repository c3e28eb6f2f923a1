"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Requests authenticate with an access token in the header

    Authorization: Bearer <jwt>

The scheme name is matched case-insensitively. The token is verified against
the access-token key only; a refresh token presented here is rejected.

Authentication is stateless: a valid token yields its TokenPayload (user id
and role) without a database lookup. Routes that need the full user record
load it themselves.

try_get_identity() is the soft variant (returns None on failure).
get_current_identity() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from mail/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import TokenPayload
from auth.tokens import decode_access_token


def extract_bearer_token(header: str | None) -> str | None:
    """Return the token from an Authorization header value, or None.

    "Bearer abc", "bearer abc" and "BEARER   abc" all yield "abc". Any other
    scheme, or a header with no token after the scheme, yields None.
    """
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def try_get_identity(request: Request) -> TokenPayload | None:
    """Authenticate the request from its bearer token.

    Returns the verified payload on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_identity().
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        return None
    return decode_access_token(token)


def get_current_identity(request: Request) -> TokenPayload:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: TokenPayload = Depends(get_current_identity)): ...
    """
    identity = try_get_identity(request)
    if identity is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity
