"""
auth/tokens.py -- JWT access and refresh token codec.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub (user id as a string, per RFC
       7519), role, type, iat and exp. Verification returns None on any
       failure -- the route layer turns that into a 401.

  Two keys: access tokens are signed with SECRET_KEY, refresh tokens with
       REFRESH_SECRET_KEY, and each carries a "type" claim that is checked on
       decode. A refresh token presented as an access token (or vice versa)
       fails on the signature before the type check is even reached.

  Keys: sourced from core.config.get_settings(). The Settings class validates
       both keys at startup [M6] [M7] [M8].

Layer rule: no imports from api/ or mail/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import TokenPayload
from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


def _encode(user_id: int, role: str, token_type: str, secret: str, duration: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def create_access_token(user_id: int, role: str, expire_seconds: int = 0) -> str:
    """Encode a short-lived access token.

    Args:
        user_id:        Numeric user ID stored in the DB.
        role:           User role, carried as-is for downstream checks.
        expire_seconds: Lifetime in seconds. If 0 (default), uses
                        Settings.access_token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    return _encode(user_id, role, _ACCESS, _settings.secret_key, duration)


def create_refresh_token(user_id: int, role: str, expire_seconds: int = 0) -> str:
    """Encode a long-lived refresh token, used solely to mint new access tokens."""
    duration = expire_seconds if expire_seconds > 0 else _settings.refresh_token_expire_seconds
    return _encode(user_id, role, _REFRESH, _settings.refresh_secret_key, duration)


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def _decode(token: str, secret: str, token_type: str) -> TokenPayload | None:
    if not token:
        return None
    try:
        claims = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except (JWTError, ValueError):
        return None
    if claims.get("type") != token_type or "role" not in claims:
        return None
    try:
        user_id = int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        return None
    return TokenPayload(
        user_id=user_id,
        role=str(claims["role"]),
        token_type=token_type,
        issued_at=int(claims.get("iat", 0)),
        expires_at=int(claims["exp"]),
    )


def decode_access_token(token: str) -> TokenPayload | None:
    """Decode and verify an access token. Returns the payload or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated.
    """
    return _decode(token, _settings.secret_key, _ACCESS)


def decode_refresh_token(token: str) -> TokenPayload | None:
    """Decode and verify a refresh token. Returns the payload or None on any failure."""
    return _decode(token, _settings.refresh_secret_key, _REFRESH)
