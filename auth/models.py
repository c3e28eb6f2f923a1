"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and flows do the work.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TokenKind(str, Enum):
    email_verification = "email_verification"
    password_reset = "password_reset"


@dataclass
class User:
    """Represents an account in Atrium.

    hashed_password is None for OAuth-only users (they have no local password).
    oauth_provider / oauth_subject are None until the user logs in via OAuth for
    the first time, at which point link_oauth() fills them in.
    """

    email: str
    name: str | None = None
    role: str = "user"
    id: int | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    email_verified: bool = False
    image: str | None = None
    oauth_provider: str | None = None  # "github", "google"
    oauth_subject: str | None = None  # provider's stable user ID
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class PersistentToken:
    """A single-use email verification or password reset token.

    A token is active while consumed_at and revoked_at are both None and
    expires_at lies in the future. The raw token string is opaque to callers.
    """

    user_id: int
    token: str
    kind: TokenKind
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None
    consumed_at: datetime | None = None
    revoked_at: datetime | None = None


@dataclass
class TokenPayload:
    """Verified claims of an access or refresh token."""

    user_id: int
    role: str
    token_type: str  # "access" or "refresh"
    issued_at: int
    expires_at: int


@dataclass
class OAuthProfile:
    """Normalized identity returned by an OAuth provider after a verified callback."""

    provider: str
    subject: str
    email: str
    name: str | None = None
    image: str | None = None
