"""
auth/flows.py -- User-facing auth operations with a uniform result contract.

Every flow returns a FlowResult that serializes to the JSON envelope

    {"code": <http status>, "status": "success" | "error", "message": str, "data"?: {...}}

and no flow raises past its own boundary. Inside a flow, expected failures are
raised as auth.errors.AuthFlowError subclasses and come back as an error
result with their code and user-safe message. Anything else is an unexpected
fault: the traceback goes to the log via logger.exception() and the client
gets a 500 with a generic message. Internal detail never reaches the result.

Each flow has its own success payload type (SignupData, LoginData,
RefreshData, UserSummary); field names are camelCased on serialization for
the frontend.

Mail policy:
  signup          -- verification email is queued on the MailOutbox and the
                     response does not wait for it. Failures are logged only.
  forgot_password -- the reset email is awaited. A failure or timeout fails
                     the request with 500, because the user has no other way
                     to learn that no email is coming.

bcrypt work (hash_password, authenticate_user) runs in a worker thread via
asyncio.to_thread() so a login does not stall other requests on the loop.

Layer rule: no imports from api/. auth/flows.py is the only auth module that
imports from mail/.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
import secrets
from dataclasses import asdict, dataclass, is_dataclass
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import Any, Generic, TypeVar
from urllib.parse import quote, urlencode

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AuthenticationError,
    AuthFlowError,
    ConflictError,
    DependencyError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from auth.exchange import ExchangeTokenStore
from auth.models import OAuthProfile, User
from auth.passwords import authenticate_user, hash_password
from auth.store import TokenStore, UserStore
from auth.tokens import create_access_token, create_refresh_token, decode_refresh_token
from core.config import Settings, get_settings
from mail.mailer import MailDeliveryError, MailMessage, SMTPMailer
from mail.outbox import MailOutbox
from mail.templates import render_template

logger = logging.getLogger("atrium.auth.flows")

T = TypeVar("T")

OAUTH_CALLBACK_PATH = "/oauth-callback"
VERIFY_EMAIL_PATH = "/api/auth/v1/verify-email"
RESET_PASSWORD_PATH = "/reset-password"

_BAD_CREDENTIALS = "Invalid email or password"
_RESET_SENT = "If an account with that email exists, a password reset link has been sent."


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


def _camel(key: str) -> str:
    return re.sub(r"_([a-z])", lambda m: m.group(1).upper(), key)


def _camelize(value: Any) -> Any:
    if isinstance(value, dict):
        return {_camel(k): _camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_camelize(v) for v in value]
    return value


@dataclass
class FlowResult(Generic[T]):
    code: int
    message: str
    data: T | None = None

    @property
    def status(self) -> str:
        return "success" if self.code < 400 else "error"

    @property
    def ok(self) -> bool:
        return self.code < 400

    def payload(self) -> Any:
        """The data part of the envelope, or None when the flow returns none."""
        if self.data is None:
            return None
        if is_dataclass(self.data):
            return _camelize(asdict(self.data))
        return self.data

    def to_envelope(self) -> dict:
        envelope: dict[str, Any] = {"code": self.code, "status": self.status, "message": self.message}
        payload = self.payload()
        if payload is not None:
            envelope["data"] = payload
        return envelope


@dataclass
class UserSummary:
    """Public view of a User. Never carries the password hash."""

    id: int
    email: str
    name: str | None
    role: str
    image: str | None
    email_verified: bool
    created_at: str | None

    @classmethod
    def from_user(cls, user: User) -> UserSummary:
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            image=user.image,
            email_verified=user.email_verified,
            created_at=user.created_at,
        )


@dataclass
class SignupData:
    user: UserSummary


@dataclass
class LoginData:
    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    user: UserSummary


@dataclass
class RefreshData:
    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int


# ---------------------------------------------------------------------------
# Flow boundary
# ---------------------------------------------------------------------------


def flow_boundary(failure_message: str):
    """Turn everything a flow raises into a FlowResult.

    AuthFlowError -> its own code and message.
    Any other exception -> logged with traceback, 500 with failure_message.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> FlowResult:
            try:
                return await func(*args, **kwargs)
            except AuthFlowError as exc:
                if exc.code >= 500:
                    logger.error("%s failed: %s", func.__name__, exc.__cause__ or exc)
                else:
                    logger.info("%s rejected (%d): %s", func.__name__, exc.code, exc.message)
                return FlowResult(code=exc.code, message=exc.message)
            except Exception:
                logger.exception("%s failed with an unexpected error", func.__name__)
                return FlowResult(code=500, message=failure_message)

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: str | None) -> str:
    return value.strip() if isinstance(value, str) else ""


def _normalize_email(email: str | None) -> str:
    return _clean(email).lower()


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------


class AuthFlows:
    """Orchestrates stores, token codec and mail into the auth operations.

    One instance is built by the app lifespan and shared by all requests.
    Flows hold no per-request state.
    """

    def __init__(
        self,
        users: UserStore,
        tokens: TokenStore,
        exchange_store: ExchangeTokenStore,
        mailer: SMTPMailer,
        outbox: MailOutbox,
        settings: Settings | None = None,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.exchange_store = exchange_store
        self.mailer = mailer
        self.outbox = outbox
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @flow_boundary("Unable to create account")
    async def signup(self, name: str | None, email: str | None, password: str | None) -> FlowResult[SignupData]:
        name = _clean(name)
        email = _normalize_email(email)
        if not name or not email or not password:
            raise ValidationError("Missing fields")

        if self.users.get_by_email(email) is not None:
            raise ConflictError("Email already registered")
        hashed = await asyncio.to_thread(hash_password, password)
        try:
            user_id = self.users.create_user(User(email=email, name=name, hashed_password=hashed))
        except IntegrityError as exc:
            # Lost a race with a concurrent signup for the same address [M1]
            raise ConflictError("Email already registered") from exc
        created = self.users.get_by_id(user_id)

        token = secrets.token_urlsafe(32)
        expires_at = _now() + timedelta(seconds=self.settings.email_verification_ttl_seconds)
        self.tokens.create_email_verification_token(user_id, token, expires_at)
        self._queue_verification_email(created, token, expires_at)

        logger.info("Account created (user_id=%d)", user_id)
        return FlowResult(
            code=200,
            message="Created account successfully! Please verify your email.",
            data=SignupData(user=UserSummary.from_user(created)),
        )

    def _queue_verification_email(self, user: User, token: str, expires_at: datetime) -> None:
        frontend = self.settings.frontend_url
        try:
            html = render_template(
                "verify-email.html",
                name=user.name or "there",
                appName=self.settings.app_name,
                emailVerificationURL=f"{frontend}{VERIFY_EMAIL_PATH}?token={quote(token, safe='')}",
                expiresAt=format_datetime(expires_at, usegmt=True),
                logoURL=f"{frontend}/logo.jpg",
            )
            self.outbox.enqueue(MailMessage(to=user.email, subject="Verify your email address", html=html))
        except Exception:
            # Best effort: the account exists either way.
            logger.exception("Could not queue verification email (user_id=%d)", user.id)

    @flow_boundary("Unable to verify email")
    async def verify_email(self, token: str | None) -> FlowResult[None]:
        token = _clean(token)
        if not token:
            raise ValidationError("Verification token is required")
        record = self.tokens.consume_email_verification_token(token)
        if record is None or not self.users.mark_email_verified(record.user_id):
            raise InvalidTokenError("Invalid or expired verification token")
        logger.info("Email verified (user_id=%d)", record.user_id)
        return FlowResult(code=200, message="Email verified successfully")

    @flow_boundary("Unable to log in")
    async def login(self, email: str | None, password: str | None) -> FlowResult[LoginData]:
        email = _normalize_email(email)
        if not email or not password:
            raise AuthenticationError(_BAD_CREDENTIALS)
        user = await asyncio.to_thread(authenticate_user, self.users, email, password)
        if user is None:
            raise AuthenticationError(_BAD_CREDENTIALS)
        self.users.update_last_login(user.id)
        return FlowResult(code=200, message="Logged in successfully", data=self._issue_tokens(user))

    @flow_boundary("Unable to refresh session")
    async def refresh(self, refresh_token: str | None) -> FlowResult[RefreshData]:
        payload = decode_refresh_token(_clean(refresh_token))
        if payload is None:
            raise AuthenticationError("Invalid or expired refresh token")
        access_token = create_access_token(payload.user_id, payload.role)
        if self.settings.rotate_refresh_tokens:
            refresh_token = create_refresh_token(payload.user_id, payload.role)
        return FlowResult(
            code=200,
            message="Token refreshed successfully",
            data=RefreshData(
                access_token=access_token,
                refresh_token=_clean(refresh_token),
                token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
                expires_in=self.settings.access_token_expire_seconds,
            ),
        )

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    @flow_boundary("Unable to process password reset request")
    async def forgot_password(self, email: str | None) -> FlowResult[None]:
        email = _normalize_email(email)
        if not email:
            raise ValidationError("Email is required")

        user = self.users.get_by_email(email)
        if user is None:
            # Same answer as a real match -- do not reveal whether the email exists.
            return FlowResult(code=200, message=_RESET_SENT)
        if user.hashed_password is None:
            raise ValidationError(
                "This account was created with OAuth and does not have a password. Please use OAuth to sign in."
            )

        # Revoke first: at most one active reset token per user.
        self.tokens.revoke_all_password_reset_tokens_by_user(user.id)
        token = secrets.token_urlsafe(32)
        expires_at = _now() + timedelta(seconds=self.settings.password_reset_ttl_seconds)
        self.tokens.create_password_reset_token(user.id, token, expires_at)

        frontend = self.settings.frontend_url
        html = render_template(
            "reset-password.html",
            name=user.name or "there",
            appName=self.settings.app_name,
            resetPasswordURL=f"{frontend}{RESET_PASSWORD_PATH}?token={quote(token, safe='')}",
            expiresAt=format_datetime(expires_at, usegmt=True),
            logoURL=f"{frontend}/logo.jpg",
        )
        try:
            await self.mailer.send(user.email, "Reset your password", html)
        except MailDeliveryError as exc:
            raise DependencyError("Unable to process password reset request") from exc

        logger.info("Password reset email sent (user_id=%d)", user.id)
        return FlowResult(code=200, message=_RESET_SENT)

    @flow_boundary("Unable to reset password")
    async def reset_password(self, token: str | None, password: str | None) -> FlowResult[None]:
        token = _clean(token)
        if not token or not password:
            raise ValidationError("Token and password are required")
        if self.tokens.find_valid_password_reset_token(token) is None:
            raise InvalidTokenError("Invalid or expired reset token")

        hashed = await asyncio.to_thread(hash_password, password)
        # The consume is the real check: a concurrent reset with the same
        # token may have won since the lookup above.
        record = self.tokens.consume_password_reset_token(token)
        if record is None or not self.users.update_password(record.user_id, hashed):
            raise InvalidTokenError("Invalid or expired reset token")
        self.tokens.revoke_all_password_reset_tokens_by_user(record.user_id)

        logger.info("Password reset completed (user_id=%d)", record.user_id)
        return FlowResult(code=200, message="Password has been reset successfully")

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @flow_boundary("OAuth authentication failed")
    async def oauth_login(self, profile: OAuthProfile) -> FlowResult[LoginData]:
        """Find or create the user behind a verified provider identity and log them in.

        Lookup order:
          1. (provider, subject) -- returning user already linked.
          2. email -- existing account, link the identity now.
          3. neither -- create an OAuth-only account (no password).

        Linking to an account whose email was never verified drops its
        password: whoever set it has not proven they own the mailbox.
        """
        email = _normalize_email(profile.email)
        if not email or not profile.subject:
            raise ValidationError("OAuth provider did not return a usable identity")

        user = self.users.get_by_oauth(profile.provider, profile.subject)
        if user is None:
            user = self.users.get_by_email(email)
            if user is None:
                user = self._create_oauth_user(email, profile)
            if user.oauth_subject is None:
                user = self._link_oauth_identity(user, profile)

        self.users.update_last_login(user.id)
        logger.info("OAuth login via %s (user_id=%d)", profile.provider, user.id)
        return FlowResult(code=200, message="Logged in successfully", data=self._issue_tokens(user))

    def _link_oauth_identity(self, user: User, profile: OAuthProfile) -> User:
        clear_password = not user.email_verified and user.hashed_password is not None
        self.users.link_oauth(user.id, profile.provider, profile.subject, clear_password=clear_password)
        if clear_password:
            logger.warning(
                "Dropped unverified password while linking %s identity (user_id=%d)", profile.provider, user.id
            )
        return self.users.get_by_id(user.id)

    def _create_oauth_user(self, email: str, profile: OAuthProfile) -> User:
        new_user = User(
            email=email,
            name=profile.name,
            image=profile.image,
            email_verified=True,
            oauth_provider=profile.provider,
            oauth_subject=profile.subject,
        )
        try:
            user_id = self.users.create_user(new_user)
        except IntegrityError as exc:
            # Concurrent first login for the same address created it already.
            existing = self.users.get_by_email(email)
            if existing is None:
                raise ConflictError("Email already registered") from exc
            return existing
        return self.users.get_by_id(user_id)

    def oauth_redirect_url(self, result: FlowResult) -> str:
        """Frontend URL to send the browser to after the provider callback.

        Success: the login payload is parked in the exchange store and only
        the one-time code travels in the URL. Failure: status, message and
        code travel as query parameters.
        """
        base = f"{self.settings.frontend_url}{OAUTH_CALLBACK_PATH}"
        if result.ok and result.data is not None:
            code = self.exchange_store.generate(result.payload())
            return f"{base}?code={quote(code, safe='')}"
        params = urlencode(
            {
                "status": "error",
                "message": result.message or "OAuth authentication failed",
                "code": str(result.code or 500),
            }
        )
        return f"{base}?{params}"

    @flow_boundary("Unable to exchange code")
    async def exchange(self, code: str | None) -> FlowResult[dict]:
        code = _clean(code)
        if not code:
            raise ValidationError("Code is required")
        payload = self.exchange_store.exchange(code)
        if payload is None:
            raise NotFoundError("Invalid or expired code")
        return FlowResult(code=200, message="Code exchanged successfully", data=payload)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    @flow_boundary("Failed to get current user")
    async def current_user(self, user_id: int) -> FlowResult[UserSummary]:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return FlowResult(code=200, message="Current user", data=UserSummary.from_user(user))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_tokens(self, user: User) -> LoginData:
        return LoginData(
            access_token=create_access_token(user.id, user.role),
            refresh_token=create_refresh_token(user.id, user.role),
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=self.settings.access_token_expire_seconds,
            user=UserSummary.from_user(user),
        )
