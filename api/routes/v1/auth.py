"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes (mounted under /api/auth/v1):
  POST /signup                    -- create a credentials account, queue verification email
  GET  /verify-email?token=       -- consume an email verification token
  POST /login                     -- password login; returns access + refresh tokens
  POST /refresh                   -- trade a refresh token for a new access token
  POST /forgot-password           -- email a password reset link
  POST /reset-password            -- consume a reset token and set the new password
  GET  /me                        -- current user (requires auth)
  GET  /session                   -- current user if authenticated, else an empty session
  GET  /providers                 -- list enabled OAuth providers (public)
  GET  /oauth/{provider}          -- redirect to the provider's consent page
  GET  /oauth/{provider}/callback -- finish OAuth, redirect to the frontend with a one-time code
  POST /oauth/exchange            -- redeem the one-time code for the login result

Handlers are thin: they pull the shared AuthFlows from app.state, call one
flow, and write its FlowResult as the response with the HTTP status equal to
result.code. All business rules live in auth/flows.py.

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    Envelope,
    ExchangeRequest,
    ForgotPasswordRequest,
    LoginRequest,
    OAuthProviderInfo,
    RefreshRequest,
    ResetPasswordRequest,
    SignupRequest,
)
from auth.dependencies import get_current_identity, try_get_identity
from auth.flows import AuthFlows, FlowResult
from auth.models import TokenPayload
from auth.oauth import OAuthVerificationError, authenticate_callback, get_enabled_providers
from core.config import get_settings

logger = logging.getLogger("atrium.api.auth")

_settings = get_settings()

# Auth policy:
# - GET /me:      requires auth (get_current_identity)
# - GET /session: optional auth (try_get_identity)
# - everything else is public; the token-bearing flows check their own tokens
router = APIRouter()


def _flows(request: Request) -> AuthFlows:
    return request.app.state.flows


def _respond(result: FlowResult, no_store: bool = False) -> JSONResponse:
    resp = JSONResponse(status_code=result.code, content=result.to_envelope())
    if no_store:
        resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@router.post("/signup", response_model=Envelope)
async def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create an account. The verification email is sent in the background."""
    result = await _flows(request).signup(body.name, body.email, body.password)
    return _respond(result)


@router.get("/verify-email", response_model=Envelope)
async def verify_email(request: Request, token: str | None = None) -> JSONResponse:
    """Consume the token from the verification link and mark the email verified."""
    result = await _flows(request).verify_email(token)
    return _respond(result)


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_model=Envelope)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password produce the same 401 message; the flow
    equalizes timing between the two.
    """
    result = await _flows(request).login(body.email, body.password)
    return _respond(result, no_store=True)


@router.post("/refresh", response_model=Envelope)
async def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    result = await _flows(request).refresh(body.refresh_token)
    return _respond(result, no_store=True)


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Send a reset link. Unknown emails get the same answer as known ones."""
    result = await _flows(request).forgot_password(body.email)
    return _respond(result)


@router.post("/reset-password", response_model=Envelope)
async def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    result = await _flows(request).reset_password(body.token, body.password)
    return _respond(result)


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


@router.get("/me", response_model=Envelope)
async def me(request: Request, identity: TokenPayload = Depends(get_current_identity)) -> JSONResponse:
    """Return the profile of the authenticated user."""
    result = await _flows(request).current_user(identity.user_id)
    return _respond(result)


@router.get("/session", response_model=Envelope)
async def session(request: Request) -> JSONResponse:
    """Return the current user when a valid bearer token is present.

    Never fails on missing or bad credentials: an anonymous caller gets a
    200 with no data, so the frontend can probe without handling errors.
    """
    identity = try_get_identity(request)
    if identity is not None:
        result = await _flows(request).current_user(identity.user_id)
        if result.ok:
            return _respond(result)
    return _respond(FlowResult(code=200, message="No active session"))


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the list of configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no OAuth env vars are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the OAuth provider's authorization page.

    Only registered providers get a client from the registry, so a spoofed
    provider name cannot produce a redirect to an arbitrary URL.
    """
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        url = _flows(request).oauth_redirect_url(FlowResult(code=404, message="OAuth provider not enabled"))
        return RedirectResponse(url, status_code=302)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the provider round trip and hand the result to the frontend.

    Flow:
      1. Exchange the authorization code and extract a verified profile [H1].
      2. Find, link or create the user and issue tokens (AuthFlows.oauth_login).
      3. Park the login result in the exchange store; redirect with its code.
    Any failure redirects with status=error instead. Tokens never appear in
    the redirect URL.
    """
    flows = _flows(request)
    try:
        profile = await authenticate_callback(request.app.state.oauth, request, provider)
    except OAuthVerificationError as exc:
        logger.warning("OAuth callback rejected for provider %r: %s", provider, exc)
        result: FlowResult = FlowResult(code=401, message="OAuth authentication failed")
    else:
        result = await flows.oauth_login(profile)

    resp = RedirectResponse(flows.oauth_redirect_url(result), status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/oauth/exchange", response_model=Envelope)
async def oauth_exchange(request: Request, body: ExchangeRequest) -> JSONResponse:
    """Redeem the one-time code from the OAuth redirect for the login result."""
    result = await _flows(request).exchange(body.code)
    return _respond(result, no_store=True)
