"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration and callback verification.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered.

authenticate_callback() is the boundary between the provider and the auth
flows: it completes the code exchange and returns an explicit OAuthProfile.
The route passes that value to AuthFlows.oauth_login() -- nothing is stashed
on the request object.

Security notes:
  [H1] Email verification is mandatory. The profile extractors raise
       OAuthVerificationError if the provider does not confirm the email is
       verified. An unverified email could belong to an attacker who added a
       victim's address without confirming it.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/ or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError

from auth.models import OAuthProfile
from core.config import get_settings

logger = logging.getLogger("atrium.auth.oauth")


class OAuthVerificationError(Exception):
    """The provider callback could not be turned into a verified identity."""


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

# GitHub -- static endpoints (no OIDC discovery document)
if _cfg.github_client_id and _cfg.github_client_secret:
    oauth.register(
        name="github",
        client_id=_cfg.github_client_id,
        client_secret=_cfg.github_client_secret,
        access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        authorize_url="https://github.com/login/oauth/authorize",
        api_base_url="https://api.github.com/",
        client_kwargs={"scope": "read:user user:email"},
    )
    logger.info("GitHub OAuth provider registered")

# Google -- OIDC discovery
if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    return providers


# ---------------------------------------------------------------------------
# Callback verification
# ---------------------------------------------------------------------------


async def authenticate_callback(registry, request, provider: str) -> OAuthProfile:
    """Complete the authorization-code exchange and return the verified profile.

    Args:
        registry: The authlib OAuth registry (app.state.oauth).
        request:  The Starlette request carrying the provider's callback query.
        provider: "github" or "google".

    Raises:
        OAuthVerificationError: unknown provider, failed code exchange, or an
            identity without a verified email.
    """
    client = registry.create_client(provider)
    if client is None:
        raise OAuthVerificationError(f"OAuth provider not enabled: {provider!r}")
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        raise OAuthVerificationError(f"{provider} OAuth: token exchange failed") from exc
    try:
        return await get_oauth_profile(client, provider, token)
    except httpx.HTTPError as exc:
        raise OAuthVerificationError(f"{provider} OAuth: profile request failed") from exc


async def get_oauth_profile(client, provider: str, token: dict) -> OAuthProfile:
    """Normalize a provider token response into an OAuthProfile [H1]."""
    if provider == "github":
        return await _get_github_profile(client, token)
    elif provider == "google":
        return _get_oidc_profile(token, provider)
    else:
        raise OAuthVerificationError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_profile(client, token: dict) -> OAuthProfile:
    """Build a profile from a GitHub token.

    GitHub does not include the email in the access token. Two API calls are
    required:
      1. GET /user -- numeric user ID (stable subject), name and avatar.
      2. GET /user/emails -- to find the primary verified email.

    [H1] Only the email where both primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise OAuthVerificationError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    return OAuthProfile(
        provider="github",
        subject=str(profile["id"]),
        email=email,
        name=profile.get("name") or profile.get("login"),
        image=profile.get("avatar_url"),
    )


def _get_oidc_profile(token: dict, provider: str) -> OAuthProfile:
    """Build a profile from an OIDC id_token's userinfo claims.

    [H1] The email claim is only accepted when email_verified is True.
    Providers that omit email_verified are treated as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise OAuthVerificationError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise OAuthVerificationError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise OAuthVerificationError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return OAuthProfile(
        provider=provider,
        subject=str(subject),
        email=email,
        name=userinfo.get("name"),
        image=userinfo.get("picture"),
    )
