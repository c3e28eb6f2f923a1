"""
API request and response models for the Atrium auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
auth/flows.py, which own the internal representation. Route handlers map
between the two.

Request fields are Optional on purpose: a missing field is an input error the
flow reports in the standard envelope ("Missing fields", "Email is required"),
not a schema rejection.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/auth/v1/signup."""

    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/v1/login."""

    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


class RefreshRequest(BaseModel):
    """Request body for POST /api/auth/v1/refresh. Accepts refreshToken or refresh_token."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=4096)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/auth/v1/forgot-password."""

    email: Optional[str] = Field(default=None, max_length=255)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/auth/v1/reset-password."""

    token: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


class ExchangeRequest(BaseModel):
    """Request body for POST /api/auth/v1/oauth/exchange."""

    code: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Uniform response body for every auth endpoint, success or failure."""

    model_config = ConfigDict(frozen=True)

    code: int
    status: str
    message: str
    data: Optional[Any] = None


class OAuthProviderInfo(BaseModel):
    """One configured OAuth provider, as listed by GET /providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
