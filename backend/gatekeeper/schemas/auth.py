"""Authentication and OIDC schemas."""

from datetime import datetime
from typing import Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# OIDC Schemas
# ============================================================================


class ClientConfig(BaseModel):
    """OIDC client configuration, frozen once loaded from settings."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., min_length=1, max_length=255)
    client_secret: str = Field(..., min_length=1, max_length=255)
    scope: str = Field("openid profile email", max_length=255)
    endpoint_login: str = Field(..., max_length=512)
    endpoint_token: str = Field(..., max_length=512)
    endpoint_userinfo: str = Field(..., max_length=512)
    endpoint_jwks: str = Field("", max_length=512)
    endpoint_end_session: str = Field("", max_length=512)
    issuer: str = Field(..., min_length=1, max_length=512)
    redirect_uri: str = Field(..., max_length=512)
    state_time_limit: int = Field(180, ge=1, le=3600)
    http_request_timeout: float = Field(5.0, gt=0, le=120)
    identity_key: str = Field("preferred_username", min_length=1, max_length=100)
    no_sslverify: bool = False

    @field_validator(
        "endpoint_login", "endpoint_token", "endpoint_userinfo", "redirect_uri", "issuer"
    )
    @classmethod
    def validate_required_url(cls, v: str) -> str:
        """Require an absolute http(s) URL."""
        parts = urlsplit(v.strip())
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("must be an absolute http(s) URL")
        return v.strip()

    @field_validator("endpoint_jwks", "endpoint_end_session")
    @classmethod
    def validate_optional_url(cls, v: str) -> str:
        """Allow empty, otherwise require an absolute http(s) URL."""
        v = v.strip()
        if not v:
            return v
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("must be an absolute http(s) URL")
        return v


class TokenResponse(BaseModel):
    """Token endpoint response. Unknown fields are kept for later reference."""

    model_config = ConfigDict(extra="allow")

    access_token: str = Field(..., min_length=1)
    id_token: str = Field(..., min_length=1)
    token_type: str = "Bearer"
    expires_in: int = Field(3600, ge=0)
    refresh_token: Optional[str] = None


class AuthURLResponse(BaseModel):
    """Authorization URL for a login button."""

    url: str


# ============================================================================
# Host Schemas
# ============================================================================


class LoginPageResponse(BaseModel):
    """Login surface payload: where to go, and why the user is here."""

    login_url: str
    error: Optional[str] = None
    message: Optional[str] = None
    logged_out: bool = False


class UserProfile(BaseModel):
    """Local user profile schema."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    oidc_managed: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class AuthStatusResponse(BaseModel):
    """Authentication status response."""

    configured: bool
    enforce_privacy: bool
    authenticated: bool
    error: Optional[str] = None
