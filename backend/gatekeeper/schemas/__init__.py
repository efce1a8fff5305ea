"""Pydantic schemas for configuration and API responses."""

from gatekeeper.schemas.auth import (
    AuthStatusResponse,
    AuthURLResponse,
    ClientConfig,
    LoginPageResponse,
    TokenResponse,
    UserProfile,
)

__all__ = [
    "AuthStatusResponse",
    "AuthURLResponse",
    "ClientConfig",
    "LoginPageResponse",
    "TokenResponse",
    "UserProfile",
]
