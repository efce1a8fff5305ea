"""Session introspection endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.db import get_db
from gatekeeper.exceptions import ConfigError
from gatekeeper.models import User
from gatekeeper.schemas.auth import AuthStatusResponse, UserProfile
from gatekeeper.services.auth import get_current_user, session_user_id
from gatekeeper.services.oidc import load_client_config
from gatekeeper.services.settings_service import SettingsService

router = APIRouter(prefix="/auth")


@router.get("/status", response_model=AuthStatusResponse)
async def auth_status(request: Request, db: AsyncSession = Depends(get_db)):
    """Whether OIDC is usable and whether this request has a session."""
    error = None
    try:
        await load_client_config(db, base_url=str(request.base_url))
    except ConfigError as e:
        error = e.message

    return AuthStatusResponse(
        configured=error is None,
        enforce_privacy=await SettingsService.get_bool(db, "enforce_privacy", default=False),
        authenticated=session_user_id(request) is not None,
        error=error,
    )


@router.get("/me", response_model=UserProfile)
async def get_me(user: User = Depends(get_current_user)):
    """Profile of the logged-in user."""
    return user
