"""OIDC authentication routes.

Provides endpoints for the authorization code flow:
- GET /api/v1/auth/oidc/login - Redirect the browser to the IDP (public)
- GET /api/v1/auth/oidc/url - Authorization URL for a login button (public)
- GET /api/v1/auth/oidc/callback - Handle the IDP callback (public)
- GET /api/v1/auth/oidc/logout - Local or global logout (public)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from gatekeeper.dependencies import get_session_controller
from gatekeeper.models import User
from gatekeeper.schemas.auth import AuthURLResponse
from gatekeeper.services.auth import optional_user
from gatekeeper.services.session import SessionController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/oidc", tags=["OIDC Authentication"])


@router.get("/login")
async def oidc_login(controller: SessionController = Depends(get_session_controller)):
    """Start the authorization code flow."""
    url = await controller.get_authentication_url()
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/url", response_model=AuthURLResponse)
async def oidc_authorization_url(controller: SessionController = Depends(get_session_controller)):
    """Authorization URL without redirecting, for login buttons."""
    return AuthURLResponse(url=await controller.get_authentication_url())


@router.get("/callback")
async def oidc_callback(
    request: Request,
    controller: SessionController = Depends(get_session_controller),
):
    """Handle the IDP redirect.

    Query parameters ``code``, ``state``, and optionally ``error`` and
    ``error_description``. Always answers with a redirect: to the home page
    with a session on success, to the login surface with an error code
    otherwise.
    """
    outcome = await controller.authentication_request_callback(request.query_params)
    return outcome.to_response()


@router.get("/logout")
async def oidc_logout(
    logout: Optional[str] = Query(None, description="'local' skips the IDP end-session call"),
    url: Optional[str] = Query(None, description="Local path to return to"),
    user: Optional[User] = Depends(optional_user),
    controller: SessionController = Depends(get_session_controller),
):
    """Clear the session and go back to ``url``."""
    outcome = await controller.logout(user, local_only=logout == "local", return_url=url)
    return outcome.to_response()
