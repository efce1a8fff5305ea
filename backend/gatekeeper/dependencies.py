"""Per-request wiring of the OIDC client and session controller.

Process-wide collaborators live on ``app.state``:

- ``oidc_hooks``: an ``OIDCHooks`` instance (defaults to no-op hooks)
- ``state_store``: a shared ``StateStore`` (defaults to the database table)
- ``idp_transport``: an httpx transport for IDP calls (tests only)
"""

import logging
from typing import Optional

import httpx
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.db import get_db
from gatekeeper.exceptions import ConfigError
from gatekeeper.services.auth_log import AuthLogger
from gatekeeper.services.hooks import OIDCHooks
from gatekeeper.services.oidc import OIDCClient, load_client_config
from gatekeeper.services.session import SessionController, load_site_policy
from gatekeeper.services.state_store import SQLStateStore, StateStore
from gatekeeper.services.users import UserStore

logger = logging.getLogger(__name__)


def get_oidc_hooks(request: Request) -> OIDCHooks:
    return getattr(request.app.state, "oidc_hooks", None) or OIDCHooks()


def get_state_store(request: Request, db: AsyncSession) -> StateStore:
    return getattr(request.app.state, "state_store", None) or SQLStateStore(db)


def get_idp_transport(request: Request) -> Optional[httpx.AsyncBaseTransport]:
    return getattr(request.app.state, "idp_transport", None)


async def build_session_controller(db: AsyncSession, request: Request) -> SessionController:
    """Assemble a controller for one request.

    Raises:
        ConfigError: OIDC settings are incomplete
    """
    config = await load_client_config(db, base_url=str(request.base_url))
    hooks = get_oidc_hooks(request)
    client = OIDCClient(
        config,
        get_state_store(request, db),
        hooks=hooks,
        transport=get_idp_transport(request),
    )
    return SessionController(
        client,
        UserStore(db),
        AuthLogger(db),
        policy=await load_site_policy(db),
        hooks=hooks,
    )


async def get_session_controller(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> SessionController:
    """FastAPI dependency wrapping ``build_session_controller``."""
    try:
        return await build_session_controller(db, request)
    except ConfigError as e:
        logger.error("OIDC configuration error: %s", e.message)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=e.message,
        )
