"""Login gate applied to every request before it reaches a route."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from gatekeeper.db import AsyncSessionLocal
from gatekeeper.dependencies import build_session_controller
from gatekeeper.exceptions import ConfigError

logger = logging.getLogger(__name__)


class OIDCGateMiddleware(BaseHTTPMiddleware):
    """Privacy gate and identity mismatch check.

    Flow:
    - Exempt paths pass straight through
    - Incomplete OIDC configuration: 503 with an operator message
    - Privacy enforcement on and no session: redirect to the login surface
    - OIDC-managed session without its tracking cookie: session cleared,
      redirect to the login surface
    """

    def __init__(self, app, exempt_paths: list[str] | None = None):
        super().__init__(app)
        self.exempt_paths = exempt_paths if exempt_paths is not None else ["/health"]

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        async with AsyncSessionLocal() as db:
            try:
                controller = await build_session_controller(db, request)
            except ConfigError as e:
                logger.error("Refusing request to %s: %s", request.url.path, e.message)
                return JSONResponse(
                    status_code=503,
                    content={
                        "detail": f"{e.message} An administrator must complete the OIDC settings.",
                        "error": e.code,
                    },
                )

            redirect = await controller.startup(request)

        if redirect is not None:
            return redirect.to_response()

        return await call_next(request)
