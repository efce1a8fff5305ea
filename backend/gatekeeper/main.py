"""Gatekeeper - OpenID Connect login for the host application."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gatekeeper import __version__
from gatekeeper.db import AsyncSessionLocal, init_db
from gatekeeper.exceptions import ConfigError
from gatekeeper.middleware import OIDCGateMiddleware
from gatekeeper.schemas.auth import LoginPageResponse
from gatekeeper.services.oidc import load_client_config
from gatekeeper.services.settings_service import SettingsService
from gatekeeper.utils.security import sanitize_log_message

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Filter to exclude health check endpoints from access logs
class EndpointFilter(logging.Filter):
    """Filter to exclude specific endpoints from Granian access logs."""

    def __init__(self, excluded_paths: list[str]) -> None:
        super().__init__()
        self.excluded_paths = excluded_paths

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not any(path in message for path in self.excluded_paths)


logging.getLogger("granian.access").addFilter(EndpointFilter(["/health"]))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("Starting Gatekeeper %s...", __version__)

    await init_db()
    logger.info("Database initialized")

    async with AsyncSessionLocal() as db:
        await SettingsService.init_defaults(db)
        if await SettingsService.upgrade(db):
            logger.info("Settings migrated to %s", __version__)

        try:
            await load_client_config(db)
            logger.info("OpenID Connect client configured")
        except ConfigError as e:
            # Requests are refused by the gate until the settings are fixed
            logger.error("OpenID Connect is not usable: %s", e.message)

    yield

    logger.info("Shutting down Gatekeeper...")


app = FastAPI(
    title="Gatekeeper",
    description="OpenID Connect relying party with mandatory-login gate",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(OIDCGateMiddleware, exempt_paths=["/health", "/api/v1/auth/status"])


# Security Headers Middleware
@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    # Login redirects carry error messages in the query string
    response.headers["Referrer-Policy"] = "same-origin"

    if os.getenv("GATEKEEPER_SECURE_COOKIES", "false").lower() == "true":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Log unexpected errors and answer without internal details."""
    logger.error(
        "Unhandled exception: %s: %s",
        type(exc).__name__,
        sanitize_log_message(str(exc)),
        exc_info=True,
        extra={
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else "unknown",
        },
    )

    if os.getenv("GATEKEEPER_DEBUG", "false").lower() == "true":
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__, "debug": True},
        )

    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred. Please contact support if this persists."},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "gatekeeper"}


@app.get("/login", response_model=LoginPageResponse)
async def login_page(request: Request):
    """Login surface: where to start the flow and why the user is here."""
    params = request.query_params
    return LoginPageResponse(
        login_url="/api/v1/auth/oidc/login",
        error=params.get("login-error"),
        message=params.get("message"),
        logged_out="loggedout" in params,
    )


# API routes
from gatekeeper.api import api_router  # noqa: E402

app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "message": "Gatekeeper",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import subprocess
    import sys

    # Same server as production
    cmd = [
        "granian",
        "--interface",
        "asgi",
        "--host",
        "0.0.0.0",
        "--port",
        os.getenv("PORT", "8788"),
        "--reload",
        "gatekeeper.main:app",
    ]

    sys.exit(subprocess.run(cmd).returncode)
