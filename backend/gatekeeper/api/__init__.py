"""API routers for Gatekeeper."""

from fastapi import APIRouter
from gatekeeper.api import auth, oidc

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(auth.router, tags=["authentication"])
api_router.include_router(oidc.router, tags=["oidc"])

__all__ = ["api_router"]
