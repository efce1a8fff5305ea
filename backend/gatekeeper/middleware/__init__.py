"""Middleware for Gatekeeper."""

from gatekeeper.middleware.oidc_gate import OIDCGateMiddleware

__all__ = ["OIDCGateMiddleware"]
