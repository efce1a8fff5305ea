"""Gatekeeper - OpenID Connect relying party for FastAPI hosts."""

__version__ = "3.5.0"
