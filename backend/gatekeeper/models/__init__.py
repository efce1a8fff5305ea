"""Database models for Gatekeeper."""

from gatekeeper.models.setting import Setting
from gatekeeper.models.oidc_state import OIDCState
from gatekeeper.models.user import User, UserMeta
from gatekeeper.models.auth_log import AuthLogEntry

__all__ = [
    "Setting",
    "OIDCState",
    "User",
    "UserMeta",
    "AuthLogEntry",
]
