"""Append-only, capped log of authentication events."""

import json
import logging
from typing import Any, Dict, Optional, Union

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.exceptions import OIDCError
from gatekeeper.models import AuthLogEntry
from gatekeeper.services.settings_service import SettingsService
from gatekeeper.utils.security import sanitize_log_message

logger = logging.getLogger("gatekeeper.auth")

# Context keys never written to the log
REDACTED_KEYS = {"access_token", "id_token", "refresh_token", "client_secret", "code", "password"}


def _redact(context: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("[redacted]" if k in REDACTED_KEYS else v) for k, v in context.items()}


class AuthLogger:
    """Write authentication events to the process log and the ``auth_log`` table.

    Every event goes to the ``gatekeeper.auth`` logger. The database history is
    only kept when the ``enable_logging`` setting is on and is trimmed to
    ``log_limit`` entries, oldest first.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        message_or_error: Union[str, OIDCError],
        category: str = "info",
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if isinstance(message_or_error, OIDCError):
            category = message_or_error.code
            message = message_or_error.message
            context = {**message_or_error.context, **(context or {})}
            logger.warning(
                "%s: %s %s",
                category,
                sanitize_log_message(message),
                sanitize_log_message(json.dumps(_redact(context), default=str)),
            )
        else:
            message = str(message_or_error)
            context = context or {}
            logger.info("%s: %s", category, sanitize_log_message(message))

        if not await SettingsService.get_bool(self.db, "enable_logging", default=False):
            return

        self.db.add(
            AuthLogEntry(
                category=category,
                message=sanitize_log_message(message),
                context=json.dumps(_redact(context), default=str) if context else None,
            )
        )
        await self.db.flush()
        await self._trim()
        await self.db.commit()

    async def _trim(self) -> None:
        limit = await SettingsService.get_int(self.db, "log_limit", default=1000)
        total = await self.db.scalar(select(func.count()).select_from(AuthLogEntry))
        if not total or total <= limit:
            return

        # Oldest entries beyond the cap
        stale_ids = select(AuthLogEntry.id).order_by(AuthLogEntry.id).limit(total - limit)
        await self.db.execute(delete(AuthLogEntry).where(AuthLogEntry.id.in_(stale_ids)))

    async def entries(self, limit: int = 100) -> list[AuthLogEntry]:
        """Most recent entries first."""
        result = await self.db.execute(
            select(AuthLogEntry).order_by(AuthLogEntry.id.desc()).limit(limit)
        )
        return list(result.scalars().all())
