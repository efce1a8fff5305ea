"""Authorization state storage.

A state token is issued when the browser is sent to the IDP and consumed when
the callback presents it. ``consume`` removes the token whatever the outcome
and reports success to at most one caller per token.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.models.oidc_state import OIDCState
from gatekeeper.utils.security import mask_sensitive

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Keyed store of outstanding authorization states."""

    @abstractmethod
    async def issue(self, state: str) -> None:
        """Persist a freshly generated state with the current time."""

    @abstractmethod
    async def consume(self, state: str, time_limit: int) -> bool:
        """Delete ``state`` and return True only if it existed and was not stale."""

    @abstractmethod
    async def cleanup(self, time_limit: int) -> int:
        """Drop states older than ``time_limit`` seconds and return how many."""


class SQLStateStore(StateStore):
    """States kept in the ``oidc_states`` table, shared by all workers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def cleanup(self, time_limit: int) -> int:
        """Remove states older than ``time_limit`` seconds.

        Returns:
            Number of rows removed
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=time_limit)
        result = await self.db.execute(
            delete(OIDCState)
            .where(OIDCState.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def issue(self, state: str) -> None:
        self.db.add(OIDCState(state=state, created_at=datetime.now(timezone.utc)))
        await self.db.commit()
        logger.debug("Stored OIDC state: %s", mask_sensitive(state))

    async def consume(self, state: str, time_limit: int) -> bool:
        result = await self.db.execute(select(OIDCState).where(OIDCState.state == state))
        oidc_state = result.scalar_one_or_none()

        if not oidc_state:
            logger.warning("Unknown OIDC state: %s", mask_sensitive(state))
            return False

        # Only the request whose DELETE removed the row may use the state
        deleted = await self.db.execute(delete(OIDCState).where(OIDCState.state == state))
        await self.db.commit()
        if deleted.rowcount != 1:
            logger.warning("OIDC state already consumed: %s", mask_sensitive(state))
            return False

        if oidc_state.is_expired(time_limit):
            logger.warning("OIDC state expired: %s", mask_sensitive(state))
            return False

        logger.debug("Validated and consumed OIDC state: %s", mask_sensitive(state))
        return True


class MemoryStateStore(StateStore):
    """Process-local states for single-worker deployments and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._states: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, state: str) -> bool:
        return state in self._states

    async def issue(self, state: str) -> None:
        async with self._lock:
            self._states[state] = self._clock()

    async def consume(self, state: str, time_limit: int) -> bool:
        async with self._lock:
            created_at = self._states.pop(state, None)
        if created_at is None:
            return False
        return self._clock() - created_at <= time_limit

    async def cleanup(self, time_limit: int) -> int:
        now = self._clock()
        async with self._lock:
            stale = [s for s, created_at in self._states.items() if now - created_at > time_limit]
            for state in stale:
                del self._states[state]
        return len(stale)
