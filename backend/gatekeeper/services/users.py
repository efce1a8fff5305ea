"""Local user store: accounts and per-user metadata."""

import json
import logging
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.models import User, UserMeta
from gatekeeper.services.auth import hash_password

logger = logging.getLogger(__name__)


class UserStore:
    """Narrow user-storage API used by the identity resolver and session controller."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_users(self, oidc_identity: str) -> List[User]:
        """Users linked to ``oidc_identity``, oldest first."""
        result = await self.db.execute(
            select(User).where(User.oidc_identity == oidc_identity).order_by(User.id)
        )
        return list(result.scalars().all())

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def username_exists(self, username: str) -> bool:
        result = await self.db.execute(select(User.id).where(User.username == username))
        return result.first() is not None

    async def create_user(
        self,
        username: str,
        password: str,
        email: str,
        oidc_identity: Optional[str] = None,
    ) -> User:
        """Insert a user.

        Raises:
            IntegrityError: username, email or identity already taken
        """
        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            oidc_identity=oidc_identity,
            oidc_managed=oidc_identity is not None,
        )
        self.db.add(user)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise
        await self.db.refresh(user)
        return user

    async def _meta_row(self, user_id: int, key: str) -> Optional[UserMeta]:
        result = await self.db.execute(
            select(UserMeta).where(UserMeta.user_id == user_id, UserMeta.meta_key == key)
        )
        return result.scalar_one_or_none()

    async def get_meta(self, user_id: int, key: str, default: Any = None) -> Any:
        row = await self._meta_row(user_id, key)
        if row is None:
            return default
        return json.loads(row.meta_value)

    async def set_meta(self, user_id: int, key: str, value: Any, commit: bool = True) -> None:
        """Create or replace a metadata value."""
        encoded = json.dumps(value, default=str)
        row = await self._meta_row(user_id, key)
        if row is None:
            self.db.add(UserMeta(user_id=user_id, meta_key=key, meta_value=encoded))
        else:
            row.meta_value = encoded
        if commit:
            await self.db.commit()

    async def add_meta(self, user_id: int, key: str, value: Any) -> bool:
        """Store a metadata value only if the key is not set yet.

        Returns:
            True if the value was stored
        """
        if await self._meta_row(user_id, key) is not None:
            return False
        await self.set_meta(user_id, key, value)
        return True
