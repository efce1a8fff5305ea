"""Map verified IDP identities to local users."""

import logging
import re
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from gatekeeper.exceptions import CreationNotAuthorized, NoUsernameSource, UserCreationFailed
from gatekeeper.models import User
from gatekeeper.services.auth import generate_password
from gatekeeper.services.event_bus import USER_CREATED
from gatekeeper.services.hooks import OIDCHooks
from gatekeeper.services.users import UserStore
from gatekeeper.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

_USERNAME_STRIP = re.compile(r"[^A-Za-z0-9_]")


def username_candidate(user_claim: Mapping[str, Any]) -> str:
    """Normalised username from the first usable claim.

    Priority is ``preferred_username``, then ``name``, then the local part of
    ``email``. The result is lowercased with everything outside
    ``[A-Za-z0-9_]`` removed.

    Raises:
        NoUsernameSource: no claim yields a non-empty name
    """
    for key in ("preferred_username", "name", "email"):
        value = user_claim.get(key)
        if not value:
            continue
        desired = str(value)
        if key == "email":
            desired = desired.split("@", 1)[0]
        normalized = _USERNAME_STRIP.sub("", desired).lower()
        if normalized:
            return normalized

    raise NoUsernameSource(context={"claims": sorted(user_claim.keys())})


class IdentityResolver:
    """Find or create the local user for an external identity."""

    def __init__(self, users: UserStore, hooks: Optional[OIDCHooks] = None):
        self.users = users
        self.hooks = hooks or OIDCHooks()

    async def find_by_identity(self, identity: str) -> Optional[User]:
        users = await self.users.find_users(identity)
        if len(users) > 1:
            logger.warning(
                "%d users share identity %s, using user %s",
                len(users),
                sanitize_log_message(identity),
                users[0].id,
            )
        return users[0] if users else None

    async def available_username(self, desired: str) -> str:
        """``desired`` if free, else ``desired2``, ``desired3``, ..."""
        username = desired
        count = 1
        while await self.users.username_exists(username):
            count += 1
            username = f"{desired}{count}"
        return username

    async def create_user(self, identity: str, user_claim: Dict[str, Any]) -> User:
        """Create an OIDC-managed user for ``identity``.

        Raises:
            NoUsernameSource: no claim to derive a username from
            CreationNotAuthorized: the creation veto rejected the claim
            UserCreationFailed: the store rejected the new account
        """
        username = await self.available_username(username_candidate(user_claim))
        email = user_claim.get("email") or identity

        if not await self.hooks.creation_allowed(user_claim):
            raise CreationNotAuthorized(context={"identity": identity})

        try:
            user = await self.users.create_user(
                username=username,
                password=generate_password(),
                email=email,
                oidc_identity=identity,
            )
        except IntegrityError as e:
            raise UserCreationFailed(
                context={"username": username, "identity": identity, "reason": str(e.orig)}
            ) from e

        logger.info("New user created: %s (%s)", user.username, user.id)
        await self.hooks.notify(
            {
                "type": USER_CREATED,
                "user_id": user.id,
                "username": user.username,
                "identity": identity,
            }
        )
        return user

    async def resolve(self, identity: str, user_claim: Dict[str, Any]) -> Tuple[User, bool]:
        """Existing user for ``identity``, or a new one.

        Returns:
            (user, created)
        """
        user = await self.find_by_identity(identity)
        if user is not None:
            return user, False
        return await self.create_user(identity, user_claim), True
