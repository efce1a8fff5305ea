"""Extension points handed to the OIDC client and session controller.

Hosts customise the login pipeline by passing an ``OIDCHooks`` instance
instead of registering global callbacks:

- ``alter_request(options, op)`` rewrites the options of every outbound
  request to the IDP. ``op`` is one of ``token``, ``userinfo``, ``jwks``,
  ``discovery`` or ``end_session``.
- ``allow_user_creation(user_claim)`` may veto automatic account creation.
  It can be a plain function or a coroutine function.
- ``notify(event)`` receives ``oidc_user_created`` and ``oidc_user_login``
  events. The default publishes them on ``event_bus`` for host subscribers.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from gatekeeper.services.event_bus import event_bus

RequestOptions = Dict[str, Any]
AlterRequest = Callable[[RequestOptions, str], RequestOptions]
CreationPredicate = Callable[[Dict[str, Any]], Union[bool, Awaitable[bool]]]
Notify = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class OIDCHooks:
    alter_request: Optional[AlterRequest] = None
    allow_user_creation: Optional[CreationPredicate] = None
    notify: Notify = field(default=event_bus.publish)

    async def creation_allowed(self, user_claim: Dict[str, Any]) -> bool:
        if self.allow_user_creation is None:
            return True
        result = self.allow_user_creation(user_claim)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)
