"""Session controller: the login state machine around the OIDC client.

A browser moves ``Anonymous -> AwaitingCallback -> Authenticated``. Every
failure on the way sends it back to Anonymous through a redirect to the login
surface carrying the error code. The controller never writes HTTP responses
itself; it returns outcome objects that the routes and the gate middleware
turn into redirects.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.exceptions import InvalidUser, MismatchIdentity, OIDCError, PrivacyRequired
from gatekeeper.models import User
from gatekeeper.schemas.auth import TokenResponse
from gatekeeper.services.auth import (
    IDENTITY_COOKIE_NAME,
    JWT_COOKIE_MAX_AGE,
    JWT_COOKIE_NAME,
    cookie_secure,
    create_access_token,
    session_user_id,
)
from gatekeeper.services.auth_log import AuthLogger
from gatekeeper.services.event_bus import USER_LOGIN
from gatekeeper.services.hooks import OIDCHooks
from gatekeeper.services.identity import IdentityResolver
from gatekeeper.services.oidc import CALLBACK_PATH, OIDCClient
from gatekeeper.services.settings_service import SettingsService
from gatekeeper.services.users import UserStore
from gatekeeper.utils.security import safe_redirect_target

logger = logging.getLogger(__name__)

META_LAST_TOKEN_RESPONSE = "oidc_last_token_response"
META_LAST_ID_TOKEN_CLAIM = "oidc_last_id_token_claim"
META_LAST_USER_CLAIM = "oidc_last_user_claim"

# Never gated by the privacy check
PRIVACY_EXEMPT_PATHS = {
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/api/v1/auth/status",
}
PRIVACY_EXEMPT_PREFIXES = ("/api/v1/auth/oidc/",)
PRIVACY_EXEMPT_PARAMS = ("login-error", "loggedout")


def with_query(url: str, params: Mapping[str, Any]) -> str:
    """Append ``params`` to the query string of ``url``."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, str(v)) for k, v in params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


# ============================================================================
# Outcomes
# ============================================================================


@dataclass
class CookieSpec:
    name: str
    value: str
    max_age: int


@dataclass
class Outcome:
    """A redirect plus the cookie changes that go with it."""

    url: str
    set_cookies: List[CookieSpec] = field(default_factory=list)
    delete_cookies: List[str] = field(default_factory=list)

    def to_response(self) -> RedirectResponse:
        response = RedirectResponse(url=self.url, status_code=302)
        for name in self.delete_cookies:
            response.delete_cookie(key=name, path="/")
        for cookie in self.set_cookies:
            response.set_cookie(
                key=cookie.name,
                value=cookie.value,
                max_age=cookie.max_age,
                path="/",
                httponly=True,
                secure=cookie_secure(),
                samesite="lax",
            )
        return response


@dataclass
class LoginRedirect(Outcome):
    """Terminal failure: back to the login surface with an error code."""

    error: Optional[OIDCError] = None


@dataclass
class AuthSuccess(Outcome):
    """Callback completed and a session was established."""

    user: Optional[User] = None
    created: bool = False


@dataclass
class LogoutOutcome(Outcome):
    """Session cleared; ``status`` is the IDP answer to the end-session call."""

    status: Optional[int] = None


# ============================================================================
# Controller
# ============================================================================


@dataclass(frozen=True)
class SitePolicy:
    login_path: str = "/login"
    home_url: str = "/"
    enforce_privacy: bool = False


async def load_site_policy(db: AsyncSession) -> SitePolicy:
    return SitePolicy(
        login_path=await SettingsService.get(db, "login_path", default="/login") or "/login",
        home_url=await SettingsService.get(db, "home_url", default="/") or "/",
        enforce_privacy=await SettingsService.get_bool(db, "enforce_privacy", default=False),
    )


class SessionController:
    """Drives a browser through login, per-request checks and logout."""

    def __init__(
        self,
        client: OIDCClient,
        users: UserStore,
        auth_logger: AuthLogger,
        policy: Optional[SitePolicy] = None,
        hooks: Optional[OIDCHooks] = None,
    ):
        self.client = client
        self.users = users
        self.auth_logger = auth_logger
        self.policy = policy or SitePolicy()
        self.hooks = hooks or client.hooks
        self.resolver = IdentityResolver(users, self.hooks)

    # ------------------------------------------------------------------
    # Error policy
    # ------------------------------------------------------------------

    async def error_redirect(self, error: OIDCError, clear_session: bool = False) -> LoginRedirect:
        """Log ``error`` and build the redirect to the login surface."""
        await self.auth_logger.log(error)
        url = with_query(self.policy.login_path, {"login-error": error.code, "message": error.message})
        return LoginRedirect(
            url=url,
            error=error,
            delete_cookies=[JWT_COOKIE_NAME, IDENTITY_COOKIE_NAME] if clear_session else [],
        )

    # ------------------------------------------------------------------
    # Per-request checks
    # ------------------------------------------------------------------

    def is_privacy_exempt(self, request: Request) -> bool:
        path = request.url.path
        if path == self.policy.login_path or path == CALLBACK_PATH:
            return True
        if path in PRIVACY_EXEMPT_PATHS or path.startswith(PRIVACY_EXEMPT_PREFIXES):
            return True
        return any(param in request.query_params for param in PRIVACY_EXEMPT_PARAMS)

    async def handle_privacy(self, request: Request) -> Optional[LoginRedirect]:
        """Redirect anonymous requests when the whole site requires login."""
        if not self.policy.enforce_privacy or self.is_privacy_exempt(request):
            return None
        if session_user_id(request) is not None:
            return None
        return await self.error_redirect(
            PrivacyRequired(context={"path": request.url.path, "query": dict(request.query_params)})
        )

    async def check_user_token(self, request: Request) -> Optional[LoginRedirect]:
        """Tear down an OIDC-managed session whose tracking cookie is gone."""
        user_id = session_user_id(request)
        if user_id is None:
            return None

        user = await self.users.get_user(user_id)
        if user is None or not user.oidc_managed:
            return None

        identity = request.cookies.get(IDENTITY_COOKIE_NAME)
        if identity is not None and identity == user.oidc_identity:
            return None

        return await self.error_redirect(
            MismatchIdentity(
                context={"user_id": user.id, "tracking_cookie": "mismatch" if identity else "missing"}
            ),
            clear_session=True,
        )

    async def startup(self, request: Request) -> Optional[LoginRedirect]:
        """Checks run on every request: privacy gate, then mismatch check."""
        redirect = await self.handle_privacy(request)
        if redirect is not None:
            return redirect
        return await self.check_user_token(request)

    # ------------------------------------------------------------------
    # Authorization request and callback
    # ------------------------------------------------------------------

    async def get_authentication_url(self) -> str:
        return await self.client.build_authorization_url()

    async def authentication_request_callback(
        self, query_params: Mapping[str, str]
    ) -> Union[AuthSuccess, LoginRedirect]:
        """Run the callback transaction; the first failure ends it."""
        try:
            return await self._callback(query_params)
        except OIDCError as e:
            return await self.error_redirect(e)

    async def _callback(self, query_params: Mapping[str, str]) -> AuthSuccess:
        client = self.client

        # Authentication
        await client.validate_callback(query_params)
        code = client.extract_code(query_params)
        raw_body = await client.exchange_code_for_token(code)
        token_response = client.parse_token_response(raw_body)

        # Authorization
        id_token_claim = await client.decode_and_validate_id_token(token_response.id_token)
        user_claim = await client.fetch_userinfo(token_response.access_token)
        client.validate_user_claim(user_claim, id_token_claim)

        # User handling
        identity = client.get_user_identity(id_token_claim)
        user, created = await self.resolver.resolve(identity, user_claim)
        await self.validate_user(user)

        outcome = await self.login_user(user, token_response, id_token_claim, user_claim, identity)
        outcome.created = created
        await self.auth_logger.log(
            f"Successful login for: {user.username} ({user.id})",
            "login-success",
        )
        return outcome

    async def validate_user(self, user: Optional[User]) -> None:
        """Ensure the resolved user is a stored local account."""
        if user is None or user.id is None or await self.users.get_user(user.id) is None:
            raise InvalidUser(context={"user_id": getattr(user, "id", None)})

    async def login_user(
        self,
        user: User,
        token_response: TokenResponse,
        id_token_claim: Dict[str, Any],
        user_claim: Dict[str, Any],
        identity: str,
    ) -> AuthSuccess:
        """Remember the tokens and claims, then issue the session and tracking cookies."""
        await self.users.set_meta(user.id, META_LAST_TOKEN_RESPONSE, token_response.model_dump(), commit=False)
        await self.users.set_meta(user.id, META_LAST_ID_TOKEN_CLAIM, id_token_claim, commit=False)
        await self.users.set_meta(user.id, META_LAST_USER_CLAIM, user_claim, commit=False)
        user.last_login = datetime.now(timezone.utc)
        await self.users.db.commit()

        await self.hooks.notify(
            {"type": USER_LOGIN, "user_id": user.id, "username": user.username}
        )

        return AuthSuccess(
            url=self.policy.home_url,
            user=user,
            set_cookies=[
                CookieSpec(IDENTITY_COOKIE_NAME, identity, token_response.expires_in),
                CookieSpec(JWT_COOKIE_NAME, create_access_token(user.id), JWT_COOKIE_MAX_AGE),
            ],
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def logout(
        self,
        user: Optional[User],
        local_only: bool = False,
        return_url: Optional[str] = None,
    ) -> LogoutOutcome:
        """End the local session and, unless ``local_only``, the IDP session.

        The IDP call is best effort; the local session is cleared whatever it
        answers.
        """
        status = None
        if user is not None and not local_only:
            token_response = await self.users.get_meta(user.id, META_LAST_TOKEN_RESPONSE) or {}
            id_token = token_response.get("id_token")
            if id_token:
                status = await self.client.end_session(id_token)

        if user is not None:
            await self.auth_logger.log(
                f"Logout for: {user.username} ({user.id})",
                "logout",
                context={"local_only": local_only, "end_session_status": status},
            )

        url = safe_redirect_target(return_url)
        if status is not None:
            url = with_query(url, {"status": status})

        return LogoutOutcome(
            url=url,
            status=status,
            delete_cookies=[JWT_COOKIE_NAME, IDENTITY_COOKIE_NAME],
        )
