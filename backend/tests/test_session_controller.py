"""Tests for the session controller (gatekeeper/services/session.py).

Covers the login state machine without HTTP:
- Callback transaction order and abort-on-first-failure
- Session establishment (metadata, cookies, events)
- Error redirect format
- Privacy gate and identity mismatch check
- Local and global logout
"""

import logging
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi import Request
from sqlalchemy import func, select

from gatekeeper.exceptions import InvalidAuthorizationState, InvalidUser
from gatekeeper.models import User
from gatekeeper.services.auth import (
    IDENTITY_COOKIE_NAME,
    JWT_COOKIE_NAME,
    create_access_token,
    decode_token,
)
from gatekeeper.services.auth_log import AuthLogger
from gatekeeper.services.hooks import OIDCHooks
from gatekeeper.services.oidc import OIDCClient
from gatekeeper.services.session import (
    META_LAST_ID_TOKEN_CLAIM,
    META_LAST_TOKEN_RESPONSE,
    META_LAST_USER_CLAIM,
    AuthSuccess,
    LoginRedirect,
    LogoutOutcome,
    SessionController,
    SitePolicy,
    with_query,
)
from gatekeeper.services.state_store import MemoryStateStore
from gatekeeper.services.users import UserStore


def make_request(path: str = "/", query: str = "", cookies: dict | None = None) -> Request:
    headers = []
    if cookies:
        cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
        headers.append((b"cookie", cookie_header.encode("latin-1")))
    return Request(
        {
            "type": "http",
            "method": "GET",
            "scheme": "http",
            "server": ("test", 80),
            "root_path": "",
            "path": path,
            "query_string": query.encode("latin-1"),
            "headers": headers,
        }
    )


def cookie(outcome, name):
    return next(c for c in outcome.set_cookies if c.name == name)


@pytest.fixture
def notify():
    return AsyncMock()


@pytest.fixture
def make_controller(db, client_config, idp, notify):
    def _make(policy: SitePolicy | None = None, **hook_kwargs):
        hooks = OIDCHooks(notify=notify, **hook_kwargs)
        client = OIDCClient(client_config, MemoryStateStore(), hooks=hooks, transport=idp.transport())
        return SessionController(client, UserStore(db), AuthLogger(db), policy=policy, hooks=hooks)

    return _make


@pytest.fixture
def controller(make_controller):
    return make_controller()


async def start_login(controller) -> str:
    url = await controller.get_authentication_url()
    return parse_qs(urlsplit(url).query)["state"][0]


async def oidc_user(db, identity="abc", username="alice"):
    user = User(
        username=username,
        email=f"{username}@example.com",
        password_hash="x",
        oidc_identity=identity,
        oidc_managed=True,
    )
    db.add(user)
    await db.commit()
    return user


class TestCallback:
    """Test suite for the callback transaction."""

    async def test_success_establishes_session(self, db, controller):
        """Test valid code, tokens and claims create the user and log them in."""
        state = await start_login(controller)

        outcome = await controller.authentication_request_callback({"state": state, "code": "good"})

        assert isinstance(outcome, AuthSuccess)
        assert outcome.url == "/"
        assert outcome.created is True
        assert outcome.user.username == "alice"
        assert outcome.user.oidc_identity == "abc"

        identity_cookie = cookie(outcome, IDENTITY_COOKIE_NAME)
        assert identity_cookie.value == "abc"
        assert identity_cookie.max_age == 3600

        session = decode_token(cookie(outcome, JWT_COOKIE_NAME).value)
        assert session["sub"] == str(outcome.user.id)

    async def test_tracking_cookie_follows_expires_in(self, controller, idp):
        idp.expires_in = 600
        state = await start_login(controller)

        outcome = await controller.authentication_request_callback({"state": state, "code": "good"})

        assert cookie(outcome, IDENTITY_COOKIE_NAME).max_age == 600

    async def test_success_persists_tokens_and_claims(self, db, controller):
        state = await start_login(controller)

        outcome = await controller.authentication_request_callback({"state": state, "code": "good"})

        users = UserStore(db)
        user_id = outcome.user.id
        token_response = await users.get_meta(user_id, META_LAST_TOKEN_RESPONSE)
        assert token_response["access_token"]
        assert token_response["id_token"].count(".") == 2
        assert (await users.get_meta(user_id, META_LAST_ID_TOKEN_CLAIM))["sub"] == "abc"
        assert (await users.get_meta(user_id, META_LAST_USER_CLAIM))["email"] == "alice@example.com"
        assert outcome.user.last_login is not None

    async def test_success_publishes_events(self, controller, notify):
        state = await start_login(controller)

        await controller.authentication_request_callback({"state": state, "code": "good"})

        types = [c.args[0]["type"] for c in notify.await_args_list]
        assert types == ["oidc_user_created", "oidc_user_login"]

    async def test_steps_run_in_order(self, controller, idp):
        """Test token exchange, key fetch and userinfo happen in pipeline order."""
        state = await start_login(controller)

        await controller.authentication_request_callback({"state": state, "code": "good"})

        assert idp.paths() == ["/token", "/jwks", "/userinfo"]

    async def test_second_login_reuses_user(self, db, controller):
        """Test the same external identity maps to the same account."""
        first = await controller.authentication_request_callback(
            {"state": await start_login(controller), "code": "good"}
        )
        second = await controller.authentication_request_callback(
            {"state": await start_login(controller), "code": "good"}
        )

        assert isinstance(second, AuthSuccess)
        assert second.user.id == first.user.id
        assert second.created is False
        assert await db.scalar(select(func.count()).select_from(User)) == 1

    async def test_invalid_state_stops_before_idp(self, controller, idp):
        outcome = await controller.authentication_request_callback({"state": "forged", "code": "good"})

        assert isinstance(outcome, LoginRedirect)
        assert isinstance(outcome.error, InvalidAuthorizationState)
        assert idp.requests == []

    async def test_replayed_state(self, controller):
        state = await start_login(controller)
        await controller.authentication_request_callback({"state": state, "code": "good"})

        outcome = await controller.authentication_request_callback({"state": state, "code": "good"})

        assert isinstance(outcome, LoginRedirect)
        assert outcome.error.code == "invalid-state"

    async def test_missing_code(self, controller, idp):
        state = await start_login(controller)

        outcome = await controller.authentication_request_callback({"state": state})

        assert outcome.error.code == "no-code"
        assert idp.requests == []

    async def test_token_failure_stops_pipeline(self, controller, idp):
        idp.token_status = 500
        idp.token_body = "oops"
        state = await start_login(controller)

        outcome = await controller.authentication_request_callback({"state": state, "code": "good"})

        assert outcome.error.code == "token-request-failed"
        assert idp.paths() == ["/token"]

    async def test_subject_mismatch_creates_no_user(self, db, controller, idp):
        """Test userinfo for another subject aborts before identity resolution."""
        idp.userinfo = {"sub": "xyz", "email": "mallory@example.com"}
        state = await start_login(controller)

        outcome = await controller.authentication_request_callback({"state": state, "code": "good"})

        assert outcome.error.code == "subject-mismatch"
        assert await db.scalar(select(func.count()).select_from(User)) == 0

    async def test_expired_id_token(self, controller, idp):
        idp.id_token_claims = idp.claims(exp=1)
        state = await start_login(controller)

        outcome = await controller.authentication_request_callback({"state": state, "code": "good"})

        assert outcome.error.code == "token-expired"
        assert "/userinfo" not in idp.paths()

    async def test_vetoed_creation(self, make_controller):
        controller = make_controller(allow_user_creation=lambda claim: False)
        state = await start_login(controller)

        outcome = await controller.authentication_request_callback({"state": state, "code": "good"})

        assert outcome.error.code == "cannot-authorize"
        assert outcome.set_cookies == []


class TestErrorRedirect:
    """Test suite for the error/redirect policy."""

    async def test_url_format(self, controller):
        outcome = await controller.error_redirect(InvalidAuthorizationState())

        assert outcome.url == (
            "/login?login-error=invalid-state"
            "&message=Invalid+or+expired+authorization+state.+Please+try+logging+in+again."
        )
        assert outcome.delete_cookies == []

    async def test_custom_login_path(self, make_controller):
        controller = make_controller(SitePolicy(login_path="/signin?next=%2F"))

        outcome = await controller.error_redirect(InvalidUser())

        params = parse_qs(urlsplit(outcome.url).query)
        assert urlsplit(outcome.url).path == "/signin"
        assert params == {"next": ["/"], "login-error": ["invalid-user"], "message": ["Invalid user."]}

    async def test_error_is_logged(self, controller, caplog):
        with caplog.at_level(logging.WARNING, logger="gatekeeper.auth"):
            await controller.error_redirect(InvalidAuthorizationState(context={"state": "***abcd"}))

        assert "invalid-state" in caplog.text
        assert "***abcd" in caplog.text

    def test_response_is_a_redirect(self):
        response = LoginRedirect(url="/login?login-error=x", delete_cookies=[JWT_COOKIE_NAME]).to_response()

        assert response.status_code == 302
        assert response.headers["location"] == "/login?login-error=x"
        assert f'{JWT_COOKIE_NAME}=""' in response.headers["set-cookie"]


class TestValidateUser:
    """Test suite for the resolved-user check."""

    async def test_none_is_invalid(self, controller):
        with pytest.raises(InvalidUser):
            await controller.validate_user(None)

    async def test_unsaved_user_is_invalid(self, controller):
        with pytest.raises(InvalidUser):
            await controller.validate_user(User(username="ghost", email="g@example.com", password_hash="x"))

    async def test_stored_user_is_valid(self, db, controller):
        await controller.validate_user(await oidc_user(db))


class TestPrivacyGate:
    """Test suite for mandatory login."""

    @pytest.fixture
    def private(self, make_controller):
        return make_controller(SitePolicy(enforce_privacy=True))

    async def test_anonymous_request_redirected(self, private):
        outcome = await private.handle_privacy(make_request("/dashboard"))

        assert isinstance(outcome, LoginRedirect)
        assert outcome.error.code == "privacy"
        assert outcome.url.startswith("/login?login-error=privacy")

    @pytest.mark.parametrize(
        "path,query",
        [
            ("/login", ""),
            ("/api/v1/auth/oidc/callback", "code=x&state=y"),
            ("/api/v1/auth/oidc/login", ""),
            ("/health", ""),
            ("/dashboard", "login-error=privacy"),
            ("/dashboard", "loggedout=true"),
        ],
    )
    async def test_exempt_requests(self, private, path, query):
        """Test the login surface and callback are never redirected (no loop)."""
        assert await private.handle_privacy(make_request(path, query)) is None

    async def test_session_passes(self, db, private):
        user = await oidc_user(db)
        request = make_request("/dashboard", cookies={JWT_COOKIE_NAME: create_access_token(user.id)})

        assert await private.handle_privacy(request) is None

    async def test_garbage_session_cookie_redirected(self, private):
        request = make_request("/dashboard", cookies={JWT_COOKIE_NAME: "not-a-jwt"})
        assert await private.handle_privacy(request) is not None

    async def test_disabled_enforcement(self, controller):
        assert await controller.handle_privacy(make_request("/dashboard")) is None


class TestMismatchCheck:
    """Test suite for the tracking cookie check."""

    async def test_missing_tracking_cookie_destroys_session(self, db, controller):
        user = await oidc_user(db)
        request = make_request("/", cookies={JWT_COOKIE_NAME: create_access_token(user.id)})

        outcome = await controller.check_user_token(request)

        assert outcome.error.code == "mismatch-identity"
        assert set(outcome.delete_cookies) == {JWT_COOKIE_NAME, IDENTITY_COOKIE_NAME}
        assert "login-error=mismatch-identity" in outcome.url

    async def test_tracking_cookie_present(self, db, controller):
        user = await oidc_user(db)
        request = make_request(
            "/",
            cookies={JWT_COOKIE_NAME: create_access_token(user.id), IDENTITY_COOKIE_NAME: "abc"},
        )

        assert await controller.check_user_token(request) is None

    async def test_tracking_cookie_for_other_identity(self, db, controller):
        user = await oidc_user(db)
        request = make_request(
            "/",
            cookies={JWT_COOKIE_NAME: create_access_token(user.id), IDENTITY_COOKIE_NAME: "someone-else"},
        )

        outcome = await controller.check_user_token(request)

        assert outcome.error.code == "mismatch-identity"

    async def test_local_user_not_checked(self, db, controller):
        user = User(username="local", email="local@example.com", password_hash="x")
        db.add(user)
        await db.commit()
        request = make_request("/", cookies={JWT_COOKIE_NAME: create_access_token(user.id)})

        assert await controller.check_user_token(request) is None

    async def test_anonymous_not_checked(self, controller):
        assert await controller.check_user_token(make_request("/")) is None

    async def test_startup_runs_both_checks(self, db, make_controller):
        controller = make_controller(SitePolicy(enforce_privacy=True))
        user = await oidc_user(db)

        anonymous = await controller.startup(make_request("/"))
        tampered = await controller.startup(
            make_request("/", cookies={JWT_COOKIE_NAME: create_access_token(user.id)})
        )

        assert anonymous.error.code == "privacy"
        assert tampered.error.code == "mismatch-identity"


class TestLogout:
    """Test suite for logout."""

    @pytest.fixture
    async def logged_in(self, db):
        user = await oidc_user(db)
        await UserStore(db).set_meta(user.id, META_LAST_TOKEN_RESPONSE, {"id_token": "the-id-token"})
        return user

    async def test_global_logout_calls_end_session(self, controller, idp, logged_in):
        outcome = await controller.logout(logged_in, return_url="/bye")

        assert isinstance(outcome, LogoutOutcome)
        assert idp.paths() == ["/logout"]
        assert idp.form(idp.requests[0]) == {"token": "the-id-token"}
        assert outcome.status == 200
        assert outcome.url == "/bye?status=200"
        assert set(outcome.delete_cookies) == {JWT_COOKIE_NAME, IDENTITY_COOKIE_NAME}

    async def test_local_logout_makes_no_call(self, controller, idp, logged_in):
        outcome = await controller.logout(logged_in, local_only=True, return_url="/bye")

        assert idp.requests == []
        assert outcome.url == "/bye"
        assert set(outcome.delete_cookies) == {JWT_COOKIE_NAME, IDENTITY_COOKIE_NAME}

    async def test_failed_end_session_still_clears_session(self, controller, idp, logged_in):
        idp.end_session_status = 500

        outcome = await controller.logout(logged_in, return_url="/bye")

        assert outcome.url == "/bye?status=500"
        assert JWT_COOKIE_NAME in outcome.delete_cookies

    async def test_unreachable_end_session(self, controller, idp, logged_in):
        idp.fail_paths.add("/logout")

        outcome = await controller.logout(logged_in, return_url="/bye")

        assert outcome.status is None
        assert outcome.url == "/bye"
        assert JWT_COOKIE_NAME in outcome.delete_cookies

    async def test_external_return_url_rejected(self, controller, logged_in):
        outcome = await controller.logout(logged_in, local_only=True, return_url="https://evil.example.com/")
        assert outcome.url == "/"

    async def test_user_without_token_response(self, db, controller, idp):
        user = await oidc_user(db)

        outcome = await controller.logout(user, return_url="/bye")

        assert idp.requests == []
        assert outcome.url == "/bye"

    async def test_anonymous_logout(self, controller, idp):
        outcome = await controller.logout(None)

        assert idp.requests == []
        assert outcome.url == "/"


def test_with_query_keeps_existing_parameters():
    assert with_query("/page?tab=2", {"status": 200}) == "/page?tab=2&status=200"
