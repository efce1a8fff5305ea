"""Pytest configuration and fixtures."""

import base64
import json
import os
import time
from typing import AsyncGenerator, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set DATABASE_URL for tests BEFORE importing gatekeeper.db
# This prevents the module from trying to create the ./data directory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

# Fixed signing key so no key file is written during tests
os.environ.setdefault("GATEKEEPER_SECRET_KEY", "test-secret-key-not-for-production")

# Set encryption key for tests
from cryptography.fernet import Fernet
if "GATEKEEPER_ENCRYPTION_KEY" not in os.environ:
    os.environ["GATEKEEPER_ENCRYPTION_KEY"] = Fernet.generate_key().decode()

from authlib.jose import JsonWebKey, jwt

from gatekeeper.db import Base
from gatekeeper.models import *  # noqa: F401,F403  Import all models to ensure they're registered
from gatekeeper.schemas.auth import ClientConfig
from gatekeeper.services.oidc import clear_jwks_cache
from gatekeeper.services.settings_service import SettingsService

IDP = "https://idp.example.com"
CLIENT_ID = "gatekeeper-test"
CLIENT_SECRET = "s3cret-client-value"
REDIRECT_URI = "http://test/api/v1/auth/oidc/callback"
ACCESS_TOKEN = "at-0123456789"
KID = "test-key"


def b64url(data: dict) -> str:
    """Base64url-encode a JSON object without padding."""
    raw = json.dumps(data).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class FakeIDP:
    """In-process identity provider served through ``httpx.MockTransport``.

    Tests tweak the public attributes to shape the answers and inspect
    ``requests`` to see what the client sent.
    """

    def __init__(self):
        self.key = JsonWebKey.generate_key("RSA", 2048, is_private=True)
        self.kid = KID
        self.requests: list[httpx.Request] = []
        self.id_token_claims = self.claims()
        self.userinfo = {"sub": "abc", "email": "alice@example.com"}
        self.expires_in = 3600
        self.token_status = 200
        self.token_body = None
        self.userinfo_status = 200
        self.end_session_status = 200
        self.fail_paths: set[str] = set()

    def claims(self, **overrides) -> dict:
        now = int(time.time())
        claims = {
            "iss": IDP,
            "aud": CLIENT_ID,
            "sub": "abc",
            "preferred_username": "alice",
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(overrides)
        return {k: v for k, v in claims.items() if v is not None}

    def sign(self, claims: dict, key=None, kid: Optional[str] = None) -> str:
        header = {"alg": "RS256", "kid": kid or self.kid}
        token = jwt.encode(header, claims, key or self.key)
        return token.decode("utf-8") if isinstance(token, bytes) else token

    def jwks(self) -> dict:
        public = self.key.as_dict(is_private=False)
        public["kid"] = self.kid
        return {"keys": [public]}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path in self.fail_paths:
            raise httpx.ConnectError("connection refused", request=request)

        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json={"issuer": IDP, "jwks_uri": f"{IDP}/discovered-jwks"})

        if path in ("/jwks", "/discovered-jwks"):
            return httpx.Response(200, json=self.jwks())

        if path == "/token":
            if self.token_body is not None:
                return httpx.Response(self.token_status, text=self.token_body)
            return httpx.Response(
                self.token_status,
                json={
                    "access_token": ACCESS_TOKEN,
                    "id_token": self.sign(self.id_token_claims),
                    "token_type": "Bearer",
                    "expires_in": self.expires_in,
                },
            )

        if path == "/userinfo":
            if request.headers.get("Authorization") != f"Bearer {ACCESS_TOKEN}":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(self.userinfo_status, json=self.userinfo)

        if path == "/logout":
            return httpx.Response(self.end_session_status, text="")

        return httpx.Response(404)

    def form(self, request: httpx.Request) -> dict:
        """Decoded form body of a recorded request."""
        return {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}


def make_client_config(**overrides) -> ClientConfig:
    values = {
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
        "scope": "openid profile email",
        "endpoint_login": f"{IDP}/authorize",
        "endpoint_token": f"{IDP}/token",
        "endpoint_userinfo": f"{IDP}/userinfo",
        "endpoint_jwks": f"{IDP}/jwks",
        "endpoint_end_session": f"{IDP}/logout",
        "issuer": IDP,
        "redirect_uri": REDIRECT_URI,
        "identity_key": "sub",
    }
    values.update(overrides)
    return ClientConfig(**values)


@pytest.fixture(autouse=True)
def reset_jwks_cache():
    """Each test gets its own IDP key, so cached key sets must not leak."""
    clear_jwks_cache()
    yield
    clear_jwks_cache()


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    # Use in-memory SQLite for testing
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Cleanup
    await engine.dispose()


@pytest.fixture(scope="function")
async def db(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session with automatic rollback."""
    async_session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )

    async with async_session_maker() as session:
        # Let SQLAlchemy manage the transaction so commits in fixtures persist
        yield session
        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def mock_async_session_local(db):
    """Mock AsyncSessionLocal to return test database session.

    The gate middleware opens its own session with AsyncSessionLocal(); this
    makes it use the test's in-memory database.
    """
    from unittest.mock import patch

    class MockAsyncSessionLocal:
        """Mock async context manager for database sessions."""

        def __call__(self):
            """Return self to act as context manager."""
            return self

        async def __aenter__(self):
            """Enter context manager, return test db session."""
            return db

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            """Exit context manager."""
            # Don't close the session - let the test fixture manage it
            return False

    mock_session_local = MockAsyncSessionLocal()

    with patch("gatekeeper.middleware.oidc_gate.AsyncSessionLocal", mock_session_local):
        yield mock_session_local


@pytest.fixture
def idp():
    """Fake identity provider."""
    return FakeIDP()


@pytest.fixture
def client_config():
    """Client configuration pointing at the fake IDP, identity keyed on ``sub``."""
    return make_client_config()


@pytest.fixture
async def oidc_settings(db):
    """Store a complete OIDC configuration in the settings table."""
    await SettingsService.init_defaults(db)
    values = {
        "oidc_client_id": CLIENT_ID,
        "oidc_client_secret": CLIENT_SECRET,
        "oidc_issuer": IDP,
        "oidc_endpoint_login": f"{IDP}/authorize",
        "oidc_endpoint_token": f"{IDP}/token",
        "oidc_endpoint_userinfo": f"{IDP}/userinfo",
        "oidc_endpoint_jwks": f"{IDP}/jwks",
        "oidc_endpoint_end_session": f"{IDP}/logout",
        "oidc_identity_key": "sub",
    }
    for key, value in values.items():
        await SettingsService.set(db, key, value)
    return values


@pytest.fixture
async def app():
    """Create FastAPI app for testing."""
    from gatekeeper.main import app as application
    return application


@pytest.fixture
async def client(app, db, idp, mock_async_session_local):
    """Async test client talking to the fake IDP. Redirects are not followed."""
    from httpx import AsyncClient, ASGITransport
    from gatekeeper.db import get_db

    # Override get_db dependency to use test database
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.state.idp_transport = idp.transport()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.idp_transport = None
