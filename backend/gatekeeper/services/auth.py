"""Host session primitive - JWT session cookie, tracking cookie and passwords."""

from datetime import datetime, timedelta, timezone
from typing import Optional
from pathlib import Path
import os
import secrets
import logging
import time

from authlib.jose import jwt, JoseError
from argon2 import PasswordHasher
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.db import get_db
from gatekeeper.models import User

logger = logging.getLogger(__name__)

# JWT Configuration
JWT_SECRET_KEY_FILE = Path(os.getenv("GATEKEEPER_SECRET_KEY_FILE", "./data/secret.key"))
JWT_ALGORITHM = "HS256"
JWT_COOKIE_NAME = "gatekeeper_token"
JWT_COOKIE_MAX_AGE = 86400  # 24 hours in seconds

# Tracking cookie holding the external identity of an OIDC login
IDENTITY_COOKIE_NAME = "gatekeeper_identity"

ph = PasswordHasher(time_cost=2, memory_cost=102400, parallelism=8)


# ============================================================================
# Secret Key Management
# ============================================================================


def get_or_create_secret_key(key_file: Path = JWT_SECRET_KEY_FILE) -> str:
    """Get the session signing key from the environment, a key file, or generate one.

    Falls back to an in-memory key if the key file cannot be written. Sessions
    then do not survive a restart.
    """
    env_key = os.getenv("GATEKEEPER_SECRET_KEY")
    if env_key:
        return env_key

    try:
        if key_file.exists():
            secret_key = key_file.read_text().strip()
            if secret_key:
                logger.debug("Loaded existing secret key from %s", key_file)
                return secret_key
            logger.warning("Secret key file at %s is empty, generating new key", key_file)

        secret_key = secrets.token_urlsafe(32)
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key_file.write_text(secret_key)
        key_file.chmod(0o600)

        logger.info("Generated new secret key and saved to %s", key_file)
        return secret_key

    except OSError as e:
        logger.error("Failed to handle secret key file: %s", str(e))
        logger.warning("Using temporary in-memory secret key (will change on restart)")
        return secrets.token_urlsafe(32)


_SECRET_KEY = get_or_create_secret_key()


# ============================================================================
# Password Operations
# ============================================================================


def generate_password(length: int = 32) -> str:
    """Generate a strong random password. OIDC users never see or use it."""
    return secrets.token_urlsafe(length)


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


# ============================================================================
# JWT Operations
# ============================================================================


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Create the signed session token for a local user id."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(seconds=JWT_COOKIE_MAX_AGE))

    payload = {"sub": str(user_id), "exp": int(expire.timestamp()), "iat": int(now.timestamp())}
    encoded_jwt = jwt.encode({"alg": JWT_ALGORITHM}, payload, _SECRET_KEY)
    return encoded_jwt.decode("utf-8") if isinstance(encoded_jwt, bytes) else encoded_jwt


def decode_token(token: str) -> Optional[dict]:
    """Decode a session token.

    Returns:
        Token payload, or None if the token is invalid or expired
    """
    try:
        payload = jwt.decode(token, _SECRET_KEY)
    except JoseError as e:
        logger.debug("Session token decode error: %s", e)
        return None
    except ValueError:
        # Not even a JWT (garbage cookie value)
        return None

    # authlib does not check expiry on decode
    if payload.get("exp", 0) < time.time():
        logger.debug("Session token has expired")
        return None

    return dict(payload)


def session_user_id(request: Request) -> Optional[int]:
    """Return the local user id carried by the session cookie, if any."""
    token = request.cookies.get(JWT_COOKIE_NAME)
    if not token:
        return None

    payload = decode_token(token)
    if not payload:
        return None

    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        return None


def cookie_secure() -> bool:
    """Whether cookies carry the Secure flag (HTTPS deployments)."""
    return os.getenv("GATEKEEPER_SECURE_COOKIES", "false").lower() == "true"


# ============================================================================
# Dependencies
# ============================================================================


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Get the user of the current session.

    Raises:
        HTTPException 401: If there is no valid session
    """
    user_id = session_user_id(request)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    user = await db.get(User, user_id)
    if not user:
        logger.warning("Session references unknown user id %s", user_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    return user


async def optional_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    """Get the session user, or None for anonymous requests."""
    user_id = session_user_id(request)
    if user_id is None:
        return None
    return await db.get(User, user_id)
