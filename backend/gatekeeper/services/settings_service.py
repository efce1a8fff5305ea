"""Settings service for database-first configuration."""

import logging
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from packaging.version import InvalidVersion, Version
from typing import Optional, Dict, Any

from gatekeeper import __version__
from gatekeeper.models import Setting
from gatekeeper.utils.encryption import get_encryption_service, is_encryption_configured
from gatekeeper.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

PLUGIN_VERSION_KEY = "plugin_version"


class SettingsService:
    """Manage application settings in database."""

    # Default settings with descriptions
    DEFAULTS: Dict[str, Dict[str, Any]] = {
        # OpenID Connect client
        "oidc_client_id": {
            "value": "",
            "category": "oidc",
            "description": "Client ID registered with the identity provider",
        },
        "oidc_client_secret": {
            "value": "",
            "category": "oidc",
            "description": "Client secret registered with the identity provider (encrypted)",
            "encrypted": True,
        },
        "oidc_scope": {
            "value": "openid profile email",
            "category": "oidc",
            "description": "Space separated scopes requested at the authorization endpoint",
        },
        "oidc_issuer": {
            "value": "",
            "category": "oidc",
            "description": "Expected 'iss' claim of ID tokens; also used for discovery",
        },
        "oidc_endpoint_login": {
            "value": "",
            "category": "oidc",
            "description": "Authorization endpoint URL",
        },
        "oidc_endpoint_token": {
            "value": "",
            "category": "oidc",
            "description": "Token endpoint URL",
        },
        "oidc_endpoint_userinfo": {
            "value": "",
            "category": "oidc",
            "description": "Userinfo endpoint URL",
        },
        "oidc_endpoint_jwks": {
            "value": "",
            "category": "oidc",
            "description": "JWKS URL for ID token signatures (discovered from the issuer when empty)",
        },
        "oidc_endpoint_end_session": {
            "value": "",
            "category": "oidc",
            "description": "End session endpoint URL used on global logout (optional)",
        },
        "oidc_redirect_uri": {
            "value": "",
            "category": "oidc",
            "description": "Callback URL registered with the IDP (derived from the request when empty)",
        },
        "oidc_state_time_limit": {
            "value": "180",
            "category": "oidc",
            "description": "Seconds an authorization state stays valid",
        },
        "oidc_http_request_timeout": {
            "value": "5",
            "category": "oidc",
            "description": "Timeout in seconds for requests to the identity provider",
        },
        "oidc_no_sslverify": {
            "value": "false",
            "category": "oidc",
            "description": "Disable TLS certificate verification for IDP requests (testing only)",
        },
        "oidc_identity_key": {
            "value": "preferred_username",
            "category": "oidc",
            "description": "ID token claim used as the durable external identity",
        },
        # Privacy
        "enforce_privacy": {
            "value": "false",
            "category": "privacy",
            "description": "Require login for every page of the site",
        },
        # Logging
        "enable_logging": {
            "value": "false",
            "category": "logging",
            "description": "Keep a history of authentication events in the database",
        },
        "log_limit": {
            "value": "1000",
            "category": "logging",
            "description": "Maximum number of authentication log entries kept",
        },
        # System
        "login_path": {
            "value": "/login",
            "category": "system",
            "description": "Login page users are sent to on errors and privacy redirects",
        },
        "home_url": {
            "value": "/",
            "category": "system",
            "description": "Landing page after a successful login",
        },
    }

    # Keys renamed in 3.0; migrated once per version bump
    LEGACY_KEYS: Dict[str, str] = {
        "oidc_ep_login": "oidc_endpoint_login",
        "oidc_ep_token": "oidc_endpoint_token",
        "oidc_ep_userinfo": "oidc_endpoint_userinfo",
    }

    @staticmethod
    async def init_defaults(db: AsyncSession) -> None:
        """Initialize default settings if they don't exist."""
        for key, config in SettingsService.DEFAULTS.items():
            result = await db.execute(select(Setting).where(Setting.key == key))
            if not result.scalar_one_or_none():
                setting = Setting(
                    key=key,
                    value=config["value"],
                    category=config["category"],
                    description=config["description"],
                    encrypted=config.get("encrypted", False),
                )
                db.add(setting)

        await db.commit()

    @staticmethod
    async def upgrade(db: AsyncSession, current_version: str = __version__) -> bool:
        """Run settings migrations when the stored version is older.

        Returns:
            True if an upgrade ran, False if the stored version is current
        """
        stored = await SettingsService.get(db, PLUGIN_VERSION_KEY, default="0")
        try:
            needs_upgrade = Version(current_version) > Version(stored or "0")
        except InvalidVersion:
            logger.warning("Unparseable stored version %s, upgrading", sanitize_log_message(stored))
            needs_upgrade = True

        if not needs_upgrade:
            return False

        for legacy_key, new_key in SettingsService.LEGACY_KEYS.items():
            legacy_result = await db.execute(select(Setting).where(Setting.key == legacy_key))
            legacy_setting = legacy_result.scalar_one_or_none()
            if not legacy_setting:
                continue

            new_result = await db.execute(select(Setting).where(Setting.key == new_key))
            new_setting = new_result.scalar_one_or_none()
            default_config = SettingsService.DEFAULTS.get(new_key, {})
            if new_setting:
                # Keep an explicitly configured new value over the legacy one
                if new_setting.value == default_config.get("value"):
                    new_setting.value = legacy_setting.value
                await db.delete(legacy_setting)
            else:
                legacy_setting.key = new_key
                legacy_setting.category = default_config.get("category", legacy_setting.category)
                legacy_setting.description = default_config.get("description", legacy_setting.description)
            logger.info("Migrated legacy setting %s -> %s", legacy_key, new_key)

        await db.flush()
        await SettingsService.set(db, PLUGIN_VERSION_KEY, current_version)
        logger.info("Settings upgraded from %s to %s", sanitize_log_message(stored), current_version)
        return True

    @classmethod
    async def get(cls, db: AsyncSession, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get setting value by key.

        Automatically decrypts encrypted settings if encryption is configured.

        Args:
            db: Database session
            key: Setting key
            default: Default value if setting not found

        Returns:
            Decrypted setting value or default
        """
        result = await db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()

        if not setting:
            return default

        if setting.encrypted and is_encryption_configured():
            encryption_service = get_encryption_service()
            if not encryption_service.is_encrypted(setting.value):
                # Stored before a key was configured
                return setting.value
            try:
                return encryption_service.decrypt(setting.value)
            except ValueError as e:
                logger.error(
                    "Failed to decrypt setting '%s': %s",
                    sanitize_log_message(key),
                    sanitize_log_message(str(e)),
                )
                return None

        return setting.value

    @staticmethod
    async def get_bool(db: AsyncSession, key: str, default: bool = False) -> bool:
        """Get setting as boolean."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    @staticmethod
    async def get_int(db: AsyncSession, key: str, default: int = 0) -> int:
        """Get setting as integer."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            return default

    @classmethod
    async def set(cls, db: AsyncSession, key: str, value: str) -> Setting:
        """Set setting value.

        Automatically encrypts sensitive settings if encryption is configured.

        Args:
            db: Database session
            key: Setting key
            value: Setting value (will be encrypted if marked as encrypted)

        Returns:
            Updated Setting object
        """
        result = await db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()

        config = cls.DEFAULTS.get(key, {})
        is_encrypted = config.get("encrypted", False)

        value_to_store = value
        if is_encrypted and is_encryption_configured():
            value_to_store = get_encryption_service().encrypt(value)
            logger.debug("Encrypted setting '%s' before storing", sanitize_log_message(key))
        elif is_encrypted:
            logger.warning(
                "Setting '%s' is marked as encrypted but GATEKEEPER_ENCRYPTION_KEY is not configured. "
                "Value will be stored in plain text.",
                key,
            )

        if setting:
            setting.value = value_to_store
            setting.encrypted = is_encrypted
        else:
            setting = Setting(
                key=key,
                value=value_to_store,
                category=config.get("category", "general"),
                description=config.get("description", ""),
                encrypted=is_encrypted,
            )
            db.add(setting)

        await db.commit()
        await db.refresh(setting)
        return setting
