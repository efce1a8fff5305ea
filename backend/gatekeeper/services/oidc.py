"""OpenID Connect client for the authorization code flow.

This service handles the relying-party side of the protocol:
- Authorization URL construction with one-shot state tokens
- Callback validation (state, IDP error, code)
- Code exchange at the token endpoint
- ID token decoding, signature verification and claim validation
- Userinfo retrieval and subject matching
- Best-effort end-session calls on global logout

Every operation returns its value or raises one of the errors in
``gatekeeper.exceptions``.
"""

import json
import logging
import os
import secrets
import time
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import urlencode

import httpx
from authlib.jose import JoseError, JsonWebKey, JsonWebToken, JWTClaims
from authlib.jose.errors import (
    DecodeError,
    ExpiredTokenError,
    InvalidClaimError,
    MissingClaimError,
)
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.exceptions import (
    AudienceMismatch,
    ConfigError,
    IdpError,
    InvalidAuthorizationState,
    InvalidIdTokenSignature,
    InvalidTokenResponse,
    IssuerMismatch,
    MalformedIdToken,
    MissingCode,
    NoSubjectIdentity,
    SubjectMismatch,
    TokenExpired,
    TokenRequestFailed,
    UserinfoRequestFailed,
)
from gatekeeper.schemas.auth import ClientConfig, TokenResponse
from gatekeeper.services.hooks import OIDCHooks, RequestOptions
from gatekeeper.services.settings_service import SettingsService
from gatekeeper.services.state_store import StateStore
from gatekeeper.utils.security import mask_sensitive, sanitize_log_message

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/api/v1/auth/oidc/callback"

# Asymmetric algorithms accepted on ID tokens; "none" and HMAC are refused
ID_TOKEN_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"]
_id_token_jwt = JsonWebToken(ID_TOKEN_ALGORITHMS)

# Seconds past exp an ID token is still accepted
ID_TOKEN_LEEWAY = 0

END_SESSION_TIMEOUT = 10.0

JWKS_CACHE_TTL = 3600
_jwks_cache: Dict[str, Dict[str, Any]] = {}
_jwks_cache_times: Dict[str, float] = {}
_metadata_cache: Dict[str, Dict[str, Any]] = {}
_metadata_cache_times: Dict[str, float] = {}


class UnknownSigningKey(Exception):
    """The ID token names a kid absent from the key set in hand."""


def clear_jwks_cache() -> None:
    """Forget all cached key sets and discovery documents."""
    _jwks_cache.clear()
    _jwks_cache_times.clear()
    _metadata_cache.clear()
    _metadata_cache_times.clear()


def generate_state() -> str:
    """Generate a secure random state parameter (32 bytes = 256 bits)."""
    return secrets.token_urlsafe(32)


# ============================================================================
# Configuration
# ============================================================================


async def load_client_config(db: AsyncSession, base_url: Optional[str] = None) -> ClientConfig:
    """Build the client configuration from database settings.

    An empty redirect URI is derived from the public URL of this
    application: ``GATEKEEPER_BASE_URL`` when set, else ``base_url``.

    Raises:
        ConfigError: If a required endpoint or credential is missing or invalid
    """
    base_url = os.getenv("GATEKEEPER_BASE_URL") or base_url
    redirect_uri = (await SettingsService.get(db, "oidc_redirect_uri", default="") or "").strip()
    if not redirect_uri and base_url:
        redirect_uri = f"{base_url.rstrip('/')}{CALLBACK_PATH}"

    values = {
        "client_id": await SettingsService.get(db, "oidc_client_id", default=""),
        "client_secret": await SettingsService.get(db, "oidc_client_secret", default=""),
        "scope": await SettingsService.get(db, "oidc_scope", default="openid profile email"),
        "endpoint_login": await SettingsService.get(db, "oidc_endpoint_login", default=""),
        "endpoint_token": await SettingsService.get(db, "oidc_endpoint_token", default=""),
        "endpoint_userinfo": await SettingsService.get(db, "oidc_endpoint_userinfo", default=""),
        "endpoint_jwks": await SettingsService.get(db, "oidc_endpoint_jwks", default=""),
        "endpoint_end_session": await SettingsService.get(db, "oidc_endpoint_end_session", default=""),
        "issuer": await SettingsService.get(db, "oidc_issuer", default=""),
        "redirect_uri": redirect_uri,
        "state_time_limit": await SettingsService.get_int(db, "oidc_state_time_limit", default=180),
        "http_request_timeout": await SettingsService.get_int(db, "oidc_http_request_timeout", default=5),
        "identity_key": await SettingsService.get(db, "oidc_identity_key", default="preferred_username"),
        "no_sslverify": await SettingsService.get_bool(db, "oidc_no_sslverify", default=False),
    }

    try:
        return ClientConfig(**{k: ("" if v is None else v) for k, v in values.items()})
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ConfigError(
            f"OpenID Connect settings are missing or invalid: {', '.join(fields)}",
            context={"fields": fields},
        ) from e


# ============================================================================
# Client
# ============================================================================


class OIDCClient:
    """Protocol primitive for one configured IDP.

    Args:
        config: Frozen client configuration
        state_store: Storage for outstanding authorization states
        hooks: Host extension points (request mutation)
        transport: Optional httpx transport, used by tests to stand in for the IDP
    """

    def __init__(
        self,
        config: ClientConfig,
        state_store: StateStore,
        hooks: Optional[OIDCHooks] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.state_store = state_store
        self.hooks = hooks or OIDCHooks()
        self._transport = transport

    # ------------------------------------------------------------------
    # Outbound requests
    # ------------------------------------------------------------------

    def request_options(self, op: str) -> RequestOptions:
        """Options for one outbound request after the mutation hook ran."""
        options: RequestOptions = {
            "timeout": END_SESSION_TIMEOUT if op == "end_session" else self.config.http_request_timeout,
            "verify": True,
            "headers": {},
        }
        if self.config.no_sslverify:
            options["verify"] = False

        if self.hooks.alter_request is not None:
            options = self.hooks.alter_request(options, op)
        return options

    async def _request(self, op: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        options = self.request_options(op)
        headers = {**options.get("headers", {}), **kwargs.pop("headers", {})}

        async with httpx.AsyncClient(verify=options.get("verify", True), transport=self._transport) as client:
            return await client.request(
                method, url, headers=headers, timeout=options.get("timeout"), **kwargs
            )

    # ------------------------------------------------------------------
    # Authorization request
    # ------------------------------------------------------------------

    async def build_authorization_url(self) -> str:
        """Create a state and return the IDP authorization URL."""
        await self.state_store.cleanup(self.config.state_time_limit)

        state = generate_state()
        await self.state_store.issue(state)

        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": self.config.scope,
            "state": state,
        }
        separator = "&" if "?" in self.config.endpoint_login else "?"

        logger.info("Created OIDC authorization URL for state: %s", mask_sensitive(state))
        return f"{self.config.endpoint_login}{separator}{urlencode(params)}"

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def validate_callback(self, query_params: Mapping[str, str]) -> None:
        """Consume the state presented on the callback and reject IDP errors.

        Raises:
            InvalidAuthorizationState: state missing, unknown, replayed or expired
            IdpError: the IDP redirected back with ``error``
        """
        state = query_params.get("state")
        if not state:
            raise InvalidAuthorizationState(context={"reason": "missing state"})

        if not await self.state_store.consume(state, self.config.state_time_limit):
            raise InvalidAuthorizationState(context={"state": mask_sensitive(state)})

        error = query_params.get("error")
        if error:
            description = query_params.get("error_description")
            raise IdpError(
                message=sanitize_log_message(description) if description else None,
                context={
                    "error": sanitize_log_message(error),
                    "error_description": sanitize_log_message(description),
                },
            )

    @staticmethod
    def extract_code(query_params: Mapping[str, str]) -> str:
        code = query_params.get("code")
        if not code:
            raise MissingCode()
        return code

    async def exchange_code_for_token(self, code: str) -> str:
        """POST the authorization code to the token endpoint.

        Returns:
            Raw response body

        Raises:
            TokenRequestFailed: transport error, timeout or non-2xx answer
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }

        logger.info("Exchanging code for tokens at %s", self.config.endpoint_token)
        logger.debug("Using client_secret: %s", mask_sensitive(self.config.client_secret))
        try:
            response = await self._request(
                "token",
                "POST",
                self.config.endpoint_token,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TimeoutException as e:
            raise TokenRequestFailed(context={"reason": "timeout"}) from e
        except httpx.HTTPError as e:
            raise TokenRequestFailed(context={"reason": str(e)}) from e

        if not response.is_success:
            raise TokenRequestFailed(
                context={"status": response.status_code, "body": response.text[:500]}
            )

        return response.text

    @staticmethod
    def parse_token_response(raw_body: Union[str, bytes]) -> TokenResponse:
        """Decode the token endpoint body.

        Raises:
            InvalidTokenResponse: not a JSON object, or id_token/access_token missing
        """
        try:
            body = json.loads(raw_body)
        except (TypeError, ValueError) as e:
            raise InvalidTokenResponse(context={"reason": "body is not JSON"}) from e

        if not isinstance(body, dict):
            raise InvalidTokenResponse(context={"reason": "body is not an object"})

        try:
            return TokenResponse.model_validate(body)
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            raise InvalidTokenResponse(context={"invalid_fields": fields}) from e

    # ------------------------------------------------------------------
    # ID token
    # ------------------------------------------------------------------

    async def get_provider_metadata(self, issuer: str, force_refresh: bool = False) -> Dict[str, Any]:
        """Fetch the IDP discovery document, cached for an hour per issuer.

        Raises:
            httpx.HTTPError: discovery failed
        """
        issuer = issuer.rstrip("/")
        now = time.time()
        cached = _metadata_cache.get(issuer)
        if cached and not force_refresh and now - _metadata_cache_times.get(issuer, 0) < JWKS_CACHE_TTL:
            return cached

        discovery_url = f"{issuer}/.well-known/openid-configuration"
        response = await self._request("discovery", "GET", discovery_url)
        response.raise_for_status()
        metadata = response.json()
        _metadata_cache[issuer] = metadata
        _metadata_cache_times[issuer] = now
        logger.info("Fetched OIDC metadata from %s", discovery_url)
        return metadata

    async def _jwks_uri(self) -> str:
        if self.config.endpoint_jwks:
            return self.config.endpoint_jwks
        metadata = await self.get_provider_metadata(self.config.issuer)
        return metadata["jwks_uri"]

    async def get_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """IDP signing keys, cached for an hour per key set URL."""
        jwks_uri = await self._jwks_uri()

        now = time.time()
        cached = _jwks_cache.get(jwks_uri)
        if cached and not force_refresh and now - _jwks_cache_times.get(jwks_uri, 0) < JWKS_CACHE_TTL:
            return cached

        response = await self._request("jwks", "GET", jwks_uri)
        response.raise_for_status()
        jwks = response.json()
        _jwks_cache[jwks_uri] = jwks
        _jwks_cache_times[jwks_uri] = now
        return jwks

    def _claims_options(self) -> Dict[str, Any]:
        return {
            "iss": {"essential": True, "value": self.config.issuer},
            "aud": {"essential": True, "value": self.config.client_id},
            "exp": {"essential": True},
        }

    def _decode_with(self, id_token: str, jwks: Dict[str, Any]) -> JWTClaims:
        key_set = JsonWebKey.import_key_set(jwks)

        def load_key(header, payload):
            kid = header.get("kid")
            try:
                return key_set.find_by_kid(kid)
            except (KeyError, ValueError) as e:
                raise UnknownSigningKey(kid) from e

        return _id_token_jwt.decode(id_token, load_key, claims_options=self._claims_options())

    async def _signing_keys(self, force_refresh: bool = False) -> Dict[str, Any]:
        try:
            return await self.get_jwks(force_refresh=force_refresh)
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("Failed to fetch OIDC signing keys: %s", str(e))
            raise InvalidIdTokenSignature(context={"reason": "signing keys unavailable"}) from e

    async def _verify_signature(self, id_token: str) -> JWTClaims:
        """Decode ``id_token`` against the IDP key set.

        An unknown kid triggers one key set refresh before the token is
        rejected.
        """
        jwks = await self._signing_keys()
        try:
            try:
                return self._decode_with(id_token, jwks)
            except UnknownSigningKey:
                jwks = await self._signing_keys(force_refresh=True)
            return self._decode_with(id_token, jwks)
        except DecodeError as e:
            raise MalformedIdToken(context={"reason": str(e)}) from e
        except UnknownSigningKey as e:
            raise InvalidIdTokenSignature(context={"reason": "unknown signing key", "kid": e.args[0]}) from e
        except (JoseError, ValueError) as e:
            raise InvalidIdTokenSignature(context={"reason": str(e)}) from e

    def _claim_error(self, error: JoseError, claims: JWTClaims) -> Exception:
        claim_name = getattr(error, "claim_name", None)
        if claim_name == "iss":
            return IssuerMismatch(context={"iss": claims.get("iss"), "expected": self.config.issuer})
        if claim_name == "aud":
            return AudienceMismatch(context={"aud": claims.get("aud")})
        return TokenExpired(context={"claim": claim_name, "exp": claims.get("exp")})

    async def decode_and_validate_id_token(self, id_token: str) -> Dict[str, Any]:
        """Decode the ID token, verify its signature and check its claims.

        Returns:
            ID token claims

        Raises:
            MalformedIdToken, InvalidIdTokenSignature, TokenExpired,
            IssuerMismatch, AudienceMismatch, NoSubjectIdentity
        """
        if not isinstance(id_token, str) or not id_token:
            raise MalformedIdToken(context={"reason": "empty token"})

        claims = await self._verify_signature(id_token)
        try:
            claims.validate(leeway=ID_TOKEN_LEEWAY)
        except ExpiredTokenError as e:
            raise TokenExpired(context={"exp": claims.get("exp")}) from e
        except (InvalidClaimError, MissingClaimError) as e:
            raise self._claim_error(e, claims) from e
        except JoseError as e:
            # nbf or iat in the future
            raise TokenExpired(context={"reason": str(e)}) from e

        identity = claims.get(self.config.identity_key)
        if identity is None or str(identity).strip() == "":
            raise NoSubjectIdentity(context={"identity_key": self.config.identity_key})

        logger.info("Verified ID token for subject: %s", sanitize_log_message(claims.get("sub")))
        return dict(claims)

    def get_user_identity(self, id_token_claim: Mapping[str, Any]) -> str:
        """Durable external identity: the configured identity-key claim."""
        return str(id_token_claim[self.config.identity_key])

    # ------------------------------------------------------------------
    # Userinfo
    # ------------------------------------------------------------------

    async def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        """GET the userinfo endpoint with the access token.

        Raises:
            UserinfoRequestFailed: transport error, non-2xx or non-JSON answer
        """
        try:
            response = await self._request(
                "userinfo",
                "GET",
                self.config.endpoint_userinfo,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as e:
            raise UserinfoRequestFailed(context={"reason": "timeout"}) from e
        except httpx.HTTPError as e:
            raise UserinfoRequestFailed(context={"reason": str(e)}) from e

        if not response.is_success:
            raise UserinfoRequestFailed(context={"status": response.status_code})

        try:
            user_claim = response.json()
        except ValueError as e:
            raise UserinfoRequestFailed(context={"reason": "body is not JSON"}) from e

        if not isinstance(user_claim, dict):
            raise UserinfoRequestFailed(context={"reason": "body is not an object"})

        logger.info("Fetched userinfo")
        return user_claim

    @staticmethod
    def validate_user_claim(user_claim: Mapping[str, Any], id_token_claim: Mapping[str, Any]) -> None:
        """Reject a userinfo answer issued for another subject."""
        if user_claim.get("sub") is None or user_claim.get("sub") != id_token_claim.get("sub"):
            raise SubjectMismatch(
                context={
                    "user_claim_sub": user_claim.get("sub"),
                    "id_token_sub": id_token_claim.get("sub"),
                }
            )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def end_session(self, id_token: str) -> Optional[int]:
        """Ask the IDP to end its session for ``id_token``.

        Best effort: failures are logged, never raised.

        Returns:
            HTTP status of the IDP answer, or None if no call completed
        """
        if not self.config.endpoint_end_session or not id_token:
            return None

        try:
            response = await self._request(
                "end_session",
                "POST",
                self.config.endpoint_end_session,
                data={"token": id_token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            logger.warning("End session request failed: %s", str(e))
            return None

        if response.status_code != 200:
            logger.warning("End session request returned status %s", response.status_code)
        return response.status_code
