"""Custom exceptions for Gatekeeper.

Every failure in the login pipeline is one of the classes below. Each class
carries a stable machine-readable ``code`` (sent to the login page as the
``login-error`` query parameter) and a human-readable ``message``. The
``context`` dict holds whatever is useful for diagnosing the failure and is
written to the auth log, never to the browser.
"""

from typing import Any, Dict, Optional


class OIDCError(Exception):
    """Base class for all authentication pipeline failures."""

    code = "oidc-error"
    message = "Authentication failed."

    def __init__(self, message: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        self.message = message or self.message
        self.context = context or {}
        super().__init__(self.message)

    def __repr__(self):
        return f"<{type(self).__name__}(code={self.code!r}, message={self.message!r})>"


# ============================================================================
# Protocol errors (callback parameters)
# ============================================================================


class ProtocolError(OIDCError):
    """The callback request itself is unusable."""


class InvalidAuthorizationState(ProtocolError):
    """State parameter missing, unknown, already used, or too old."""

    code = "invalid-state"
    message = "Invalid or expired authorization state. Please try logging in again."


class IdpError(ProtocolError):
    """The IDP redirected back with an ``error`` parameter."""

    code = "idp-error"
    message = "The identity provider returned an error."


class MissingCode(ProtocolError):
    """No ``code`` parameter on the callback."""

    code = "no-code"
    message = "No authorization code present in the request."


# ============================================================================
# Token errors
# ============================================================================


class TokenError(OIDCError):
    """Token exchange or token decoding failed."""


class TokenRequestFailed(TokenError):
    """Token endpoint unreachable, timed out, or answered non-2xx."""

    code = "token-request-failed"
    message = "Could not exchange the authorization code for tokens."


class InvalidTokenResponse(TokenError):
    """Token endpoint body is not JSON or lacks id_token/access_token."""

    code = "invalid-token-response"
    message = "Invalid token response from the identity provider."


class MalformedIdToken(TokenError):
    """id_token is not three base64url segments of JSON."""

    code = "malformed-id-token"
    message = "Malformed ID token."


class InvalidIdTokenSignature(TokenError):
    """id_token signature does not verify against the IDP keys."""

    code = "invalid-id-token-signature"
    message = "ID token signature could not be verified."


class UserinfoRequestFailed(TokenError):
    """Userinfo endpoint unreachable, timed out, or answered non-2xx."""

    code = "userinfo-request-failed"
    message = "Could not retrieve user information from the identity provider."


# ============================================================================
# Claim validation errors
# ============================================================================


class ClaimValidationError(OIDCError):
    """A claim value failed validation."""


class TokenExpired(ClaimValidationError):
    code = "token-expired"
    message = "The ID token has expired."


class IssuerMismatch(ClaimValidationError):
    code = "issuer-mismatch"
    message = "The ID token was issued by an unexpected provider."


class AudienceMismatch(ClaimValidationError):
    code = "audience-mismatch"
    message = "The ID token was not issued for this client."


class NoSubjectIdentity(ClaimValidationError):
    code = "no-subject-identity"
    message = "No subject identity in the ID token."


class SubjectMismatch(ClaimValidationError):
    """Userinfo subject differs from the id_token subject (token substitution)."""

    code = "subject-mismatch"
    message = "The user claim subject does not match the ID token subject."


# ============================================================================
# Identity errors
# ============================================================================


class IdentityError(OIDCError):
    """Mapping the verified identity to a local user failed."""


class NoUsernameSource(IdentityError):
    code = "no-username"
    message = "No appropriate username found."


class CreationNotAuthorized(IdentityError):
    code = "cannot-authorize"
    message = "Can not authorize."


class UserCreationFailed(IdentityError):
    code = "failed-user-creation"
    message = "Failed user creation."


class InvalidUser(IdentityError):
    code = "invalid-user"
    message = "Invalid user."


# ============================================================================
# Session errors
# ============================================================================


class SessionError(OIDCError):
    """The local session is not acceptable."""


class MismatchIdentity(SessionError):
    """OIDC-managed session without its tracking cookie."""

    code = "mismatch-identity"
    message = "Mismatch identity."


class PrivacyRequired(SessionError):
    """Privacy enforcement is on and the request is anonymous."""

    code = "privacy"
    message = "This site requires login."


# ============================================================================
# Configuration
# ============================================================================


class ConfigError(OIDCError):
    """OIDC endpoints or credentials are missing or invalid.

    Raised while loading configuration. It is fatal to the pipeline, not to
    the process: the gate middleware refuses requests until an operator
    fixes the settings.
    """

    code = "config-error"
    message = "OpenID Connect is not configured."
