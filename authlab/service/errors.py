from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    ``message`` is what a caller may see. ``reason`` is the precise internal
    cause; it is logged and audited but never returned to the caller. Error
    codes are stable:
    - unauthorized (401)
    - mfa_required (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.reason = reason or type(self).__name__


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required"


class AuthenticationRequiredError(AuthenticationError):
    """Uniform failure returned by the auth gateway."""
    pass


class InvalidCredentialsError(AuthenticationError):
    """Bad username or password. Never says which."""
    default_message = "Invalid username or password"


class SessionNotFoundError(AuthenticationError):
    """Session id is unknown or already destroyed (401)."""
    pass


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class TokenError(AuthenticationError):
    """Base for JWT verification failures.

    ``kind`` names the failure for ``TokenVerification.error``.
    """

    kind: str = "Malformed"
    default_message = "Invalid or expired token"


class MalformedTokenError(TokenError):
    kind = "Malformed"


class InvalidSignatureError(TokenError):
    kind = "InvalidSignature"


class InvalidClaimsError(TokenError):
    """Issuer, audience or a required claim did not check out."""
    kind = "InvalidClaims"


class TokenExpiredError(TokenError):
    kind = "TokenExpired"


class WrongTokenTypeError(TokenError):
    kind = "WrongTokenType"


class TokenRevokedError(TokenError):
    kind = "TokenRevoked"


class MFARequiredError(AuthenticationError):
    """Password accepted but a second factor is still needed (401)."""
    error_code = "mfa_required"
    default_message = "MFA verification required"


class InvalidMFACodeError(AuthenticationError):
    """TOTP code rejected (401)."""
    default_message = "Invalid verification code"


class InvalidBackupCodeError(InvalidMFACodeError):
    """Backup code unknown or already used (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class UserNotFoundError(NotFoundError):
    """Lookup miss in the identity directory.

    Internal: boundaries translate it into a generic authentication failure.
    """
    default_message = "user not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "rate limit exceeded"

    def __init__(self, retry_after: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.retry_after = max(1, int(retry_after))


class OAuthError(ServiceError):
    """Authorization-server errors rendered as RFC 6749 ``{error, error_description}``."""

    oauth_error: str = "invalid_request"
    default_message = "Invalid request"


class OAuthInvalidRequestError(OAuthError):
    oauth_error = "invalid_request"


class OAuthUnsupportedResponseTypeError(OAuthError):
    oauth_error = "unsupported_response_type"
    default_message = "Unsupported response type"


class OAuthUnsupportedGrantTypeError(OAuthError):
    oauth_error = "unsupported_grant_type"
    default_message = "Unsupported grant type"


class OAuthInvalidGrantError(OAuthError):
    """Code unknown, used, expired or bound to another client; or unknown refresh token."""
    oauth_error = "invalid_grant"
    default_message = "Invalid authorization grant"


class OAuthInvalidClientError(OAuthError):
    status_code = 401
    error_code = "unauthorized"
    oauth_error = "invalid_client"
    default_message = "Client authentication failed"


class OAuthInvalidTokenError(OAuthError):
    status_code = 401
    error_code = "unauthorized"
    oauth_error = "invalid_token"
    default_message = "Invalid or expired token"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthenticationRequiredError",
    "InvalidCredentialsError",
    "SessionNotFoundError",
    "SessionExpiredError",
    "TokenError",
    "MalformedTokenError",
    "InvalidSignatureError",
    "InvalidClaimsError",
    "TokenExpiredError",
    "WrongTokenTypeError",
    "TokenRevokedError",
    "MFARequiredError",
    "InvalidMFACodeError",
    "InvalidBackupCodeError",
    "ForbiddenError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "RateLimitedError",
    "OAuthError",
    "OAuthInvalidRequestError",
    "OAuthUnsupportedResponseTypeError",
    "OAuthUnsupportedGrantTypeError",
    "OAuthInvalidGrantError",
    "OAuthInvalidClientError",
    "OAuthInvalidTokenError",
]
