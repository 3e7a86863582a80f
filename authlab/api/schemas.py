from __future__ import annotations

import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authlab.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "mfa_required",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters that could spoof a login."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=254, description="Username or email")
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("username")
    @classmethod
    def _normalize_login(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class MFALoginRequest(BaseModel):
    challenge_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=1, max_length=16)
    use_backup_code: bool = False


class LoginResponse(BaseModel):
    user: dict
    method: Literal["session", "jwt"] = "session"
    mfa_required: bool = False
    challenge_id: Optional[str] = None
    session_expires_at: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=8192)


class TokenVerifyRequest(TokenRequest):
    expected_type: Literal["access", "refresh"] = "access"


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=8192)


class MFAVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)
    use_backup_code: bool = False


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class OAuthTokenForm(BaseModel):
    """Token endpoint parameters, sent as a JSON body."""

    grant_type: str = Field(..., max_length=64)
    code: Optional[str] = Field(default=None, max_length=512)
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)
    client_id: Optional[str] = Field(default=None, max_length=256)
    client_secret: Optional[str] = Field(default=None, max_length=512)
    refresh_token: Optional[str] = Field(default=None, max_length=512)
