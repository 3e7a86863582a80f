from __future__ import annotations

from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from authlab.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    MFALoginRequest,
    MFAVerifyRequest,
    OAuthTokenForm,
    PasswordChangeRequest,
    TokenRefreshRequest,
    TokenRequest,
    TokenVerifyRequest,
)
from authlab.logging import get_logger
from authlab.service import audit as audit_actions
from authlab.service.auth import MODE_JWT, MODE_SESSION, LoginResult
from authlab.service.errors import (
    ForbiddenError,
    OAuthInvalidRequestError,
    OAuthInvalidTokenError,
    OAuthUnsupportedGrantTypeError,
    RateLimitedError,
    TokenExpiredError,
)
from authlab.service.gateway import AuthRequest, Principal, parse_bearer
from authlab.service.oauth import DEFAULT_SCOPE
from authlab.service.runtime import Runtime, get_runtime
from authlab.service.token_inspection import inspect_unverified
from authlab.storage.models import Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

DEMO_CLIENT_ID = "mock-client-id"
GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _user_identity(user_id: str) -> str:
    return f"user:{user_id}"


def _enforce_rate_limit(
    runtime: Runtime,
    identity: str,
    endpoint: str,
    limit: int,
    window_seconds: int = 60,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Charge one request against ``(identity, endpoint)``.

    Raises:
        RateLimitedError: the bucket is empty; answered with 429 and Retry-After
    """
    decision = runtime.rate_limiter.check(identity, endpoint, limit, window_seconds)
    info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not decision.allowed:
        runtime.audit.failure(audit_actions.RATE_LIMITED, endpoint=endpoint)
        raise RateLimitedError(decision.reset_seconds, reason=f"{endpoint}_limit")
    return info


def get_principal(request: Request) -> Principal:
    runtime = get_runtime()
    auth_request = AuthRequest.from_http(
        request, cookie_name=runtime.settings.session_cookie_name
    )
    return runtime.gateway.authenticate(auth_request)


def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.role != "admin":
        raise ForbiddenError("admin access required", reason="role_not_admin")
    return principal


def _apply_session_cookie(response: Response, session: Session, runtime: Runtime) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.session_cookie_name,
        session.id,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        max_age=settings.session_ttl_seconds,
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.secure_cookies,
        httponly=True,
        samesite="strict",
    )


def _login_response(result: LoginResult) -> LoginResponse:
    if result.mfa_required:
        return LoginResponse(
            user=result.user.public(), mfa_required=True, challenge_id=result.challenge_id
        )
    if result.tokens is not None:
        return LoginResponse(
            user=result.user.public(),
            method=MODE_JWT,
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            expires_in=result.tokens.expires_in,
        )
    return LoginResponse(
        user=result.user.public(),
        method=MODE_SESSION,
        session_expires_at=result.session.expires_at.isoformat() if result.session else None,
    )


def _with_query(url: str, params: dict) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


def _oauth_json(body: dict) -> JSONResponse:
    return JSONResponse(
        content=body, headers={"Cache-Control": "no-store", "Pragma": "no-cache"}
    )


# ---------------------------------------------------------------------------
# Session login


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username or email and password.

    On success a fresh ``SessionID`` cookie is set; any session id the client
    presented is discarded. Users with MFA enabled get a challenge id instead.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this account
    """
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        runtime.auth.rate_limit_identity(body.username),
        "login",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.login(
        body.username,
        body.password,
        prior_session_id=request.cookies.get(runtime.settings.session_cookie_name),
    )
    if result.session is not None:
        _apply_session_cookie(response, result.session, runtime)
    else:
        _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data=_login_response(result).model_dump(exclude_none=True))


@router.post("/auth/login/mfa", response_model=Envelope, tags=["auth"])
async def login_mfa(body: MFALoginRequest, request: Request, response: Response):
    """Complete a login challenge with a TOTP code or a backup code.

    Raises:
        401: If the challenge is unknown or expired, or the code is wrong
        429: If rate limit exceeded for the challenge's user
    """
    runtime = get_runtime()
    settings = runtime.settings
    owner = runtime.auth.challenge_owner(body.challenge_id)
    identity = _user_identity(owner) if owner else f"challenge:{body.challenge_id}"
    if body.use_backup_code:
        _enforce_rate_limit(
            runtime,
            identity,
            "mfa_backup",
            settings.backup_code_rate_limit_per_minute,
            response=response,
        )
    else:
        _enforce_rate_limit(
            runtime,
            identity,
            "mfa_login",
            settings.mfa_rate_limit_per_minute,
            response=response,
        )
    result = runtime.auth.complete_mfa_login(
        body.challenge_id,
        body.code,
        use_backup_code=body.use_backup_code,
        prior_session_id=request.cookies.get(settings.session_cookie_name),
    )
    if result.session is not None:
        _apply_session_cookie(response, result.session, runtime)
    return Envelope(status="ok", data=_login_response(result).model_dump(exclude_none=True))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """Destroy the current session. Succeeds whether or not one exists."""
    runtime = get_runtime()
    runtime.auth.logout(request.cookies.get(runtime.settings.session_cookie_name))
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(principal: Principal = Depends(get_principal)):
    """Report who the request is authenticated as and by which method."""
    runtime = get_runtime()
    user = runtime.directory.find_by_id(principal.user_id)
    return Envelope(
        status="ok",
        data={"authenticated": True, "method": principal.method, "user": user.public()},
    )


@router.get("/auth/session-check", response_model=Envelope, tags=["auth"])
async def session_check(request: Request):
    """Describe the presented session without extending it.

    Raises:
        401: If no live session is presented
    """
    runtime = get_runtime()
    session_id = request.cookies.get(runtime.settings.session_cookie_name)
    # validate() purges expired or orphaned sessions and raises uniformly
    runtime.sessions.validate(session_id or "")
    status = runtime.sessions.describe(session_id)
    runtime.audit.success(audit_actions.SESSION_CHECK, user_id=status.user_id)
    return Envelope(status="ok", data=status.to_dict())


# ---------------------------------------------------------------------------
# JWT


@router.post("/auth/jwt/sign", response_model=Envelope, tags=["jwt"])
async def jwt_sign(body: LoginRequest, response: Response):
    """Exchange credentials for an access and refresh token pair.

    Raises:
        401: If credentials are invalid, or ``mfa_required`` with a challenge id
        429: If rate limit exceeded for this account
    """
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        runtime.auth.rate_limit_identity(body.username),
        "login",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.issue_tokens(body.username, body.password)
    return Envelope(status="ok", data=_login_response(result).model_dump(exclude_none=True))


@router.post("/auth/jwt/verify", response_model=Envelope, tags=["jwt"])
async def jwt_verify(body: TokenVerifyRequest):
    """Verify a token's signature, claims and type.

    Raises:
        401: If the token is not valid; ``details.hint`` is ``refresh`` for an
            expired token and ``login`` otherwise
    """
    runtime = get_runtime()
    outcome = runtime.tokens.verify(body.token, body.expected_type)
    if not outcome.valid:
        hint = "refresh" if outcome.error == TokenExpiredError.kind else "login"
        raise _http_error(
            "unauthorized", "Invalid or expired token", 401, details={"hint": hint}
        )
    return Envelope(status="ok", data={"valid": True, "claims": outcome.claims})


@router.post("/auth/jwt/decode", response_model=Envelope, tags=["jwt"])
async def jwt_decode(body: TokenRequest):
    """Show a token's header and claims WITHOUT verifying it.

    For inspection only; the result says nothing about whether the token is
    trustworthy.

    Raises:
        400: If the token is not three base64url JSON segments
    """
    decoded = inspect_unverified(body.token)
    if decoded is None:
        raise _http_error("validation_error", "token could not be decoded", 400)
    decoded["warning"] = "decoded without signature verification"
    return Envelope(status="ok", data=decoded)


@router.post("/auth/refresh-token", response_model=Envelope, tags=["jwt"])
async def refresh_token(body: TokenRefreshRequest):
    """Rotate a refresh token into a new token pair. The old one stops working.

    Raises:
        401: If the refresh token is invalid, expired, revoked or already used
    """
    runtime = get_runtime()
    pair = runtime.auth.refresh_tokens(body.refresh_token)
    return Envelope(status="ok", data=pair.to_dict())


@router.get("/auth/protected", response_model=Envelope, tags=["auth"])
async def protected(principal: Principal = Depends(get_principal)):
    """A resource that accepts either a session cookie or a bearer access token."""
    runtime = get_runtime()
    runtime.audit.success(
        audit_actions.PROTECTED_RESOURCE_ACCESS,
        user_id=principal.user_id,
        method=principal.method,
    )
    return Envelope(
        status="ok",
        data={"message": f"Hello, {principal.username}", "principal": principal.to_dict()},
    )


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    """Change the caller's password.

    Every issued JWT and every other session is revoked; the caller's own
    session (if any) is replaced with a new id.

    Raises:
        400: If the new password is too short
        401: If the current password is wrong
    """
    runtime = get_runtime()
    session = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        session_id=principal.session_id,
    )
    if session is not None:
        _apply_session_cookie(response, session, runtime)
    return Envelope(status="ok", data={"message": "password changed"})


# ---------------------------------------------------------------------------
# MFA


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: Principal = Depends(get_principal)):
    """Start TOTP enrollment.

    Returns the shared secret, an ``otpauth://`` URI for authenticator apps
    and the plaintext backup codes, which are shown this one time only.

    Raises:
        409: If MFA is already enabled
    """
    runtime = get_runtime()
    setup = runtime.auth.setup_mfa(principal.user_id)
    return Envelope(status="ok", data=setup.to_dict())


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(
    body: MFAVerifyRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    """Check a TOTP or backup code for the caller.

    While enrollment is pending a valid TOTP code enables MFA and the
    caller's session is regenerated.

    Raises:
        401: If the code is wrong or has already been used
        429: If rate limit exceeded for this user
    """
    runtime = get_runtime()
    settings = runtime.settings
    if body.use_backup_code:
        _enforce_rate_limit(
            runtime,
            _user_identity(principal.user_id),
            "mfa_backup",
            settings.backup_code_rate_limit_per_minute,
            response=response,
        )
        runtime.mfa.verify_backup_code(principal.user_id, body.code)
        return Envelope(
            status="ok",
            data={
                "verified": True,
                "remaining_backup_codes": runtime.mfa.remaining_backup_codes(principal.user_id),
            },
        )
    _enforce_rate_limit(
        runtime,
        _user_identity(principal.user_id),
        "mfa_verify",
        settings.mfa_rate_limit_per_minute,
        response=response,
    )
    if runtime.mfa.is_enabled(principal.user_id):
        runtime.mfa.verify_user_code(principal.user_id, body.code)
        return Envelope(status="ok", data={"verified": True, "mfa_enabled": True})
    session = runtime.auth.confirm_mfa(
        principal.user_id, body.code, session_id=principal.session_id
    )
    if session is not None:
        _apply_session_cookie(response, session, runtime)
    return Envelope(status="ok", data={"verified": True, "mfa_enabled": True})


# ---------------------------------------------------------------------------
# OAuth emulator


@router.get("/auth/oauth/authorize", tags=["oauth"])
async def oauth_authorize(
    client_id: str = Query(""),
    redirect_uri: str = Query(""),
    response_type: str = Query("code"),
    scope: str = Query(DEFAULT_SCOPE),
    state: Optional[str] = Query(None),
    principal: Principal = Depends(get_principal),
):
    """Grant the signed-in user's consent and redirect back with a code.

    Raises:
        400: ``invalid_request`` or ``unsupported_response_type``
        401: If the caller is not authenticated
    """
    runtime = get_runtime()
    grant = runtime.oauth.authorize(
        client_id,
        redirect_uri,
        scope,
        principal.user_id,
        state=state,
        response_type=response_type,
    )
    target = _with_query(redirect_uri, {"code": grant.code, "state": grant.state})
    return RedirectResponse(target, status_code=302)


@router.post("/auth/oauth/token", tags=["oauth"])
async def oauth_token(body: OAuthTokenForm):
    """Token endpoint for the ``authorization_code`` and ``refresh_token`` grants.

    Successful and failed responses use the OAuth 2.0 JSON shapes rather than
    the envelope.

    Raises:
        400: ``invalid_request``, ``unsupported_grant_type`` or ``invalid_grant``
        401: ``invalid_client``
    """
    runtime = get_runtime()
    if body.grant_type == GRANT_AUTHORIZATION_CODE:
        if not body.code or not body.client_id:
            raise OAuthInvalidRequestError(
                "Missing required parameters", reason="code_or_client_id_missing"
            )
        tokens = runtime.oauth.exchange_code(
            body.code, body.client_id, body.client_secret, body.redirect_uri
        )
        return _oauth_json(tokens.to_dict())
    if body.grant_type == GRANT_REFRESH_TOKEN:
        if not body.refresh_token or not body.client_id:
            raise OAuthInvalidRequestError(
                "Missing required parameters", reason="refresh_token_or_client_id_missing"
            )
        tokens = runtime.oauth.refresh_access_token(body.refresh_token)
        payload = tokens.to_dict()
        payload["refresh_token"] = body.refresh_token
        return _oauth_json(payload)
    raise OAuthUnsupportedGrantTypeError(reason=f"grant_type={body.grant_type}")


@router.get("/auth/oauth/userinfo", tags=["oauth"])
async def oauth_userinfo(request: Request):
    """Profile of the user an OAuth access token was issued for.

    Raises:
        401: ``invalid_token``
    """
    runtime = get_runtime()
    token = parse_bearer(request.headers.get("authorization"))
    if not token:
        raise OAuthInvalidTokenError(reason="bearer_token_missing")
    return _oauth_json(runtime.oauth.get_user_info(token))


@router.get("/auth/oauth/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(code: str = Query(""), state: Optional[str] = Query(None)):
    """Client side of the demo flow: exchange the code as the demo client,
    fetch the profile and sign the user into this app with a JWT pair.

    Raises:
        400: ``invalid_request`` or ``invalid_grant``
    """
    runtime = get_runtime()
    if not code:
        raise OAuthInvalidRequestError("Missing required parameters", reason="code_missing")
    tokens = runtime.oauth.exchange_code(
        code, DEMO_CLIENT_ID, runtime.settings.oauth_clients.get(DEMO_CLIENT_ID)
    )
    profile = runtime.oauth.get_user_info(tokens.access_token)
    user = runtime.directory.find_by_id(profile["id"])
    pair = runtime.tokens.issue_pair(user)
    runtime.audit.success(audit_actions.LOGIN_SUCCESS, user_id=user.id, method="oauth")
    return Envelope(
        status="ok",
        data={"profile": profile, "state": state, "tokens": pair.to_dict()},
    )


# ---------------------------------------------------------------------------
# Audit


@router.get("/auth/audit", response_model=Envelope, tags=["admin"])
async def audit_log(
    limit: int = Query(20, ge=1, le=200),
    user_id: Optional[str] = Query(None),
    principal: Principal = Depends(get_admin_principal),
):
    """Most recent audit entries, newest first (admin only).

    Raises:
        401: If the caller is not authenticated
        403: If the caller is not an admin
    """
    runtime = get_runtime()
    entries = (
        runtime.audit.for_user(user_id, limit=limit)
        if user_id
        else runtime.audit.recent(limit)
    )
    return Envelope(status="ok", data={"entries": [entry.to_dict() for entry in entries]})
