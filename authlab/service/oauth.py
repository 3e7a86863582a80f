from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from authlab.logging import get_logger
from authlab.service import audit as audit_actions
from authlab.service.audit import AuditLog
from authlab.service.directory import IdentityDirectory
from authlab.service.errors import (
    OAuthInvalidClientError,
    OAuthInvalidGrantError,
    OAuthInvalidRequestError,
    OAuthInvalidTokenError,
    OAuthUnsupportedResponseTypeError,
    UserNotFoundError,
)
from authlab.service.passwords import timing_safe_compare
from authlab.storage.common import AuthStore
from authlab.storage.errors import ConstraintViolation
from authlab.storage.models import AuthorizationCode, OAuthTokenRecord, utcnow

TOKEN_TYPE = "Bearer"
DEFAULT_SCOPE = "openid email profile"
AVATAR_URL = "https://i.pravatar.cc/150?u={email}"


def _opaque(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(32)}"


@dataclass
class AuthorizationGrant:
    code: str
    expires_at: datetime
    state: Optional[str] = None


@dataclass
class OAuthTokens:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    token_type: str = TOKEN_TYPE
    scope: str = ""

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        if self.scope:
            body["scope"] = self.scope
        return body


class OAuthEmulator:
    """In-process authorization server for the authorization-code grant.

    Codes live ``code_ttl_seconds`` and can be exchanged once. Access tokens
    live ``access_ttl_seconds``; a refresh token keeps its record alive for
    ``refresh_ttl_seconds`` and rotates the access token in place.
    """

    def __init__(
        self,
        store: AuthStore,
        directory: IdentityDirectory,
        audit: AuditLog,
        *,
        clients: Optional[Mapping[str, str]] = None,
        code_ttl_seconds: int = 600,
        access_ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.audit = audit
        self.clients: Dict[str, str] = dict(clients or {})
        self.code_ttl_seconds = code_ttl_seconds
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    def authorize(
        self,
        client_id: str,
        redirect_uri: str,
        scope: str,
        user_id: str,
        *,
        state: Optional[str] = None,
        response_type: str = "code",
    ) -> AuthorizationGrant:
        if response_type != "code":
            raise OAuthUnsupportedResponseTypeError(reason=f"response_type={response_type}")
        missing = [
            name
            for name, value in (
                ("client_id", client_id),
                ("redirect_uri", redirect_uri),
                ("scope", scope),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise OAuthInvalidRequestError(
                "Missing required parameters", detail={"missing": missing}
            )
        self.directory.find_by_id(user_id)
        expires_at = self._clock() + timedelta(seconds=self.code_ttl_seconds)
        while True:
            try:
                record = self.store.put_authorization_code(
                    AuthorizationCode(
                        code=_opaque("code"),
                        client_id=client_id,
                        redirect_uri=redirect_uri,
                        scope=scope,
                        user_id=user_id,
                        expires_at=expires_at,
                        state=state,
                    )
                )
                break
            except ConstraintViolation:
                self.logger.warning("oauth_code_collision")
        self.audit.success(audit_actions.OAUTH_AUTHORIZE, user_id=user_id, client_id=client_id)
        return AuthorizationGrant(code=record.code, expires_at=expires_at, state=state)

    def _authenticate_client(self, client_id: str, client_secret: Optional[str]) -> None:
        expected = self.clients.get(client_id)
        if expected is None:
            # Unregistered clients are allowed in the emulator
            return
        if not timing_safe_compare(client_secret or "", expected):
            raise OAuthInvalidClientError(reason="client_secret_mismatch")

    def _grant_failure(
        self, reason: str, *, user_id: Optional[str] = None, client_id: str = ""
    ) -> OAuthInvalidGrantError:
        self.audit.failure(
            audit_actions.OAUTH_TOKEN, user_id=user_id, client_id=client_id, reason=reason
        )
        return OAuthInvalidGrantError(reason=reason)

    def exchange_code(
        self,
        code: str,
        client_id: str,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> OAuthTokens:
        """Trade a code for tokens.

        Raises:
            OAuthInvalidGrantError: code unknown, used, expired, issued to a
                different client, or ``redirect_uri`` does not match.
            OAuthInvalidClientError: registered client with a wrong secret.
        """
        self._authenticate_client(client_id, client_secret)
        record = self.store.get_authorization_code(code) if code else None
        if not record:
            raise self._grant_failure("code_unknown", client_id=client_id)
        if record.used:
            raise self._grant_failure("code_used", user_id=record.user_id, client_id=client_id)
        now = self._clock()
        if now >= record.expires_at:
            raise self._grant_failure("code_expired", user_id=record.user_id, client_id=client_id)
        if not timing_safe_compare(record.client_id, client_id or ""):
            raise self._grant_failure(
                "client_mismatch", user_id=record.user_id, client_id=client_id
            )
        if redirect_uri is not None and redirect_uri != record.redirect_uri:
            raise self._grant_failure(
                "redirect_uri_mismatch", user_id=record.user_id, client_id=client_id
            )
        # Exactly one concurrent exchange wins the flip
        if not self.store.consume_authorization_code(code):
            raise self._grant_failure("code_used", user_id=record.user_id, client_id=client_id)
        token = self.store.put_oauth_token(
            OAuthTokenRecord(
                access_token=_opaque("access"),
                refresh_token=_opaque("refresh"),
                expires_at=now + timedelta(seconds=self.access_ttl_seconds),
                user_id=record.user_id,
                client_id=record.client_id,
                refresh_expires_at=now + timedelta(seconds=self.refresh_ttl_seconds),
                scope=record.scope,
            )
        )
        self.audit.success(audit_actions.OAUTH_TOKEN, user_id=record.user_id, client_id=client_id)
        return OAuthTokens(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_in=self.access_ttl_seconds,
            scope=token.scope,
        )

    def get_user_info(self, access_token: str) -> Dict[str, Any]:
        record = self.store.get_oauth_token(access_token) if access_token else None
        if not record:
            raise OAuthInvalidTokenError(reason="access_token_unknown")
        if self._clock() >= record.expires_at:
            raise OAuthInvalidTokenError(reason="access_token_expired")
        try:
            user = self.directory.find_by_id(record.user_id)
        except UserNotFoundError as exc:
            raise OAuthInvalidTokenError(reason="token_user_missing") from exc
        self.audit.success(audit_actions.OAUTH_USERINFO, user_id=user.id)
        return {
            "id": user.id,
            "email": user.email,
            "name": user.username,
            "picture": AVATAR_URL.format(email=user.email),
            "roles": [user.role],
        }

    def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Issue a new access token for ``refresh_token``; the previous one stops working."""
        record = self.store.find_oauth_token_by_refresh(refresh_token) if refresh_token else None
        now = self._clock()
        if not record or now >= record.refresh_expires_at:
            self.audit.failure(audit_actions.OAUTH_REFRESH, reason="refresh_token_invalid")
            raise OAuthInvalidGrantError(reason="refresh_token_invalid")
        if not self.directory.exists(record.user_id):
            self.store.delete_oauth_token(refresh_token)
            raise OAuthInvalidGrantError(reason="token_user_missing")
        rotated = self.store.replace_oauth_access_token(
            refresh_token,
            _opaque("access"),
            now + timedelta(seconds=self.access_ttl_seconds),
        )
        if not rotated:
            raise OAuthInvalidGrantError(reason="refresh_token_invalid")
        self.audit.success(audit_actions.OAUTH_REFRESH, user_id=rotated.user_id)
        return OAuthTokens(
            access_token=rotated.access_token,
            expires_in=self.access_ttl_seconds,
            scope=rotated.scope,
        )

    def revoke(self, token: str) -> bool:
        return bool(token) and self.store.delete_oauth_token(token)

    def cleanup(self) -> int:
        """Drop expired codes and token records. Safe to interrupt at any point."""
        purged = self.store.purge_expired_oauth(self._clock())
        if purged:
            self.logger.info("oauth_cleanup", purged=purged)
        return purged
