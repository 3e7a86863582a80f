from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from authlab.logging import get_logger
from authlab.service import audit as audit_actions
from authlab.service.audit import AuditLog
from authlab.service.directory import IdentityDirectory
from authlab.service.errors import (
    InvalidClaimsError,
    InvalidSignatureError,
    MalformedTokenError,
    TokenError,
    TokenExpiredError,
    TokenRevokedError,
    WrongTokenTypeError,
)
from authlab.storage.common import AuthStore
from authlab.storage.models import TokenRecord, User, utcnow

ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = (ACCESS, REFRESH)
ALGORITHM = "HS256"


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def split_token(token: str) -> tuple[str, str, str]:
    """Split a compact JWS into its three segments or raise ``MalformedTokenError``."""
    if not isinstance(token, str):
        raise MalformedTokenError(reason="token_not_string")
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise MalformedTokenError(reason="token_segment_count")
    return parts[0], parts[1], parts[2]


def decode_json_segment(segment: str) -> Dict[str, Any]:
    try:
        value = json.loads(decode_segment(segment))
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedTokenError(reason="token_segment_not_json") from exc
    if not isinstance(value, dict):
        raise MalformedTokenError(reason="token_segment_not_object")
    return value


@dataclass
class TokenVerification:
    valid: bool
    claims: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "Bearer"
    expires_in: int = 0
    claims: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


class TokenService:
    """HS256 access and refresh tokens with revocation bookkeeping.

    Access and refresh tokens are told apart by the ``type`` claim and are
    never accepted in each other's place.
    """

    def __init__(
        self,
        store: AuthStore,
        directory: IdentityDirectory,
        audit: AuditLog,
        *,
        secret: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 900,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.audit = audit
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    # -- encoding ----------------------------------------------------------

    def _sign(self, signing_input: str) -> str:
        return encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(
        self, user_id: str, token_type: str, ttl_seconds: int, extra: Dict[str, Any]
    ) -> tuple[str, Dict[str, Any], datetime]:
        now = self._clock()
        issued_at = int(now.timestamp())
        expires_at = issued_at + ttl_seconds
        claims: Dict[str, Any] = {
            "sub": user_id,
            **extra,
            "type": token_type,
            "iat": issued_at,
            "exp": expires_at,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": secrets.token_urlsafe(16),
        }
        token = self._encode(claims)
        expires_dt = datetime.fromtimestamp(expires_at, tz=timezone.utc)
        self.store.put_token_record(
            TokenRecord(
                jti=claims["jti"],
                user_id=user_id,
                type=token_type,
                issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
                expires_at=expires_dt,
            )
        )
        return token, claims, expires_dt

    def issue_access(self, user_id: str, email: str, username: str, role: str) -> str:
        token, _, _ = self._issue(
            user_id,
            ACCESS,
            self.access_ttl_seconds,
            {"email": email, "username": username, "role": role},
        )
        return token

    def issue_refresh(self, user_id: str) -> str:
        token, _, _ = self._issue(user_id, REFRESH, self.refresh_ttl_seconds, {})
        return token

    def issue_pair(self, user: User) -> TokenPair:
        access, claims, access_exp = self._issue(
            user.id,
            ACCESS,
            self.access_ttl_seconds,
            {"email": user.email, "username": user.username, "role": user.role},
        )
        refresh, _, refresh_exp = self._issue(
            user.id, REFRESH, self.refresh_ttl_seconds, {}
        )
        self.audit.success(audit_actions.JWT_SIGN, user_id=user.id)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            expires_in=self.access_ttl_seconds,
            claims=claims,
        )

    # -- verification ------------------------------------------------------

    def require(self, token: str, expected_type: str = ACCESS) -> Dict[str, Any]:
        """Return verified claims or raise the matching ``TokenError``.

        Checks run in order: structure, algorithm, signature, issuer and
        audience, expiry, type, revocation.
        """
        if expected_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type: {expected_type}")
        header_b64, payload_b64, signature = split_token(token)
        header = decode_json_segment(header_b64)
        if header.get("alg") != ALGORITHM:
            self.logger.warning("jwt_invalid_algorithm", alg=str(header.get("alg")))
            raise InvalidSignatureError(reason="unexpected_algorithm")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), signature.encode("utf-8")):
            raise InvalidSignatureError(reason="signature_mismatch")
        claims = decode_json_segment(payload_b64)

        if claims.get("iss") != self.issuer:
            raise InvalidClaimsError(reason="issuer_mismatch")
        aud = claims.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidClaimsError(reason="audience_mismatch")
        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidClaimsError(reason="exp_missing")
        if self._clock().timestamp() >= exp:
            raise TokenExpiredError(reason="token_expired")
        if not claims.get("sub"):
            raise InvalidClaimsError(reason="sub_missing")
        if claims.get("type") != expected_type:
            raise WrongTokenTypeError(
                reason=f"expected_{expected_type}_got_{claims.get('type')}"
            )
        jti = claims.get("jti")
        if jti:
            record = self.store.get_token_record(jti)
            if record and record.revoked:
                raise TokenRevokedError(reason="token_revoked")
        return claims

    def verify(self, token: str, expected_type: str = ACCESS) -> TokenVerification:
        try:
            claims = self.require(token, expected_type)
        except TokenError as exc:
            self.logger.info("jwt_verify_failed", error=exc.kind, reason=exc.reason)
            return TokenVerification(valid=False, error=exc.kind)
        return TokenVerification(valid=True, claims=claims)

    # -- lifecycle ---------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, revoking the old one.

        A refresh token is single use: a second presentation fails with
        ``TokenRevokedError``.
        """
        claims = self.require(refresh_token, REFRESH)
        user_id = claims["sub"]
        if not self.store.revoke_token_record(claims.get("jti") or "", self._clock()):
            self.audit.failure(
                audit_actions.TOKEN_REFRESH, user_id=user_id, reason="refresh_reused"
            )
            raise TokenRevokedError(reason="refresh_token_already_used")
        user = self.directory.find_by_id(user_id)
        pair = self.issue_pair(user)
        self.audit.success(audit_actions.TOKEN_REFRESH, user_id=user_id)
        return pair

    def revoke(self, token: str) -> bool:
        """Revoke a token this service issued. Signature is checked, expiry is not."""
        header_b64, payload_b64, signature = split_token(token)
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), signature.encode("utf-8")):
            raise InvalidSignatureError(reason="signature_mismatch")
        claims = decode_json_segment(payload_b64)
        revoked = self.store.revoke_token_record(claims.get("jti") or "", self._clock())
        if revoked:
            self.audit.success(audit_actions.TOKEN_REVOKE, user_id=claims.get("sub"))
        return revoked

    def revoke_all_for_user(self, user_id: str) -> int:
        count = self.store.revoke_user_tokens(user_id, self._clock())
        if count:
            self.audit.success(audit_actions.TOKEN_REVOKE, user_id=user_id, count=count)
        return count

    def sweep_expired(self) -> int:
        purged = self.store.purge_expired_token_records(self._clock())
        if purged:
            self.logger.info("token_records_swept", count=purged)
        return purged
