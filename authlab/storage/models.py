from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    role: str = "user"
    mfa_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        role: str = "user",
        *,
        now: datetime | None = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
            role=role,
            created_at=now or utcnow(),
        )

    def public(self) -> Dict[str, Any]:
        """Profile fields that are safe to return to clients."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "mfa_enabled": self.mfa_enabled,
        }


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime

    @classmethod
    def new(
        cls, session_id: str, user_id: str, ttl_seconds: int, *, now: datetime
    ) -> "Session":
        return cls(
            id=session_id,
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_activity=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class TokenRecord:
    jti: str
    user_id: str
    type: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class MFASecret:
    user_id: str
    secret: str
    enabled: bool = False
    # SHA-256 digests of normalized backup codes
    backup_codes: Set[str] = field(default_factory=set)
    used_backup_codes: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    last_used_counter: Optional[int] = None


@dataclass
class MFAChallenge:
    id: str
    user_id: str
    expires_at: datetime
    # "session" or "jwt": what a completed challenge issues
    mode: str = "session"


@dataclass
class AuditLogEntry:
    id: int
    action: str
    status: str
    timestamp: datetime
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    scope: str
    user_id: str
    expires_at: datetime
    used: bool = False
    state: Optional[str] = None


@dataclass
class OAuthTokenRecord:
    access_token: str
    refresh_token: str
    expires_at: datetime
    user_id: str
    client_id: str
    refresh_expires_at: datetime
    scope: str = ""
