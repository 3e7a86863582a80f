"""Shared storage helpers and the store interface the services depend on."""

from __future__ import annotations

import hashlib
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Protocol

from authlab.storage.models import (
    AuditLogEntry,
    AuthorizationCode,
    MFAChallenge,
    MFASecret,
    OAuthTokenRecord,
    Session,
    TokenRecord,
    User,
)


def normalize_username(username: str) -> str:
    return (username or "").strip()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_backup_code(code: str) -> str:
    """Strip separators and whitespace and upper-case a backup code."""
    return "".join((code or "").split()).replace("-", "").upper()


def digest_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


class KeyedLock:
    """Per-key mutual exclusion.

    Callers on the same key serialize; callers on different keys do not
    contend beyond the short registry lock.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._refs[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._registry_lock:
                self._refs[key] -= 1
                if self._refs[key] <= 0:
                    self._refs.pop(key, None)
                    self._locks.pop(key, None)


class AuthStore(Protocol):
    """Persistence surface shared by the engine's components."""

    # users
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self) -> List[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_user_mfa_enabled(self, user_id: str, enabled: bool) -> Optional[User]: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # sessions
    def put_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> Optional[Session]: ...

    def take_session(self, session_id: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str, *, keep: Optional[str] = None) -> int: ...

    def purge_expired_sessions(self, now: datetime) -> int: ...

    # token records
    def put_token_record(self, record: TokenRecord) -> TokenRecord: ...

    def get_token_record(self, jti: str) -> Optional[TokenRecord]: ...

    def revoke_token_record(self, jti: str, at: datetime) -> bool: ...

    def revoke_user_tokens(self, user_id: str, at: datetime) -> int: ...

    def purge_expired_token_records(self, now: datetime) -> int: ...

    # mfa
    def put_mfa_secret(self, record: MFASecret) -> MFASecret: ...

    def get_mfa_secret(self, user_id: str) -> Optional[MFASecret]: ...

    def mark_mfa_verified(self, user_id: str, at: datetime) -> bool: ...

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> bool: ...

    def advance_mfa_counter(self, user_id: str, counter: int) -> bool: ...

    def consume_backup_code(self, user_id: str, code_digest: str) -> bool: ...

    def replace_backup_codes(self, user_id: str, digests: set[str]) -> bool: ...

    def delete_mfa_secret(self, user_id: str) -> bool: ...

    def put_mfa_challenge(self, challenge: MFAChallenge) -> MFAChallenge: ...

    def get_mfa_challenge(self, challenge_id: str) -> Optional[MFAChallenge]: ...

    def take_mfa_challenge(self, challenge_id: str) -> Optional[MFAChallenge]: ...

    def purge_expired_mfa_challenges(self, now: datetime) -> int: ...

    # audit
    def append_audit(
        self,
        action: str,
        status: str,
        *,
        user_id: Optional[str],
        timestamp: datetime,
        metadata: Optional[dict] = None,
    ) -> AuditLogEntry: ...

    def list_audit(
        self, *, limit: Optional[int] = None, user_id: Optional[str] = None
    ) -> List[AuditLogEntry]: ...

    # oauth
    def put_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode: ...

    def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]: ...

    def consume_authorization_code(self, code: str) -> bool: ...

    def put_oauth_token(self, record: OAuthTokenRecord) -> OAuthTokenRecord: ...

    def get_oauth_token(self, access_token: str) -> Optional[OAuthTokenRecord]: ...

    def find_oauth_token_by_refresh(self, refresh_token: str) -> Optional[OAuthTokenRecord]: ...

    def replace_oauth_access_token(
        self, refresh_token: str, access_token: str, expires_at: datetime
    ) -> Optional[OAuthTokenRecord]: ...

    def delete_oauth_token(self, token: str) -> bool: ...

    def purge_expired_oauth(self, now: datetime) -> int: ...


__all__ = [
    "AuthStore",
    "KeyedLock",
    "digest_backup_code",
    "normalize_backup_code",
    "normalize_email",
    "normalize_username",
]
