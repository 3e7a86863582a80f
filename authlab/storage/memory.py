from __future__ import annotations

import base64
import hashlib
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from authlab.logging import get_logger
from authlab.storage.common import KeyedLock, normalize_email, normalize_username
from authlab.storage.errors import ConstraintViolation
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


class MemoryStore:
    """In-process store for users, sessions, tokens, MFA, audit and OAuth state.

    Table mutations run under ``_data_lock``. Check-and-mark transitions
    (session take, token revoke, backup-code and authorization-code
    consumption, counter advance) additionally serialize per key so that
    two racing callers on the same key see exactly one winner.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._username_index: Dict[str, str] = {}
        self._email_index: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.token_records: Dict[str, TokenRecord] = {}
        self.mfa_secrets: Dict[str, MFASecret] = {}
        self.mfa_challenges: Dict[str, MFAChallenge] = {}
        self.audit_log: List[AuditLogEntry] = []
        self.authorization_codes: Dict[str, AuthorizationCode] = {}
        self.oauth_tokens: Dict[str, OAuthTokenRecord] = {}
        self._oauth_refresh_index: Dict[str, str] = {}
        self._audit_seq = 0
        self._seq_lock = threading.Lock()
        self._data_lock = threading.RLock()
        self._keys = KeyedLock()
        self._mfa_cipher = Fernet(self._derive_cipher_key(mfa_encryption_key))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _encrypt_mfa_secret(self, secret: str) -> str:
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("mfa_secret_decrypt_failed")
            raise ConstraintViolation("mfa secret unreadable") from exc

    # -- users -------------------------------------------------------------

    def create_user(self, user: User) -> User:
        username_key = normalize_username(user.username).lower()
        email_key = normalize_email(user.email)
        with self._data_lock:
            if username_key in self._username_index:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if email_key in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            stored = replace(user)
            self.users[user.id] = stored
            self._username_index[username_key] = user.id
            self._email_index[email_key] = user.id
            return replace(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        user_id = self._username_index.get(normalize_username(username).lower())
        return self.get_user(user_id) if user_id else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        user_id = self._email_index.get(normalize_email(email))
        return self.get_user(user_id) if user_id else None

    def list_users(self) -> List[User]:
        with self._data_lock:
            return [replace(user) for user in self.users.values()]

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def set_user_mfa_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        return self._update_user(user_id, mfa_enabled=enabled)

    def update_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, password_hash=password_hash)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return False
            self._username_index.pop(normalize_username(user.username).lower(), None)
            self._email_index.pop(normalize_email(user.email), None)
            for sid in [s.id for s in self.sessions.values() if s.user_id == user_id]:
                self.sessions.pop(sid, None)
            for jti in [r.jti for r in self.token_records.values() if r.user_id == user_id]:
                self.token_records.pop(jti, None)
            self.mfa_secrets.pop(user_id, None)
            return True

    # -- sessions ----------------------------------------------------------

    def put_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", {"field": "id"})
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        return replace(session) if session else None

    def touch_session(self, session_id: str, at: datetime) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            session.last_activity = at
            return replace(session)

    def take_session(self, session_id: str) -> Optional[Session]:
        """Atomically remove and return a session; only one caller wins."""
        with self._keys.hold(f"session:{session_id}"), self._data_lock:
            return self.sessions.pop(session_id, None)

    def delete_session(self, session_id: str) -> bool:
        return self.take_session(session_id) is not None

    def delete_user_sessions(self, user_id: str, *, keep: Optional[str] = None) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, session in self.sessions.items()
                if session.user_id == user_id and sid != keep
            ]
            for sid in doomed:
                self.sessions.pop(sid, None)
            return len(doomed)

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in doomed:
                self.sessions.pop(sid, None)
            return len(doomed)

    # -- token records -----------------------------------------------------

    def put_token_record(self, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            self.token_records[record.jti] = replace(record)
            return replace(record)

    def get_token_record(self, jti: str) -> Optional[TokenRecord]:
        record = self.token_records.get(jti)
        return replace(record) if record else None

    def revoke_token_record(self, jti: str, at: datetime) -> bool:
        """Set ``revoked_at`` if still unset. Returns True for the caller that revoked."""
        with self._keys.hold(f"token:{jti}"):
            record = self.token_records.get(jti)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = at
            return True

    def revoke_user_tokens(self, user_id: str, at: datetime) -> int:
        count = 0
        with self._data_lock:
            jtis = [
                r.jti
                for r in self.token_records.values()
                if r.user_id == user_id and r.revoked_at is None
            ]
        for jti in jtis:
            if self.revoke_token_record(jti, at):
                count += 1
        return count

    def purge_expired_token_records(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [jti for jti, r in self.token_records.items() if now >= r.expires_at]
            for jti in doomed:
                self.token_records.pop(jti, None)
            return len(doomed)

    # -- mfa ---------------------------------------------------------------

    def put_mfa_secret(self, record: MFASecret) -> MFASecret:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for mfa", {"user_id": record.user_id}
                )
            stored = replace(
                record,
                secret=self._encrypt_mfa_secret(record.secret),
                backup_codes=set(record.backup_codes),
                used_backup_codes=set(record.used_backup_codes),
            )
            self.mfa_secrets[record.user_id] = stored
            return self._mfa_copy(stored)

    def _mfa_copy(self, stored: MFASecret) -> MFASecret:
        return replace(
            stored,
            secret=self._decrypt_mfa_secret(stored.secret),
            backup_codes=set(stored.backup_codes),
            used_backup_codes=set(stored.used_backup_codes),
        )

    def get_mfa_secret(self, user_id: str) -> Optional[MFASecret]:
        with self._data_lock:
            stored = self.mfa_secrets.get(user_id)
            return self._mfa_copy(stored) if stored else None

    def mark_mfa_verified(self, user_id: str, at: datetime) -> bool:
        with self._data_lock:
            stored = self.mfa_secrets.get(user_id)
            if not stored:
                return False
            if stored.verified_at is None:
                stored.verified_at = at
            return True

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> bool:
        with self._data_lock:
            stored = self.mfa_secrets.get(user_id)
            if not stored:
                return False
            stored.enabled = enabled
            return True

    def advance_mfa_counter(self, user_id: str, counter: int) -> bool:
        """Record an accepted TOTP time-step; refuses steps at or below the last one."""
        with self._keys.hold(f"mfa:{user_id}"):
            stored = self.mfa_secrets.get(user_id)
            if not stored:
                return False
            if stored.last_used_counter is not None and counter <= stored.last_used_counter:
                return False
            stored.last_used_counter = counter
            return True

    def consume_backup_code(self, user_id: str, code_digest: str) -> bool:
        """Move a backup code from unused to used. Exactly one caller per code succeeds."""
        with self._keys.hold(f"mfa:{user_id}"):
            stored = self.mfa_secrets.get(user_id)
            if not stored or code_digest not in stored.backup_codes:
                return False
            stored.backup_codes.discard(code_digest)
            stored.used_backup_codes.add(code_digest)
            return True

    def replace_backup_codes(self, user_id: str, digests: set[str]) -> bool:
        with self._keys.hold(f"mfa:{user_id}"):
            stored = self.mfa_secrets.get(user_id)
            if not stored:
                return False
            stored.backup_codes = set(digests)
            stored.used_backup_codes = set()
            return True

    def delete_mfa_secret(self, user_id: str) -> bool:
        with self._data_lock:
            return self.mfa_secrets.pop(user_id, None) is not None

    def put_mfa_challenge(self, challenge: MFAChallenge) -> MFAChallenge:
        with self._data_lock:
            self.mfa_challenges[challenge.id] = replace(challenge)
            return replace(challenge)

    def get_mfa_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        challenge = self.mfa_challenges.get(challenge_id)
        return replace(challenge) if challenge else None

    def take_mfa_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        with self._keys.hold(f"challenge:{challenge_id}"), self._data_lock:
            return self.mfa_challenges.pop(challenge_id, None)

    def purge_expired_mfa_challenges(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [cid for cid, c in self.mfa_challenges.items() if now >= c.expires_at]
            for cid in doomed:
                self.mfa_challenges.pop(cid, None)
            return len(doomed)

    # -- audit -------------------------------------------------------------

    def append_audit(
        self,
        action: str,
        status: str,
        *,
        user_id: Optional[str],
        timestamp: datetime,
        metadata: Optional[dict] = None,
    ) -> AuditLogEntry:
        with self._seq_lock:
            self._audit_seq += 1
            entry = AuditLogEntry(
                id=self._audit_seq,
                action=action,
                status=status,
                timestamp=timestamp,
                user_id=user_id,
                metadata=dict(metadata or {}),
            )
            self.audit_log.append(entry)
        return replace(entry, metadata=dict(entry.metadata))

    def list_audit(
        self, *, limit: Optional[int] = None, user_id: Optional[str] = None
    ) -> List[AuditLogEntry]:
        """Newest first."""
        with self._seq_lock:
            entries = list(self.audit_log)
        if user_id is not None:
            entries = [e for e in entries if e.user_id == user_id]
        entries.reverse()
        if limit is not None:
            entries = entries[: max(limit, 0)]
        return [replace(e, metadata=dict(e.metadata)) for e in entries]

    # -- oauth -------------------------------------------------------------

    def put_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        with self._data_lock:
            if code.code in self.authorization_codes:
                raise ConstraintViolation("authorization code collision", {"field": "code"})
            self.authorization_codes[code.code] = replace(code)
            return replace(code)

    def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        record = self.authorization_codes.get(code)
        return replace(record) if record else None

    def consume_authorization_code(self, code: str) -> bool:
        """Flip ``used`` from False to True. Returns True only for the first caller."""
        with self._keys.hold(f"code:{code}"):
            record = self.authorization_codes.get(code)
            if not record or record.used:
                return False
            record.used = True
            return True

    def put_oauth_token(self, record: OAuthTokenRecord) -> OAuthTokenRecord:
        with self._data_lock:
            self.oauth_tokens[record.access_token] = replace(record)
            self._oauth_refresh_index[record.refresh_token] = record.access_token
            return replace(record)

    def get_oauth_token(self, access_token: str) -> Optional[OAuthTokenRecord]:
        record = self.oauth_tokens.get(access_token)
        return replace(record) if record else None

    def find_oauth_token_by_refresh(self, refresh_token: str) -> Optional[OAuthTokenRecord]:
        with self._data_lock:
            access_token = self._oauth_refresh_index.get(refresh_token)
            record = self.oauth_tokens.get(access_token) if access_token else None
            return replace(record) if record else None

    def replace_oauth_access_token(
        self, refresh_token: str, access_token: str, expires_at: datetime
    ) -> Optional[OAuthTokenRecord]:
        """Rotate the access token of the record bound to ``refresh_token`` in place."""
        with self._keys.hold(f"refresh:{refresh_token}"), self._data_lock:
            old_access = self._oauth_refresh_index.get(refresh_token)
            record = self.oauth_tokens.pop(old_access, None) if old_access else None
            if not record:
                return None
            record.access_token = access_token
            record.expires_at = expires_at
            self.oauth_tokens[access_token] = record
            self._oauth_refresh_index[refresh_token] = access_token
            return replace(record)

    def delete_oauth_token(self, token: str) -> bool:
        with self._data_lock:
            access_token = token if token in self.oauth_tokens else self._oauth_refresh_index.get(token)
            record = self.oauth_tokens.pop(access_token, None) if access_token else None
            if not record:
                return False
            self._oauth_refresh_index.pop(record.refresh_token, None)
            return True

    def purge_expired_oauth(self, now: datetime) -> int:
        with self._data_lock:
            codes = [c for c, r in self.authorization_codes.items() if now >= r.expires_at]
            for code in codes:
                self.authorization_codes.pop(code, None)
            # A record lives as long as its refresh token
            tokens = [
                t for t, r in self.oauth_tokens.items() if now >= r.refresh_expires_at
            ]
            for token in tokens:
                record = self.oauth_tokens.pop(token)
                self._oauth_refresh_index.pop(record.refresh_token, None)
            return len(codes) + len(tokens)
