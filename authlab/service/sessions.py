from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from authlab.logging import get_logger
from authlab.service import audit as audit_actions
from authlab.service.audit import AuditLog
from authlab.service.directory import IdentityDirectory
from authlab.service.errors import (
    SessionExpiredError,
    SessionNotFoundError,
    UserNotFoundError,
)
from authlab.storage.common import AuthStore
from authlab.storage.errors import ConstraintViolation
from authlab.storage.models import Session, utcnow


@dataclass
class SessionStatus:
    """Read-only view of a session for status displays."""

    session_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    seconds_remaining: int
    expired: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "seconds_remaining": self.seconds_remaining,
            "minutes_remaining": self.seconds_remaining // 60,
            "expired": self.expired,
        }


class SessionManager:
    """Server-side sessions keyed by unguessable identifiers.

    Lifecycle: active until ``expires_at`` (checked lazily on validation),
    then expired and purged; ``destroy`` removes a session at any point.
    """

    def __init__(
        self,
        store: AuthStore,
        directory: IdentityDirectory,
        audit: AuditLog,
        *,
        ttl_seconds: int = 86400,
        id_bytes: int = 32,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.audit = audit
        self.ttl_seconds = ttl_seconds
        self.id_bytes = id_bytes
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    def _new_id(self) -> str:
        return secrets.token_hex(self.id_bytes)

    def create(self, user_id: str, *, prior_session_id: Optional[str] = None) -> Session:
        """Issue a fresh session for ``user_id``.

        Any identifier the client presented before authenticating is
        destroyed rather than reused.
        """
        if prior_session_id:
            self.store.delete_session(prior_session_id)
        now = self._clock()
        while True:
            try:
                session = self.store.put_session(
                    Session.new(self._new_id(), user_id, self.ttl_seconds, now=now)
                )
                break
            except ConstraintViolation:
                self.logger.warning("session_id_collision")
        self.audit.success(
            audit_actions.SESSION_CREATE,
            user_id=user_id,
            replaced_prior=bool(prior_session_id),
        )
        return session

    def validate(self, session_id: str) -> Session:
        """Return the live session or raise.

        Raises:
            SessionNotFoundError: unknown or destroyed id.
            SessionExpiredError: the session reached ``expires_at``; it is purged.
            UserNotFoundError: the owning user was deleted; the session is purged.
        """
        session = self.store.get_session(session_id) if session_id else None
        if not session:
            raise SessionNotFoundError(reason="session_not_found")
        now = self._clock()
        if session.is_expired(now):
            self.store.delete_session(session_id)
            self.audit.failure(
                audit_actions.SESSION_INVALID, user_id=session.user_id, reason="session_expired"
            )
            raise SessionExpiredError(reason="session_expired")
        if not self.directory.exists(session.user_id):
            self.store.delete_session(session_id)
            self.audit.failure(
                audit_actions.SESSION_INVALID, user_id=session.user_id, reason="user_missing"
            )
            raise UserNotFoundError(reason="session_user_missing")
        touched = self.store.touch_session(session_id, now)
        if not touched:
            # Destroyed between lookup and touch
            raise SessionNotFoundError(reason="session_not_found")
        return touched

    def destroy(self, session_id: Optional[str]) -> None:
        """Idempotent delete."""
        if not session_id:
            return
        session = self.store.take_session(session_id)
        if session:
            self.audit.success(audit_actions.LOGOUT, user_id=session.user_id)

    def destroy_all_for_user(self, user_id: str, *, keep: Optional[str] = None) -> int:
        return self.store.delete_user_sessions(user_id, keep=keep)

    def regenerate(self, session_id: str) -> Session:
        """Replace ``session_id`` with a new identifier for the same user.

        The old identifier is taken atomically, so two concurrent
        regenerations of one session yield one new session, not two.
        """
        old = self.store.take_session(session_id) if session_id else None
        if not old:
            raise SessionNotFoundError(reason="session_not_found")
        if old.is_expired(self._clock()):
            raise SessionExpiredError(reason="session_expired")
        session = self.create(old.user_id)
        self.audit.success(audit_actions.SESSION_REGENERATE, user_id=old.user_id)
        return session

    def describe(self, session_id: str) -> SessionStatus:
        session = self.store.get_session(session_id) if session_id else None
        if not session:
            raise SessionNotFoundError(reason="session_not_found")
        now = self._clock()
        remaining = max(0, int((session.expires_at - now).total_seconds()))
        return SessionStatus(
            session_id=session.id,
            user_id=session.user_id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            last_activity=session.last_activity,
            seconds_remaining=remaining,
            expired=session.is_expired(now),
        )

    def sweep_expired(self) -> int:
        purged = self.store.purge_expired_sessions(self._clock())
        if purged:
            self.logger.info("sessions_swept", count=purged)
        return purged
