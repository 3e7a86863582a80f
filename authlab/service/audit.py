from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Optional

from authlab.logging import get_logger
from authlab.storage.common import AuthStore
from authlab.storage.models import AuditLogEntry, utcnow

# Action names
LOGIN_SUCCESS = "login_success"
LOGIN_FAILURE = "login_failure"
LOGOUT = "logout"
SESSION_CREATE = "session_create"
SESSION_CHECK = "session_check"
SESSION_REGENERATE = "session_regenerate"
SESSION_INVALID = "session_invalid"
JWT_SIGN = "jwt_sign"
JWT_VERIFY = "jwt_verify"
TOKEN_REFRESH = "token_refresh"
TOKEN_REVOKE = "token_revoke"
MFA_SETUP = "mfa_setup"
MFA_ENABLE = "mfa_enable"
MFA_DISABLE = "mfa_disable"
MFA_VERIFY = "mfa_verify"
MFA_VERIFY_FAILED = "mfa_verify_failed"
BACKUP_CODE_USED = "backup_code_used"
BACKUP_CODE_INVALID = "backup_code_invalid"
PASSWORD_CHANGE = "password_change"
ROLE_CHANGE = "role_change"
USER_CREATE = "user_create"
USER_DELETE = "user_delete"
OAUTH_AUTHORIZE = "oauth_authorize"
OAUTH_TOKEN = "oauth_token"
OAUTH_REFRESH = "oauth_refresh"
OAUTH_USERINFO = "oauth_userinfo"
PROTECTED_RESOURCE_ACCESS = "protected_resource_access"
RATE_LIMITED = "rate_limited"

SUCCESS = "success"
FAILURE = "failure"


class AuditLog:
    """Append-only record of authentication events.

    Every entry is also emitted as an ``audit_event`` log line so the
    structured log carries the same trail.
    """

    def __init__(
        self, store: AuthStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    def record(
        self,
        action: str,
        status: str = SUCCESS,
        *,
        user_id: Optional[str] = None,
        **metadata: Any,
    ) -> AuditLogEntry:
        entry = self.store.append_audit(
            action,
            status,
            user_id=user_id,
            timestamp=self._clock(),
            metadata=metadata,
        )
        self.logger.info(
            "audit_event",
            audit_id=entry.id,
            action=action,
            status=status,
            user_id=user_id,
            **metadata,
        )
        return entry

    def success(self, action: str, *, user_id: Optional[str] = None, **metadata: Any) -> AuditLogEntry:
        return self.record(action, SUCCESS, user_id=user_id, **metadata)

    def failure(self, action: str, *, user_id: Optional[str] = None, **metadata: Any) -> AuditLogEntry:
        return self.record(action, FAILURE, user_id=user_id, **metadata)

    def recent(self, limit: int = 20) -> List[AuditLogEntry]:
        """Most recent entries first."""
        return self.store.list_audit(limit=limit)

    def for_user(self, user_id: str, limit: Optional[int] = None) -> List[AuditLogEntry]:
        return self.store.list_audit(limit=limit, user_id=user_id)
