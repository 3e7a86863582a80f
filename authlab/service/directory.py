from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, List, Optional

from authlab.logging import get_logger
from authlab.service import audit as audit_actions
from authlab.service.audit import AuditLog
from authlab.service.errors import ConflictError, UserNotFoundError, ValidationError
from authlab.service.passwords import CredentialVerifier
from authlab.storage.common import AuthStore, normalize_email, normalize_username
from authlab.storage.errors import ConstraintViolation
from authlab.storage.models import User, utcnow

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8
ROLES = ("admin", "user")

DEMO_USERS = (
    ("admin", "admin@example.com", "admin123", "admin"),
    ("user", "user@example.com", "user123", "user"),
    ("demo", "demo@example.com", "demo123", "user"),
)


class IdentityDirectory:
    """Owner of user records. Lookups are pure reads."""

    def __init__(
        self,
        store: AuthStore,
        passwords: CredentialVerifier,
        audit: AuditLog,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.audit = audit
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    def find_by_username(self, username: str) -> User:
        user = self.store.get_user_by_username(username)
        if not user:
            raise UserNotFoundError(reason="username_not_found")
        return user

    def find_by_id(self, user_id: str) -> User:
        user = self.store.get_user(user_id) if user_id else None
        if not user:
            raise UserNotFoundError(reason="user_id_not_found")
        return user

    def find_by_email(self, email: str) -> User:
        user = self.store.get_user_by_email(email)
        if not user:
            raise UserNotFoundError(reason="email_not_found")
        return user

    def find_by_login(self, login: str) -> User:
        """Resolve a username or an email address."""
        if "@" in (login or ""):
            return self.find_by_email(login)
        return self.find_by_username(login)

    def exists(self, user_id: str) -> bool:
        return bool(user_id) and self.store.get_user(user_id) is not None

    def list_users(self) -> List[User]:
        return self.store.list_users()

    def create(
        self,
        username: str,
        email: str,
        password: str,
        role: str = "user",
        *,
        enforce_password_policy: bool = True,
    ) -> User:
        username = normalize_username(username)
        email = normalize_email(email)
        if not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "username must be 3-20 letters, digits or underscores",
                detail={"field": "username"},
            )
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        if enforce_password_policy and len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"field": "role"})
        user = User.new(
            username, email, self.passwords.hash(password), role, now=self._clock()
        )
        try:
            created = self.store.create_user(user)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.audit.success(audit_actions.USER_CREATE, user_id=created.id, username=username)
        self.logger.info("user_created", user_id=created.id, role=role)
        return created

    def update_role(self, user_id: str, role: str) -> User:
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"field": "role"})
        user = self.store.update_user_role(user_id, role)
        if not user:
            raise UserNotFoundError(reason="user_id_not_found")
        self.audit.success(audit_actions.ROLE_CHANGE, user_id=user_id, role=role)
        return user

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> User:
        user = self.store.set_user_mfa_enabled(user_id, enabled)
        if not user:
            raise UserNotFoundError(reason="user_id_not_found")
        return user

    def update_password_hash(self, user_id: str, password_hash: str) -> User:
        user = self.store.update_password_hash(user_id, password_hash)
        if not user:
            raise UserNotFoundError(reason="user_id_not_found")
        return user

    def delete(self, user_id: str) -> None:
        if not self.store.delete_user(user_id):
            raise UserNotFoundError(reason="user_id_not_found")
        self.audit.success(audit_actions.USER_DELETE, user_id=user_id)

    def seed_demo_users(self) -> List[User]:
        """Create the demo accounts if they are not present yet."""
        seeded: List[User] = []
        for username, email, password, role in DEMO_USERS:
            if self.store.get_user_by_username(username):
                continue
            # Demo passwords predate the length policy
            seeded.append(
                self.create(
                    username, email, password, role, enforce_password_policy=False
                )
            )
        if seeded:
            self.logger.info("demo_users_seeded", count=len(seeded))
        return seeded
