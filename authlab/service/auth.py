from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from authlab.logging import get_logger
from authlab.service import audit as audit_actions
from authlab.service.audit import AuditLog
from authlab.service.directory import MIN_PASSWORD_LENGTH, IdentityDirectory
from authlab.service.errors import (
    InvalidCredentialsError,
    InvalidMFACodeError,
    MFARequiredError,
    UserNotFoundError,
    ValidationError,
)
from authlab.service.mfa import MFAEngine, MFASetup
from authlab.service.passwords import CredentialVerifier
from authlab.service.sessions import SessionManager
from authlab.service.tokens import TokenPair, TokenService
from authlab.storage.common import AuthStore
from authlab.storage.models import MFAChallenge, Session, User, utcnow

MODE_SESSION = "session"
MODE_JWT = "jwt"


@dataclass
class LoginResult:
    user: User
    session: Optional[Session] = None
    tokens: Optional[TokenPair] = None
    mfa_required: bool = False
    challenge_id: Optional[str] = None


class AuthService:
    """Login orchestration across directory, credentials, MFA, sessions and tokens.

    A password login for a user with MFA enabled never issues credentials
    directly: it returns a short-lived, single-use challenge that must be
    completed with a TOTP or backup code.
    """

    def __init__(
        self,
        store: AuthStore,
        directory: IdentityDirectory,
        passwords: CredentialVerifier,
        sessions: SessionManager,
        tokens: TokenService,
        mfa: MFAEngine,
        audit: AuditLog,
        *,
        mfa_challenge_ttl_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.passwords = passwords
        self.sessions = sessions
        self.tokens = tokens
        self.mfa = mfa
        self.audit = audit
        self.mfa_challenge_ttl_seconds = mfa_challenge_ttl_seconds
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    def _lookup(self, login: str) -> Optional[User]:
        try:
            return self.directory.find_by_login(login)
        except UserNotFoundError:
            return None

    async def _check_credentials(self, login: str, password: str) -> User:
        user = self._lookup(login)
        # Always pay for one argon2 verification, known user or not
        ok = await self.passwords.verify_user_async(user, password or "")
        if not user or not ok:
            reason = "unknown_user" if not user else "bad_password"
            self.audit.failure(
                audit_actions.LOGIN_FAILURE,
                user_id=user.id if user else None,
                username=login,
                reason=reason,
            )
            self.logger.info("login_failed", reason=reason)
            raise InvalidCredentialsError(reason=reason)
        if self.passwords.needs_rehash(user.password_hash):
            new_hash = await self.passwords.hash_async(password)
            user = self.directory.update_password_hash(user.id, new_hash)
            self.logger.info("password_rehashed", user_id=user.id)
        return user

    def _open_challenge(self, user: User, mode: str) -> MFAChallenge:
        challenge = self.store.put_mfa_challenge(
            MFAChallenge(
                id=secrets.token_urlsafe(32),
                user_id=user.id,
                expires_at=self._clock() + timedelta(seconds=self.mfa_challenge_ttl_seconds),
                mode=mode,
            )
        )
        self.audit.success(
            audit_actions.LOGIN_SUCCESS, user_id=user.id, stage="password", mfa_required=True
        )
        return challenge

    async def login(
        self, login: str, password: str, *, prior_session_id: Optional[str] = None
    ) -> LoginResult:
        """Password login that ends in a session or an MFA challenge.

        Raises:
            InvalidCredentialsError: unknown user or wrong password.
        """
        user = await self._check_credentials(login, password)
        if user.mfa_enabled:
            # The pre-login id is dropped here too; a new one comes with the challenge result
            self.sessions.destroy(prior_session_id)
            challenge = self._open_challenge(user, MODE_SESSION)
            return LoginResult(user=user, mfa_required=True, challenge_id=challenge.id)
        session = self.sessions.create(user.id, prior_session_id=prior_session_id)
        self.audit.success(audit_actions.LOGIN_SUCCESS, user_id=user.id, method=MODE_SESSION)
        return LoginResult(user=user, session=session)

    async def issue_tokens(self, login: str, password: str) -> LoginResult:
        """Password login that ends in a JWT pair.

        Raises:
            InvalidCredentialsError: unknown user or wrong password.
            MFARequiredError: the user has MFA enabled; ``detail`` carries the
                challenge id to complete.
        """
        user = await self._check_credentials(login, password)
        if user.mfa_enabled:
            challenge = self._open_challenge(user, MODE_JWT)
            raise MFARequiredError(
                detail={"challenge_id": challenge.id}, reason="mfa_enabled"
            )
        pair = self.tokens.issue_pair(user)
        self.audit.success(audit_actions.LOGIN_SUCCESS, user_id=user.id, method=MODE_JWT)
        return LoginResult(user=user, tokens=pair)

    def rate_limit_identity(self, login: str) -> str:
        """Limiter key for password attempts: the account when it exists.

        Username and email spellings of one account share a key; unknown
        logins are keyed by the normalized string.
        """
        user = self._lookup(login)
        if user:
            return f"user:{user.id}"
        return f"login:{(login or '').strip().lower()}"

    def challenge_owner(self, challenge_id: str) -> Optional[str]:
        """User id behind a pending MFA challenge, if any."""
        challenge = self.store.get_mfa_challenge(challenge_id) if challenge_id else None
        return challenge.user_id if challenge else None

    def complete_mfa_login(
        self,
        challenge_id: str,
        code: str,
        *,
        use_backup_code: bool = False,
        prior_session_id: Optional[str] = None,
    ) -> LoginResult:
        """Finish a login with a second factor.

        The challenge is taken before the code is checked, so concurrent
        attempts on one challenge cannot each spend a backup code. A wrong
        code puts it back, open for another attempt until it expires.
        """
        challenge = self.store.take_mfa_challenge(challenge_id) if challenge_id else None
        if not challenge or self._clock() >= challenge.expires_at:
            self.audit.failure(audit_actions.MFA_VERIFY_FAILED, reason="challenge_invalid")
            raise InvalidMFACodeError(reason="challenge_invalid")
        try:
            if use_backup_code:
                self.mfa.verify_backup_code(challenge.user_id, code)
            else:
                self.mfa.verify_user_code(challenge.user_id, code)
        except InvalidMFACodeError:
            self.store.put_mfa_challenge(challenge)
            raise
        user = self.directory.find_by_id(challenge.user_id)
        if challenge.mode == MODE_JWT:
            pair = self.tokens.issue_pair(user)
            self.audit.success(
                audit_actions.LOGIN_SUCCESS, user_id=user.id, method=MODE_JWT, mfa=True
            )
            return LoginResult(user=user, tokens=pair)
        session = self.sessions.create(user.id, prior_session_id=prior_session_id)
        self.audit.success(
            audit_actions.LOGIN_SUCCESS, user_id=user.id, method=MODE_SESSION, mfa=True
        )
        return LoginResult(user=user, session=session)

    def refresh_tokens(self, refresh_token: str) -> TokenPair:
        return self.tokens.refresh(refresh_token)

    def logout(self, session_id: Optional[str]) -> None:
        self.sessions.destroy(session_id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        session_id: Optional[str] = None,
    ) -> Optional[Session]:
        """Rotate the password and every credential derived from the old one.

        Other sessions and all issued JWTs are revoked; the caller's session,
        if given, is regenerated.
        """
        user = self.directory.find_by_id(user_id)
        if not await self.passwords.verify_user_async(user, current_password or ""):
            self.audit.failure(
                audit_actions.PASSWORD_CHANGE, user_id=user_id, reason="bad_password"
            )
            raise InvalidCredentialsError(reason="bad_password")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "new_password"},
            )
        self.directory.update_password_hash(
            user_id, await self.passwords.hash_async(new_password)
        )
        self.tokens.revoke_all_for_user(user_id)
        self.sessions.destroy_all_for_user(user_id, keep=session_id)
        self.audit.success(audit_actions.PASSWORD_CHANGE, user_id=user_id)
        if session_id:
            return self.sessions.regenerate(session_id)
        return None

    def set_role(
        self, user_id: str, role: str, *, session_id: Optional[str] = None
    ) -> Optional[Session]:
        """Change a user's role.

        Outstanding JWTs carry the old role and are revoked. The given session
        is regenerated; without one, all of the user's sessions end.
        """
        self.directory.update_role(user_id, role)
        self.tokens.revoke_all_for_user(user_id)
        if session_id:
            self.sessions.destroy_all_for_user(user_id, keep=session_id)
            return self.sessions.regenerate(session_id)
        self.sessions.destroy_all_for_user(user_id)
        return None

    def setup_mfa(self, user_id: str) -> MFASetup:
        user = self.directory.find_by_id(user_id)
        return self.mfa.setup(user.id, user.email)

    def confirm_mfa(
        self, user_id: str, code: str, *, session_id: Optional[str] = None
    ) -> Optional[Session]:
        """Enable MFA with a first TOTP code; the caller's session is regenerated."""
        self.mfa.confirm(user_id, code)
        if session_id:
            return self.sessions.regenerate(session_id)
        return None
