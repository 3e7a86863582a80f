from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from authlab.logging import get_logger
from authlab.service import audit as audit_actions
from authlab.service.audit import AuditLog
from authlab.service.directory import IdentityDirectory
from authlab.service.errors import (
    AuthenticationError,
    AuthenticationRequiredError,
    UserNotFoundError,
)
from authlab.service.sessions import SessionManager
from authlab.service.tokens import ACCESS, TokenService

SESSION_COOKIE = "SessionID"


@dataclass(frozen=True)
class AuthRequest:
    """The credential-bearing parts of an incoming request."""

    session_id: Optional[str] = None
    authorization: Optional[str] = None

    @classmethod
    def from_http(cls, request: Any, *, cookie_name: str = SESSION_COOKIE) -> "AuthRequest":
        """Build from anything exposing ``cookies`` and ``headers`` mappings."""
        return cls(
            session_id=request.cookies.get(cookie_name),
            authorization=request.headers.get("authorization"),
        )


@dataclass(frozen=True)
class Principal:
    user_id: str
    method: str
    username: str = ""
    role: str = "user"
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "method": self.method,
            "username": self.username,
            "role": self.role,
        }


class StrategyRejected(Exception):
    """A strategy saw credentials it handles and rejected them."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AuthStrategy(Protocol):
    name: str

    def try_authenticate(self, request: AuthRequest) -> Optional[Principal]:
        """Return a principal, ``None`` when the request carries no credential
        for this strategy, or raise ``StrategyRejected``."""
        ...


class SessionStrategy:
    name = "session"

    def __init__(self, sessions: SessionManager, directory: IdentityDirectory) -> None:
        self.sessions = sessions
        self.directory = directory

    def try_authenticate(self, request: AuthRequest) -> Optional[Principal]:
        if not request.session_id:
            return None
        try:
            session = self.sessions.validate(request.session_id)
            user = self.directory.find_by_id(session.user_id)
        except (AuthenticationError, UserNotFoundError) as exc:
            raise StrategyRejected(exc.reason) from exc
        return Principal(
            user_id=user.id,
            method="session",
            username=user.username,
            role=user.role,
            session_id=session.id,
        )


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from ``Bearer <token>``; anything else is ``None``."""
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


class BearerTokenStrategy:
    name = "jwt"

    def __init__(self, tokens: TokenService, directory: IdentityDirectory) -> None:
        self.tokens = tokens
        self.directory = directory

    def try_authenticate(self, request: AuthRequest) -> Optional[Principal]:
        if not request.authorization:
            return None
        token = parse_bearer(request.authorization)
        if token is None:
            raise StrategyRejected("authorization_header_malformed")
        try:
            claims = self.tokens.require(token, ACCESS)
            user = self.directory.find_by_id(claims["sub"])
        except (AuthenticationError, UserNotFoundError) as exc:
            raise StrategyRejected(exc.reason) from exc
        return Principal(
            user_id=user.id,
            method="jwt",
            username=user.username,
            role=user.role,
        )


class AuthGateway:
    """Single entry point for protected operations.

    Strategies run in order and the first principal wins. Every failure
    mode collapses into one ``AuthenticationRequiredError``; the precise
    reasons go to the log and the audit trail only.
    """

    def __init__(self, strategies: Sequence[AuthStrategy], audit: AuditLog) -> None:
        self.strategies = list(strategies)
        self.audit = audit
        self.logger = get_logger(__name__)

    def authenticate(self, request: AuthRequest) -> Principal:
        reasons = []
        for strategy in self.strategies:
            try:
                principal = strategy.try_authenticate(request)
            except StrategyRejected as exc:
                reasons.append(f"{strategy.name}:{exc.reason}")
                continue
            if principal is not None:
                return principal
        if not reasons:
            self.logger.info("auth_gateway_rejected", reasons=["no_credentials"])
            raise AuthenticationRequiredError(reason="no_credentials")
        reason = ",".join(reasons)
        self.logger.info("auth_gateway_rejected", reasons=reasons)
        self.audit.failure(audit_actions.PROTECTED_RESOURCE_ACCESS, reason=reason)
        raise AuthenticationRequiredError(reason=reason)

    def try_authenticate(self, request: AuthRequest) -> Optional[Principal]:
        try:
            return self.authenticate(request)
        except AuthenticationRequiredError:
            return None
