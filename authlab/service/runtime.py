from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional

from authlab.config import Settings, get_settings, reset_settings_cache
from authlab.logging import get_logger
from authlab.service.audit import AuditLog
from authlab.service.auth import AuthService
from authlab.service.directory import IdentityDirectory
from authlab.service.gateway import AuthGateway, BearerTokenStrategy, SessionStrategy
from authlab.service.mfa import MFAEngine
from authlab.service.oauth import OAuthEmulator
from authlab.service.passwords import CredentialVerifier
from authlab.service.rate_limit import RateLimiter
from authlab.service.sessions import SessionManager
from authlab.service.tokens import TokenService
from authlab.storage.memory import MemoryStore
from authlab.storage.models import utcnow

logger = get_logger(__name__)


class Runtime:
    """Builds one store per process and hands it to every component."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        s = self.settings
        self.store = MemoryStore(mfa_encryption_key=s.mfa_cipher_key)
        self.audit = AuditLog(self.store, clock=self.clock)
        self.passwords = CredentialVerifier(
            time_cost=s.password_hash_time_cost,
            memory_cost_kib=s.password_hash_memory_kib,
        )
        self.directory = IdentityDirectory(
            self.store, self.passwords, self.audit, clock=self.clock
        )
        self.sessions = SessionManager(
            self.store,
            self.directory,
            self.audit,
            ttl_seconds=s.session_ttl_seconds,
            id_bytes=s.session_id_bytes,
            clock=self.clock,
        )
        self.tokens = TokenService(
            self.store,
            self.directory,
            self.audit,
            secret=s.jwt_secret or "",
            issuer=s.jwt_issuer,
            audience=s.jwt_audience,
            access_ttl_seconds=s.access_token_ttl_seconds,
            refresh_ttl_seconds=s.refresh_token_ttl_seconds,
            clock=self.clock,
        )
        self.mfa = MFAEngine(
            self.store,
            self.directory,
            self.audit,
            issuer=s.mfa_issuer,
            window=s.mfa_window,
            time_step=s.mfa_time_step_seconds,
            backup_code_count=s.mfa_backup_code_count,
            clock=self.clock,
        )
        self.oauth = OAuthEmulator(
            self.store,
            self.directory,
            self.audit,
            clients=s.oauth_clients,
            code_ttl_seconds=s.oauth_code_ttl_seconds,
            access_ttl_seconds=s.oauth_access_ttl_seconds,
            refresh_ttl_seconds=s.refresh_token_ttl_seconds,
            clock=self.clock,
        )
        self.gateway = AuthGateway(
            [
                SessionStrategy(self.sessions, self.directory),
                BearerTokenStrategy(self.tokens, self.directory),
            ],
            self.audit,
        )
        self.auth = AuthService(
            self.store,
            self.directory,
            self.passwords,
            self.sessions,
            self.tokens,
            self.mfa,
            self.audit,
            mfa_challenge_ttl_seconds=s.mfa_challenge_ttl_seconds,
            clock=self.clock,
        )
        self.rate_limiter = RateLimiter(enabled=s.rate_limit_enabled, clock=self.clock)
        if s.seed_demo_users:
            self.directory.seed_demo_users()
        logger.info(
            "runtime_initialized",
            app_env=s.app_env.value,
            rate_limit_enabled=s.rate_limit_enabled,
        )

    def cleanup_expired(self) -> dict:
        """One maintenance sweep; every step only removes already-expired entries."""
        return {
            "oauth": self.oauth.cleanup(),
            "sessions": self.sessions.sweep_expired(),
            "token_records": self.tokens.sweep_expired(),
            "mfa_challenges": self.store.purge_expired_mfa_challenges(self.clock()),
            "rate_limit_buckets": self.rate_limiter.sweep_idle(),
        }


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the first check skips the lock once the
    runtime exists, the second prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
