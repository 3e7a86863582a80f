"""Login orchestration tests against a fully wired runtime."""

import threading

import pytest
from argon2 import extract_parameters

from authlab.service import audit as audit_actions
from authlab.service.errors import (
    AuthenticationRequiredError,
    InvalidCredentialsError,
    InvalidMFACodeError,
    MFARequiredError,
    SessionNotFoundError,
    TokenRevokedError,
    ValidationError,
)
from authlab.service.gateway import AuthRequest
from authlab.service.runtime import Runtime


@pytest.fixture
def rt(clock):
    return Runtime(clock=clock)


def _enroll(rt, user, clock):
    setup = rt.auth.setup_mfa(user.id)
    rt.auth.confirm_mfa(user.id, rt.mfa.generate_code(setup.secret))
    # Step past the accepted time-step so the next code is not a replay
    clock.advance(30)
    return setup


class TestPasswordLogin:
    async def test_session_login(self, rt):
        result = await rt.auth.login("admin", "admin123")
        assert result.session is not None
        assert result.user.role == "admin"
        assert rt.sessions.validate(result.session.id).user_id == result.user.id

    async def test_login_by_email(self, rt):
        result = await rt.auth.login("demo@example.com", "demo123")
        assert result.user.username == "demo"

    async def test_wrong_password_and_unknown_user_look_identical(self, rt):
        with pytest.raises(InvalidCredentialsError) as wrong:
            await rt.auth.login("admin", "nope")
        with pytest.raises(InvalidCredentialsError) as unknown:
            await rt.auth.login("ghost", "nope")
        assert wrong.value.message == unknown.value.message == "Invalid username or password"
        assert wrong.value.status_code == unknown.value.status_code == 401
        assert wrong.value.reason != unknown.value.reason

    async def test_failed_login_is_audited(self, rt):
        with pytest.raises(InvalidCredentialsError):
            await rt.auth.login("admin", "nope")
        entry = rt.audit.recent(1)[0]
        assert entry.action == audit_actions.LOGIN_FAILURE
        assert entry.status == audit_actions.FAILURE

    async def test_prior_session_is_destroyed(self, rt):
        planted = (await rt.auth.login("user", "user123")).session
        result = await rt.auth.login("admin", "admin123", prior_session_id=planted.id)
        assert result.session.id != planted.id
        with pytest.raises(SessionNotFoundError):
            rt.sessions.validate(planted.id)

    async def test_jwt_login(self, rt):
        result = await rt.auth.issue_tokens("user", "user123")
        claims = rt.tokens.require(result.tokens.access_token)
        assert claims["username"] == "user"


class TestMFALogin:
    async def test_session_login_requires_second_factor(self, rt, clock):
        user = rt.directory.find_by_username("demo")
        setup = _enroll(rt, user, clock)
        result = await rt.auth.login("demo", "demo123")
        assert result.mfa_required
        assert result.session is None
        done = rt.auth.complete_mfa_login(
            result.challenge_id, rt.mfa.generate_code(setup.secret)
        )
        assert done.session is not None
        assert rt.sessions.validate(done.session.id).user_id == user.id

    async def test_challenge_is_single_use(self, rt, clock):
        user = rt.directory.find_by_username("demo")
        setup = _enroll(rt, user, clock)
        result = await rt.auth.login("demo", "demo123")
        rt.auth.complete_mfa_login(result.challenge_id, rt.mfa.generate_code(setup.secret))
        clock.advance(30)
        with pytest.raises(InvalidMFACodeError):
            rt.auth.complete_mfa_login(
                result.challenge_id, rt.mfa.generate_code(setup.secret)
            )

    async def test_wrong_code_keeps_challenge_open(self, rt, clock):
        user = rt.directory.find_by_username("demo")
        setup = _enroll(rt, user, clock)
        result = await rt.auth.login("demo", "demo123")
        with pytest.raises(InvalidMFACodeError):
            rt.auth.complete_mfa_login(result.challenge_id, "not-a-code")
        done = rt.auth.complete_mfa_login(
            result.challenge_id, rt.mfa.generate_code(setup.secret)
        )
        assert done.session is not None

    async def test_challenge_expires(self, rt, clock):
        user = rt.directory.find_by_username("demo")
        setup = _enroll(rt, user, clock)
        result = await rt.auth.login("demo", "demo123")
        clock.advance(rt.settings.mfa_challenge_ttl_seconds)
        with pytest.raises(InvalidMFACodeError):
            rt.auth.complete_mfa_login(
                result.challenge_id, rt.mfa.generate_code(setup.secret)
            )

    async def test_backup_code_completes_jwt_login(self, rt, clock):
        user = rt.directory.find_by_username("demo")
        setup = _enroll(rt, user, clock)
        with pytest.raises(MFARequiredError) as exc_info:
            await rt.auth.issue_tokens("demo", "demo123")
        challenge_id = exc_info.value.detail["challenge_id"]
        done = rt.auth.complete_mfa_login(
            challenge_id, setup.backup_codes[0], use_backup_code=True
        )
        assert done.tokens is not None
        assert rt.mfa.remaining_backup_codes(user.id) == 9

    async def test_racing_backup_codes_spend_only_one(self, rt, clock):
        user = rt.directory.find_by_username("demo")
        setup = _enroll(rt, user, clock)
        with pytest.raises(MFARequiredError) as exc_info:
            await rt.auth.issue_tokens("demo", "demo123")
        challenge_id = exc_info.value.detail["challenge_id"]
        barrier = threading.Barrier(4)
        wins = []
        losses = []

        def worker(code):
            barrier.wait()
            try:
                wins.append(
                    rt.auth.complete_mfa_login(challenge_id, code, use_backup_code=True)
                )
            except InvalidMFACodeError:
                losses.append(code)

        threads = [
            threading.Thread(target=worker, args=(code,)) for code in setup.backup_codes[:4]
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(losses) == 3
        assert rt.mfa.remaining_backup_codes(user.id) == 9

    async def test_rate_limit_identity_and_challenge_owner(self, rt):
        admin = rt.directory.find_by_username("admin")
        assert rt.auth.rate_limit_identity("admin") == f"user:{admin.id}"
        assert rt.auth.rate_limit_identity("Admin@Example.com") == f"user:{admin.id}"
        assert rt.auth.rate_limit_identity(" Ghost ") == "login:ghost"
        assert rt.auth.challenge_owner("missing") is None


class TestCredentialChanges:
    async def test_change_password_revokes_everything_else(self, rt):
        first = (await rt.auth.login("user", "user123")).session
        other = (await rt.auth.login("user", "user123")).session
        pair = (await rt.auth.issue_tokens("user", "user123")).tokens
        user_id = rt.directory.find_by_username("user").id

        new_session = await rt.auth.change_password(
            user_id, "user123", "a-much-better-password", session_id=first.id
        )

        assert new_session.id != first.id
        assert rt.sessions.validate(new_session.id)
        for stale in (first.id, other.id):
            with pytest.raises(SessionNotFoundError):
                rt.sessions.validate(stale)
        assert rt.tokens.verify(pair.access_token).error == "TokenRevoked"
        with pytest.raises(TokenRevokedError):
            rt.tokens.refresh(pair.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await rt.auth.login("user", "user123")
        assert (await rt.auth.login("user", "a-much-better-password")).session

    async def test_change_password_checks_current_and_policy(self, rt):
        user_id = rt.directory.find_by_username("user").id
        with pytest.raises(InvalidCredentialsError):
            await rt.auth.change_password(user_id, "wrong", "a-much-better-password")
        with pytest.raises(ValidationError):
            await rt.auth.change_password(user_id, "user123", "short")

    async def test_role_change_regenerates_session(self, rt):
        session = (await rt.auth.login("user", "user123")).session
        user_id = session.user_id
        new_session = rt.auth.set_role(user_id, "admin", session_id=session.id)
        assert new_session.id != session.id
        principal = rt.gateway.authenticate(AuthRequest(session_id=new_session.id))
        assert principal.role == "admin"

    async def test_role_change_without_session_ends_all_sessions(self, rt):
        session = (await rt.auth.login("user", "user123")).session
        rt.auth.set_role(session.user_id, "admin")
        with pytest.raises(AuthenticationRequiredError):
            rt.gateway.authenticate(AuthRequest(session_id=session.id))

    async def test_mfa_confirmation_regenerates_session(self, rt):
        session = (await rt.auth.login("user", "user123")).session
        setup = rt.auth.setup_mfa(session.user_id)
        new_session = rt.auth.confirm_mfa(
            session.user_id, rt.mfa.generate_code(setup.secret), session_id=session.id
        )
        assert new_session.id != session.id
        with pytest.raises(SessionNotFoundError):
            rt.sessions.validate(session.id)


class TestMaintenance:
    async def test_cleanup_expired_reports_counts(self, rt, clock):
        await rt.auth.login("user", "user123")
        await rt.auth.issue_tokens("user", "user123")
        rt.rate_limiter.check("203.0.113.9", "login", 10)
        clock.advance(rt.settings.session_ttl_seconds)
        purged = rt.cleanup_expired()
        assert purged["rate_limit_buckets"] == 1
        assert purged["sessions"] == 1
        assert purged["token_records"] == 1
        assert set(purged) == {
            "oauth",
            "sessions",
            "token_records",
            "mfa_challenges",
            "rate_limit_buckets",
        }


class _CountingHasher:
    def __init__(self, inner):
        self.inner = inner
        self.verified_hashes = []

    def verify(self, password_hash, password):
        self.verified_hashes.append(password_hash)
        return self.inner.verify(password_hash, password)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class TestTimingInvariance:
    @pytest.mark.parametrize("login", ["ghost", "admin"])
    async def test_failed_login_runs_one_full_verification(self, rt, monkeypatch, login):
        counting = _CountingHasher(rt.passwords._hasher)
        monkeypatch.setattr(rt.passwords, "_hasher", counting)
        with pytest.raises(InvalidCredentialsError):
            await rt.auth.login(login, "wrong-password")
        assert len(counting.verified_hashes) == 1
        admin = rt.directory.find_by_username("admin")
        assert extract_parameters(counting.verified_hashes[0]) == extract_parameters(
            admin.password_hash
        )
