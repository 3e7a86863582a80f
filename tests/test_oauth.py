"""Unit tests for the OAuth 2.0 authorization-code emulator."""

import threading

import pytest

from authlab.service.errors import (
    OAuthInvalidClientError,
    OAuthInvalidGrantError,
    OAuthInvalidRequestError,
    OAuthInvalidTokenError,
    OAuthUnsupportedResponseTypeError,
)
from authlab.service.oauth import OAuthEmulator

CLIENT_ID = "mock-client-id"
CLIENT_SECRET = "mock-client-secret"
REDIRECT = "http://localhost:3000/callback"


@pytest.fixture
def oauth(store, directory, audit, clock):
    return OAuthEmulator(
        store,
        directory,
        audit,
        clients={CLIENT_ID: CLIENT_SECRET},
        code_ttl_seconds=600,
        access_ttl_seconds=3600,
        refresh_ttl_seconds=7 * 24 * 3600,
        clock=clock,
    )


def _grant(oauth, user, **overrides):
    params = {
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT,
        "scope": "openid email profile",
        "user_id": user.id,
        "state": "xyz",
    }
    params.update(overrides)
    return oauth.authorize(**params)


class TestAuthorize:
    def test_issues_code_and_echoes_state(self, oauth, alice):
        grant = _grant(oauth, alice)
        assert grant.code.startswith("code_")
        assert grant.state == "xyz"

    def test_codes_are_unique(self, oauth, alice):
        assert _grant(oauth, alice).code != _grant(oauth, alice).code

    @pytest.mark.parametrize("missing", ["client_id", "redirect_uri", "scope"])
    def test_missing_parameters(self, oauth, alice, missing):
        with pytest.raises(OAuthInvalidRequestError) as exc_info:
            _grant(oauth, alice, **{missing: ""})
        assert exc_info.value.oauth_error == "invalid_request"

    def test_only_code_response_type(self, oauth, alice):
        with pytest.raises(OAuthUnsupportedResponseTypeError):
            _grant(oauth, alice, response_type="token")


class TestExchange:
    def test_code_exchanges_once(self, oauth, alice):
        grant = _grant(oauth, alice)
        tokens = oauth.exchange_code(grant.code, CLIENT_ID, CLIENT_SECRET, REDIRECT)
        assert tokens.access_token.startswith("access_")
        assert tokens.refresh_token.startswith("refresh_")
        assert tokens.expires_in == 3600
        assert tokens.to_dict()["token_type"] == "Bearer"
        with pytest.raises(OAuthInvalidGrantError):
            oauth.exchange_code(grant.code, CLIENT_ID, CLIENT_SECRET, REDIRECT)

    def test_code_expires(self, oauth, alice, clock):
        grant = _grant(oauth, alice)
        clock.advance(600)
        with pytest.raises(OAuthInvalidGrantError):
            oauth.exchange_code(grant.code, CLIENT_ID, CLIENT_SECRET)

    def test_client_mismatch(self, oauth, alice):
        grant = _grant(oauth, alice, client_id="another-client")
        with pytest.raises(OAuthInvalidGrantError):
            oauth.exchange_code(grant.code, CLIENT_ID, CLIENT_SECRET)

    def test_redirect_uri_mismatch(self, oauth, alice):
        grant = _grant(oauth, alice)
        with pytest.raises(OAuthInvalidGrantError):
            oauth.exchange_code(grant.code, CLIENT_ID, CLIENT_SECRET, "http://evil.example/cb")

    def test_registered_client_needs_its_secret(self, oauth, alice):
        grant = _grant(oauth, alice)
        with pytest.raises(OAuthInvalidClientError):
            oauth.exchange_code(grant.code, CLIENT_ID, "wrong-secret")
        # A failed client check does not burn the code
        assert oauth.exchange_code(grant.code, CLIENT_ID, CLIENT_SECRET).access_token

    def test_unregistered_client_is_accepted(self, oauth, alice):
        grant = _grant(oauth, alice, client_id="sandbox-app")
        assert oauth.exchange_code(grant.code, "sandbox-app").access_token

    def test_unknown_code(self, oauth):
        with pytest.raises(OAuthInvalidGrantError):
            oauth.exchange_code("code_nope", CLIENT_ID, CLIENT_SECRET)

    def test_concurrent_exchange_has_one_winner(self, oauth, alice):
        grant = _grant(oauth, alice)
        wins = []
        losses = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                wins.append(oauth.exchange_code(grant.code, CLIENT_ID, CLIENT_SECRET))
            except OAuthInvalidGrantError:
                losses.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(losses) == 7


class TestUserInfoAndRefresh:
    def _tokens(self, oauth, user):
        grant = _grant(oauth, user)
        return oauth.exchange_code(grant.code, CLIENT_ID, CLIENT_SECRET)

    def test_userinfo_profile(self, oauth, alice):
        tokens = self._tokens(oauth, alice)
        profile = oauth.get_user_info(tokens.access_token)
        assert profile["id"] == alice.id
        assert profile["email"] == "alice@example.com"
        assert profile["name"] == "alice"
        assert profile["roles"] == ["user"]
        assert profile["picture"].startswith("https://")
        assert "password_hash" not in profile

    def test_userinfo_rejects_expired_and_unknown(self, oauth, alice, clock):
        tokens = self._tokens(oauth, alice)
        with pytest.raises(OAuthInvalidTokenError):
            oauth.get_user_info("access_unknown")
        clock.advance(3600)
        with pytest.raises(OAuthInvalidTokenError):
            oauth.get_user_info(tokens.access_token)

    def test_refresh_rotates_access_token(self, oauth, alice, clock):
        tokens = self._tokens(oauth, alice)
        clock.advance(3600)
        refreshed = oauth.refresh_access_token(tokens.refresh_token)
        assert refreshed.access_token != tokens.access_token
        assert refreshed.refresh_token is None
        assert oauth.get_user_info(refreshed.access_token)["id"] == alice.id
        with pytest.raises(OAuthInvalidTokenError):
            oauth.get_user_info(tokens.access_token)
        # The same refresh token keeps working until it expires
        assert oauth.refresh_access_token(tokens.refresh_token).access_token

    def test_refresh_with_unknown_token(self, oauth):
        with pytest.raises(OAuthInvalidGrantError):
            oauth.refresh_access_token("refresh_unknown")

    def test_revoke(self, oauth, alice):
        tokens = self._tokens(oauth, alice)
        assert oauth.revoke(tokens.refresh_token)
        with pytest.raises(OAuthInvalidTokenError):
            oauth.get_user_info(tokens.access_token)

    def test_cleanup_keeps_refreshable_records(self, oauth, store, alice, clock):
        tokens = self._tokens(oauth, alice)
        _grant(oauth, alice)
        clock.advance(3600)
        # Used and unused codes are past their TTL; the token record is still refreshable
        assert oauth.cleanup() == 2
        assert oauth.refresh_access_token(tokens.refresh_token).access_token
        clock.advance(7 * 24 * 3600)
        assert oauth.cleanup() == 1
        assert not store.oauth_tokens
