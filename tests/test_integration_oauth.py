"""Integration tests for the OAuth 2.0 authorization-code emulator endpoints."""

from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from authlab import app as app_module

CLIENT_ID = "mock-client-id"
CLIENT_SECRET = "mock-client-secret"
REDIRECT = "http://localhost:3000/callback"


@pytest.fixture
def client():
    client = TestClient(app_module.app)
    client.post("/v1/auth/login", json={"username": "demo", "password": "demo123"})
    return client


def _authorize(client, **overrides):
    params = {"client_id": CLIENT_ID, "redirect_uri": REDIRECT, "state": "abc"}
    params.update(overrides)
    return client.get("/v1/auth/oauth/authorize", params=params, follow_redirects=False)


def _code(client):
    response = _authorize(client)
    assert response.status_code == 302
    return parse_qs(urlsplit(response.headers["location"]).query)["code"][0]


def _exchange(client, code, **overrides):
    body = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
        "redirect_uri": REDIRECT,
    }
    body.update(overrides)
    return client.post("/v1/auth/oauth/token", json=body)


class TestAuthorizeEndpoint:
    def test_redirects_with_code_and_state(self, client):
        response = _authorize(client)
        assert response.status_code == 302
        location = urlsplit(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == REDIRECT
        query = parse_qs(location.query)
        assert query["code"][0].startswith("code_")
        assert query["state"] == ["abc"]

    def test_requires_signed_in_user(self):
        anonymous = TestClient(app_module.app)
        response = _authorize(anonymous)
        assert response.status_code == 401

    def test_missing_redirect_uri(self, client):
        response = _authorize(client, redirect_uri="")
        assert response.status_code == 400
        assert response.json() == {
            "error": "invalid_request",
            "error_description": "Missing required parameters",
        }

    def test_unsupported_response_type(self, client):
        response = _authorize(client, response_type="token")
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_response_type"


class TestTokenEndpoint:
    def test_code_exchange_and_userinfo(self, client):
        response = _exchange(client, _code(client))
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        tokens = response.json()
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["refresh_token"].startswith("refresh_")

        profile = client.get(
            "/v1/auth/oauth/userinfo",
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )
        assert profile.status_code == 200
        assert profile.json()["email"] == "demo@example.com"
        assert profile.json()["name"] == "demo"

    def test_code_cannot_be_reused(self, client):
        code = _code(client)
        assert _exchange(client, code).status_code == 200
        replay = _exchange(client, code)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    def test_wrong_client_secret(self, client):
        response = _exchange(client, _code(client), client_secret="guess")
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    def test_redirect_uri_must_match(self, client):
        response = _exchange(client, _code(client), redirect_uri="http://evil.example/cb")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_missing_parameters(self, client):
        response = client.post(
            "/v1/auth/oauth/token",
            json={"grant_type": "authorization_code", "client_id": CLIENT_ID},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unsupported_grant_type(self, client):
        response = client.post(
            "/v1/auth/oauth/token",
            json={"grant_type": "password", "client_id": CLIENT_ID},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_refresh_grant_rotates_access_token(self, client):
        tokens = _exchange(client, _code(client)).json()
        response = client.post(
            "/v1/auth/oauth/token",
            json={
                "grant_type": "refresh_token",
                "refresh_token": tokens["refresh_token"],
                "client_id": CLIENT_ID,
            },
        )
        assert response.status_code == 200
        refreshed = response.json()
        assert refreshed["refresh_token"] == tokens["refresh_token"]
        assert refreshed["access_token"] != tokens["access_token"]

        stale = client.get(
            "/v1/auth/oauth/userinfo",
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )
        assert stale.status_code == 401
        assert stale.json()["error"] == "invalid_token"
        assert stale.headers["www-authenticate"] == 'Bearer error="invalid_token"'

    def test_userinfo_without_token(self, client):
        response = client.get("/v1/auth/oauth/userinfo")
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"


class TestCallback:
    def test_callback_signs_user_in(self, client):
        response = client.get(
            "/v1/auth/oauth/callback", params={"code": _code(client), "state": "abc"}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["state"] == "abc"
        assert data["profile"]["name"] == "demo"
        access = data["tokens"]["access_token"]
        protected = client.get(
            "/v1/auth/protected", headers={"Authorization": f"Bearer {access}"}
        )
        assert protected.status_code == 200

    def test_callback_without_code(self, client):
        response = client.get("/v1/auth/oauth/callback")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
