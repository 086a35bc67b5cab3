from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from fastapi.testclient import TestClient
from jose import jwt

from library_lending import oidc
from library_lending.endpoints import app
from library_lending.exceptions import FederatedAuthError
from library_lending.oidc import OIDCClient, TokenSet, get_oidc_client

ISSUER = "https://id.example.com"
METADATA = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{ISSUER}/authorize",
    "token_endpoint": f"{ISSUER}/token",
}


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def json(self):
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def make_id_token(**claims):
    base = {"sub": "oidc|7", "email": "ada@example.com", "given_name": "Ada"}
    base.update(claims)
    # Signature is irrelevant: claims are read without verification
    return jwt.encode(base, "provider-key", algorithm="HS256")


@pytest.fixture
def provider(monkeypatch):
    """Patch requests so the client talks to an in-memory provider."""
    calls = {"get": [], "post": []}
    token_responses = []

    def fake_get(url, timeout=None):
        calls["get"].append(url)
        return FakeResponse(METADATA)

    def fake_post(url, data=None, timeout=None):
        calls["post"].append((url, data))
        return token_responses.pop(0)

    monkeypatch.setattr(oidc.requests, "get", fake_get)
    monkeypatch.setattr(oidc.requests, "post", fake_post)
    return {"calls": calls, "token_responses": token_responses}


def test_discovery_is_cached(provider):
    client = OIDCClient(ISSUER + "/", "library-client")
    assert client.discover()["token_endpoint"] == METADATA["token_endpoint"]
    client.discover()
    assert provider["calls"]["get"] == [f"{ISSUER}/.well-known/openid-configuration"]


def test_discovery_failure(monkeypatch):
    def broken_get(url, timeout=None):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(oidc.requests, "get", broken_get)
    with pytest.raises(FederatedAuthError):
        OIDCClient(ISSUER, "library-client").discover()


def test_authorization_url(provider):
    url = OIDCClient(ISSUER, "library-client").authorization_url(
        "https://library.example.com/api/callback", "state-123"
    )
    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == METADATA["authorization_endpoint"]
    assert params["client_id"] == ["library-client"]
    assert params["state"] == ["state-123"]
    assert params["response_type"] == ["code"]
    assert "openid" in params["scope"][0]


def test_exchange_code(provider):
    """
    Verifies:
    - The code is posted to the token endpoint with the client credentials
    - Claims come from the id_token and expiry from its exp claim
    """
    exp = int((datetime.now() + timedelta(hours=1)).timestamp())
    provider["token_responses"].append(
        FakeResponse(
            {
                "access_token": "access-1",
                "refresh_token": "refresh-1",
                "id_token": make_id_token(exp=exp),
            }
        )
    )
    client = OIDCClient(ISSUER, "library-client", "shh")
    token_set = client.exchange_code("code-1", "https://library.example.com/api/callback")

    url, data = provider["calls"]["post"][0]
    assert url == METADATA["token_endpoint"]
    assert data["grant_type"] == "authorization_code"
    assert data["code"] == "code-1"
    assert data["client_secret"] == "shh"

    assert token_set.access_token == "access-1"
    assert token_set.refresh_token == "refresh-1"
    assert token_set.claims["sub"] == "oidc|7"
    assert token_set.expires_at == datetime.fromtimestamp(exp)


def test_refresh_keeps_refresh_token_when_not_rotated(provider):
    provider["token_responses"].append(
        FakeResponse({"access_token": "access-2", "expires_in": 600})
    )
    before = datetime.now()
    token_set = OIDCClient(ISSUER, "library-client").refresh("refresh-1")
    assert token_set.refresh_token == "refresh-1"
    assert token_set.access_token == "access-2"
    assert token_set.expires_at >= before + timedelta(seconds=600)
    assert provider["calls"]["post"][0][1]["grant_type"] == "refresh_token"


def test_rejected_token_request(provider):
    provider["token_responses"].append(FakeResponse({"error": "invalid_grant"}, status_code=400))
    with pytest.raises(FederatedAuthError):
        OIDCClient(ISSUER, "library-client").refresh("revoked")


def test_token_response_without_access_token(provider):
    provider["token_responses"].append(FakeResponse({"token_type": "Bearer"}))
    with pytest.raises(FederatedAuthError):
        OIDCClient(ISSUER, "library-client").exchange_code("code", "https://cb")


# --- Browser flow through the API ---


class FakeProvider:
    def __init__(self):
        self.exchanged = []

    def authorization_url(self, redirect_uri, state):
        return f"{ISSUER}/authorize?state={state}"

    def exchange_code(self, code, redirect_uri):
        self.exchanged.append(code)
        return TokenSet(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=datetime.now() + timedelta(hours=1),
            claims={"sub": "oidc|7", "email": "ada@example.com", "given_name": "Ada"},
        )


@pytest.fixture
def fake_provider():
    fake = FakeProvider()
    app.dependency_overrides[get_oidc_client] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_oidc_client, None)


def test_federated_login_flow(fake_provider):
    """
    Test the redirect, callback and resulting session.

    Internal Working:
    1. /api/login redirects to the provider and remembers the state
    2. /api/callback with that state exchanges the code
    3. The browser ends up logged in as the provider's user
    """
    browser = TestClient(app)
    start = browser.get("/api/login", follow_redirects=False)
    assert start.status_code == 302
    state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

    callback = browser.get(
        "/api/callback", params={"code": "code-1", "state": state}, follow_redirects=False
    )
    assert callback.status_code == 302
    assert callback.headers["location"] == "/"
    assert fake_provider.exchanged == ["code-1"]

    me = browser.get("/api/auth/user")
    assert me.status_code == 200
    assert me.json()["id"] == "oidc|7"
    assert me.json()["firstName"] == "Ada"
    assert me.json()["role"] == "user"


def test_callback_with_wrong_state(fake_provider):
    browser = TestClient(app)
    browser.get("/api/login", follow_redirects=False)
    callback = browser.get(
        "/api/callback", params={"code": "code-1", "state": "forged"}, follow_redirects=False
    )
    assert callback.status_code == 302
    assert callback.headers["location"] == "/api/login"
    assert fake_provider.exchanged == []
    assert browser.get("/api/auth/user").status_code == 401
