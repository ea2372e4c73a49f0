import asyncio
from typing import Optional
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from config import Config
from crypto import pkce_challenge
from main import create_app
from store import MemoryStore

ADMIN_TOKEN = "test-admin-token-0123456789abcdefghijklmnop"
VERIFIER_URL = "https://verifier.example.com/exec"
ISSUER_URL = "http://testserver"
CLIENT_ID = "c1"
REDIRECT_URI = "https://app/cb"
CODE_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"


def query_of(response) -> dict:
    """Single-valued query parameters of a redirect's Location"""
    query = parse_qs(urlsplit(response.headers["location"]).query)
    return {key: values[0] for key, values in query.items()}


@pytest.fixture
def config(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("ISSUER_URL", ISSUER_URL)
    monkeypatch.setenv("VERIFIER_URL", VERIFIER_URL)
    monkeypatch.setenv("ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    for var in ("REDIS_URL", "JWT_PRIVATE_KEY", "JWT_PUBLIC_KEY", "ALLOWED_ORIGINS"):
        monkeypatch.delenv(var, raising=False)
    return Config()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def app(config, store):
    return create_app(config, store)


@pytest.fixture
def auth_manager(app):
    return app.state.auth_manager


@pytest.fixture
def client(app):
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def registered_client(client, admin_headers):
    response = client.post(
        "/admin/client/register",
        headers=admin_headers,
        json={
            "clientId": CLIENT_ID,
            "redirectUris": [REDIRECT_URI],
            "allowedScopes": ["email", "drive.readonly"],
            "clientType": "public",
            "name": "Chat Frontend",
        },
    )
    assert response.status_code == 200
    return CLIENT_ID


class OAuthFlow:
    """Drives authorize -> callback -> token against the test client"""

    def __init__(self, client: TestClient, store: MemoryStore):
        self.client = client
        self.store = store

    def authorize(self, **overrides):
        params = {
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URI,
            "response_type": "code",
            "scope": "email",
            "state": "xyz",
            "code_challenge": pkce_challenge(CODE_VERIFIER),
            "code_challenge_method": "S256",
        }
        params.update(overrides)
        params = {key: value for key, value in params.items() if value is not None}
        return self.client.get("/oauth/authorize", params=params)

    def start_session(self, **overrides) -> str:
        response = self.authorize(**overrides)
        assert response.status_code == 302, response.text
        return query_of(response)["session_id"]

    def callback(self, session_id: str, email: str = "alice@example.com"):
        return self.client.get("/oauth/callback", params={"session_id": session_id, "email": email})

    def obtain_code(self, email: str = "alice@example.com", **overrides) -> str:
        response = self.callback(self.start_session(**overrides), email)
        assert response.status_code == 302, response.text
        return query_of(response)["code"]

    def exchange(self, code: Optional[str] = None, **overrides):
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": CLIENT_ID,
            "code_verifier": CODE_VERIFIER,
        }
        form.update(overrides)
        form = {key: value for key, value in form.items() if value is not None}
        return self.client.post("/oauth/token", data=form)

    def refresh(self, refresh_token: str, **overrides):
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token, "client_id": CLIENT_ID}
        form.update(overrides)
        form = {key: value for key, value in form.items() if value is not None}
        return self.client.post("/oauth/token", data=form)

    def records(self, prefix: str) -> list:
        return asyncio.run(self.store.list(prefix))


@pytest.fixture
def flow(client, store, registered_client):
    return OAuthFlow(client, store)
