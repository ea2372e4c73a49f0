import time

import pytest
from fastapi.testclient import TestClient

from conftest import CLIENT_ID, REDIRECT_URI
from main import create_app
from store import MemoryStore, StoreError

INTERNAL_DETAIL = "connection refused by 10.0.0.7:6379"


class FailingStore(MemoryStore):
    """Store whose reads fail like an unreachable backend"""

    def __init__(self, error):
        super().__init__()
        self.error = error

    async def get(self, key):
        raise self.error


def _assert_server_error(response):
    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "server_error"
    assert body["error_description"] == "Internal server error"
    assert INTERNAL_DETAIL not in response.text


@pytest.mark.parametrize("rate_limit_enabled", [True, False])
def test_store_failure_is_server_error(config, rate_limit_enabled):
    config.rate_limit_enabled = rate_limit_enabled
    client = TestClient(create_app(config, FailingStore(StoreError(INTERNAL_DETAIL))), follow_redirects=False)

    _assert_server_error(client.post("/oauth/token", data={
        "grant_type": "authorization_code",
        "code": "abc",
        "redirect_uri": REDIRECT_URI,
        "client_id": CLIENT_ID,
        "code_verifier": "v" * 43,
    }))
    _assert_server_error(client.get("/oauth/authorize", params={
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "response_type": "code",
        "scope": "email",
        "code_challenge": "c" * 43,
        "code_challenge_method": "S256",
    }))


def test_unexpected_error_is_server_error(config):
    config.rate_limit_enabled = False
    app = create_app(config, FailingStore(RuntimeError(INTERNAL_DETAIL)))
    client = TestClient(app, follow_redirects=False, raise_server_exceptions=False)

    _assert_server_error(client.post(
        "/oauth/token",
        data={"grant_type": "refresh_token", "refresh_token": "r", "client_id": CLIENT_ID},
    ))


def test_lifespan_runs_cleanup_and_shuts_down(config, store):
    store._data["session:stale"] = ('{"session_id": "stale"}', time.time() - 1)

    with TestClient(create_app(config, store)) as client:
        assert client.get("/health").status_code == 200
        assert "session:stale" not in store._data
