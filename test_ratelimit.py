import time

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from main import create_app
from ratelimit import RateLimiter


@pytest.fixture
def limited_client(config, store):
    config.rate_limit_requests = 3
    return TestClient(create_app(config, store), follow_redirects=False)


def test_token_endpoint_is_limited(limited_client):
    for _ in range(3):
        assert limited_client.post("/oauth/token", data={"grant_type": "password"}).status_code == 400

    response = limited_client.post("/oauth/token", data={"grant_type": "password"})
    assert response.status_code == 429
    assert int(response.headers["retry-after"]) >= 1
    assert response.headers["x-ratelimit-limit"] == "3"
    assert response.headers["x-ratelimit-remaining"] == "0"


def test_limits_are_per_client(limited_client):
    for _ in range(4):
        limited_client.get("/oauth/authorize", headers={"X-Forwarded-For": "10.0.0.1"})
    response = limited_client.get("/oauth/authorize", headers={"X-Forwarded-For": "10.0.0.2, 10.0.0.1"})
    assert response.status_code == 400


def test_unlimited_endpoints(limited_client):
    for _ in range(5):
        assert limited_client.get("/.well-known/jwks.json").status_code == 200


@pytest.mark.asyncio
async def test_window_resets(config, store, monkeypatch):
    limiter = RateLimiter(config, store)
    for _ in range(2):
        await limiter.check("client-a", limit=2, window_seconds=10)
    with pytest.raises(HTTPException) as excinfo:
        await limiter.check("client-a", limit=2, window_seconds=10)
    assert excinfo.value.status_code == 429

    now = time.time()
    monkeypatch.setattr(time, "time", lambda: now + 11)
    await limiter.check("client-a", limit=2, window_seconds=10)


@pytest.mark.asyncio
async def test_disabled(config, store):
    config.rate_limit_enabled = False
    limiter = RateLimiter(config, store)
    for _ in range(100):
        await limiter.check("client-a", limit=1)
    assert await store.get("ratelimit:client-a") is None
