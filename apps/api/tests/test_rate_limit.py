import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from main import app
from routers import rate_limit


@pytest.fixture
def local_limits(monkeypatch):
    async def redis_down(key, limit, window_seconds):
        raise RedisConnectionError("connection refused")

    monkeypatch.setattr(rate_limit, "_consume_redis_quota", redis_down)
    app.state.disable_rate_limits = False


@pytest.mark.asyncio
async def test_local_quota_counts_per_key():
    for _ in range(3):
        allowed, _retry = await rate_limit._consume_local_quota("billing:rate:test:ip:127.0.0.1", 3, 60)
        assert allowed is True
    allowed, retry_after = await rate_limit._consume_local_quota("billing:rate:test:ip:127.0.0.1", 3, 60)
    assert allowed is False
    assert 1 <= retry_after <= 60

    allowed, _retry = await rate_limit._consume_local_quota("billing:rate:test:ip:10.0.0.1", 3, 60)
    assert allowed is True


@pytest.mark.asyncio
async def test_manual_topups_are_limited_per_user(client, auth_headers, local_limits):
    first_user = auth_headers("limited-user")
    for _ in range(10):
        response = await client.post("/topup/manual/request", json={"amount": 10000}, headers=first_user)
        assert response.status_code == 200

    blocked = await client.post("/topup/manual/request", json={"amount": 10000}, headers=first_user)
    assert blocked.status_code == 429
    assert blocked.json()["success"] is False
    assert int(blocked.headers["Retry-After"]) > 0

    other = await client.post("/topup/manual/request", json={"amount": 10000}, headers=auth_headers("other-user"))
    assert other.status_code == 200
