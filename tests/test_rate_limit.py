"""
Fixed-window rate limiting over Redis.
"""
from redis.exceptions import ConnectionError as RedisConnectionError

from hikeclub.config import settings
from hikeclub.services import rate_limit


class BrokenRedis:
    def incr(self, key):
        raise RedisConnectionError("connection refused")


def test_window_counts_per_scope_and_ip(fake_redis):
    for _ in range(3):
        assert rate_limit.hit("issue", "198.51.100.7").allowed

    blocked = rate_limit.hit("issue", "198.51.100.7")
    assert not blocked.allowed
    assert blocked.count == 4
    assert 0 < blocked.retry_after <= settings.rate_limit_window_s

    # other scopes and other addresses are untouched
    assert rate_limit.hit("redeem", "198.51.100.7").allowed
    assert rate_limit.hit("issue", "198.51.100.8").allowed
    assert "rate_limit:issue:198.51.100.7" in fake_redis.store


def test_fails_open_when_redis_errors():
    rate_limit.set_redis_client(BrokenRedis())
    for _ in range(20):
        assert rate_limit.hit("manual_request", "198.51.100.7").allowed


def test_disabled(monkeypatch):
    monkeypatch.setattr(settings, "rate_limit_enabled", False)
    for _ in range(20):
        assert rate_limit.hit("manual_request", "198.51.100.7").allowed


def test_redeem_route_returns_429(client):
    headers = {"x-forwarded-for": "203.0.113.50, 10.0.0.1"}
    for _ in range(10):
        r = client.post("/api/whatsapp-verify", json={"code": "000000"}, headers=headers)
        assert r.status_code == 404

    r = client.post("/api/whatsapp-verify", json={"code": "000000"}, headers=headers)
    assert r.status_code == 429
    assert r.json()["success"] is False
    assert "retry-after" in r.headers

    # a different client is still served
    r = client.post("/api/whatsapp-verify", json={"code": "000000"}, headers={"x-forwarded-for": "203.0.113.51"})
    assert r.status_code == 404
