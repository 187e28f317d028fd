"""
Pytest tests for the fixed window rate limiter and request keys.
"""
from unittest.mock import MagicMock

import redis
from starlette.requests import Request

from db_server.rate_limit import MemoryRateLimiter, RedisRateLimiter, build_route_key, get_client_ip


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _request(headers: dict | None = None, client=("9.9.9.9", 4321), method="POST", path="/create") -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "root_path": "",
        "scheme": "http",
        "query_string": b"",
        "server": ("testserver", 80),
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_memory_limiter_admits_up_to_limit_then_rejects():
    clock = FakeClock()
    limiter = MemoryRateLimiter(clock=clock)
    results = [limiter.check_and_consume("k", 5, 60) for _ in range(6)]
    assert [allowed for allowed, _ in results] == [True] * 5 + [False]
    assert results[-1][1] == 60
    assert limiter.get_window("k").count == 5


def test_memory_limiter_window_resets():
    clock = FakeClock()
    limiter = MemoryRateLimiter(clock=clock)
    for _ in range(5):
        limiter.check_and_consume("k", 5, 60)
    clock.now += 45
    allowed, retry_after = limiter.check_and_consume("k", 5, 60)
    assert not allowed
    assert retry_after == 15
    clock.now += 15
    assert limiter.check_and_consume("k", 5, 60) == (True, None)
    assert limiter.get_window("k").count == 1


def test_memory_limiter_keys_are_independent():
    limiter = MemoryRateLimiter(clock=FakeClock())
    for _ in range(2):
        limiter.check_and_consume("a", 2, 60)
    assert limiter.check_and_consume("a", 2, 60)[0] is False
    assert limiter.check_and_consume("b", 2, 60)[0] is True


def test_zero_limit_disables():
    limiter = MemoryRateLimiter(clock=FakeClock())
    for _ in range(10):
        assert limiter.check_and_consume("k", 0, 60) == (True, None)


def test_redis_limiter_fails_open():
    client = MagicMock()
    client.register_script.return_value = MagicMock(side_effect=redis.ConnectionError("connection refused"))
    limiter = RedisRateLimiter(client)
    assert limiter.check_and_consume("create_db:global", 100, 60) == (True, None)


def test_redis_limiter_rejection_reports_retry_after():
    client = MagicMock()
    script = MagicMock(return_value=[0, 1500])
    client.register_script.return_value = script
    limiter = RedisRateLimiter(client)
    assert limiter.check_and_consume("k", 5, 60) == (False, 2)
    script.assert_called_once_with(keys=["ratelimit:k"], args=[5, 60_000])


def test_redis_limiter_admits():
    client = MagicMock()
    client.register_script.return_value = MagicMock(return_value=[1, 59_000])
    assert RedisRateLimiter(client).check_and_consume("k", 5, 60) == (True, None)


def test_client_ip_ignores_forwarding_headers_by_default():
    spoofed = {"cf-connecting-ip": "1.1.1.1", "x-forwarded-for": "2.2.2.2", "x-real-ip": "4.4.4.4"}
    assert get_client_ip(_request(spoofed)) == "9.9.9.9"
    assert get_client_ip(_request(spoofed, client=None)) == "unknown-ip"


def test_client_ip_header_precedence_behind_trusted_proxy():
    def ip(headers=None, **kwargs):
        return get_client_ip(_request(headers, **kwargs), trust_proxy_headers=True)

    assert ip({"cf-connecting-ip": "1.1.1.1", "x-forwarded-for": "2.2.2.2"}) == "1.1.1.1"
    assert ip({"x-forwarded-for": "2.2.2.2, 3.3.3.3"}) == "2.2.2.2"
    assert ip({"x-real-ip": "4.4.4.4"}) == "4.4.4.4"
    assert ip() == "9.9.9.9"
    assert ip(client=None) == "unknown-ip"


def test_route_key():
    assert build_route_key(_request({"x-real-ip": "4.4.4.4"})) == "POST:9.9.9.9:/create"
    assert build_route_key(_request({"x-real-ip": "4.4.4.4"}), trust_proxy_headers=True) == "POST:4.4.4.4:/create"
    assert build_route_key(_request(method="GET", path="/claim-callback")) == "GET:9.9.9.9:/claim-callback"
