"""
Rate limiting. Fixed window counter per key (global key for database creation, or
method:ip:path per route). Memory store for a single instance, Redis for shared state.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

import redis
from fastapi import Request

from db_server.config import RATE_LIMIT_REDIS_URL, RATE_LIMIT_TRUST_PROXY_HEADERS

logger = logging.getLogger(__name__)

GLOBAL_CREATE_KEY = "create_db:global"

# KEYS[1] = counter key, ARGV[1] = limit, ARGV[2] = window in ms.
# Returns {allowed, ms until reset}. Rejection leaves the counter untouched.
_FIXED_WINDOW_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
if current >= limit then
  local ttl = redis.call('PTTL', KEYS[1])
  if ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
    ttl = tonumber(ARGV[2])
  end
  return {0, ttl}
end
current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return {1, redis.call('PTTL', KEYS[1])}
"""


@dataclass
class RateLimitWindow:
    count: int
    reset_at: float


class MemoryRateLimiter:
    """In-process fixed window. Only correct while a single service instance runs."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()

    def check_and_consume(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int | None]:
        """
        Admit the request if the key's window has room, recording it.
        Returns (allowed, retry_after_seconds); retry_after is None when allowed.
        """
        if limit <= 0:
            return True, None
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = RateLimitWindow(count=0, reset_at=now + window_seconds)
            if window.count >= limit:
                return False, max(1, math.ceil(window.reset_at - now))
            window.count += 1
            self._windows[key] = window
            self._sweep_expired(now)
            return True, None

    def get_window(self, key: str) -> RateLimitWindow | None:
        with self._lock:
            window = self._windows.get(key)
            if window is None or self._clock() >= window.reset_at:
                return None
            return RateLimitWindow(count=window.count, reset_at=window.reset_at)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _sweep_expired(self, now: float) -> None:
        # Must hold _lock
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for k in expired:
            del self._windows[k]


class RedisRateLimiter:
    """
    Shared fixed window in Redis; the key expires with the window.
    If Redis is unreachable the request is admitted (fail open) and a warning logged.
    """

    def __init__(self, client: redis.Redis):
        self._client = client
        self._script = client.register_script(_FIXED_WINDOW_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimiter":
        return cls(redis.from_url(url, socket_connect_timeout=2, socket_timeout=2))

    def check_and_consume(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int | None]:
        if limit <= 0:
            return True, None
        try:
            allowed, ttl_ms = self._script(keys=[f"ratelimit:{key}"], args=[limit, window_seconds * 1000])
        except redis.RedisError as e:
            logger.warning("rate limit store unavailable, admitting request for key=%s: %s", key, e)
            return True, None
        if int(allowed) == 1:
            return True, None
        return False, max(1, math.ceil(int(ttl_ms) / 1000))


_limiter: MemoryRateLimiter | RedisRateLimiter | None = None
_limiter_lock = threading.Lock()


def get_rate_limiter() -> MemoryRateLimiter | RedisRateLimiter:
    """Process-wide limiter: Redis when RATE_LIMIT_REDIS_URL is set, memory otherwise."""
    global _limiter
    with _limiter_lock:
        if _limiter is None:
            if RATE_LIMIT_REDIS_URL:
                _limiter = RedisRateLimiter.from_url(RATE_LIMIT_REDIS_URL)
                logger.info("rate limiter: redis store")
            else:
                _limiter = MemoryRateLimiter()
                logger.info("rate limiter: in-memory store")
        return _limiter


def get_client_ip(request: Request, trust_proxy_headers: bool | None = None) -> str:
    """
    Socket peer address. Proxy headers are read only when trusted,
    since without a proxy overwriting them the caller chooses their value.
    """
    if trust_proxy_headers is None:
        trust_proxy_headers = RATE_LIMIT_TRUST_PROXY_HEADERS
    peer = request.client.host if request.client is not None else None
    if not trust_proxy_headers:
        return peer or "unknown-ip"
    headers = request.headers
    forwarded_for = headers.get("x-forwarded-for", "")
    candidates = [
        headers.get("cf-connecting-ip"),
        forwarded_for.split(",")[0].strip() if forwarded_for else None,
        headers.get("x-real-ip"),
        peer,
    ]
    for candidate in candidates:
        if candidate:
            return candidate
    return "unknown-ip"


def build_route_key(request: Request, trust_proxy_headers: bool | None = None) -> str:
    return f"{request.method}:{get_client_ip(request, trust_proxy_headers)}:{request.url.path}"
