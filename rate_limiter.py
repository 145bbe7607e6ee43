"""
Rate Limiter for OAuth Endpoints

Sliding-window request limits per endpoint and client IP, to slow down:
- Authorization code and refresh token guessing
- Client secret brute forcing
- Token endpoint abuse

Two backends:
- InMemoryRateLimiter: per-process windows, used with the memory storage backend
- RedisRateLimiter: windows shared by every process using the same Redis
"""

import logging
import threading
import time
import uuid
from collections import deque
from typing import Deque, Dict, Optional, Tuple

import redis
from starlette.requests import Request
from starlette.responses import JSONResponse


class RateLimiter:
    """Shared request inspection and 429 response building."""

    def __init__(self, requests_per_minute: int, window_size: int = 60, trust_forwarded_for: bool = False):
        """
        Args:
            requests_per_minute: Maximum requests allowed per window
            window_size: Window length in seconds (default 60)
            trust_forwarded_for: Key on X-Forwarded-For (only behind a trusted proxy)
        """
        self.requests_per_minute = requests_per_minute
        self.window_size = window_size
        self.trust_forwarded_for = trust_forwarded_for
        self.enabled = True

    def get_client_ip(self, request: Request) -> str:
        """
        Extract client IP from request.

        X-Forwarded-For is honoured only when trust_forwarded_for is set,
        otherwise any client could pick its own rate limit key.
        """
        if self.trust_forwarded_for:
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                return forwarded.split(",")[0].strip()

        client = request.client
        if client:
            return client.host

        return "unknown"

    def check_rate_limit(self, request: Request, endpoint_name: str) -> Tuple[bool, int]:
        """
        Check if request is within rate limit.

        Args:
            request: Starlette Request object
            endpoint_name: Name of endpoint (for separate limits per endpoint)

        Returns:
            Tuple of (allowed, remaining_requests)
        """
        if not self.enabled:
            return True, self.requests_per_minute

        client_ip = self.get_client_ip(request)
        allowed, remaining = self._hit(f"rate_limit:{endpoint_name}:{client_ip}")

        if not allowed:
            logging.warning(
                f"Rate limit exceeded for {client_ip} on {endpoint_name}: "
                f"{self.requests_per_minute} requests/{self.window_size}s"
            )
        return allowed, remaining

    def _hit(self, key: str) -> Tuple[bool, int]:
        raise NotImplementedError

    def create_rate_limit_response(self, retry_after: Optional[int] = None) -> JSONResponse:
        """
        Create 429 Too Many Requests response.

        Args:
            retry_after: Seconds until client can retry (defaults to the window size)

        Returns:
            JSONResponse with 429 status
        """
        if retry_after is None:
            retry_after = self.window_size
        return JSONResponse(
            status_code=429,
            content={
                "error": "too_many_requests",
                "error_description": f"Rate limit exceeded. Please retry after {retry_after} seconds."
            },
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(self.requests_per_minute),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(time.time()) + retry_after)
            }
        )


class InMemoryRateLimiter(RateLimiter):
    """Process-local sliding window kept as a deque of request timestamps per key."""

    def __init__(self, requests_per_minute: int, window_size: int = 60, trust_forwarded_for: bool = False):
        super().__init__(requests_per_minute, window_size, trust_forwarded_for)
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_prune = time.monotonic()

    def _prune(self, min_time: float) -> None:
        """Drop windows whose newest request has aged out. Caller holds the lock."""
        stale = [key for key, window in self._windows.items() if not window or window[-1] <= min_time]
        for key in stale:
            del self._windows[key]
        if stale:
            logging.debug(f"Pruned {len(stale)} idle rate limit windows")

    def _hit(self, key: str) -> Tuple[bool, int]:
        now = time.monotonic()
        min_time = now - self.window_size

        with self._lock:
            # At most one full scan per window length keeps the key count bounded
            if now - self._last_prune >= self.window_size:
                self._prune(min_time)
                self._last_prune = now

            window = self._windows.setdefault(key, deque())
            while window and window[0] <= min_time:
                window.popleft()

            if len(window) >= self.requests_per_minute:
                return False, 0

            window.append(now)
            return True, self.requests_per_minute - len(window)


class RedisRateLimiter(RateLimiter):
    """
    Redis-backed rate limiter with sliding window algorithm.

    SECURITY: Fails open when Redis is unreachable, so an outage of the
    limiter never takes the OAuth endpoints down with it.
    """

    def __init__(self, redis_client, requests_per_minute: int, window_size: int = 60, trust_forwarded_for: bool = False):
        super().__init__(requests_per_minute, window_size, trust_forwarded_for)
        self.redis_client = redis_client

        # Sorted set scored by request time in ms; trim, count and add run atomically
        self.rate_limit_script = self.redis_client.register_script("""
            local key = KEYS[1]
            local limit = tonumber(ARGV[1])
            local window_ms = tonumber(ARGV[2])
            local now_ms = tonumber(ARGV[3])
            local member = ARGV[4]

            redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)

            local count = redis.call('ZCARD', key)

            if count < limit then
                redis.call('ZADD', key, now_ms, member)
                redis.call('PEXPIRE', key, window_ms)
                return {1, limit - count - 1}
            else
                return {0, 0}
            end
        """)

        logging.info(f"Rate limiter initialized: {requests_per_minute} requests per {window_size}s")

    def _hit(self, key: str) -> Tuple[bool, int]:
        now_ms = int(time.time() * 1000)
        try:
            result = self.rate_limit_script(
                keys=[key],
                args=[self.requests_per_minute, self.window_size * 1000, now_ms, f"{now_ms}:{uuid.uuid4().hex}"]
            )
        except redis.RedisError as e:
            logging.error(f"Rate limit check failed: {e}, allowing request")
            return True, self.requests_per_minute

        return bool(result[0]), int(result[1])


# Rate limit configurations for different endpoint types
OAUTH_RATE_LIMITS = {
    # Authorization endpoint: users starting a login
    "authorize": {"requests_per_minute": 30, "window_size": 60},

    # Token endpoint: higher limit (legitimate refresh token usage)
    "token": {"requests_per_minute": 60, "window_size": 60},

    # Revoke endpoint: moderate limit
    "revoke": {"requests_per_minute": 30, "window_size": 60},
}


def create_rate_limiter(
    endpoint_name: str,
    redis_client=None,
    trust_forwarded_for: bool = False
) -> Optional[RateLimiter]:
    """
    Create a rate limiter for a specific endpoint.

    Args:
        endpoint_name: Name of the endpoint (must be in OAUTH_RATE_LIMITS)
        redis_client: Redis client; an in-memory limiter is built when None
        trust_forwarded_for: Key on X-Forwarded-For

    Returns:
        RateLimiter instance or None if endpoint not found
    """
    config = OAUTH_RATE_LIMITS.get(endpoint_name)
    if not config:
        logging.warning(f"No rate limit config for endpoint: {endpoint_name}")
        return None

    if redis_client is None:
        return InMemoryRateLimiter(
            requests_per_minute=config["requests_per_minute"],
            window_size=config["window_size"],
            trust_forwarded_for=trust_forwarded_for
        )

    return RedisRateLimiter(
        redis_client=redis_client,
        requests_per_minute=config["requests_per_minute"],
        window_size=config["window_size"],
        trust_forwarded_for=trust_forwarded_for
    )
