"""
=============================================================================
CHAINAUDIT - RATE LIMITER MODULE
=============================================================================
Fixed-window rate limiting for the audit endpoints, Redis backend with an
in-memory fallback.

Features:
- Redis-backed counters (INCR + EXPIRE) for multi-instance consistency
- Automatic fallback to in-memory when Redis is unavailable
- Trusted-proxy validation for X-Forwarded-For
- Counts requests per API key (or client IP) per minute

Usage:
    from chainaudit.core.rate_limiter import audit_rate_limit

    @router.get("/logs", dependencies=[Depends(audit_rate_limit)])
    def list_logs():
        ...
=============================================================================
"""

import hashlib
import ipaddress
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from threading import Lock
from typing import Dict, List, Optional

import redis
from fastapi import Depends, HTTPException, Request, status

from chainaudit.core.config import settings
from chainaudit.core.security import UserPrincipal, get_current_user_optional

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

# Parsed trusted proxy networks (built once at import)
_trusted_networks: List[ipaddress.IPv4Network | ipaddress.IPv6Network] = []


def _build_trusted_networks() -> None:
    """Parse TRUSTED_PROXIES setting into network objects."""
    global _trusted_networks
    nets = []
    for entry in settings.TRUSTED_PROXIES:
        try:
            nets.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("Invalid TRUSTED_PROXIES entry ignored: %s", entry)
    _trusted_networks = nets


_build_trusted_networks()


# =============================================================================
# BACKEND ABSTRACTION
# =============================================================================


class _RateLimitBackend(ABC):
    """Abstract rate-limit storage backend."""

    @abstractmethod
    def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment counter and return new value. TTL applied on first create."""

    @abstractmethod
    def reset(self) -> None:
        """Clear all state (for tests)."""

    @abstractmethod
    def stats(self) -> dict:
        """Return debugging stats."""


class _InMemoryBackend(_RateLimitBackend):
    """Thread-safe in-memory backend (single-instance only)."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counts: Dict[str, int] = defaultdict(int)
        self._expires: Dict[str, float] = {}

    def _evict_expired(self, now: float) -> None:
        for key in [k for k, exp in self._expires.items() if exp <= now]:
            self._counts.pop(key, None)
            self._expires.pop(key, None)

    def increment(self, key: str, ttl_seconds: int) -> int:
        now = time.monotonic()
        with self._lock:
            self._evict_expired(now)
            self._counts[key] += 1
            self._expires.setdefault(key, now + ttl_seconds)
            return self._counts[key]

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._expires.clear()

    def stats(self) -> dict:
        return {
            "backend": "in_memory",
            "tracked_keys": len(self._counts),
            "counts": dict(self._counts),
        }


class _RedisBackend(_RateLimitBackend):
    """Redis-backed rate-limit storage for multi-instance deployments."""

    def __init__(self, redis_client) -> None:  # type: ignore[type-arg]
        self._redis = redis_client

    def increment(self, key: str, ttl_seconds: int) -> int:
        pipe = self._redis.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, ttl_seconds, nx=True)  # set TTL only on first creation
        results = pipe.execute()
        return int(results[0])

    def reset(self) -> None:
        cursor = 0
        while True:
            cursor, keys = self._redis.scan(cursor, match="rl:audit:*", count=500)
            if keys:
                self._redis.delete(*keys)
            if cursor == 0:
                break

    def stats(self) -> dict:
        return {"backend": "redis", "url": settings.REDIS_URL}


# =============================================================================
# BACKEND INITIALIZATION
# =============================================================================

_backend: Optional[_RateLimitBackend] = None
_backend_lock = Lock()


def _init_backend() -> _RateLimitBackend:
    """Try Redis first, fall back to in-memory."""
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL, decode_responses=True, socket_connect_timeout=2
        )
        client.ping()
        logger.info("Rate limiter using Redis backend (%s)", settings.REDIS_URL)
        return _RedisBackend(client)
    except redis.RedisError as exc:
        logger.warning(
            "Redis unavailable for rate limiter, using in-memory fallback: %s", exc
        )
        return _InMemoryBackend()


def _get_backend() -> _RateLimitBackend:
    global _backend
    if _backend is None:
        with _backend_lock:
            if _backend is None:
                _backend = _init_backend()
    return _backend


def use_in_memory_backend() -> None:
    """Pin the in-memory backend (tests, single-process tools)."""
    global _backend
    with _backend_lock:
        _backend = _InMemoryBackend()


# =============================================================================
# IP EXTRACTION
# =============================================================================


def _is_trusted_proxy(ip_str: str) -> bool:
    """Check if an IP belongs to the configured trusted proxy ranges."""
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in net for net in _trusted_networks)


def get_client_ip(request: Request) -> str:
    """Extract client IP, trusting X-Forwarded-For only from trusted proxies."""
    direct_ip = request.client.host if request.client else "unknown"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and _is_trusted_proxy(direct_ip):
        parts = [p.strip() for p in forwarded.split(",") if p.strip()]
        # Rightmost untrusted IP is the real client
        for ip in reversed(parts):
            if not _is_trusted_proxy(ip):
                return ip
        if parts:
            return parts[0]

    return direct_ip


# =============================================================================
# PUBLIC RATE-LIMIT DEPENDENCY
# =============================================================================


def _identity(request: Request, user: Optional[UserPrincipal]) -> str:
    if user is not None:
        # Keys never reach Redis in clear text
        return "key:" + hashlib.sha256(user.key.encode("utf-8")).hexdigest()[:16]
    return f"ip:{get_client_ip(request)}"


async def audit_rate_limit(
    request: Request,
    user: Optional[UserPrincipal] = Depends(get_current_user_optional),
) -> None:
    """
    AUDIT_RATE_LIMIT_PER_MINUTE requests per API key (or IP when anonymous)
    per fixed one-minute window.
    """
    global _backend
    limit = settings.AUDIT_RATE_LIMIT_PER_MINUTE
    window = int(time.time() // WINDOW_SECONDS)
    key = f"rl:audit:{_identity(request, user)}:{window}"

    try:
        count = _get_backend().increment(key, WINDOW_SECONDS)
    except redis.RedisError as exc:
        logger.warning("Rate limiter Redis error, switching to in-memory: %s", exc)
        use_in_memory_backend()
        count = _get_backend().increment(key, WINDOW_SECONDS)

    if count > limit:
        logger.warning("Audit rate limit exceeded for %s (%d)", key, count)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Max {limit} requests per minute.",
            headers={"Retry-After": str(WINDOW_SECONDS)},
        )


# =============================================================================
# TEST / DEBUG HELPERS
# =============================================================================


def reset_rate_limiter_state() -> None:
    """Clear rate limiter state. Intended for tests."""
    _get_backend().reset()


def get_rate_limit_stats() -> dict:
    """Get current rate limiting statistics (for admin/debugging)."""
    return _get_backend().stats()
