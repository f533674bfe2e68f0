"""Tests for the audit rate limiter backends and trusted proxy IP extraction."""
from unittest.mock import MagicMock, patch

import fakeredis
import pytest
import redis

from chainaudit.core import rate_limiter
from chainaudit.core.rate_limiter import (
    _InMemoryBackend,
    _RedisBackend,
    get_client_ip,
)


# =============================================================================
# Redis backend tests
# =============================================================================


@pytest.fixture()
def redis_backend():
    client = fakeredis.FakeRedis(decode_responses=True)
    return _RedisBackend(client)


class TestRedisBackend:
    def test_increment_returns_count(self, redis_backend):
        assert redis_backend.increment("rl:audit:ip:1.2.3.4:1", 60) == 1
        assert redis_backend.increment("rl:audit:ip:1.2.3.4:1", 60) == 2
        assert redis_backend.increment("rl:audit:ip:1.2.3.4:1", 60) == 3

    def test_increment_sets_ttl(self, redis_backend):
        redis_backend.increment("rl:audit:ip:1.2.3.4:1", 60)
        ttl = redis_backend._redis.ttl("rl:audit:ip:1.2.3.4:1")
        assert 0 < ttl <= 60

    def test_reset_clears_only_audit_keys(self, redis_backend):
        redis_backend.increment("rl:audit:ip:1.2.3.4:1", 60)
        redis_backend._redis.set("unrelated", "1")
        redis_backend.reset()
        assert redis_backend.increment("rl:audit:ip:1.2.3.4:1", 60) == 1
        assert redis_backend._redis.get("unrelated") == "1"


# =============================================================================
# InMemory backend tests
# =============================================================================


@pytest.fixture()
def mem_backend():
    return _InMemoryBackend()


class TestInMemoryBackend:
    def test_increment_returns_count(self, mem_backend):
        assert mem_backend.increment("rl:audit:ip:1.2.3.4:1", 60) == 1
        assert mem_backend.increment("rl:audit:ip:1.2.3.4:1", 60) == 2

    def test_keys_are_independent(self, mem_backend):
        mem_backend.increment("rl:audit:a:1", 60)
        assert mem_backend.increment("rl:audit:b:1", 60) == 1

    def test_expired_keys_restart(self, mem_backend):
        with patch("chainaudit.core.rate_limiter.time.monotonic", return_value=100.0):
            mem_backend.increment("rl:audit:a:1", 60)
        with patch("chainaudit.core.rate_limiter.time.monotonic", return_value=161.0):
            assert mem_backend.increment("rl:audit:a:1", 60) == 1

    def test_reset(self, mem_backend):
        mem_backend.increment("rl:audit:ip:1.2.3.4:1", 60)
        mem_backend.reset()
        assert mem_backend.stats()["tracked_keys"] == 0


# =============================================================================
# Trusted proxy / get_client_ip tests
# =============================================================================


class TestGetClientIp:
    def _make_request(self, client_host="203.0.113.50", forwarded_for=None):
        req = MagicMock()
        req.client = MagicMock()
        req.client.host = client_host
        headers = {}
        if forwarded_for:
            headers["X-Forwarded-For"] = forwarded_for
        req.headers = headers
        return req

    def test_no_proxy_returns_direct_ip(self):
        req = self._make_request(client_host="203.0.113.50")
        assert get_client_ip(req) == "203.0.113.50"

    def test_untrusted_proxy_ignores_forwarded_for(self):
        req = self._make_request(client_host="203.0.113.50", forwarded_for="1.2.3.4")
        assert get_client_ip(req) == "203.0.113.50"

    def test_trusted_proxy_uses_forwarded_for(self):
        req = self._make_request(client_host="127.0.0.1", forwarded_for="203.0.113.99")
        assert get_client_ip(req) == "203.0.113.99"

    def test_trusted_proxy_chain_picks_rightmost_untrusted(self):
        req = self._make_request(
            client_host="10.0.0.1",
            forwarded_for="203.0.113.1, 10.0.0.5, 10.0.0.2",
        )
        assert get_client_ip(req) == "203.0.113.1"

    def test_no_client_returns_unknown(self):
        req = MagicMock()
        req.client = None
        req.headers = {}
        assert get_client_ip(req) == "unknown"


# =============================================================================
# Fallback tests
# =============================================================================


class TestFallback:
    def test_init_backend_falls_back_to_inmemory(self):
        with patch("chainaudit.core.rate_limiter.redis.Redis.from_url") as from_url:
            from_url.return_value.ping.side_effect = redis.ConnectionError("down")
            backend = rate_limiter._init_backend()
        assert isinstance(backend, _InMemoryBackend)

    def test_use_in_memory_backend_pins_backend(self):
        rate_limiter.use_in_memory_backend()
        assert rate_limiter.get_rate_limit_stats()["backend"] == "in_memory"
