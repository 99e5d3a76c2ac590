"""
Tests for fixed-window rate limiting.
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.requests import Request

from authcentral.config import Settings
from authcentral.ratelimit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RedisRateLimitStore,
    build_rate_limit_store,
)
from authcentral.utils import get_client_ip, parse_trusted_proxies


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimiter:
    """Test cases for RateLimiter over the in-memory store."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter(InMemoryRateLimitStore(clock=clock), limit=10, window_seconds=300)

    @pytest.mark.asyncio
    async def test_eleventh_request_rejected(self, limiter):
        """Test ten requests pass and the eleventh in the window is refused."""
        key = RateLimiter.make_key("10.0.0.1", "login")
        results = [await limiter.allow(key) for _ in range(10)]
        assert all(results)

        decision = await limiter.check(key)
        assert decision.allowed is False
        assert decision.count == 11
        assert decision.retry_after == 300

    @pytest.mark.asyncio
    async def test_count_stops_at_limit_plus_one(self, limiter, clock):
        """Test rejected requests are counted once, never beyond limit + 1."""
        key = RateLimiter.make_key("10.0.0.1", "login")
        for _ in range(15):
            await limiter.check(key)
        clock.advance(100)

        decision = await limiter.check(key)
        assert decision.count == 11
        assert decision.allowed is False
        assert decision.retry_after == 200

    @pytest.mark.asyncio
    async def test_window_resets(self, limiter, clock):
        """Test the counter starts over once the window has elapsed."""
        key = RateLimiter.make_key("10.0.0.1", "login")
        for _ in range(11):
            await limiter.check(key)

        clock.advance(300)
        decision = await limiter.check(key)
        assert decision.allowed is True
        assert decision.count == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        for _ in range(11):
            await limiter.check(RateLimiter.make_key("10.0.0.1", "login"))

        assert await limiter.allow(RateLimiter.make_key("10.0.0.2", "login")) is True
        assert await limiter.allow(RateLimiter.make_key("10.0.0.1", "signup")) is True

    @pytest.mark.asyncio
    async def test_concurrent_requests_admit_exactly_limit(self, limiter):
        """Test twenty simultaneous requests from one key let exactly ten through."""
        key = RateLimiter.make_key("10.0.0.1", "login")
        results = await asyncio.gather(*(limiter.allow(key) for _ in range(20)))
        assert results.count(True) == 10

    def test_threads_racing_one_key_admit_exactly_limit(self, limiter):
        """Test twenty worker threads hitting one key at once let exactly ten through."""
        key = RateLimiter.make_key("10.0.0.1", "login")
        barrier = threading.Barrier(20)

        def attempt(_):
            barrier.wait()
            return asyncio.run(limiter.allow(key))

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(attempt, range(20)))

        assert results.count(True) == 10
        assert results.count(False) == 10

    def test_make_key(self):
        assert RateLimiter.make_key("1.2.3.4", "signup") == "signup:1.2.3.4"


class TestInMemoryRateLimitStore:
    """Test cases for InMemoryRateLimitStore."""

    @pytest.mark.asyncio
    async def test_increment_reports_remaining_window(self):
        clock = FakeClock()
        store = InMemoryRateLimitStore(clock=clock)

        state = await store.increment("k", 60)
        assert state.count == 1
        assert state.reset_in == 60

        clock.advance(15)
        state = await store.increment("k", 60)
        assert state.count == 2
        assert state.reset_in == 45

    @pytest.mark.asyncio
    async def test_sweep_drops_expired_windows(self):
        clock = FakeClock()
        store = InMemoryRateLimitStore(clock=clock, sweep_every=3)
        await store.increment("a", 10)
        await store.increment("b", 10)
        clock.advance(11)

        await store.increment("c", 10)
        assert len(store) == 1

    def test_default_store_is_in_memory(self):
        assert isinstance(build_rate_limit_store(None), InMemoryRateLimitStore)


class TestRedisRateLimitStore:
    """Test cases for RedisRateLimitStore."""

    @pytest.fixture
    def mock_pipeline(self):
        pipe = MagicMock()
        pipe.__aenter__ = AsyncMock(return_value=pipe)
        pipe.__aexit__ = AsyncMock(return_value=False)
        pipe.execute = AsyncMock(return_value=[3, True, 299500])
        return pipe

    @pytest.fixture
    def mock_client(self, mock_pipeline):
        client = MagicMock()
        client.pipeline.return_value = mock_pipeline
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_increment_is_one_transaction(self, mock_client, mock_pipeline):
        """Test INCR and first-hit expiry are queued on a MULTI pipeline."""
        store = RedisRateLimitStore(mock_client)

        state = await store.increment("login:1.2.3.4", 300)

        mock_client.pipeline.assert_called_once_with(transaction=True)
        mock_pipeline.incr.assert_called_once_with("rate_limit:login:1.2.3.4")
        mock_pipeline.pexpire.assert_called_once_with("rate_limit:login:1.2.3.4", 300000, nx=True)
        mock_pipeline.pttl.assert_called_once_with("rate_limit:login:1.2.3.4")
        assert state.count == 3
        assert state.reset_in == 299.5

    @pytest.mark.asyncio
    async def test_missing_ttl_falls_back_to_window(self, mock_client, mock_pipeline):
        mock_pipeline.execute.return_value = [1, True, -1]
        store = RedisRateLimitStore(mock_client)

        state = await store.increment("k", 300)
        assert state.reset_in == 300.0

    @pytest.mark.asyncio
    async def test_limiter_over_redis(self, mock_client, mock_pipeline):
        mock_pipeline.execute.return_value = [11, False, 120000]
        limiter = RateLimiter(RedisRateLimitStore(mock_client), limit=10, window_seconds=300)

        decision = await limiter.check("login:1.2.3.4")
        assert decision.allowed is False
        assert decision.retry_after == 120

    @pytest.mark.asyncio
    async def test_close(self, mock_client):
        store = RedisRateLimitStore(mock_client)
        await store.close()
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reported_count_is_capped(self, mock_client, mock_pipeline):
        mock_pipeline.execute.return_value = [42, False, 1000]
        state = await RedisRateLimitStore(mock_client).increment("k", 300, ceiling=11)
        assert state.count == 11


def make_request(peer, forwarded=None):
    headers = []
    if forwarded is not None:
        headers.append((b"x-forwarded-for", forwarded.encode("latin-1")))
    return Request({"type": "http", "method": "POST", "path": "/", "headers": headers, "client": (peer, 4321)})


class TestClientAddress:
    """Test cases for resolving the client address used in rate-limit keys."""

    @pytest.fixture
    def proxies(self):
        return parse_trusted_proxies(["10.0.0.0/8", "192.168.1.1"])

    def test_forwarded_header_ignored_without_trusted_proxies(self):
        assert get_client_ip(make_request("203.0.113.9", "198.51.100.1")) == "203.0.113.9"

    def test_forwarded_header_ignored_from_untrusted_peer(self, proxies):
        assert get_client_ip(make_request("203.0.113.9", "198.51.100.1"), proxies) == "203.0.113.9"

    def test_trusted_peer_yields_rightmost_untrusted_address(self, proxies):
        """Test a spoofed leftmost entry does not win over what our proxies appended."""
        request = make_request("10.0.0.5", "1.1.1.1, 198.51.100.7, 10.2.3.4")
        assert get_client_ip(request, proxies) == "198.51.100.7"

    def test_all_forwarded_addresses_trusted(self, proxies):
        request = make_request("10.0.0.5", "192.168.1.1, 10.9.9.9")
        assert get_client_ip(request, proxies) == "192.168.1.1"

    def test_trusted_peer_without_forwarded_header(self, proxies):
        assert get_client_ip(make_request("10.0.0.5"), proxies) == "10.0.0.5"

    def test_missing_client(self):
        request = Request({"type": "http", "method": "GET", "path": "/", "headers": []})
        assert get_client_ip(request) == "unknown"

    def test_invalid_proxy_entries_skipped(self):
        networks = parse_trusted_proxies(["10.0.0.0/8", "not-an-address", "::1"])
        assert [str(network) for network in networks] == ["10.0.0.0/8", "::1/128"]

    def test_settings_report_invalid_proxy_entries(self, test_env):
        test_env.setenv("TRUSTED_PROXIES", "10.0.0.0/8,proxy.internal")
        settings = Settings()

        assert settings.rate_limit.trusted_proxies == ["10.0.0.0/8", "proxy.internal"]
        assert "Invalid TRUSTED_PROXIES entry: proxy.internal" in settings.validate_configuration()
