"""
Tests for the geolocation resolver, its cache and circuit breaker.
Run with: pytest tests/test_geolocation.py -v
"""
import pytest

from sessionguard.services.cache_manager import Cache
from sessionguard.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from sessionguard.services.geolocation import GeoLocation, is_local_address


class TestLocalAddresses:
    """Classification of addresses that never leave the process."""

    @pytest.mark.parametrize("ip", [
        "127.0.0.1",
        "10.1.2.3",
        "172.16.0.9",
        "172.31.255.1",
        "192.168.1.5",
        "169.254.10.10",
        "0.0.0.0",
        "::1",
        "fe80::1",
        "fd00::1",
        "::ffff:192.168.0.1",
        "localhost",
        "unknown",
        "",
    ])
    def test_local(self, ip):
        assert is_local_address(ip) is True

    @pytest.mark.parametrize("ip", ["8.8.8.8", "172.32.0.1", "2001:4860:4860::8888", "not-an-ip"])
    def test_not_local(self, ip):
        assert is_local_address(ip) is False


class TestGeolocationResolver:
    """Resolver behaviour against a fake provider."""

    @pytest.mark.asyncio
    async def test_private_ip_short_circuits(self, resolver, geo_provider):
        location = await resolver.resolve("192.168.1.5")

        assert location.country_code == "LOCAL"
        assert location.country == "Local"
        assert location.is_local
        assert geo_provider.calls == []

    @pytest.mark.asyncio
    async def test_unknown_sentinel_is_local(self, resolver, geo_provider):
        location = await resolver.resolve("unknown")

        assert location.is_local
        assert geo_provider.calls == []

    @pytest.mark.asyncio
    async def test_successful_lookup(self, resolver, geo_provider):
        geo_provider.countries["81.2.69.160"] = "GB"

        location = await resolver.resolve("81.2.69.160")

        assert location == GeoLocation(
            ip="81.2.69.160",
            country="United Kingdom",
            country_code="GB",
            city="GB-city",
        )
        assert location.is_known and not location.is_local
        assert geo_provider.calls == ["81.2.69.160"]

    @pytest.mark.asyncio
    async def test_timeout_yields_no_signal(self, resolver, geo_provider):
        geo_provider.timeouts.add("81.2.69.142")

        location = await resolver.resolve("81.2.69.142")

        assert location.ip == "81.2.69.142"
        assert location.country_code is None
        assert not location.is_known
        assert not location.is_local
        # Exactly one attempt, no retries
        assert geo_provider.calls == ["81.2.69.142"]

    @pytest.mark.asyncio
    async def test_non_2xx_yields_no_signal(self, resolver, geo_provider):
        geo_provider.errors.add("8.8.4.4")

        location = await resolver.resolve("8.8.4.4")

        assert location == GeoLocation(ip="8.8.4.4")

    @pytest.mark.asyncio
    async def test_provider_failure_status_yields_no_signal(self, resolver, geo_provider):
        location = await resolver.resolve("8.8.8.8")

        assert location == GeoLocation(ip="8.8.8.8")
        assert geo_provider.calls == ["8.8.8.8"]

    @pytest.mark.asyncio
    async def test_unparseable_address_skips_lookup(self, resolver, geo_provider):
        location = await resolver.resolve("garbage")

        assert not location.is_known
        assert geo_provider.calls == []

    @pytest.mark.asyncio
    async def test_successful_results_are_cached(self, geo_provider):
        geo_provider.countries["1.1.1.1"] = "US"
        cache = Cache[GeoLocation](name="geo-test", max_size=10, default_ttl_seconds=60)
        resolver = geo_provider.resolver(cache=cache)

        first = await resolver.resolve("1.1.1.1")
        second = await resolver.resolve("1.1.1.1")
        await resolver.aclose()

        assert first == second
        assert geo_provider.calls == ["1.1.1.1"]
        assert cache.stats["hits"] == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, geo_provider):
        geo_provider.timeouts.add("1.0.0.1")
        cache = Cache[GeoLocation](name="geo-test", max_size=10, default_ttl_seconds=60)
        resolver = geo_provider.resolver(cache=cache)

        await resolver.resolve("1.0.0.1")
        geo_provider.timeouts.clear()
        geo_provider.countries["1.0.0.1"] = "JP"
        location = await resolver.resolve("1.0.0.1")
        await resolver.aclose()

        assert location.country_code == "JP"
        assert geo_provider.calls == ["1.0.0.1", "1.0.0.1"]

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self, geo_provider):
        geo_provider.errors.update({"9.9.9.9", "9.9.9.10"})
        circuit = CircuitBreaker("geo-test", CircuitBreakerConfig(failure_threshold=2, timeout_seconds=60))
        resolver = geo_provider.resolver(circuit=circuit)

        await resolver.resolve("9.9.9.9")
        await resolver.resolve("9.9.9.10")
        assert circuit.state == CircuitState.OPEN

        location = await resolver.resolve("9.9.9.11")
        await resolver.aclose()

        assert not location.is_known
        assert "9.9.9.11" not in geo_provider.calls

    @pytest.mark.asyncio
    async def test_provider_fail_status_does_not_trip_circuit(self, geo_provider):
        circuit = CircuitBreaker("geo-test", CircuitBreakerConfig(failure_threshold=1))
        resolver = geo_provider.resolver(circuit=circuit)

        await resolver.resolve("8.8.8.8")
        await resolver.aclose()

        assert circuit.state == CircuitState.CLOSED


class TestCache:
    """Tests for the TTL/LRU cache."""

    def test_ttl_expiry(self):
        now = [100.0]
        cache = Cache[str](name="t", max_size=5, default_ttl_seconds=10, time_func=lambda: now[0])

        cache.set("a", "x")
        assert cache.get("a") == "x"

        now[0] += 11
        assert cache.get("a") is None
        assert cache.size == 0

    def test_lru_eviction(self):
        cache = Cache[int](name="t", max_size=2, default_ttl_seconds=None)

        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")  # "b" is now least recently used
        cache.set("c", 3)

        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3
        assert cache.stats["evictions"] == 1

    def test_cleanup_expired(self):
        now = [0.0]
        cache = Cache[int](name="t", max_size=5, default_ttl_seconds=5, time_func=lambda: now[0])
        cache.set("a", 1)
        cache.set("b", 2, ttl_seconds=0)  # never expires

        now[0] = 10
        assert cache.cleanup_expired() == 1
        assert cache.get("b") == 2

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            Cache(name="t", max_size=0)


class TestCircuitBreaker:
    """Tests for the circuit breaker state machine."""

    @pytest.mark.asyncio
    async def test_opens_then_recovers(self):
        now = [0.0]
        cb = CircuitBreaker(
            "t",
            CircuitBreakerConfig(failure_threshold=2, timeout_seconds=30),
            time_func=lambda: now[0],
        )

        async def fail():
            raise RuntimeError("down")

        async def ok():
            return "up"

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await cb.call(fail)
        assert cb.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.call(ok)
        assert exc_info.value.retry_after == pytest.approx(30)

        now[0] = 31
        assert await cb.call(ok) == "up"
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        now = [0.0]
        cb = CircuitBreaker(
            "t",
            CircuitBreakerConfig(failure_threshold=1, timeout_seconds=5),
            time_func=lambda: now[0],
        )

        async def fail():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError):
            await cb.call(fail)
        now[0] = 6
        with pytest.raises(RuntimeError):
            await cb.call(fail)

        assert cb.state == CircuitState.OPEN
        assert cb.get_status()["stats"]["failed_calls"] == 2
