"""
Geolocation resolver.

Maps a client IP to a coarse location (country code, country, city).
Local and private traffic short-circuits to a synthetic ``LOCAL`` result;
everything else costs at most one bounded provider call. Failures never
propagate: the caller gets a result with no country, which means
"no signal".
"""
import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional, Any, Dict

import httpx

from sessionguard.config import Settings, settings as default_settings
from sessionguard.services.cache_manager import Cache
from sessionguard.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
)

logger = logging.getLogger(__name__)

LOCAL_COUNTRY_CODE = "LOCAL"
LOCAL_COUNTRY_NAME = "Local"
UNKNOWN_IP = "unknown"

_LOCAL_SENTINELS = {"", UNKNOWN_IP, "localhost"}
_PROVIDER_FIELDS = "status,country,countryCode,city"


@dataclass(frozen=True)
class GeoLocation:
    """Outcome of a lookup. ``country_code`` is None when nothing is known."""
    ip: str
    country: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.country_code == LOCAL_COUNTRY_CODE

    @property
    def is_known(self) -> bool:
        return self.country_code is not None

    @classmethod
    def local(cls, ip: str) -> "GeoLocation":
        return cls(ip=ip, country=LOCAL_COUNTRY_NAME, country_code=LOCAL_COUNTRY_CODE)


class GeolocationProviderError(Exception):
    """The provider answered, but not with something usable."""


def is_local_address(ip: str) -> bool:
    """
    True for sentinels and for private, loopback, link-local,
    unspecified or reserved addresses (IPv4 and IPv6).
    """
    value = (ip or "").strip().lower()
    if value in _LOCAL_SENTINELS:
        return True

    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return False

    mapped = getattr(addr, "ipv4_mapped", None)
    if mapped is not None:
        addr = mapped

    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_unspecified
        or addr.is_reserved
    )


def _is_valid_address(ip: str) -> bool:
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return False
    return True


class GeolocationResolver:
    """
    Resolves IPs against an ip-api.com compatible HTTP provider.

    The HTTP client, result cache and circuit breaker are injected, so one
    resolver instance is built at startup and shared by all requests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = "http://ip-api.com/json",
        timeout_seconds: float = 3.0,
        cache: Optional[Cache[GeoLocation]] = None,
        circuit: Optional[CircuitBreaker] = None,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)
        self.cache = cache
        self.circuit = circuit

    async def resolve(self, ip: str) -> GeoLocation:
        """Resolve an IP. Never raises."""
        ip = (ip or "").strip()

        if is_local_address(ip):
            return GeoLocation.local(ip or UNKNOWN_IP)

        if not _is_valid_address(ip):
            logger.debug(f"Skipping geolocation for unparseable address {ip!r}")
            return GeoLocation(ip=ip)

        if self.cache is not None:
            cached = self.cache.get(ip)
            if cached is not None:
                return cached

        try:
            if self.circuit is not None:
                payload = await self.circuit.call(self._fetch, ip)
            else:
                payload = await self._fetch(ip)
        except CircuitOpenError as e:
            logger.debug(f"Geolocation skipped for {ip}: {e}")
            return GeoLocation(ip=ip)
        except httpx.TimeoutException:
            logger.warning(f"Geolocation lookup timed out for {ip}")
            return GeoLocation(ip=ip)
        except (httpx.HTTPError, GeolocationProviderError) as e:
            logger.warning(f"Geolocation lookup failed for {ip}: {e}")
            return GeoLocation(ip=ip)

        location = self._parse(ip, payload)
        if location.is_known and self.cache is not None:
            self.cache.set(ip, location)
        return location

    async def _fetch(self, ip: str) -> Dict[str, Any]:
        response = await self.client.get(
            f"{self.base_url}/{ip}",
            params={"fields": _PROVIDER_FIELDS},
            timeout=self.timeout,
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise GeolocationProviderError(f"malformed response body: {e}") from e
        if not isinstance(payload, dict):
            raise GeolocationProviderError("response body is not an object")
        return payload

    @staticmethod
    def _parse(ip: str, payload: Dict[str, Any]) -> GeoLocation:
        if payload.get("status") != "success":
            logger.info(
                f"Geolocation provider reported no result for {ip}: "
                f"{payload.get('message', payload.get('status'))}"
            )
            return GeoLocation(ip=ip)

        country_code = payload.get("countryCode") or None
        return GeoLocation(
            ip=ip,
            country=payload.get("country") or None,
            country_code=country_code.upper() if country_code else None,
            city=payload.get("city") or None,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def build_geolocation_resolver(
    config: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GeolocationResolver:
    """Build a resolver with its own HTTP client, cache and circuit breaker."""
    config = config or default_settings

    cache = None
    if config.GEOIP_CACHE_ENABLED:
        cache = Cache[GeoLocation](
            name="geolocation",
            max_size=config.GEOIP_CACHE_MAX_SIZE,
            default_ttl_seconds=config.GEOIP_CACHE_TTL_SECONDS,
        )

    circuit = CircuitBreaker(
        "geolocation",
        CircuitBreakerConfig(
            failure_threshold=config.GEOIP_CIRCUIT_FAILURE_THRESHOLD,
            timeout_seconds=config.GEOIP_CIRCUIT_RECOVERY_SECONDS,
        ),
    )

    client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.GEOIP_TIMEOUT_SECONDS),
        transport=transport,
    )

    return GeolocationResolver(
        client=client,
        base_url=config.GEOIP_API_URL,
        timeout_seconds=config.GEOIP_TIMEOUT_SECONDS,
        cache=cache,
        circuit=circuit,
    )
