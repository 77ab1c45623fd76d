from __future__ import annotations

import ipaddress
import json
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from boxoffice.logging import get_logger
from boxoffice.storage.errors import StoreUnavailable
from boxoffice.storage.models import Coordinate

logger = get_logger(__name__)


@dataclass(frozen=True)
class GeoLocation:
    ip: str
    country: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    isp: Optional[str] = None
    cached: bool = False

    @property
    def coordinate(self) -> Optional[Coordinate]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinate(self.latitude, self.longitude, city=self.city, country=self.country)


def normalize_ip(ip: str) -> str:
    value = (ip or "").strip()
    # IPv4-mapped IPv6 addresses arrive from dual-stack listeners
    if value.lower().startswith("::ffff:"):
        return value[7:]
    return value


def is_private_ip(ip: str) -> bool:
    if not ip or ip == "localhost":
        return True
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return True
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved


def _float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _from_ip_api(ip: str, data: Dict[str, Any]) -> Optional[GeoLocation]:
    if data.get("status") != "success":
        return None
    return GeoLocation(
        ip=ip,
        country=data.get("country"),
        country_code=data.get("countryCode"),
        region=data.get("region"),
        city=data.get("city"),
        latitude=_float(data.get("lat")),
        longitude=_float(data.get("lon")),
        timezone=data.get("timezone"),
        isp=data.get("isp"),
    )


def _from_ipapi_co(ip: str, data: Dict[str, Any]) -> Optional[GeoLocation]:
    if data.get("error"):
        return None
    return GeoLocation(
        ip=ip,
        country=data.get("country_name"),
        country_code=data.get("country_code"),
        region=data.get("region"),
        city=data.get("city"),
        latitude=_float(data.get("latitude")),
        longitude=_float(data.get("longitude")),
        timezone=data.get("timezone"),
        isp=data.get("org"),
    )


def _from_ipwhois(ip: str, data: Dict[str, Any]) -> Optional[GeoLocation]:
    if not data.get("success"):
        return None
    return GeoLocation(
        ip=ip,
        country=data.get("country"),
        country_code=data.get("country_code"),
        region=data.get("region"),
        city=data.get("city"),
        latitude=_float(data.get("latitude")),
        longitude=_float(data.get("longitude")),
        timezone=data.get("timezone"),
        isp=data.get("isp"),
    )


Provider = Tuple[str, str, Callable[[str, Dict[str, Any]], Optional[GeoLocation]]]

DEFAULT_PROVIDERS: List[Provider] = [
    (
        "ip-api.com",
        "http://ip-api.com/json/{ip}?fields=status,country,countryCode,region,city,lat,lon,timezone,isp",
        _from_ip_api,
    ),
    ("ipapi.co", "https://ipapi.co/{ip}/json/", _from_ipapi_co),
    (
        "ipwhois.app",
        "https://ipwhois.app/json/{ip}?objects=success,country,country_code,city,region,latitude,longitude,timezone,isp",
        _from_ipwhois,
    ),
]


class GeolocationResolver:
    """Resolve an IP to a location through a chain of free providers.

    Private and loopback addresses never leave the process. Successful
    lookups are cached. Network and provider failures yield an "Unknown"
    location without a coordinate; this never raises.
    """

    def __init__(
        self,
        cache=None,
        *,
        enabled: bool = True,
        cache_seconds: int = 86400,
        timeout_seconds: float = 5.0,
        providers: Optional[List[Provider]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.cache = cache
        self.enabled = enabled
        self.cache_seconds = cache_seconds
        self.timeout_seconds = timeout_seconds
        self.providers = providers if providers is not None else list(DEFAULT_PROVIDERS)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def resolve(self, ip: str) -> GeoLocation:
        normalized = normalize_ip(ip)
        if is_private_ip(normalized):
            return GeoLocation(ip=normalized, country="Local", country_code="LOCAL", city="Local Network")
        if not self.enabled:
            return GeoLocation(ip=normalized, country="Unknown", country_code="XX", city="Unknown")

        cached = await self._cached(normalized)
        if cached:
            return cached

        for name, url, parse in self.providers:
            location = await self._fetch(name, url.format(ip=normalized), normalized, parse)
            if location:
                await self._store(normalized, location)
                logger.debug("geolocation_resolved", provider=name, city=location.city, country=location.country)
                return location

        logger.warning("geolocation_failed", ip=normalized)
        return GeoLocation(ip=normalized, country="Unknown", country_code="XX", city="Unknown")

    async def _fetch(self, name: str, url: str, ip: str, parse) -> Optional[GeoLocation]:
        try:
            client = await self._get_client()
            response = await client.get(url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("geolocation_provider_failed", provider=name, error=str(exc))
            return None
        if not isinstance(data, dict):
            return None
        return parse(ip, data)

    async def _cached(self, ip: str) -> Optional[GeoLocation]:
        if self.cache is None:
            return None
        try:
            raw = await self.cache.get_value(f"geo:{ip}")
        except StoreUnavailable:
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
            data["cached"] = True
            return GeoLocation(**data)
        except (TypeError, ValueError):
            logger.warning("geolocation_cache_malformed", ip=ip)
            return None

    async def _store(self, ip: str, location: GeoLocation) -> None:
        if self.cache is None:
            return
        payload = asdict(location)
        payload.pop("cached", None)
        try:
            await self.cache.set_value(f"geo:{ip}", json.dumps(payload), self.cache_seconds)
        except StoreUnavailable as exc:
            logger.warning("geolocation_cache_write_failed", error=str(exc))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
