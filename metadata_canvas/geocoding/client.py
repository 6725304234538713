"""Photon geocoding client (address -> coordinates).

Requests are rate limited to one per ``min_interval`` seconds. Lookups never raise:
HTTP errors, empty result sets and malformed payloads all resolve to ``None``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from metadata_canvas.utils.config import GeocodingConfig
from metadata_canvas.utils.errors import GeocodingError
from metadata_canvas.utils.log_setup import failure_logger

ADDRESS_COMPONENTS = (
    "streetAddress",
    "postalCode",
    "addressLocality",
    "addressRegion",
    "addressCountry",
)


class EnrichedAddress(BaseModel):
    """Address as returned by the geocoder, falling back to the queried values."""

    model_config = ConfigDict(frozen=True)

    streetAddress: Optional[str] = None
    housenumber: Optional[str] = None
    postalCode: Optional[str] = None
    addressLocality: Optional[str] = None
    addressRegion: Optional[str] = None
    addressCountry: Optional[str] = None
    countryCode: Optional[str] = None
    district: Optional[str] = None


class GeocodingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    enriched_address: EnrichedAddress = Field(default_factory=EnrichedAddress)
    osm_data: Dict[str, Any] = Field(default_factory=dict)


def build_query(address: Mapping[str, Any]) -> str:
    """Comma-joined non-empty address components, in postal order."""
    parts = []
    for key in ADDRESS_COMPONENTS:
        value = address.get(key)
        if value not in (None, ""):
            parts.append(str(value).strip())
    return ", ".join(part for part in parts if part)


class RateLimiter:
    """Enforce a minimum interval between calls using a monotonic clock."""

    def __init__(
        self,
        min_interval: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._last_request: Optional[float] = None

    async def wait(self) -> None:
        if self._last_request is not None:
            elapsed = self._clock() - self._last_request
            if elapsed < self.min_interval:
                delay = self.min_interval - elapsed
                logger.debug("Rate limiting geocoder for {:.3f}s", delay)
                await self._sleep(delay)
        self._last_request = self._clock()


class PhotonGeocoder:
    """Async client for a Photon-compatible ``/api`` endpoint."""

    def __init__(
        self,
        config: GeocodingConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.config = config or GeocodingConfig()
        self._http_client = http_client
        self.rate_limiter = rate_limiter or RateLimiter(self.config.min_interval)

    async def geocode_address(self, address: Mapping[str, Any]) -> Optional[GeocodingResult]:
        """Look up coordinates for a ``PostalAddress``-like mapping."""
        query = build_query(address)
        if not query:
            logger.debug("Geocoding skipped: no address components")
            return None

        try:
            payload = await self._request(query)
            result = self._parse(payload, address)
        except GeocodingError as exc:
            failure_logger().warning("Geocoding failed for '{}': {}", query, exc)
            return None

        if result is None:
            logger.info("No geocoding result for '{}'", query)
        else:
            logger.info("Geocoded '{}' -> {}, {}", query, result.latitude, result.longitude)
        return result

    async def _request(self, query: str) -> Dict[str, Any]:
        await self.rate_limiter.wait()
        params = {"q": query, "lang": self.config.language, "limit": self.config.limit}
        try:
            if self._http_client is not None:
                response = await self._http_client.get(self.config.base_url, params=params)
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                    response = await client.get(self.config.base_url, params=params)
        except httpx.HTTPError as exc:
            raise GeocodingError(f"request failed: {exc}") from exc

        if not response.is_success:
            raise GeocodingError(f"HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise GeocodingError(f"invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise GeocodingError("unexpected payload")
        return data

    def _parse(self, data: Dict[str, Any], address: Mapping[str, Any]) -> Optional[GeocodingResult]:
        features = data.get("features") or []
        if not features:
            return None

        feature = features[0] or {}
        coordinates = (feature.get("geometry") or {}).get("coordinates") or []
        if len(coordinates) < 2:
            raise GeocodingError("invalid coordinates in response")

        props = feature.get("properties") or {}
        # Photon returns [lon, lat]
        longitude, latitude = float(coordinates[0]), float(coordinates[1])
        enriched = EnrichedAddress(
            streetAddress=props.get("street") or address.get("streetAddress"),
            housenumber=props.get("housenumber"),
            postalCode=props.get("postcode") or address.get("postalCode"),
            addressLocality=props.get("city") or address.get("addressLocality"),
            addressRegion=props.get("state") or address.get("addressRegion"),
            addressCountry=props.get("country") or address.get("addressCountry"),
            countryCode=props.get("countrycode") or address.get("addressCountry"),
            district=props.get("district"),
        )
        osm_data = {
            key: props[key]
            for key in ("osm_type", "osm_id", "osm_key", "osm_value", "type", "extent")
            if key in props
        }
        return GeocodingResult(
            latitude=latitude,
            longitude=longitude,
            enriched_address=enriched,
            osm_data=osm_data,
        )
