"""Fill latitude/longitude sub-fields of location fields from their address."""

from __future__ import annotations

from typing import Dict, List, Optional

from loguru import logger

from metadata_canvas.extraction.models import FieldState, FieldStatus
from metadata_canvas.geocoding.client import PhotonGeocoder
from metadata_canvas.pipeline.state import CanvasStateStore
from metadata_canvas.utils.config import GeocodingConfig
from metadata_canvas.utils.log_setup import failure_logger

ADDRESS_KEYS = ("streetAddress", "postalCode", "addressLocality", "addressRegion", "addressCountry")


def is_address_field(field_id: str) -> bool:
    """True for sub-field ids that hold part of a postal address."""
    return any(key in field_id for key in ADDRESS_KEYS)


def _find(sub_fields: List[FieldState], name: str) -> Optional[FieldState]:
    return next((sub for sub in sub_fields if name in (sub.path or sub.field_id)), None)


def _has_value(field_state: Optional[FieldState]) -> bool:
    return field_state is not None and field_state.value not in (None, "")


class GeocodingEnricher:
    """Geocode location sub-fields in a :class:`CanvasStateStore`."""

    def __init__(self, geocoder: PhotonGeocoder, config: GeocodingConfig | None = None) -> None:
        self.geocoder = geocoder
        self.config = config or GeocodingConfig()

    async def enrich(self, store: CanvasStateStore) -> int:
        """Geocode every location that has an address but no coordinates.

        Returns the number of locations geocoded.
        """
        if not self.config.enabled:
            return 0

        geocoded = 0
        for field_state in store.snapshot.all_fields:
            if field_state.field_id not in self.config.location_field_ids or not field_state.sub_fields:
                continue
            indices = sorted({sub.array_index for sub in field_state.sub_fields})
            for index in indices:
                if await self._enrich_location(store, field_state.field_id, index):
                    geocoded += 1

        if geocoded:
            logger.info("Geocoding enrichment complete: {} location(s) geocoded", geocoded)
        else:
            logger.debug("No locations geocoded")
        return geocoded

    async def regeocode(self, store: CanvasStateStore, sub_field_id: str) -> bool:
        """Geocode again after the user edited the address sub-field ``sub_field_id``."""
        if not self.config.enabled:
            return False
        parent = store.snapshot.find_parent(sub_field_id)
        sub_field = store.snapshot.find_sub_field(sub_field_id)
        if parent is None or sub_field is None:
            logger.debug("No parent location field for {}", sub_field_id)
            return False
        return await self._enrich_location(store, parent.field_id, sub_field.array_index, force=True)

    async def _enrich_location(
        self, store: CanvasStateStore, parent_id: str, index: int, *, force: bool = False
    ) -> bool:
        parent = store.snapshot.find_field(parent_id)
        if parent is None:
            return False
        sub_fields = [sub for sub in parent.sub_fields if sub.array_index == index]

        parts: Dict[str, Optional[FieldState]] = {key: _find(sub_fields, key) for key in ADDRESS_KEYS}
        latitude = _find(sub_fields, "latitude")
        longitude = _find(sub_fields, "longitude")

        if not any(_has_value(parts[key]) for key in ("streetAddress", "postalCode", "addressLocality")):
            logger.debug("Skipping {}[{}]: no address data", parent_id, index)
            return False
        if latitude is None or longitude is None:
            logger.debug("Skipping {}[{}]: no latitude/longitude sub-fields", parent_id, index)
            return False
        if not force and _has_value(latitude) and _has_value(longitude):
            logger.debug("Skipping {}[{}]: coordinates already present", parent_id, index)
            return False

        address = {key: (sub.value if _has_value(sub) else "") for key, sub in parts.items()}
        try:
            result = await self.geocoder.geocode_address(address)
        except Exception as exc:  # noqa: BLE001
            failure_logger().warning("Geocoding failed for {}[{}]: {}", parent_id, index, exc)
            return False
        if result is None:
            return False
        current = store.snapshot
        if (
            current.find_sub_field(latitude.field_id) is None
            or current.find_sub_field(longitude.field_id) is None
        ):
            logger.debug("Discarding geocoding result for {}[{}]: location was replaced", parent_id, index)
            return False

        precision = self.config.coordinate_precision
        store.update_field(
            latitude.field_id, FieldStatus.FILLED, round(result.latitude, precision), confidence=1.0
        )
        store.update_field(
            longitude.field_id, FieldStatus.FILLED, round(result.longitude, precision), confidence=1.0
        )

        enriched = result.enriched_address
        region, country = (
            current.find_sub_field(part.field_id) if part is not None else None
            for part in (parts["addressRegion"], parts["addressCountry"])
        )
        if enriched.addressRegion and region is not None and not _has_value(region):
            store.update_field(region.field_id, FieldStatus.FILLED, enriched.addressRegion, confidence=1.0)
        if enriched.addressCountry and country is not None and not _has_value(country):
            store.update_field(
                country.field_id, FieldStatus.FILLED, enriched.addressCountry, confidence=1.0
            )

        logger.info(
            "Geocoded {}[{}] -> {}, {}", parent_id, index, result.latitude, result.longitude
        )
        return True
