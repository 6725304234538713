"""Address geocoding."""

from metadata_canvas.geocoding.client import (
    GeocodingResult,
    PhotonGeocoder,
    RateLimiter,
    build_query,
)

__all__ = ["GeocodingResult", "PhotonGeocoder", "RateLimiter", "build_query"]
