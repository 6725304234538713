"""Exception types shared across the extraction pipeline."""

from __future__ import annotations


class CanvasError(Exception):
    """Base class for pipeline errors."""


class GatewayError(CanvasError):
    """LLM transport failure.

    ``status_code`` is ``None`` for network-level failures (connection reset,
    timeout). ``retriable`` marks transient conditions the gateway may retry.
    """

    def __init__(
        self, message: str, *, status_code: int | None = None, retriable: bool = False
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retriable = retriable


class SchemaLoadError(CanvasError):
    """A schema document could not be fetched or parsed."""


class GeocodingError(CanvasError):
    """Geocoding lookup failed."""


class FieldTransitionError(CanvasError):
    """A field state change is not allowed by the field lifecycle."""
