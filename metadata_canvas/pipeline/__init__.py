"""Canvas orchestration: state, reconciliation and enrichment."""

from metadata_canvas.pipeline.canvas_pipeline import CanvasPipeline
from metadata_canvas.pipeline.content_type import ContentTypeDetection, ContentTypeDetector
from metadata_canvas.pipeline.geocoding_enrichment import GeocodingEnricher
from metadata_canvas.pipeline.reconciler import MetadataReconciler
from metadata_canvas.pipeline.shape_expander import ShapeExpander
from metadata_canvas.pipeline.state import (
    CanvasState,
    CanvasStateStore,
    FieldGroup,
    is_value_filled,
)

__all__ = [
    "CanvasPipeline",
    "CanvasState",
    "CanvasStateStore",
    "ContentTypeDetection",
    "ContentTypeDetector",
    "FieldGroup",
    "GeocodingEnricher",
    "MetadataReconciler",
    "ShapeExpander",
    "is_value_filled",
]
