"""Schema models, loading and localization."""

from metadata_canvas.schema.loader import SchemaLoader
from metadata_canvas.schema.localizer import SchemaLocalizer
from metadata_canvas.schema.models import (
    FieldDefinition,
    SchemaDocument,
    SchemaFieldDefinition,
    Shape,
    ShapeLeaf,
    ShapeNode,
    Vocabulary,
    VocabularyConcept,
)

__all__ = [
    "FieldDefinition",
    "SchemaDocument",
    "SchemaFieldDefinition",
    "SchemaLoader",
    "SchemaLocalizer",
    "Shape",
    "ShapeLeaf",
    "ShapeNode",
    "Vocabulary",
    "VocabularyConcept",
]
