"""Schema data models.

Two layers live here:

* ``Schema*`` models mirror the JSON schema files as delivered by the schema
  repository (localizable values still ``{de, en}`` dicts).
* ``FieldDefinition`` and friends are the localized, read-only view the pipeline
  works with.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

LocalizedText = Union[str, Dict[str, Any], None]

CONTROLLED_VOCABULARY_TYPES = frozenset({"closed", "skos"})

_LEAF_DATATYPES = {
    "string": "string",
    "text": "string",
    "number": "number",
    "float": "number",
    "integer": "integer",
    "int": "integer",
    "boolean": "boolean",
    "bool": "boolean",
    "uri": "uri",
    "url": "url",
    "date": "date",
    "datetime": "datetime",
}


# -----------------------
# Raw schema documents
# -----------------------
class ValidationRules(BaseModel):
    """Validation hints attached to a field."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    pattern: Optional[str] = None
    minLength: Optional[int] = None
    maxLength: Optional[int] = None
    min: Optional[float] = None
    max: Optional[float] = None
    integer: Optional[bool] = None
    enum: Optional[List[str]] = None


class SystemDefinition(BaseModel):
    """``system`` block of a schema field."""

    model_config = ConfigDict(extra="ignore")

    uri: Optional[str] = None
    datatype: str = "string"
    multiple: bool = False
    required: bool = False
    ai_fillable: bool = True
    ask_user: bool = True
    repo_field: bool = True
    vocabulary: Optional[Dict[str, Any]] = None
    validation: Optional[ValidationRules] = None
    items: Optional[Dict[str, Any]] = None


class SchemaFieldDefinition(BaseModel):
    """One entry of a schema file's ``fields`` array."""

    model_config = ConfigDict(extra="ignore")

    id: str
    group: Optional[str] = None
    group_label: LocalizedText = None
    label: LocalizedText = None
    description: LocalizedText = None
    required: bool = False
    system: SystemDefinition = Field(default_factory=SystemDefinition)
    prompt: Any = None
    examples: Any = None

    @property
    def is_requestable(self) -> bool:
        """False only when the field is neither AI-fillable nor asked from the user."""
        return self.system.ai_fillable or self.system.ask_user


class FieldGroupDefinition(BaseModel):
    """One entry of a schema file's ``groups`` array."""

    model_config = ConfigDict(extra="ignore")

    id: str
    label: LocalizedText = None


class SchemaDocument(BaseModel):
    """A complete schema file."""

    model_config = ConfigDict(extra="ignore")

    fields: List[SchemaFieldDefinition] = Field(default_factory=list)
    groups: List[FieldGroupDefinition] = Field(default_factory=list)
    output_template: Optional[Dict[str, Any]] = None

    def find_field(self, field_id: str) -> Optional[SchemaFieldDefinition]:
        return next((f for f in self.fields if f.id == field_id), None)


# -----------------------
# Shapes (nested structures)
# -----------------------
class ShapeLeaf(BaseModel):
    """Terminal property of a shape."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["leaf"] = "leaf"
    datatype: str = "string"


class ShapeNode(BaseModel):
    """Object property of a shape; ``type_name`` is the optional ``@type`` discriminant."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["node"] = "node"
    type_name: Optional[str] = None
    properties: Dict[str, Union[ShapeLeaf, ShapeNode]] = Field(default_factory=dict)

    def overlap(self, value: Dict[str, Any]) -> int:
        """Number of declared property names present in ``value``."""
        return sum(1 for key in self.properties if key in value)


class Shape(BaseModel):
    """Sum type over the variants a structured field may take."""

    model_config = ConfigDict(frozen=True)

    variants: List[ShapeNode]

    @classmethod
    def parse(cls, raw: Any) -> Optional[Shape]:
        """Build a shape from ``items.shape`` / ``items.variants`` raw definitions."""
        if not raw:
            return None
        if isinstance(raw, list):
            variants = [_parse_node(item) for item in raw if isinstance(item, dict)]
        elif isinstance(raw, dict) and isinstance(raw.get("oneOf"), list):
            variants = [_parse_node(item) for item in raw["oneOf"] if isinstance(item, dict)]
        elif isinstance(raw, dict):
            variants = [_parse_node(raw)]
        else:
            return None
        if not variants:
            return None
        return cls(variants=variants)

    def resolve(self, value: Any) -> ShapeNode:
        """Pick the variant for ``value``: ``@type`` match first, then best property overlap."""
        if len(self.variants) == 1 or not isinstance(value, dict):
            return self.variants[0]

        type_name = value.get("@type")
        if type_name:
            for variant in self.variants:
                if variant.type_name == type_name:
                    return variant

        best = self.variants[0]
        best_score = 0
        for variant in self.variants:
            score = variant.overlap(value)
            if score > best_score:
                best, best_score = variant, score
        return best

    def to_prompt_structure(self) -> Any:
        """Plain JSON rendering used inside extraction prompts."""
        rendered = [_render_node(variant) for variant in self.variants]
        return rendered[0] if len(rendered) == 1 else {"oneOf": rendered}


def infer_datatype(definition: Any) -> str:
    """Map a leaf definition (``"number"``, ``{"type": "date"}``...) to a datatype."""
    if isinstance(definition, dict):
        definition = definition.get("type") or definition.get("datatype")
    if isinstance(definition, list):
        return "array"
    if isinstance(definition, str):
        return _LEAF_DATATYPES.get(definition.lower(), "string")
    return "string"


def _is_leaf_definition(definition: Any) -> bool:
    if not isinstance(definition, dict):
        return True
    keys = [key for key in definition if key != "description"]
    return not keys or keys[0] in ("type", "datatype")


def _parse_node(raw: Dict[str, Any]) -> ShapeNode:
    properties: Dict[str, Union[ShapeLeaf, ShapeNode]] = {}
    for key, definition in raw.items():
        if key in ("@type", "oneOf"):
            continue
        if _is_leaf_definition(definition):
            properties[key] = ShapeLeaf(datatype=infer_datatype(definition))
        else:
            properties[key] = _parse_node(definition)
    type_name = raw.get("@type")
    return ShapeNode(type_name=type_name if isinstance(type_name, str) else None, properties=properties)


def _render_node(node: ShapeNode) -> Dict[str, Any]:
    rendered: Dict[str, Any] = {}
    if node.type_name:
        rendered["@type"] = node.type_name
    for key, prop in node.properties.items():
        rendered[key] = prop.datatype if isinstance(prop, ShapeLeaf) else _render_node(prop)
    return rendered


# -----------------------
# Localized runtime view
# -----------------------
class VocabularyConcept(BaseModel):
    """A localized vocabulary concept."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    label: str
    label_de: Optional[str] = None
    label_en: Optional[str] = None
    uri: Optional[str] = None
    alt_labels: List[str] = Field(default_factory=list, alias="altLabels")
    schema_file: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None


class Vocabulary(BaseModel):
    """Concept list plus its type (``closed``, ``skos`` or open)."""

    model_config = ConfigDict(frozen=True)

    type: str = "closed"
    concepts: List[VocabularyConcept] = Field(default_factory=list)

    @property
    def is_controlled(self) -> bool:
        return self.type in CONTROLLED_VOCABULARY_TYPES

    def find_concept(self, value: Any) -> Optional[VocabularyConcept]:
        """Concept whose uri, label, or alt label equals ``value`` (in that order)."""
        if not isinstance(value, str):
            return None
        for concept in self.concepts:
            if concept.uri and concept.uri == value:
                return concept
        for concept in self.concepts:
            if concept.label == value or value in (concept.label_de, concept.label_en):
                return concept
        for concept in self.concepts:
            if value in concept.alt_labels:
                return concept
        return None


class FieldDefinition(BaseModel):
    """Localized, read-only definition of a field (top-level or sub-field)."""

    model_config = ConfigDict(frozen=True)

    id: str
    uri: str = ""
    label: str = ""
    description: str = ""
    prompt_hint: str = ""
    group: str = "other"
    group_label: str = ""
    group_order: int = 999
    schema_name: str = "Core"
    required: bool = False
    ai_fillable: bool = True
    repo_field: bool = True
    datatype: str = "string"
    multiple: bool = False
    vocabulary: Optional[Vocabulary] = None
    validation: Optional[ValidationRules] = None
    shape: Optional[Shape] = None
    examples: List[Any] = Field(default_factory=list)

    @property
    def has_vocabulary(self) -> bool:
        return self.vocabulary is not None and bool(self.vocabulary.concepts)

    @property
    def has_controlled_vocabulary(self) -> bool:
        return self.has_vocabulary and self.vocabulary.is_controlled

    @property
    def is_structured(self) -> bool:
        return self.shape is not None or self.datatype == "object"

    def empty_value(self) -> Any:
        return [] if self.multiple or self.datatype == "array" else None
