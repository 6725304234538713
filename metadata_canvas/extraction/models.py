"""Data models for field extraction."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from metadata_canvas.schema.models import FieldDefinition


class FieldStatus(str, Enum):
    """Lifecycle state of a single field."""

    EMPTY = "empty"
    EXTRACTING = "extracting"
    FILLED = "filled"
    ERROR = "error"


ALLOWED_TRANSITIONS = {
    FieldStatus.EMPTY: {FieldStatus.EMPTY, FieldStatus.EXTRACTING, FieldStatus.FILLED},
    FieldStatus.EXTRACTING: {
        FieldStatus.EXTRACTING,
        FieldStatus.FILLED,
        FieldStatus.ERROR,
        FieldStatus.EMPTY,
    },
    FieldStatus.FILLED: {FieldStatus.FILLED, FieldStatus.EXTRACTING, FieldStatus.EMPTY},
    FieldStatus.ERROR: {FieldStatus.ERROR, FieldStatus.EXTRACTING, FieldStatus.EMPTY, FieldStatus.FILLED},
}


class FieldState(BaseModel):
    """Runtime state of a field or of one shaped sub-field."""

    model_config = ConfigDict(frozen=True)

    definition: FieldDefinition
    status: FieldStatus = FieldStatus.EMPTY
    value: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    error: Optional[str] = None
    parent_field_id: Optional[str] = None
    path: Optional[str] = None
    array_index: int = 0
    shape_variant: Optional[str] = None
    sub_fields: Tuple[FieldState, ...] = ()

    @classmethod
    def initial(cls, definition: FieldDefinition) -> FieldState:
        return cls(definition=definition, value=definition.empty_value())

    @property
    def field_id(self) -> str:
        return self.definition.id

    @property
    def label(self) -> str:
        return self.definition.label

    @property
    def is_sub_field(self) -> bool:
        return self.parent_field_id is not None

    @property
    def is_parent(self) -> bool:
        """Shaped top-level fields derive their value from sub-fields."""
        return self.definition.shape is not None and not self.is_sub_field

    def find_sub_field(self, field_id: str) -> Optional[FieldState]:
        return next((sub for sub in self.sub_fields if sub.field_id == field_id), None)


class ExtractionTask(BaseModel):
    """Immutable request to extract one field from source text."""

    model_config = ConfigDict(frozen=True)

    field: FieldDefinition
    text: str
    priority: int = 5
    retry_attempt: int = 0
    prompt_modifier: Optional[str] = None


class ExtractionResult(BaseModel):
    """Outcome of an extraction task; failures carry ``value=None`` and ``confidence=0``."""

    model_config = ConfigDict(frozen=True)

    field_id: str
    value: Any = None
    confidence: float = 0.0
    error: Optional[str] = None

    @classmethod
    def empty(cls, field_id: str) -> ExtractionResult:
        return cls(field_id=field_id, value=None, confidence=0.0)
