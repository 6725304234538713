"""Immutable canvas snapshot and its observable container.

Every mutation builds a new :class:`CanvasState` and publishes it to subscribers;
snapshots are never modified in place.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from metadata_canvas.extraction.models import ALLOWED_TRANSITIONS, FieldState, FieldStatus
from metadata_canvas.utils.errors import FieldTransitionError

CORE_SCHEMA_NAME = "Core"

StateListener = Callable[["CanvasState"], None]

_UNSET: Any = object()


def is_value_filled(value: Any) -> bool:
    """True for values that count as present.

    ``None``, blank strings, empty lists and lists of only blank items are not filled.
    """
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple)):
        return any(item is not None and str(item).strip() != "" for item in value)
    return True


class FieldGroup(BaseModel):
    """Display group; ``key`` combines schema and group id so Core and Event groups stay apart."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    schema_name: str
    order: int = 999
    fields: Tuple[FieldState, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.schema_name}::{self.id}"


def group_fields(fields: Sequence[FieldState]) -> Tuple[FieldGroup, ...]:
    """Group fields by schema and group; Core first, then schema name, then group order."""
    grouped: Dict[str, Dict[str, Any]] = {}
    for field_state in fields:
        definition = field_state.definition
        schema_name = definition.schema_name or CORE_SCHEMA_NAME
        group_id = definition.group or "other"
        key = f"{schema_name}::{group_id}"
        if key not in grouped:
            grouped[key] = {
                "id": group_id,
                "label": definition.group_label or "Sonstige",
                "schema_name": schema_name,
                "order": definition.group_order,
                "fields": [],
            }
        grouped[key]["fields"].append(field_state)

    groups = [FieldGroup(**{**data, "fields": tuple(data["fields"])}) for data in grouped.values()]
    groups.sort(key=lambda g: (g.schema_name != CORE_SCHEMA_NAME, g.schema_name, g.order))
    return tuple(groups)


class CanvasState(BaseModel):
    """One consistent view of an extraction session."""

    model_config = ConfigDict(frozen=True)

    user_text: str = ""
    detected_content_type: Optional[str] = None
    content_type_confidence: float = 0.0
    content_type_reason: str = ""
    selected_content_type: Optional[str] = None
    core_fields: Tuple[FieldState, ...] = ()
    special_fields: Tuple[FieldState, ...] = ()
    field_groups: Tuple[FieldGroup, ...] = ()
    is_extracting: bool = False
    extraction_progress: float = 0.0
    total_fields: int = 0
    filled_fields: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def all_fields(self) -> Tuple[FieldState, ...]:
        return self.core_fields + self.special_fields

    def find_field(self, field_id: str) -> Optional[FieldState]:
        """Top-level field or sub-field with ``field_id``."""
        for field_state in self.all_fields:
            if field_state.field_id == field_id:
                return field_state
        return self.find_sub_field(field_id)

    def find_sub_field(self, field_id: str) -> Optional[FieldState]:
        for field_state in self.all_fields:
            sub_field = field_state.find_sub_field(field_id)
            if sub_field is not None:
                return sub_field
        return None

    def find_parent(self, sub_field_id: str) -> Optional[FieldState]:
        for field_state in self.all_fields:
            if field_state.find_sub_field(sub_field_id) is not None:
                return field_state
        return None


def _with_aggregates(state: CanvasState) -> CanvasState:
    fields = state.all_fields
    filled = sum(1 for f in fields if f.status == FieldStatus.FILLED)
    total = len(fields)
    return state.model_copy(
        update={
            "field_groups": group_fields(fields),
            "total_fields": total,
            "filled_fields": filled,
            "extraction_progress": (filled / total * 100) if total else 0.0,
        }
    )


class CanvasStateStore:
    """Owner of the current :class:`CanvasState` snapshot."""

    def __init__(self, state: CanvasState | None = None) -> None:
        self._state = state or CanvasState()
        self._listeners: List[StateListener] = []

    @property
    def snapshot(self) -> CanvasState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener``; it is called with every new snapshot. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, state: CanvasState) -> CanvasState:
        self._state = state
        for listener in list(self._listeners):
            listener(state)
        return state

    def replace(self, **changes: Any) -> CanvasState:
        """Publish a copy of the snapshot with ``changes`` applied.

        Field collection changes recompute groups and fill counts.
        """
        state = self._state.model_copy(update=changes)
        if "core_fields" in changes or "special_fields" in changes:
            state = _with_aggregates(state)
        return self._publish(state)

    def reset(self, state: CanvasState | None = None) -> CanvasState:
        logger.debug("Resetting canvas state")
        return self._publish(state or CanvasState())

    def set_fields(
        self,
        *,
        core_fields: Sequence[FieldState] | None = None,
        special_fields: Sequence[FieldState] | None = None,
        **changes: Any,
    ) -> CanvasState:
        if core_fields is not None:
            changes["core_fields"] = tuple(core_fields)
        if special_fields is not None:
            changes["special_fields"] = tuple(special_fields)
        return self.replace(**changes)

    def find_field(self, field_id: str) -> Optional[FieldState]:
        return self._state.find_field(field_id)

    # -----------------------
    # Field transitions
    # -----------------------
    def update_field(
        self,
        field_id: str,
        status: FieldStatus,
        value: Any = _UNSET,
        confidence: Optional[float] = None,
        error: Optional[str] = None,
    ) -> FieldState:
        """Move ``field_id`` (top-level or sub-field) to ``status``.

        ``Filled`` with a value that is not present is stored as ``Empty``.
        Top-level values are mirrored into ``metadata``.

        Raises:
            KeyError: If no field has this id.
            FieldTransitionError: If the lifecycle forbids the transition.
        """
        current = self._state.find_field(field_id)
        if current is None:
            raise KeyError(f"Unknown field: {field_id}")

        new_value = current.value if value is _UNSET else value
        if status == FieldStatus.FILLED and not is_value_filled(new_value):
            status = FieldStatus.EMPTY

        if status not in ALLOWED_TRANSITIONS[current.status]:
            raise FieldTransitionError(
                f"{field_id}: {current.status.value} -> {status.value} is not allowed"
            )

        changes: Dict[str, Any] = {"status": status, "value": new_value}
        if confidence is not None:
            changes["confidence"] = confidence
        elif status == FieldStatus.EMPTY:
            changes["confidence"] = 0.0
        if error is not None:
            changes["error"] = error
        elif status != FieldStatus.ERROR:
            changes["error"] = None

        updated = current.model_copy(update=changes)
        if current.is_sub_field:
            self._replace_sub_field(updated)
        else:
            self._replace_top_level(updated, mirror_metadata=value is not _UNSET)
        logger.debug("Field {} -> {} ({!r})", field_id, status.value, new_value)
        return updated

    def replace_field(self, field_state: FieldState) -> CanvasState:
        """Swap in a top-level field wholesale (used for sub-field expansion)."""
        return self._replace_top_level(field_state, mirror_metadata=True)

    def _replace_top_level(self, updated: FieldState, *, mirror_metadata: bool) -> CanvasState:
        state = self._state
        core = tuple(updated if f.field_id == updated.field_id else f for f in state.core_fields)
        special = tuple(
            updated if f.field_id == updated.field_id else f for f in state.special_fields
        )
        changes: Dict[str, Any] = {"core_fields": core, "special_fields": special}
        if mirror_metadata:
            metadata = dict(state.metadata)
            metadata[updated.field_id] = updated.value
            changes["metadata"] = metadata
        return self.replace(**changes)

    def _replace_sub_field(self, updated: FieldState) -> CanvasState:
        parent = self._state.find_parent(updated.field_id)
        if parent is None:
            raise KeyError(f"No parent for sub-field: {updated.field_id}")
        sub_fields = tuple(
            updated if sub.field_id == updated.field_id else sub for sub in parent.sub_fields
        )
        return self._replace_top_level(
            parent.model_copy(update={"sub_fields": sub_fields}), mirror_metadata=False
        )
