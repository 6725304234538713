"""Build output documents from a canvas snapshot."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from metadata_canvas.extraction.models import FieldState
from metadata_canvas.pipeline.shape_expander import ShapeExpander
from metadata_canvas.pipeline.state import CanvasState, is_value_filled
from metadata_canvas.schema.models import Vocabulary

METADATASET_PREFIX = "mds_oeh"


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


class MetadataReconciler:
    """Merge field states into metadata documents.

    Parents are always rebuilt from their sub-fields and sub-field ids never appear
    as top-level keys.
    """

    def __init__(self, shape_expander: ShapeExpander | None = None) -> None:
        self.shape_expander = shape_expander or ShapeExpander()

    def _ordered_keys(self, state: CanvasState) -> List[str]:
        keys = list(state.metadata)
        keys.extend(f.field_id for f in state.all_fields if f.field_id not in state.metadata)
        return keys

    def _sub_field_ids(self, state: CanvasState) -> Set[str]:
        return {sub.field_id for f in state.all_fields for sub in f.sub_fields}

    def _field_value(self, field_state: FieldState) -> Any:
        if field_state.sub_fields:
            return self.shape_expander.reconstruct(field_state)
        return field_state.value

    # -----------------------
    # Metadata document
    # -----------------------
    def build_document(self, state: CanvasState) -> Dict[str, Any]:
        """Field id -> value, ``{label, uri}`` pair(s), or reconstructed object."""
        fields = {f.field_id: f for f in state.all_fields}
        sub_field_ids = self._sub_field_ids(state)
        document: Dict[str, Any] = {}

        for field_id in self._ordered_keys(state):
            if field_id in sub_field_ids:
                continue
            field_state = fields.get(field_id)
            if field_state is None:
                document[field_id] = state.metadata.get(field_id)
                continue

            value = self._field_value(field_state)
            definition = field_state.definition
            if field_state.sub_fields or not definition.has_vocabulary:
                document[field_id] = value
                continue

            if isinstance(value, list):
                document[field_id] = [
                    label_uri_pair(item, definition.vocabulary) for item in value if not _is_blank(item)
                ]
            elif not _is_blank(value):
                document[field_id] = label_uri_pair(value, definition.vocabulary)
            else:
                document[field_id] = [] if definition.multiple else None
        return document

    # -----------------------
    # Repository payload
    # -----------------------
    def build_repository_payload(self, state: CanvasState) -> Dict[str, Any]:
        """Repository API format: vocabulary values become URI lists."""
        fields = {f.field_id: f for f in state.all_fields}
        sub_field_ids = self._sub_field_ids(state)
        payload: Dict[str, Any] = {}

        for field_id in self._ordered_keys(state):
            if field_id in sub_field_ids:
                continue
            field_state = fields.get(field_id)
            if field_state is None:
                payload[field_id] = state.metadata.get(field_id)
                continue

            value = self._field_value(field_state)
            definition = field_state.definition
            if field_state.sub_fields:
                payload[field_id] = value
            elif definition.has_vocabulary:
                payload[field_id] = _vocabulary_uris(value, definition.vocabulary)
            elif definition.multiple and not isinstance(value, list):
                payload[field_id] = [value] if value else []
            elif not definition.multiple and isinstance(value, list):
                payload[field_id] = value[0] if value else None
            else:
                payload[field_id] = value
        return payload

    # -----------------------
    # Export and prompt context
    # -----------------------
    def export_as_json(self, state: CanvasState) -> Dict[str, Any]:
        metadataset = METADATASET_PREFIX
        if state.selected_content_type:
            content_type = state.selected_content_type
            if content_type.endswith(".json"):
                content_type = content_type[:-5]
            metadataset = f"{METADATASET_PREFIX}_{content_type}"

        exported: Dict[str, Any] = {"metadataset": metadataset}
        for field_state in state.all_fields:
            value = self._field_value(field_state)
            if not _is_blank(value):
                exported[field_state.field_id] = value
        return exported

    def metadata_context(self, state: CanvasState) -> str:
        """Summary of filled fields appended to the text of a follow-up run."""
        lines = []
        for field_state in state.all_fields:
            value = self._field_value(field_state)
            if not is_value_filled(value):
                continue
            if isinstance(value, list):
                rendered = ", ".join(
                    json.dumps(item, ensure_ascii=False) if isinstance(item, dict) else str(item)
                    for item in value
                )
            elif isinstance(value, dict):
                rendered = json.dumps(value, ensure_ascii=False)
            else:
                rendered = str(value)
            lines.append(f"{field_state.label}: {rendered}")

        if not lines:
            return ""
        return "\n\nAktueller Metadaten-Stand:\n" + "\n".join(lines)


def label_uri_pair(value: Any, vocabulary: Optional[Vocabulary]) -> Dict[str, str]:
    """``{label, uri}`` for a vocabulary value (looked up by uri, label, then alt label)."""
    if isinstance(value, dict) and "uri" in value:
        return {"label": str(value.get("label") or value["uri"]), "uri": str(value["uri"] or "")}

    concept = vocabulary.find_concept(value) if vocabulary is not None else None
    if concept is not None:
        return {"label": concept.label, "uri": concept.uri or ""}

    logger.warning("Value '{}' not found in vocabulary concepts", value)
    return {"label": str(value), "uri": ""}


def _vocabulary_uri(value: Any, vocabulary: Vocabulary) -> Any:
    if isinstance(value, dict) and value.get("uri"):
        return value["uri"]
    concept = vocabulary.find_concept(value)
    if concept is not None and concept.uri:
        return concept.uri
    return value


def _vocabulary_uris(value: Any, vocabulary: Vocabulary) -> List[Any]:
    if isinstance(value, list):
        return [_vocabulary_uri(item, vocabulary) for item in value if not _is_blank(item)]
    if _is_blank(value):
        return []
    return [_vocabulary_uri(value, vocabulary)]
