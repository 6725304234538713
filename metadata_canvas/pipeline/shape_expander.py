"""Expansion of structured values into editable sub-fields, and the reverse."""

from __future__ import annotations

import re
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List, Optional

from loguru import logger

from metadata_canvas.extraction.models import FieldState, FieldStatus
from metadata_canvas.schema.models import FieldDefinition, Shape, ShapeLeaf, ShapeNode

_CAPITAL = re.compile(r"([A-Z])")


def format_label(key: str) -> str:
    """``streetAddress`` / ``street_address`` -> ``Street Address`` style label."""
    spaced = _CAPITAL.sub(r" \1", key).replace("_", " ").strip()
    return spaced[:1].upper() + spaced[1:]


def sub_field_id(parent_id: str, path: str, array_index: int) -> str:
    if array_index > 0:
        return f"{parent_id}[{array_index}].{path}"
    return f"{parent_id}.{path}"


class ShapeExpander:
    """Turn a shaped value into leaf sub-fields and rebuild it from them."""

    def expand(self, parent: FieldState, value: Any) -> List[FieldState]:
        """Sub-fields for ``value`` (one object or a list of objects).

        The variant per object is chosen by ``@type`` or, failing that, by the
        largest overlap of declared property names.
        """
        shape = parent.definition.shape
        if shape is None:
            return []

        items = value if isinstance(value, list) else [value]
        sub_fields: List[FieldState] = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            variant = shape.resolve(item)
            sub_fields.extend(self._expand_node(parent, variant, item, index, prefix="", variant=variant))

        logger.debug("Expanded {} into {} sub-fields", parent.field_id, len(sub_fields))
        return sub_fields

    def _expand_node(
        self,
        parent: FieldState,
        node: ShapeNode,
        value: Dict[str, Any],
        index: int,
        *,
        prefix: str,
        variant: ShapeNode,
    ) -> List[FieldState]:
        sub_fields: List[FieldState] = []
        for key, prop in node.properties.items():
            path = f"{prefix}{key}"
            prop_value = value.get(key) if isinstance(value, dict) else None
            if isinstance(prop, ShapeNode):
                nested = prop_value if isinstance(prop_value, dict) else {}
                sub_fields.extend(
                    self._expand_node(parent, prop, nested, index, prefix=f"{path}.", variant=variant)
                )
                continue
            sub_fields.append(self._sub_field(parent, path, key, prop, prop_value, index, variant))
        return sub_fields

    def _sub_field(
        self,
        parent: FieldState,
        path: str,
        key: str,
        leaf: ShapeLeaf,
        value: Any,
        index: int,
        variant: ShapeNode,
    ) -> FieldState:
        parent_def = parent.definition
        definition = FieldDefinition(
            id=sub_field_id(parent_def.id, path, index),
            uri=f"{parent_def.uri}#{path}",
            label=format_label(key),
            description=f"Sub-field of {parent_def.label}",
            group=parent_def.group,
            group_label=parent_def.group_label,
            group_order=parent_def.group_order,
            schema_name=parent_def.schema_name,
            required=False,
            ai_fillable=False,
            repo_field=parent_def.repo_field,
            datatype=leaf.datatype,
            multiple=False,
        )
        present = value is not None
        return FieldState(
            definition=definition,
            status=FieldStatus.FILLED if present else FieldStatus.EMPTY,
            value=value,
            confidence=1.0 if present else 0.0,
            parent_field_id=parent_def.id,
            path=path,
            array_index=index,
            shape_variant=variant.type_name,
        )

    # -----------------------
    # Reconstruction
    # -----------------------
    def reconstruct(self, parent: FieldState) -> Any:
        """Rebuild the parent's value from its sub-fields.

        Returns a list for ``multiple`` parents, one object otherwise, or the raw
        value when the parent has no sub-fields.
        """
        if not parent.sub_fields:
            return parent.value

        by_index: DefaultDict[int, List[FieldState]] = defaultdict(list)
        for sub in parent.sub_fields:
            by_index[sub.array_index].append(sub)

        shape = parent.definition.shape
        objects = [
            self._build_object(by_index[index], shape) for index in sorted(by_index)
        ]
        if parent.definition.multiple:
            return objects
        return objects[0] if objects else None

    def _build_object(self, sub_fields: List[FieldState], shape: Optional[Shape]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for sub in sub_fields:
            if not sub.path or sub.value is None:
                continue
            parts = sub.path.split(".")
            current = result
            for part in parts[:-1]:
                if not isinstance(current.get(part), dict):
                    current[part] = {}
                current = current[part]
            current[parts[-1]] = sub.value

        if shape is None or not result:
            return result

        variant = self._variant_for(sub_fields, shape, result)
        return _with_type(variant, result)

    def _variant_for(
        self, sub_fields: List[FieldState], shape: Shape, value: Dict[str, Any]
    ) -> ShapeNode:
        type_name = next((sub.shape_variant for sub in sub_fields if sub.shape_variant), None)
        if type_name:
            for variant in shape.variants:
                if variant.type_name == type_name:
                    return variant
        return shape.resolve(value)


def _with_type(node: ShapeNode, value: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``value`` carrying the declared ``@type`` of ``node`` and its nested nodes."""
    typed: Dict[str, Any] = {}
    if node.type_name:
        typed["@type"] = node.type_name
    for key, item in value.items():
        prop = node.properties.get(key)
        if isinstance(prop, ShapeNode) and isinstance(item, dict) and item:
            typed[key] = _with_type(prop, item)
        else:
            typed[key] = item
    return typed
