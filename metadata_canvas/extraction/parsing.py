"""Parsing of LLM answers into field values."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

from loguru import logger

from metadata_canvas.schema.models import FieldDefinition

_NOT_FOUND = {"", "null", "nicht gefunden", "none", "n/a"}


def _balanced_object_end(text: str, start: int) -> int:
    """Index of the brace closing the object opened at ``start`` (-1 if unbalanced)."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return -1


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first balanced ``{...}`` block in ``text`` that parses as JSON.

    Prose and markdown fences around the object are ignored; braces inside JSON
    strings do not count towards nesting.
    """
    if not text:
        return None

    start = text.find("{")
    while start != -1:
        end = _balanced_object_end(text, start)
        if end == -1:
            return None
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(data, dict):
            return data
        start = text.find("{", end + 1)
    return None


def _flatten_object(value: Dict[str, Any]) -> Optional[str]:
    if "amount" in value and "currency" in value:
        return f"{value['amount']} {value['currency']}"
    flattened = ", ".join(f"{key}: {item}" for key, item in value.items())
    return flattened or None


def _flatten_item(item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    if "amount" in item and "currency" in item:
        return f"{item['amount']} {item['currency']}"
    parts = []
    for key, nested in item.items():
        if isinstance(nested, (dict, list)):
            parts.append(f"{key}: {json.dumps(nested, ensure_ascii=False)}")
        else:
            parts.append(str(nested))
    return ", ".join(parts)


def _is_blank(item: Any) -> bool:
    return item is None or str(item).strip() == ""


def coerce_field_value(value: Any, field: FieldDefinition) -> Any:
    """Shape a raw JSON value to what ``field`` can hold (``None`` when empty)."""
    if value is None:
        return None

    structured = field.shape is not None
    if isinstance(value, dict) and not structured:
        value = _flatten_object(value)
        logger.debug("{}: flattened object to {!r}", field.id, value)

    if isinstance(value, list):
        if not value:
            return None
        if not structured:
            value = [_flatten_item(item) for item in value]

    if field.multiple and not isinstance(value, list):
        if isinstance(value, str) and value.strip():
            value = [value]
        elif structured and isinstance(value, dict):
            value = [value]
        else:
            return None

    if isinstance(value, list):
        value = [item for item in value if not _is_blank(item)]
        return value or None

    if isinstance(value, str) and not value.strip():
        return None
    return value


def parse_text_value(content: str, field: FieldDefinition) -> Any:
    """Fallback for answers that carry no JSON object."""
    text = content.strip()
    if text.lower() in _NOT_FOUND:
        return None

    if field.datatype == "array":
        return [part.strip() for part in text.split(",") if part.strip()] or None

    if field.datatype == "uri" and field.validation is not None and field.validation.pattern:
        if not re.search(field.validation.pattern, text):
            return None

    if field.vocabulary is not None:
        lowered = text.lower()
        for concept in field.vocabulary.concepts:
            if concept.label.lower() == lowered or any(
                alt.lower() == lowered for alt in concept.alt_labels
            ):
                return concept.label

    return text


def parse_field_value(content: str, field: FieldDefinition) -> Any:
    """Extract the value for ``field`` from an answer shaped ``{"<field_id>": <value>}``."""
    payload = extract_json_object(content)
    if payload is None:
        logger.debug("{}: no JSON object in answer, using text fallback", field.id)
        return parse_text_value(content, field)

    if field.id in payload:
        raw = payload[field.id]
    elif len(payload) == 1:
        raw = next(iter(payload.values()))
    else:
        raw = None
    return coerce_field_value(raw, field)
