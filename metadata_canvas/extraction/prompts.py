"""Prompt rendering for extraction, normalization and content-type detection.

Templates are loaded from ``metadata_canvas/prompts/canvas_prompts.yaml`` and
rendered with ``str.format``.
"""

from __future__ import annotations

import json
import re
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from metadata_canvas.schema.models import FieldDefinition, VocabularyConcept

DEFAULT_PROMPTS_PATH = Path(__file__).resolve().parent.parent / "prompts" / "canvas_prompts.yaml"

_ALSO_KNOWN_AS = re.compile(r"\s*\(auch:.*?\)", re.IGNORECASE)


def clean_label(label: str) -> str:
    """Strip ``(auch: ...)`` explanations from a concept label."""
    return _ALSO_KNOWN_AS.sub("", label).strip()


class PromptTemplates:
    """YAML-backed prompt templates."""

    def __init__(self, prompts_path: str | Path = DEFAULT_PROMPTS_PATH) -> None:
        self.prompts_path = Path(prompts_path)
        self.prompts = self._load_prompts(self.prompts_path)

    def _load_prompts(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Prompt template not found: {path}")
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Prompt template root must be a mapping/dict: {path}")
        return data

    def _section(self, key: str) -> Dict[str, Any]:
        if key not in self.prompts:
            raise KeyError(f"Prompt key not found in template: {key}")
        return self.prompts.get(key) or {}

    def render(self, key: str, **context: Any) -> Tuple[str, str]:
        """Render ``(system, user)`` for a prompt key."""
        prompt = self._section(key)
        system = str(prompt.get("system", "")).strip()
        user_template = str(prompt.get("user_template", ""))
        try:
            user = user_template.format(**context)
        except KeyError as exc:
            missing = exc.args[0]
            raise KeyError(f"Missing placeholder '{missing}' in prompt context for '{key}'")
        return system, user

    def fragment(self, key: str, name: str, **context: Any) -> str:
        """Render a named fragment of a prompt key."""
        fragments = self._section(key).get("fragments") or {}
        if name not in fragments:
            raise KeyError(f"Prompt fragment not found: {key}.{name}")
        return str(fragments[name]).format(**context)

    def text(self, key: str, name: str, **context: Any) -> str:
        """Render a plain entry of a section (used by ``retry_modifier``)."""
        section = self._section(key)
        if name not in section:
            raise KeyError(f"Prompt entry not found: {key}.{name}")
        return str(section[name]).format(**context)

    # -----------------------
    # Field extraction
    # -----------------------
    def field_extraction(
        self, field: FieldDefinition, text: str, *, prompt_modifier: Optional[str] = None
    ) -> Tuple[str, str]:
        key = "field_extraction"
        details: List[str] = []
        if field.description:
            details.append(self.fragment(key, "description", description=field.description))
        if field.prompt_hint:
            details.append(self.fragment(key, "instruction", instruction=field.prompt_hint))
        details.append(self.fragment(key, "datatype", datatype=field.datatype))
        if field.multiple:
            details.append(self.fragment(key, "multiple"))

        if field.shape is not None:
            shape = json.dumps(field.shape.to_prompt_structure(), indent=2, ensure_ascii=False)
            details.append(self.fragment(key, "shape", shape=shape))

        if field.examples:
            details.append(self.fragment(key, "examples_header"))
            for index, example in enumerate(field.examples, start=1):
                rendered = json.dumps(example, indent=2, ensure_ascii=False)
                details.append(self.fragment(key, "example", index=index, example=rendered))
            details.append(self.fragment(key, "examples_footer"))

        if field.has_vocabulary:
            details.append(self.fragment(key, "vocabulary_header"))
            details.extend(self._vocabulary_lines(key, field.vocabulary.concepts))

        hints: List[str] = []
        if field.multiple or field.datatype == "array":
            name = "answer_array_objects" if field.shape is not None else "answer_array"
            hints.append(self.fragment(key, name, field_id=field.id))
        if field.has_vocabulary:
            hints.append(self.fragment(key, "vocabulary_rules"))
        if prompt_modifier:
            hints.append(self.fragment(key, "retry", modifier=prompt_modifier))

        return self.render(
            key,
            text=text,
            field_id=field.id,
            label=field.label,
            details="\n".join(details) + "\n",
            answer_hints="\n".join(hints),
        )

    def retry_modifier(self, field: FieldDefinition, attempt: int) -> str:
        """Stricter instruction appended when an answer failed validation."""
        key = "retry_modifier"
        hint = "vocabulary_hint" if field.vocabulary is not None else "default_hint"
        return " ".join(
            [
                self.text(key, "attempt", attempt=attempt),
                self.text(key, hint),
                self.text(key, "formatting"),
            ]
        )

    def _vocabulary_lines(self, key: str, concepts: Sequence[VocabularyConcept]) -> List[str]:
        lines: List[str] = []
        for index, concept in enumerate(concepts, start=1):
            line = self.fragment(key, "vocabulary_item", index=index, label=clean_label(concept.label))
            if concept.alt_labels:
                alternatives = ", ".join(f'"{alt}"' for alt in concept.alt_labels)
                line += self.fragment(key, "vocabulary_alternatives", alternatives=alternatives)
            lines.append(line)
        return lines

    # -----------------------
    # Normalization
    # -----------------------
    def normalization(
        self, field: FieldDefinition, value: Any, *, today: Optional[date] = None
    ) -> Tuple[str, str]:
        key = "normalization"
        rules: List[str] = []
        if field.datatype == "boolean":
            rules.append(self.fragment(key, "rules_boolean"))
        elif field.datatype in ("number", "integer"):
            rules.append(self.fragment(key, "rules_number"))
        elif field.datatype == "date":
            rules.append(self.fragment(key, "rules_date", today=(today or date.today()).isoformat()))
        elif field.datatype in ("uri", "url"):
            rules.append(self.fragment(key, "rules_url"))

        if field.has_vocabulary:
            vocabulary = field.vocabulary
            rules.append(self.fragment(key, "vocabulary_header", vocabulary_type=vocabulary.type))
            rules.extend(self._vocabulary_lines(key, vocabulary.concepts))
            rules.append(
                self.fragment(
                    key, "vocabulary_controlled" if vocabulary.is_controlled else "vocabulary_open"
                )
            )

        if field.validation is not None and field.validation.pattern:
            rules.append(self.fragment(key, "validation_pattern", pattern=field.validation.pattern))

        if isinstance(value, list):
            user_input = self.fragment(
                key, "input_array", value=json.dumps(value, ensure_ascii=False)
            )
            answer = self.fragment(key, "answer_array")
        else:
            user_input = self.fragment(key, "input_single", value=value)
            if field.vocabulary is not None:
                answer = self.fragment(key, "answer_vocabulary")
            elif field.datatype == "boolean":
                answer = self.fragment(key, "answer_boolean")
            elif field.datatype in ("number", "integer"):
                answer = self.fragment(key, "answer_number")
            else:
                answer = self.fragment(key, "answer_default")

        return self.render(
            key,
            label=field.label,
            description=field.description,
            datatype=field.datatype,
            rules="\n".join(rules) + "\n",
            user_input=user_input,
            answer_example=answer,
        )

    # -----------------------
    # Content-type detection
    # -----------------------
    def content_type_detection(
        self, text: str, concepts: Sequence[VocabularyConcept]
    ) -> Tuple[str, str]:
        key = "content_type_detection"
        entries: List[str] = []
        for index, concept in enumerate(concepts, start=1):
            description = (
                self.fragment(key, "concept_description", description=concept.description)
                if concept.description
                else ""
            )
            entries.append(
                self.fragment(
                    key,
                    "concept",
                    index=index,
                    label=concept.label,
                    description=description,
                    schema_file=concept.schema_file or "",
                )
            )
        return self.render(key, text=text, schema_list="\n\n".join(entries))
