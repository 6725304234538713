"""Localization of raw schema fields into :class:`FieldDefinition` objects."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from metadata_canvas.schema.models import (
    CONTROLLED_VOCABULARY_TYPES,
    FieldDefinition,
    FieldGroupDefinition,
    SchemaFieldDefinition,
    Shape,
    Vocabulary,
    VocabularyConcept,
)

FALLBACK_GROUP_LABELS = {"de": "Sonstige", "en": "Other"}


class SchemaLocalizer:
    """Resolve ``{de, en}`` values for one active language."""

    def __init__(self, language: str = "de") -> None:
        self.language = language

    def localize_string(self, value: Any, language: Optional[str] = None, fallback: str = "") -> str:
        """Pick ``language``, then ``de``, then ``en`` from a localized dict."""
        lang = language or self.language
        if not value:
            return fallback
        if isinstance(value, str):
            return value
        if isinstance(value, dict):
            for key in (lang, "de", "en"):
                candidate = value.get(key)
                if candidate:
                    return str(candidate)
        return fallback

    def localize_list(self, value: Any, language: Optional[str] = None) -> List[Any]:
        lang = language or self.language
        if not value:
            return []
        if isinstance(value, list):
            return list(value)
        if isinstance(value, dict):
            localized = value.get(lang) or value.get("de") or value.get("en")
            if localized is None:
                return []
            return list(localized) if isinstance(localized, list) else [localized]
        return [value]

    def fallback_group_label(self, language: Optional[str] = None) -> str:
        return FALLBACK_GROUP_LABELS.get(language or self.language, FALLBACK_GROUP_LABELS["de"])

    def localize_vocabulary(self, vocabulary: Mapping[str, Any]) -> Vocabulary:
        """Localize concepts and keep both language labels for cross-language matching."""
        vocab_type = vocabulary.get("type")
        if vocab_type not in CONTROLLED_VOCABULARY_TYPES and vocab_type != "open":
            vocab_type = "closed"

        concepts: List[VocabularyConcept] = []
        for raw in vocabulary.get("concepts") or []:
            if not isinstance(raw, dict):
                continue
            label = self.localize_string(raw.get("label")) or raw.get("uri") or ""
            if not label:
                continue
            concepts.append(
                VocabularyConcept(
                    label=label,
                    label_de=self.localize_string(raw.get("label"), "de") or None,
                    label_en=self.localize_string(raw.get("label"), "en") or None,
                    uri=raw.get("uri"),
                    alt_labels=[str(a) for a in self.localize_list(raw.get("altLabels"))],
                    schema_file=raw.get("schema_file"),
                    description=self.localize_string(raw.get("description")) or None,
                    icon=raw.get("icon"),
                )
            )
        return Vocabulary(type=vocab_type, concepts=concepts)

    def _prompt_block(self, prompt: Any) -> Dict[str, Any]:
        """Normalize the ``prompt`` entry to a dict of ``label/description/examples``."""
        if not isinstance(prompt, dict):
            return {}
        for key in (self.language, "de", "en"):
            nested = prompt.get(key)
            if isinstance(nested, dict):
                return nested
        return prompt

    def localize_field(
        self,
        field: SchemaFieldDefinition,
        *,
        schema_name: str = "Core",
        groups: Optional[List[FieldGroupDefinition]] = None,
    ) -> FieldDefinition:
        """Build the runtime definition of ``field``."""
        groups = groups or []
        group_id = field.group or "other"
        group_labels = {g.id: self.localize_string(g.label) for g in groups}
        group_order = {g.id: index for index, g in enumerate(groups)}

        prompt = self._prompt_block(field.prompt)
        label = (
            self.localize_string(field.label)
            or self.localize_string(prompt.get("label"))
            or field.id
        )
        description = self.localize_string(field.description) or self.localize_string(
            prompt.get("description")
        )
        prompt_hint = (
            field.prompt
            if isinstance(field.prompt, str)
            else self.localize_string(prompt.get("instruction") or prompt.get("hint"))
        )
        examples = self.localize_list(field.examples) + self.localize_list(prompt.get("examples"))

        system = field.system
        vocabulary = self.localize_vocabulary(system.vocabulary) if system.vocabulary else None
        shape = None
        if system.items:
            shape = Shape.parse(system.items.get("shape") or system.items.get("variants"))

        return FieldDefinition(
            id=field.id,
            uri=system.uri or field.id,
            label=label,
            description=description,
            prompt_hint=prompt_hint,
            group=group_id,
            group_label=(
                self.localize_string(field.group_label)
                or group_labels.get(group_id)
                or self.fallback_group_label()
            ),
            group_order=group_order.get(group_id, 999),
            schema_name=schema_name,
            required=system.required or field.required,
            ai_fillable=system.ai_fillable,
            repo_field=system.repo_field,
            datatype=system.datatype or "string",
            multiple=system.multiple,
            vocabulary=vocabulary,
            validation=system.validation,
            shape=shape,
            examples=examples,
        )


def schema_display_name(schema_file: str) -> str:
    """``education_offer.json`` -> ``Education Offer``."""
    stem = schema_file[:-5] if schema_file.endswith(".json") else schema_file
    return " ".join(word.capitalize() for word in stem.split("_") if word)
