"""Exact, normalized and Levenshtein-based label resolution against vocabularies."""

from __future__ import annotations

import math
import re
from typing import Any, List, Literal, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict
from rapidfuzz.distance import Levenshtein

from metadata_canvas.schema.models import Vocabulary, VocabularyConcept
from metadata_canvas.utils.config import NormalizationConfig

_SEPARATORS = re.compile(r"[-_]")
_WHITESPACE = re.compile(r"\s+")


class VocabularyMatch(BaseModel):
    """Resolved concept for an input value."""

    model_config = ConfigDict(frozen=True)

    value: str
    label: str
    uri: str | None = None
    method: Literal["exact", "normalized", "fuzzy"]
    distance: int = 0


def normalize_label(value: str) -> str:
    """Lowercase, turn hyphens/underscores into spaces, collapse whitespace."""
    lowered = value.lower().strip()
    return _WHITESPACE.sub(" ", _SEPARATORS.sub(" ", lowered)).strip()


class VocabularyMatcher:
    """Resolve free text to concept labels.

    Controlled (``closed``/``skos``) vocabularies only ever yield a concept label or
    ``None``. Open vocabularies keep unmatched input as free text.
    """

    def __init__(self, config: NormalizationConfig | None = None) -> None:
        self.config = config or NormalizationConfig()

    def max_distance(self, normalized_value: str) -> int:
        """Largest accepted edit distance for an input of this length."""
        return min(
            self.config.fuzzy_max_distance,
            math.ceil(self.config.fuzzy_ratio * len(normalized_value)),
        )

    def find(
        self, value: str, concepts: Sequence[VocabularyConcept], *, fuzzy: bool = True
    ) -> Optional[VocabularyMatch]:
        """Best concept for ``value`` or ``None`` when nothing is close enough."""
        if not value or not concepts:
            return None

        lowered = value.lower().strip()
        for concept in concepts:
            if concept.uri and concept.uri == value.strip():
                return VocabularyMatch(value=value, label=concept.label, uri=concept.uri, method="exact")
            if any(candidate.lower() == lowered for candidate in _candidates(concept)):
                return VocabularyMatch(value=value, label=concept.label, uri=concept.uri, method="exact")

        normalized = normalize_label(value)
        for concept in concepts:
            if any(normalize_label(candidate) == normalized for candidate in _candidates(concept)):
                return VocabularyMatch(
                    value=value, label=concept.label, uri=concept.uri, method="normalized"
                )

        if not fuzzy:
            return None
        return self._fuzzy(value, normalized, concepts)

    def _fuzzy(
        self, value: str, normalized: str, concepts: Sequence[VocabularyConcept]
    ) -> Optional[VocabularyMatch]:
        best: Optional[VocabularyConcept] = None
        best_distance = math.inf
        for concept in concepts:
            distance = min(
                Levenshtein.distance(normalized, normalize_label(candidate))
                for candidate in _candidates(concept)
            )
            if distance < best_distance:
                best, best_distance = concept, distance

        limit = self.max_distance(normalized)
        if best is None or best_distance > limit:
            logger.debug(
                "No fuzzy match for '{}' (best distance {}, max {})", value, best_distance, limit
            )
            return None

        logger.debug("Fuzzy match '{}' -> '{}' (distance {})", value, best.label, best_distance)
        return VocabularyMatch(
            value=value,
            label=best.label,
            uri=best.uri,
            method="fuzzy",
            distance=int(best_distance),
        )

    def match_label(
        self, value: Any, concepts: Sequence[VocabularyConcept], is_controlled: bool
    ) -> Any:
        """Resolve a single value; see class docstring for the open/controlled split."""
        if not isinstance(value, str) or not value.strip():
            return None if is_controlled else value

        match = self.find(value, concepts, fuzzy=is_controlled)
        if match is not None:
            return match.label
        if is_controlled:
            logger.warning("No match in controlled vocabulary for '{}'", value)
            return None
        return value

    def match(self, value: Any, concepts: Sequence[VocabularyConcept], is_controlled: bool) -> Any:
        """Resolve a value or a list of values.

        Lists are matched element-wise; unmatched elements are dropped for controlled
        vocabularies.
        """
        if isinstance(value, list):
            resolved = [self.match_label(item, concepts, is_controlled) for item in value]
            if is_controlled:
                kept = [item for item in resolved if item is not None]
                if len(kept) < len(resolved):
                    logger.warning(
                        "Removed {} invalid value(s) from controlled vocabulary list",
                        len(resolved) - len(kept),
                    )
                return kept
            return resolved
        return self.match_label(value, concepts, is_controlled)

    def match_vocabulary(self, value: Any, vocabulary: Vocabulary) -> Any:
        return self.match(value, vocabulary.concepts, vocabulary.is_controlled)


def _candidates(concept: VocabularyConcept) -> List[str]:
    labels = [concept.label, *concept.alt_labels]
    for extra in (concept.label_de, concept.label_en):
        if extra and extra not in labels:
            labels.append(extra)
    return labels
