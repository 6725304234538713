"""Value normalization and vocabulary matching."""

from metadata_canvas.normalization.field_normalizer import FieldNormalizer, LocalNormalization
from metadata_canvas.normalization.vocabulary_matcher import (
    VocabularyMatch,
    VocabularyMatcher,
    normalize_label,
)

__all__ = [
    "FieldNormalizer",
    "LocalNormalization",
    "VocabularyMatch",
    "VocabularyMatcher",
    "normalize_label",
]
