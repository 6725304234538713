"""Per-datatype normalization of extracted and user-entered field values.

Local rules run first and need no network. When they cannot classify a value, the
LLM gateway is asked for a normalized rendering. Normalization never raises: on
any failure the best local result or the original value is returned.
"""

from __future__ import annotations

import json
import math
import re
from datetime import date, datetime
from typing import Any, Optional
from urllib.parse import urlparse

from loguru import logger
from pydantic import BaseModel, ConfigDict

from metadata_canvas.extraction.gateway import LLMGateway
from metadata_canvas.extraction.prompts import PromptTemplates
from metadata_canvas.normalization.vocabulary_matcher import VocabularyMatcher
from metadata_canvas.schema.models import FieldDefinition
from metadata_canvas.utils.config import NormalizationConfig
from metadata_canvas.utils.log_setup import failure_logger

TRUE_WORDS = frozenset({"ja", "yes", "wahr", "true", "1"})
FALSE_WORDS = frozenset({"nein", "no", "falsch", "false", "0"})

GERMAN_NUMBER_WORDS = {
    "null": 0, "eins": 1, "zwei": 2, "drei": 3, "vier": 4,
    "fünf": 5, "sechs": 6, "sieben": 7, "acht": 8, "neun": 9,
    "zehn": 10, "elf": 11, "zwölf": 12, "dreizehn": 13, "vierzehn": 14,
    "fünfzehn": 15, "sechzehn": 16, "siebzehn": 17, "achtzehn": 18, "neunzehn": 19,
    "zwanzig": 20, "einundzwanzig": 21, "zweiundzwanzig": 22, "dreiundzwanzig": 23,
    "vierundzwanzig": 24, "fünfundzwanzig": 25, "dreißig": 30, "vierzig": 40,
    "fünfzig": 50, "sechzig": 60, "siebzig": 70, "achtzig": 80, "neunzig": 90,
    "hundert": 100, "zweihundert": 200, "dreihundert": 300, "vierhundert": 400,
    "fünfhundert": 500, "tausend": 1000, "zweitausend": 2000,
}  # fmt: skip

ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}($|T)")
ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")

# (pattern, day-first)
DATE_FORMATS = (
    (re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$"), True),
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), True),
    (re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$"), True),
    (re.compile(r"^(\d{4})\.(\d{1,2})\.(\d{1,2})$"), False),
    (re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$"), False),
)

HAS_PROTOCOL = re.compile(r"^https?://", re.IGNORECASE)
BARE_DOMAIN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*\.[a-zA-Z]{2,}")
CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


class LocalNormalization(BaseModel):
    """Result of the local rule chain; ``value`` is the input when ``success`` is false."""

    model_config = ConfigDict(frozen=True)

    success: bool
    value: Any = None


# -----------------------
# Local parsers
# -----------------------
def parse_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if not isinstance(value, str):
        return None
    text = value.strip().lower()
    if text in TRUE_WORDS:
        return True
    if text in FALSE_WORDS:
        return False
    return None


def _to_number(text: str) -> Optional[float | int]:
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_number(value: Any) -> Optional[float | int]:
    """Numeric literal or a listed German number word; ``None`` otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and (math.isnan(value) or math.isinf(value)) else value
    if not isinstance(value, str):
        return None
    text = value.strip().lower()
    if not text:
        return None
    if text in GERMAN_NUMBER_WORDS:
        return GERMAN_NUMBER_WORDS[text]
    return _to_number(text)


def _valid_date(year: int, month: int, day: int) -> Optional[str]:
    if not (1900 <= year <= 2100):
        return None
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def parse_date(value: Any) -> Optional[str]:
    """ISO ``YYYY-MM-DD`` for the supported day-first and year-first formats."""
    if not isinstance(value, str):
        return None
    text = value.strip()

    if ISO_DATE.match(text):
        year, month, day = (int(part) for part in text.split("-"))
        return _valid_date(year, month, day)

    for pattern, day_first in DATE_FORMATS:
        match = pattern.match(text)
        if not match:
            continue
        first, second, third = (int(group) for group in match.groups())
        if day_first:
            return _valid_date(third, second, first)
        return _valid_date(first, second, third)
    return None


def parse_url(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if HAS_PROTOCOL.match(text):
        return text
    if BARE_DOMAIN.match(text):
        return f"https://{text}"
    return None


def parse_geo_coordinate(value: Any, field_id: str, precision: int = 7) -> Optional[float]:
    """Range-checked coordinate rounded to ``precision`` decimals."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)) or math.isnan(value):
        return None

    if "latitude" in field_id:
        limit = 90.0
    elif "longitude" in field_id:
        limit = 180.0
    else:
        return float(value)
    if not -limit <= value <= limit:
        return None
    return round(float(value), precision)


# -----------------------
# Validation of remote answers
# -----------------------
def validate_boolean(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "ja", "yes"):
            return True
        if text in ("false", "nein", "no"):
            return False
        return None
    if isinstance(value, (int, float)):
        return value != 0
    return None


def validate_number(value: Any) -> Optional[float | int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    if isinstance(value, str):
        return _to_number(value.strip())
    return None


def validate_date(value: Any) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    parsed = parse_date(text)
    if parsed is not None:
        return parsed
    try:
        return datetime.fromisoformat(text).date().isoformat()
    except ValueError:
        logger.warning("Could not validate date: '{}'", text)
        return None


def validate_url(value: Any) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    parsed = urlparse(text)
    if parsed.scheme in ("http", "https") and parsed.netloc:
        return text
    if parsed.scheme or " " in text:
        return None
    candidate = urlparse(f"https://{text}")
    if candidate.netloc and "." in candidate.netloc:
        return f"https://{text}"
    return None


class FieldNormalizer:
    """Normalize values for a :class:`FieldDefinition`."""

    def __init__(
        self,
        gateway: LLMGateway | None = None,
        config: NormalizationConfig | None = None,
        *,
        matcher: VocabularyMatcher | None = None,
        prompts: PromptTemplates | None = None,
        coordinate_precision: int = 7,
    ) -> None:
        self.gateway = gateway
        self.config = config or NormalizationConfig()
        self.matcher = matcher or VocabularyMatcher(self.config)
        self.prompts = prompts or PromptTemplates()
        self.coordinate_precision = coordinate_precision

    # -----------------------
    # Local rules
    # -----------------------
    def normalize_local(self, field: FieldDefinition, value: Any) -> LocalNormalization:
        """Apply the local rules in order; the first recognizing rule wins."""
        datatype = field.datatype

        if datatype == "boolean":
            parsed = parse_boolean(value)
            if parsed is not None:
                return LocalNormalization(success=True, value=parsed)

        if field.has_vocabulary:
            matched = self.matcher.match_vocabulary(value, field.vocabulary)
            if matched is not None:
                return LocalNormalization(success=True, value=matched)

        if datatype in ("number", "integer"):
            number = parse_number(value)
            if number is not None:
                if datatype == "integer" and isinstance(number, float) and number.is_integer():
                    number = int(number)
                return LocalNormalization(success=True, value=number)

        if datatype == "date":
            parsed_date = parse_date(value)
            if parsed_date is not None:
                return LocalNormalization(success=True, value=parsed_date)

        if datatype in ("uri", "url"):
            url = parse_url(value)
            if url is not None:
                return LocalNormalization(success=True, value=url)

        if "latitude" in field.id or "longitude" in field.id:
            coordinate = parse_geo_coordinate(value, field.id, self.coordinate_precision)
            if coordinate is not None:
                return LocalNormalization(success=True, value=coordinate)

        return LocalNormalization(success=False, value=value)

    def needs_remote(self, field: FieldDefinition, value: Any) -> bool:
        """False for values that are trivially already normalized."""
        datatype = field.datatype
        has_vocabulary = field.has_vocabulary
        if datatype == "string" and not has_vocabulary:
            return False
        if datatype == "array" and not has_vocabulary:
            return False
        if isinstance(value, list) and not has_vocabulary and all(isinstance(v, str) for v in value):
            return False
        if datatype == "boolean" and isinstance(value, bool):
            return False
        if datatype in ("number", "integer") and isinstance(value, (int, float)) and not isinstance(value, bool):
            return False
        if datatype == "date" and isinstance(value, str) and ISO_DATE_PREFIX.match(value):
            return False
        if datatype == "datetime" and isinstance(value, str) and ISO_DATETIME.match(value):
            return False
        if field.shape is not None or datatype == "object":
            return False
        return True

    # -----------------------
    # Full normalization
    # -----------------------
    async def normalize(self, field: FieldDefinition, value: Any) -> Any:
        """Normalize ``value`` for ``field``; never raises.

        Controlled vocabularies only ever yield concept labels (or ``None``).
        """
        if value is None or value == "":
            return value

        local = self.normalize_local(field, value)
        if local.success:
            if local.value != value:
                logger.debug("Local normalization {}: {!r} -> {!r}", field.id, value, local.value)
            return local.value

        if not self.needs_remote(field, value):
            return self._enforce_vocabulary(field, value)

        if self.gateway is None or not self.config.enable_remote_fallback:
            return self._enforce_vocabulary(field, value)

        try:
            system, user = self.prompts.normalization(field, value)
            content = await self.gateway.ask(
                user,
                system=system,
                temperature=self.config.remote_temperature,
                max_tokens=self.config.remote_max_tokens,
            )
            normalized = self.parse_remote_response(content, field, value)
        except Exception as exc:  # noqa: BLE001
            failure_logger().warning(
                "Remote normalization failed for {}: {}", field.id, exc, field_id=field.id
            )
            fallback = self.normalize_local(field, value)
            normalized = fallback.value if fallback.success and fallback.value != value else value

        return self._enforce_vocabulary(field, normalized)

    def _enforce_vocabulary(self, field: FieldDefinition, value: Any) -> Any:
        if not field.has_controlled_vocabulary or value is None:
            return value
        return self.matcher.match_vocabulary(value, field.vocabulary)

    def parse_remote_response(self, content: str, field: FieldDefinition, original: Any) -> Any:
        """Parse a bare JSON value answer and validate it for the datatype."""
        text = (content or "").strip()
        block = CODE_BLOCK.search(text)
        if block:
            text = block.group(1).strip()

        try:
            normalized = json.loads(text)
        except json.JSONDecodeError:
            normalized = _salvage_value(text)
            if normalized is _UNPARSED:
                logger.warning("Could not parse normalization answer for {}", field.id)
                return original

        datatype = field.datatype
        if datatype == "boolean":
            return validate_boolean(normalized)
        if datatype in ("number", "integer"):
            return validate_number(normalized)
        if datatype == "date":
            return validate_date(normalized)
        if datatype in ("uri", "url"):
            return validate_url(normalized)
        return normalized


_UNPARSED = object()


def _salvage_value(text: str) -> Any:
    for pattern in (r"\[[\s\S]*\]", r"\{[\s\S]*\}"):
        match = re.search(pattern, text)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                continue
    quoted = re.search(r'"([^"]+)"', text)
    if quoted:
        return quoted.group(1)
    if text.lower() == "null":
        return None
    number = _to_number(text)
    if number is not None:
        return number
    return _UNPARSED
