"""Classification of source text into one of the content-type schemas."""

from __future__ import annotations

from typing import Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from metadata_canvas.extraction.gateway import LLMGateway
from metadata_canvas.extraction.parsing import extract_json_object
from metadata_canvas.extraction.prompts import PromptTemplates
from metadata_canvas.schema.models import VocabularyConcept
from metadata_canvas.utils.config import ContentTypeConfig

DEFAULT_REASON = "Automatisch erkannt"


class ContentTypeDetection(BaseModel):
    model_config = ConfigDict(frozen=True)

    schema_file: str
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = DEFAULT_REASON
    concept: Optional[VocabularyConcept] = None


class ContentTypeDetector:
    """Ask the LLM which content-type schema fits a text."""

    def __init__(
        self,
        gateway: LLMGateway,
        config: ContentTypeConfig | None = None,
        *,
        prompts: PromptTemplates | None = None,
    ) -> None:
        self.gateway = gateway
        self.config = config or ContentTypeConfig()
        self.prompts = prompts or PromptTemplates()

    async def detect(
        self, text: str, concepts: Sequence[VocabularyConcept]
    ) -> Optional[ContentTypeDetection]:
        """Detected schema, or ``None`` when nothing passes the confidence threshold.

        Never raises; gateway and parse failures are logged and yield ``None``.
        """
        if not concepts:
            logger.warning("No content type concepts available; skipping detection")
            return None

        try:
            system, user = self.prompts.content_type_detection(text, concepts)
            content = await self.gateway.ask(user, system=system)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Content type detection failed: {}", exc)
            return None

        payload = extract_json_object(content)
        if payload is None:
            logger.warning("Content type detection returned no JSON object")
            return None

        schema_file = payload.get("schema")
        try:
            confidence = float(payload.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0

        if not isinstance(schema_file, str) or not schema_file or schema_file == "none":
            logger.info("No content type matched")
            return None
        if confidence <= self.config.confidence_threshold:
            logger.info(
                "Content type {} rejected (confidence {:.2f} <= {:.2f})",
                schema_file,
                confidence,
                self.config.confidence_threshold,
            )
            return None

        concept = next((c for c in concepts if c.schema_file == schema_file), None)
        if concept is None:
            logger.warning("Detected schema {} is not an available content type", schema_file)
            return None

        detection = ContentTypeDetection(
            schema_file=schema_file,
            confidence=min(confidence, 1.0),
            reason=str(payload.get("reason") or DEFAULT_REASON),
            concept=concept,
        )
        logger.info(
            "Content type detected: {} ({:.0%}) - {}",
            detection.schema_file,
            detection.confidence,
            detection.reason,
        )
        return detection
