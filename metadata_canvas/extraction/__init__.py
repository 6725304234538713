"""Extraction package exports."""

from metadata_canvas.extraction.gateway import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatTransport,
    LLMGateway,
    OpenAIChatTransport,
)
from metadata_canvas.extraction.models import (
    ExtractionResult,
    ExtractionTask,
    FieldState,
    FieldStatus,
)
from metadata_canvas.extraction.parsing import extract_json_object, parse_field_value
from metadata_canvas.extraction.prompts import PromptTemplates
from metadata_canvas.extraction.worker_pool import FieldExtractionWorkerPool, PoolStatus

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ChatTransport",
    "ExtractionResult",
    "ExtractionTask",
    "FieldExtractionWorkerPool",
    "FieldState",
    "FieldStatus",
    "LLMGateway",
    "OpenAIChatTransport",
    "PoolStatus",
    "PromptTemplates",
    "extract_json_object",
    "parse_field_value",
]
