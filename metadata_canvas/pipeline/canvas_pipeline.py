"""End-to-end metadata extraction for one canvas session.

This module sequences the complete workflow:
1. Core schema loading
2. Content-type detection and loading of the matching special schema
3. Prioritized field extraction through the worker pool
4. Normalization (with one stricter retry for rejected vocabulary values)
5. Sub-field expansion of structured values
6. Geocoding enrichment of location fields
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from metadata_canvas.extraction.gateway import LLMGateway
from metadata_canvas.extraction.models import ExtractionTask, FieldState, FieldStatus
from metadata_canvas.extraction.prompts import PromptTemplates
from metadata_canvas.extraction.worker_pool import FieldExtractionWorkerPool, extraction_priority
from metadata_canvas.geocoding.client import PhotonGeocoder
from metadata_canvas.normalization.field_normalizer import FieldNormalizer
from metadata_canvas.pipeline.content_type import ContentTypeDetection, ContentTypeDetector
from metadata_canvas.pipeline.geocoding_enrichment import GeocodingEnricher, is_address_field
from metadata_canvas.pipeline.reconciler import MetadataReconciler
from metadata_canvas.pipeline.shape_expander import ShapeExpander
from metadata_canvas.pipeline.state import CanvasState, CanvasStateStore, is_value_filled
from metadata_canvas.schema.loader import SchemaLoader
from metadata_canvas.schema.localizer import schema_display_name
from metadata_canvas.schema.models import VocabularyConcept
from metadata_canvas.utils.config import Config
from metadata_canvas.utils.errors import SchemaLoadError

MANUAL_SELECTION_REASON = "Vom Nutzer manuell ausgewählt"
NAMESPACE_PREFIXES = ("ccm:", "cclom:", "cm:")
SHAPE_INDICATOR_KEYS = ("price", "url", "serviceType", "description")


class CanvasPipeline:
    """Orchestrates extraction, normalization and enrichment of canvas fields.

    Example:
        >>> pipeline = CanvasPipeline(config)
        >>> state = await pipeline.start_extraction("Workshop am 15.9.2026 in Berlin")
        >>> print(state.filled_fields, "of", state.total_fields)
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        gateway: LLMGateway | None = None,
        schema_loader: SchemaLoader | None = None,
        worker_pool: FieldExtractionWorkerPool | None = None,
        normalizer: FieldNormalizer | None = None,
        content_type_detector: ContentTypeDetector | None = None,
        geocoder: PhotonGeocoder | None = None,
        store: CanvasStateStore | None = None,
        prompts: PromptTemplates | None = None,
    ) -> None:
        self.config = config or Config()
        self.prompts = prompts or PromptTemplates()
        self.gateway = gateway or LLMGateway.from_config(self.config)
        self.content_type_field_id = self.config.content_type.content_type_field_id

        self.schema_loader = schema_loader or SchemaLoader(
            self.config.schema_source, content_type_field_id=self.content_type_field_id
        )
        self.worker_pool = worker_pool or FieldExtractionWorkerPool(
            self.gateway, self.config.extraction, prompts=self.prompts
        )
        self.normalizer = normalizer or FieldNormalizer(
            self.gateway,
            self.config.normalization,
            prompts=self.prompts,
            coordinate_precision=self.config.geocoding.coordinate_precision,
        )
        self.content_type_detector = content_type_detector or ContentTypeDetector(
            self.gateway, self.config.content_type, prompts=self.prompts
        )
        self.enricher = GeocodingEnricher(
            geocoder or PhotonGeocoder(self.config.geocoding), self.config.geocoding
        )
        self.store = store or CanvasStateStore()
        self.shape_expander = ShapeExpander()
        self.reconciler = MetadataReconciler(self.shape_expander)
        self._generation = 0
        self._special_generation = 0

    @property
    def state(self) -> CanvasState:
        return self.store.snapshot

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: Callable[[CanvasState], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _accepts_result(
        self, field_id: str, generation: int, special_generation: Optional[int]
    ) -> bool:
        """False once the session, the special schema or the field itself was replaced."""
        if not self._is_current(generation):
            return False
        if special_generation is not None and special_generation != self._special_generation:
            return False
        return self.state.find_field(field_id) is not None

    def _replace_special_fields(self, **changes: Any) -> None:
        # Results of tasks started for the previous special fields are dropped
        self._special_generation += 1
        self.store.set_fields(special_fields=(), **changes)

    # -----------------------
    # Schema handling
    # -----------------------
    async def _build_fields(self, schema_file: str, schema_name: str) -> List[FieldState]:
        raw_fields = await self.schema_loader.get_fields(schema_file)
        groups = await self.schema_loader.get_groups(schema_file)
        localizer = self.schema_loader.localizer

        fields: List[FieldState] = []
        for raw in raw_fields:
            # Only fields the model may fill and the user is asked about
            if not raw.system.ai_fillable or not raw.system.ask_user:
                continue
            definition = localizer.localize_field(raw, schema_name=schema_name, groups=groups)
            fields.append(FieldState.initial(definition))
        return fields

    async def initialize_core_fields(self) -> CanvasState:
        """Load the core schema and replace the field collection with empty fields.

        Raises:
            SchemaLoadError: If the core schema cannot be loaded.
        """
        core_schema = self.schema_loader.core_schema
        core_fields = await self._build_fields(core_schema, "Core")
        template = await self.schema_loader.get_output_template(core_schema)
        logger.info("Initialized {} core fields", len(core_fields))
        return self.store.set_fields(core_fields=core_fields, special_fields=(), metadata=template)

    async def load_special_schema(self, schema_file: str) -> CanvasState:
        """Load the fields of a content-type schema next to the core fields."""
        special_fields = await self._build_fields(schema_file, schema_display_name(schema_file))
        template = await self.schema_loader.get_output_template(schema_file)
        metadata = {**self.state.metadata, **template}
        logger.info("Loaded {} special fields from {}", len(special_fields), schema_file)
        return self.store.set_fields(special_fields=special_fields, metadata=metadata)

    def _content_type_concepts(self) -> List[VocabularyConcept]:
        field_state = self.state.find_field(self.content_type_field_id)
        if field_state is not None and field_state.definition.has_vocabulary:
            return list(field_state.definition.vocabulary.concepts)
        return self.schema_loader.get_content_type_concepts()

    def _fill_content_type_field(self, schema_file: str, confidence: float) -> None:
        concept = next(
            (c for c in self._content_type_concepts() if c.schema_file == schema_file), None
        )
        if concept is None or self.state.find_field(self.content_type_field_id) is None:
            return
        value = concept.uri or concept.label
        self.store.update_field(self.content_type_field_id, FieldStatus.FILLED, value, confidence)
        logger.info("Content type field filled: {}", concept.label)

    # -----------------------
    # Extraction run
    # -----------------------
    async def start_extraction(self, user_text: str) -> CanvasState:
        """Run one full extraction over ``user_text`` and return the final snapshot.

        Values of an earlier run are appended to the prompt text as context. A run
        that is still in flight is superseded: its queued tasks are dropped and its
        results discarded.
        """
        self.worker_pool.clear()
        self._generation += 1
        generation = self._generation
        enriched_text = user_text + self.reconciler.metadata_context(self.state)
        self.store.replace(user_text=user_text, is_extracting=True, extraction_progress=0.0)
        logger.info("Starting canvas extraction ({} chars)", len(user_text))

        try:
            await self.initialize_core_fields()
            if not self._is_current(generation):
                return self.state

            detection = await self._detect_content_type(enriched_text)
            if not self._is_current(generation):
                return self.state
            if detection is not None:
                try:
                    await self.load_special_schema(detection.schema_file)
                except SchemaLoadError as exc:
                    logger.warning("Continuing with core fields only: {}", exc)
                self._fill_content_type_field(detection.schema_file, detection.confidence)

            fields = [
                f for f in self.state.core_fields if f.field_id != self.content_type_field_id
            ]
            fields.extend(self.state.special_fields)
            await self._extract_fields(fields, enriched_text, generation)

            if self._is_current(generation):
                await self.enricher.enrich(self.store)
            logger.success(
                "Canvas extraction complete: {}/{} fields filled",
                self.state.filled_fields,
                self.state.total_fields,
            )
        finally:
            if self._is_current(generation):
                self.store.replace(is_extracting=False)
        return self.state

    async def _detect_content_type(self, text: str) -> Optional[ContentTypeDetection]:
        concepts = [c for c in self.schema_loader.get_content_type_concepts() if c.schema_file]
        detection = await self.content_type_detector.detect(text, concepts)
        if detection is not None:
            self.store.replace(
                detected_content_type=detection.schema_file,
                content_type_confidence=detection.confidence,
                content_type_reason=detection.reason,
                selected_content_type=detection.schema_file,
            )
        return detection

    async def _extract_fields(
        self, fields: Sequence[FieldState], text: str, generation: int
    ) -> None:
        special_ids = {f.field_id for f in self.state.special_fields}
        special_generation = self._special_generation
        tasks = [
            ExtractionTask(
                field=f.definition,
                text=text,
                priority=extraction_priority(f.definition.required, self.config.extraction),
            )
            for f in fields
            if f.definition.ai_fillable
        ]
        logger.info("Extracting {} fields", len(tasks))
        await asyncio.gather(
            *(
                self._extract_field(
                    task,
                    generation,
                    special_generation if task.field.id in special_ids else None,
                )
                for task in tasks
            )
        )

    async def _extract_field(
        self, task: ExtractionTask, generation: int, special_generation: Optional[int] = None
    ) -> None:
        field_id = task.field.id
        definition = task.field
        if not self._accepts_result(field_id, generation, special_generation):
            return

        self.store.update_field(field_id, FieldStatus.EXTRACTING)
        result = await self.worker_pool.submit(task)
        if not self._accepts_result(field_id, generation, special_generation):
            logger.debug("Discarding stale result for {}", field_id)
            return

        if result.error:
            self.store.update_field(field_id, FieldStatus.ERROR, None, 0.0, result.error)
            return
        if not is_value_filled(result.value):
            self.store.update_field(field_id, FieldStatus.EMPTY, definition.empty_value(), 0.0)
            return

        if definition.is_structured:
            self._store_structured(field_id, result.value, result.confidence)
            return

        normalized = await self.normalizer.normalize(definition, result.value)
        if not self._accepts_result(field_id, generation, special_generation):
            logger.debug("Discarding stale result for {}", field_id)
            return

        if definition.has_controlled_vocabulary and not is_value_filled(normalized):
            logger.warning(
                "Extracted value for {} failed vocabulary validation: {!r}", field_id, result.value
            )
            if task.retry_attempt < self.config.extraction.vocabulary_retry_attempts:
                attempt = task.retry_attempt + 1
                retry_task = task.model_copy(
                    update={
                        "retry_attempt": attempt,
                        "prompt_modifier": self.prompts.retry_modifier(definition, attempt),
                    }
                )
                logger.info("Retrying {} with stricter prompt (attempt {})", field_id, attempt)
                await self._extract_field(retry_task, generation, special_generation)
                return
            logger.warning("Clearing {} after rejected retry", field_id)
            self.store.update_field(field_id, FieldStatus.EMPTY, definition.empty_value(), 0.0)
            return

        self.store.update_field(field_id, FieldStatus.FILLED, normalized, result.confidence)

    def _store_structured(self, field_id: str, value: Any, confidence: float) -> None:
        """Store a structured value as-is and expand shaped values into sub-fields."""
        if self.state.find_field(field_id) is None:
            logger.debug("Field {} no longer exists, structured value dropped", field_id)
            return
        updated = self.store.update_field(field_id, FieldStatus.FILLED, value, confidence)
        if updated.definition.shape is None or updated.is_sub_field:
            return
        sub_fields = self.shape_expander.expand(updated, value)
        self.store.replace_field(updated.model_copy(update={"sub_fields": tuple(sub_fields)}))
        logger.debug("Created {} sub-fields for {}", len(sub_fields), field_id)

    # -----------------------
    # User edits
    # -----------------------
    async def update_field_value(self, field_id: str, value: Any) -> Optional[FieldState]:
        """Apply a user edit to a field or sub-field.

        Controlled-vocabulary values that cannot be matched clear the field.
        """
        if field_id == self.content_type_field_id and self.state.find_field(field_id) is not None:
            updated = self.store.update_field(field_id, FieldStatus.FILLED, value, 1.0)
            await self._on_content_type_change(value)
            return updated

        field_state = self.state.find_field(field_id)
        if field_state is None:
            logger.warning("Field not found for update: {}", field_id)
            return None

        definition = field_state.definition
        if definition.is_structured:
            self._store_structured(field_id, value, 1.0)
        else:
            normalized = await self.normalizer.normalize(definition, value)
            if definition.has_controlled_vocabulary and normalized is None:
                logger.warning(
                    "Invalid value rejected for {} vocabulary: {!r}", definition.vocabulary.type, value
                )
                self.store.update_field(field_id, FieldStatus.EMPTY, definition.empty_value(), 0.0)
            else:
                if normalized != value:
                    logger.info("Field {} normalized: {!r} -> {!r}", field_id, value, normalized)
                self.store.update_field(field_id, FieldStatus.FILLED, normalized, 1.0)

        if field_state.is_sub_field and is_address_field(field_id):
            await self.enricher.regeocode(self.store, field_id)
        return self.state.find_field(field_id)

    async def _on_content_type_change(self, value: Any) -> None:
        selected = value[0] if isinstance(value, list) and value else value
        concept = next(
            (
                c
                for c in self._content_type_concepts()
                if selected in (c.label, c.uri, c.label_de, c.label_en)
            ),
            None,
        )
        if concept is None or not concept.schema_file:
            return

        self._replace_special_fields(selected_content_type=concept.schema_file)
        special_generation = self._special_generation
        await self.load_special_schema(concept.schema_file)
        if self.state.user_text and special_generation == self._special_generation:
            await self._extract_fields(self.state.special_fields, self.state.user_text, self._generation)

    async def change_content_type(self, schema_file: str) -> CanvasState:
        """Manually select a content type and re-extract its fields."""
        user_text = self.state.user_text
        self._replace_special_fields(
            selected_content_type=schema_file,
            content_type_confidence=1.0,
            content_type_reason=MANUAL_SELECTION_REASON,
        )
        special_generation = self._special_generation
        await self.load_special_schema(schema_file)
        if user_text and special_generation == self._special_generation:
            logger.info("Re-extracting special fields for {}", schema_file)
            await self._extract_fields(self.state.special_fields, user_text, self._generation)
        return self.state

    # -----------------------
    # Import
    # -----------------------
    async def import_json(
        self, data: Dict[str, Any], detected_schema: Optional[str] = None
    ) -> CanvasState:
        """Pre-fill fields from an existing metadata document."""
        await self.initialize_core_fields()

        content_type: Optional[str] = None
        if detected_schema:
            concept = self._concept_for_schema(detected_schema)
            if concept is not None:
                try:
                    await self.load_special_schema(concept.schema_file)
                    self._fill_content_type_field(concept.schema_file, 1.0)
                    content_type = concept.schema_file
                except SchemaLoadError as exc:
                    logger.warning("Could not load {}, continuing with core only: {}", concept.schema_file, exc)

        imported = 0
        for field_state in self.state.all_fields:
            value = find_value_in_json(data, field_state.field_id)
            if value is None:
                continue
            definition = field_state.definition
            if definition.shape is not None and isinstance(value, (dict, list)):
                sub_fields = self.shape_expander.expand(field_state, value)
                if sub_fields:
                    self.store.replace_field(
                        field_state.model_copy(
                            update={
                                "status": FieldStatus.FILLED,
                                "value": value,
                                "confidence": 1.0,
                                "sub_fields": tuple(sub_fields),
                            }
                        )
                    )
                    imported += 1
                    continue
            self.store.update_field(field_state.field_id, FieldStatus.FILLED, value, 1.0)
            imported += 1

        self.store.replace(
            detected_content_type=content_type,
            selected_content_type=content_type,
            is_extracting=False,
        )
        logger.info("JSON imported: {} fields pre-filled", imported)
        return self.state

    def _concept_for_schema(self, detected_schema: str) -> Optional[VocabularyConcept]:
        for concept in self._content_type_concepts():
            schema_file = concept.schema_file
            if not schema_file:
                continue
            stem = schema_file[:-5] if schema_file.endswith(".json") else schema_file
            if detected_schema == schema_file or stem in detected_schema:
                return concept
        return None

    # -----------------------
    # Session and output
    # -----------------------
    def reset(self) -> CanvasState:
        """Drop queued work and start a fresh session; in-flight results are discarded."""
        self.worker_pool.clear()
        self._generation += 1
        logger.info("Canvas reset (generation {})", self._generation)
        return self.store.reset()

    def metadata_document(self) -> Dict[str, Any]:
        return self.reconciler.build_document(self.state)

    def repository_payload(self) -> Dict[str, Any]:
        return self.reconciler.build_repository_payload(self.state)

    def export_as_json(self) -> Dict[str, Any]:
        return self.reconciler.export_as_json(self.state)

    def metadata_context(self) -> str:
        return self.reconciler.metadata_context(self.state)


# -----------------------
# Import helpers
# -----------------------
def find_value_in_json(data: Dict[str, Any], field_id: str) -> Any:
    """Value for ``field_id``, tolerating added or missing namespace prefixes."""
    value = None
    if field_id in data:
        value = data[field_id]
    else:
        for prefix in NAMESPACE_PREFIXES:
            if prefix + field_id in data:
                value = data[prefix + field_id]
                break
        else:
            stripped = field_id
            for prefix in NAMESPACE_PREFIXES:
                if stripped.startswith(prefix):
                    stripped = stripped[len(prefix):]
                    break
            value = data.get(stripped)
    return normalize_repository_value(value)


def is_repository_wrapper(value: Any) -> bool:
    """True for ``{type, key|item_id}`` wrappers (not schema.org objects)."""
    if not isinstance(value, dict) or "@type" in value:
        return False
    has_wrapper_keys = ("key" in value or "item_id" in value) and "type" in value
    return has_wrapper_keys and not any(key in value for key in SHAPE_INDICATOR_KEYS)


def _unwrap(value: Any) -> Any:
    if is_repository_wrapper(value):
        return value.get("key") or value.get("item_id") or value
    return value


def normalize_repository_value(value: Any) -> Any:
    if isinstance(value, list):
        return [_unwrap(item) for item in value]
    return _unwrap(value)
