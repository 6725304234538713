"""Schema repository access.

Schema files are read from a local directory or fetched from ``schema_base_url``
with :mod:`httpx`. Every file is parsed once and cached for the loader's lifetime.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from pydantic import ValidationError

from metadata_canvas.schema.localizer import SchemaLocalizer
from metadata_canvas.schema.models import (
    FieldGroupDefinition,
    SchemaDocument,
    SchemaFieldDefinition,
    VocabularyConcept,
)
from metadata_canvas.utils.config import SchemaConfig
from metadata_canvas.utils.errors import SchemaLoadError

CONTENT_TYPE_FIELD_ID = "ccm:oeh_flex_lrt"


class SchemaLoader:
    """Load, validate and cache schema documents."""

    def __init__(
        self,
        config: SchemaConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        localizer: SchemaLocalizer | None = None,
        content_type_field_id: str = CONTENT_TYPE_FIELD_ID,
    ) -> None:
        self.config = config or SchemaConfig()
        self._http_client = http_client
        self.localizer = localizer or SchemaLocalizer(self.config.language)
        self.content_type_field_id = content_type_field_id
        self._cache: Dict[str, SchemaDocument] = {}

    @property
    def core_schema(self) -> str:
        return self.config.core_schema

    def cached(self, schema_file: str) -> Optional[SchemaDocument]:
        return self._cache.get(schema_file)

    async def load(self, schema_file: str) -> SchemaDocument:
        """Return the parsed schema, fetching it on first use.

        Raises:
            SchemaLoadError: If the file cannot be fetched or does not validate.
        """
        cached = self._cache.get(schema_file)
        if cached is not None:
            return cached

        raw = await self._fetch(schema_file)
        try:
            document = SchemaDocument.model_validate(raw)
        except ValidationError as exc:
            raise SchemaLoadError(f"Invalid schema {schema_file}: {exc}") from exc

        self._cache[schema_file] = document
        logger.info("Loaded {} fields from {}", len(document.fields), schema_file)
        return document

    async def _fetch(self, schema_file: str) -> Any:
        if self.config.schema_base_url:
            url = f"{self.config.schema_base_url.rstrip('/')}/{schema_file}"
            try:
                if self._http_client is not None:
                    response = await self._http_client.get(url)
                else:
                    async with httpx.AsyncClient() as client:
                        response = await client.get(url)
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, json.JSONDecodeError) as exc:
                raise SchemaLoadError(f"Failed to fetch schema {url}: {exc}") from exc

        path = Path(self.config.schema_dir) / schema_file
        if not path.exists():
            raise SchemaLoadError(f"Schema file not found: {path}")
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise SchemaLoadError(f"Failed to read schema {path}: {exc}") from exc

    async def get_fields(self, schema_file: str) -> List[SchemaFieldDefinition]:
        document = await self.load(schema_file)
        if not document.fields:
            logger.warning("Schema {} has no fields", schema_file)
        return list(document.fields)

    async def get_groups(self, schema_file: str) -> List[FieldGroupDefinition]:
        document = await self.load(schema_file)
        return list(document.groups)

    async def get_output_template(self, schema_file: str) -> Dict[str, Any]:
        """Default empty-value skeleton keyed by field id."""
        document = await self.load(schema_file)
        if document.output_template:
            return dict(document.output_template)

        template: Dict[str, Any] = {}
        for field in document.fields:
            if not field.is_requestable:
                logger.debug("Skipping {} in template (not fillable, not asked)", field.id)
                continue
            if field.system.datatype == "array" or field.system.multiple:
                template[field.id] = []
            else:
                template[field.id] = None
        return template

    def get_content_type_concepts(self) -> List[VocabularyConcept]:
        """Concepts of the content-type field that point to a schema file.

        Requires the core schema to be loaded already.
        """
        core = self._cache.get(self.core_schema)
        if core is None:
            logger.warning("Core schema not cached; content type concepts unavailable")
            return []

        field = core.find_field(self.content_type_field_id)
        if field is None or not field.system.vocabulary:
            return []
        vocabulary = self.localizer.localize_vocabulary(field.system.vocabulary)
        return [concept for concept in vocabulary.concepts if concept.schema_file]
