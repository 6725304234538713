"""Bounded-concurrency, priority-ordered field extraction.

Tasks wait in a heap ordered by priority (highest first, FIFO within a priority).
At most ``max_workers`` tasks are in flight; every completion frees one slot and
drains the queue once.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict

from metadata_canvas.extraction.gateway import LLMGateway
from metadata_canvas.extraction.models import ExtractionResult, ExtractionTask
from metadata_canvas.extraction.parsing import parse_field_value
from metadata_canvas.extraction.prompts import PromptTemplates
from metadata_canvas.utils.config import ExtractionConfig
from metadata_canvas.utils.log_setup import failure_logger


class PoolStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_workers: int
    queue_length: int


@dataclass(order=True)
class _QueuedTask:
    sort_key: Tuple[int, int]
    task: ExtractionTask = field(compare=False)
    future: asyncio.Future = field(compare=False)


class FieldExtractionWorkerPool:
    """Schedule :class:`ExtractionTask` objects onto the LLM gateway."""

    def __init__(
        self,
        gateway: LLMGateway,
        config: ExtractionConfig | None = None,
        *,
        prompts: PromptTemplates | None = None,
    ) -> None:
        self.gateway = gateway
        self.config = config or ExtractionConfig()
        self.prompts = prompts or PromptTemplates()
        self.max_workers = self.config.max_workers
        self._queue: List[_QueuedTask] = []
        self._sequence = itertools.count()
        self._active = 0
        self._running: Set[asyncio.Task] = set()
        self._drain_scheduled = False

    # -----------------------
    # Public API
    # -----------------------
    def submit(self, task: ExtractionTask) -> asyncio.Future:
        """Queue ``task``; the returned future resolves to its :class:`ExtractionResult`.

        Must be called from a running event loop. The result never carries an
        exception: failures resolve to an empty result.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        entry = _QueuedTask(sort_key=(-task.priority, next(self._sequence)), task=task, future=future)
        heapq.heappush(self._queue, entry)
        logger.debug(
            "Queued extraction for {} (priority {}, queue {})",
            task.field.id,
            task.priority,
            len(self._queue),
        )

        # Tasks submitted in the same tick are ordered before any of them starts.
        if not self._drain_scheduled:
            self._drain_scheduled = True
            loop.call_soon(self._scheduled_drain)
        return future

    async def extract(self, task: ExtractionTask) -> ExtractionResult:
        return await self.submit(task)

    def clear(self) -> int:
        """Discard queued tasks that have not started; returns how many were dropped.

        Their futures resolve to empty results. In-flight tasks keep running.
        """
        dropped = 0
        while self._queue:
            entry = heapq.heappop(self._queue)
            if not entry.future.done():
                entry.future.set_result(ExtractionResult.empty(entry.task.field.id))
            dropped += 1
        if dropped:
            logger.info("Cleared {} queued extraction task(s)", dropped)
        return dropped

    def status(self) -> PoolStatus:
        return PoolStatus(active_workers=self._active, queue_length=len(self._queue))

    def set_max_workers(self, max_workers: int) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._drain()

    # -----------------------
    # Scheduling
    # -----------------------
    def _scheduled_drain(self) -> None:
        self._drain_scheduled = False
        self._drain()

    def _drain(self) -> None:
        while self._active < self.max_workers and self._queue:
            entry = heapq.heappop(self._queue)
            if entry.future.done():
                continue
            self._active += 1
            worker = asyncio.ensure_future(self._run(entry))
            self._running.add(worker)
            worker.add_done_callback(self._running.discard)

    async def _run(self, entry: _QueuedTask) -> None:
        result = ExtractionResult.empty(entry.task.field.id)
        try:
            result = await self._perform(entry.task)
        finally:
            self._active -= 1
            if not entry.future.done():
                entry.future.set_result(result)
            self._drain()

    # -----------------------
    # Extraction
    # -----------------------
    async def _perform(self, task: ExtractionTask) -> ExtractionResult:
        field_def = task.field
        try:
            system, user = self.prompts.field_extraction(
                field_def, task.text, prompt_modifier=task.prompt_modifier
            )
            messages: List[Dict[str, str]] = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": user})

            logger.debug("Extracting field {} ({})", field_def.label, field_def.id)
            response = await self.gateway.invoke(messages)
            value = parse_field_value(response.content, field_def)
        except Exception as exc:  # noqa: BLE001
            failure_logger().error(
                "Extraction failed for field {} after retries: {}",
                field_def.id,
                exc,
                field_id=field_def.id,
            )
            return ExtractionResult.empty(field_def.id)

        if value is None:
            logger.debug("No value found for {}", field_def.id)
            return ExtractionResult.empty(field_def.id)

        logger.info("Extracted {}: {!r}", field_def.id, value)
        return ExtractionResult(
            field_id=field_def.id, value=value, confidence=self.config.success_confidence
        )


def extraction_priority(required: bool, config: Optional[ExtractionConfig] = None) -> int:
    config = config or ExtractionConfig()
    return config.required_priority if required else config.optional_priority
