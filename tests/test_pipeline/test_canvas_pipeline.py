"""End-to-end tests for CanvasPipeline with a scripted LLM and a mocked Photon API."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from conftest import (
    SCHEMA_DIR,
    PhotonStub,
    ScriptedTransport,
    is_detection_prompt,
    is_normalization_prompt,
    make_test_gateway,
    prompt_field_id,
    user_prompt,
)
from metadata_canvas.extraction.gateway import ChatRequest, ChatResponse
from metadata_canvas.extraction.models import FieldStatus
from metadata_canvas.pipeline.canvas_pipeline import (
    MANUAL_SELECTION_REASON,
    CanvasPipeline,
    find_value_in_json,
    is_repository_wrapper,
)
from metadata_canvas.schema.loader import SchemaLoader
from metadata_canvas.utils.config import Config, SchemaConfig
from metadata_canvas.utils.errors import SchemaLoadError

BERLIN_TEXT = (
    "Workshop zur digitalen Bildung am 15.9.2026 in Berlin, Alexanderplatz 1, 10178 Berlin. "
    "Eintritt frei, maximal zwanzig Teilnehmende. Materialien unter CC BEI."
)

EVENT_URI = "http://w3id.org/openeduhub/vocabs/new_lrt/event"

BERLIN_ANSWERS: Dict[str, Any] = {
    "cclom:title": "Workshop Digitale Bildung",
    "cclom:general_description": "Workshop zur digitalen Bildung in Berlin.",
    "cclom:general_keyword": ["Digitalisierung", "Bildung"],
    "ccm:educationalcontext": ["Sek I"],
    "ccm:wwwurl": None,
    "ccm:custom_license": "CC BEI",
    "schema:startDate": "15.9.2026",
    "schema:isAccessibleForFree": "ja",
    "schema:maximumAttendeeCapacity": "zwanzig",
    "schema:location": [
        {
            "@type": "Place",
            "name": "Alexanderplatz",
            "address": {
                "@type": "PostalAddress",
                "streetAddress": "Alexanderplatz 1",
                "postalCode": "10178",
                "addressLocality": "Berlin",
            },
        }
    ],
}


def _responder(
    answers: Dict[str, Any],
    detection: Optional[Dict[str, Any]] = None,
    normalization: str = "null",
) -> Callable[[ChatRequest], Any]:
    detection = detection or {"schema": "event.json", "confidence": 0.92, "reason": "Workshop mit Termin und Ort"}

    def responder(request: ChatRequest) -> Any:
        if is_detection_prompt(request):
            return detection
        if is_normalization_prompt(request):
            return normalization
        field_id = prompt_field_id(request)
        return {field_id: answers.get(field_id)}

    return responder


def _pipeline(responder: Callable[[ChatRequest], Any], photon: PhotonStub) -> CanvasPipeline:
    gateway = make_test_gateway(responder)
    return CanvasPipeline(
        Config(),
        gateway=gateway,
        schema_loader=SchemaLoader(SchemaConfig(schema_dir=SCHEMA_DIR)),
        geocoder=photon.geocoder(),
    )


def _requests(pipeline: CanvasPipeline) -> List[ChatRequest]:
    return pipeline.gateway.transport.requests


@pytest.mark.asyncio
async def test_berlin_event_end_to_end(photon: PhotonStub) -> None:
    pipeline = _pipeline(_responder(BERLIN_ANSWERS), photon)
    snapshots = []
    pipeline.subscribe(snapshots.append)

    state = await pipeline.start_extraction(BERLIN_TEXT)

    assert state.is_extracting is False
    assert state.detected_content_type == "event.json"
    assert state.selected_content_type == "event.json"
    assert state.content_type_confidence == pytest.approx(0.92)
    assert state.content_type_reason == "Workshop mit Termin und Ort"
    assert [f.field_id for f in state.special_fields] == [
        "schema:startDate",
        "schema:isAccessibleForFree",
        "schema:maximumAttendeeCapacity",
        "schema:location",
    ]
    assert state.find_field("ccm:replicationsource") is None

    values = {f.field_id: f.value for f in state.all_fields}
    assert values["schema:startDate"] == "2026-09-15"
    assert values["schema:isAccessibleForFree"] is True
    assert values["schema:maximumAttendeeCapacity"] == 20
    assert values["ccm:custom_license"] == "CC BY"
    assert values["ccm:educationalcontext"] == ["Sekundarstufe I"]
    assert values["ccm:oeh_flex_lrt"] == EVENT_URI

    title = state.find_field("cclom:title")
    assert title.status == FieldStatus.FILLED
    assert title.confidence == pytest.approx(0.85)
    assert state.find_field("ccm:wwwurl").status == FieldStatus.EMPTY

    assert state.total_fields == 11
    assert state.filled_fields == 10
    assert state.extraction_progress == pytest.approx(10 / 11 * 100)
    assert any(s.is_extracting for s in snapshots)

    latitude = state.find_field("schema:location.geo.latitude")
    assert latitude.value == pytest.approx(52.5219)
    assert state.find_field("schema:location.geo.longitude").value == pytest.approx(13.4132)

    exported = pipeline.export_as_json()
    assert exported["metadataset"] == "mds_oeh_event"
    location = exported["schema:location"][0]
    assert location["@type"] == "Place"
    assert location["geo"] == {"@type": "GeoCoordinates", "latitude": 52.5219, "longitude": 13.4132}
    assert location["address"]["addressRegion"] == "Berlin"
    assert not any(key.startswith("schema:location.") for key in exported)

    document = pipeline.metadata_document()
    assert document["ccm:oeh_flex_lrt"] == {"label": "Veranstaltung", "uri": EVENT_URI}
    assert pipeline.repository_payload()["ccm:custom_license"] == [
        "http://creativecommons.org/licenses/by/4.0/"
    ]

    assert not any(is_normalization_prompt(r) for r in _requests(pipeline))
    extracted = {prompt_field_id(r) for r in _requests(pipeline)} - {None}
    assert "ccm:oeh_flex_lrt" not in extracted
    assert "ccm:replicationsource" not in extracted


@pytest.mark.asyncio
async def test_required_fields_are_prioritized(photon: PhotonStub) -> None:
    pipeline = _pipeline(_responder(BERLIN_ANSWERS), photon)
    pipeline.worker_pool.set_max_workers(1)

    await pipeline.start_extraction(BERLIN_TEXT)

    order = [prompt_field_id(r) for r in _requests(pipeline) if prompt_field_id(r)]
    assert order[:3] == ["cclom:title", "cclom:general_description", "schema:startDate"]
    assert len(order) == 9


@pytest.mark.asyncio
async def test_user_edits_are_normalized_against_vocabulary(photon: PhotonStub) -> None:
    pipeline = _pipeline(_responder({}, normalization='"Quantenphysik"'), photon)
    await pipeline.initialize_core_fields()

    typo = await pipeline.update_field_value("ccm:custom_license", "CC BEI")
    assert typo.value == "CC BY"
    assert typo.status == FieldStatus.FILLED
    assert typo.confidence == 1.0

    rejected = await pipeline.update_field_value("ccm:custom_license", "Quantenphysik")
    assert rejected.value is None
    assert rejected.status == FieldStatus.EMPTY
    assert pipeline.state.metadata["ccm:custom_license"] is None


@pytest.mark.asyncio
async def test_unknown_field_update_is_ignored(photon: PhotonStub) -> None:
    pipeline = _pipeline(_responder({}), photon)
    await pipeline.initialize_core_fields()

    assert await pipeline.update_field_value("does:not_exist", "x") is None


@pytest.mark.asyncio
async def test_rejected_vocabulary_value_is_retried_once(photon: PhotonStub) -> None:
    license_prompts: List[str] = []

    def responder(request: ChatRequest) -> Any:
        if is_detection_prompt(request):
            return {"schema": "none", "confidence": 0.0}
        if is_normalization_prompt(request):
            return "null"
        field_id = prompt_field_id(request)
        if field_id == "ccm:custom_license":
            license_prompts.append(user_prompt(request))
            return {field_id: "CC BY" if len(license_prompts) > 1 else "Quantenphysik"}
        return {field_id: None}

    pipeline = _pipeline(responder, photon)

    state = await pipeline.start_extraction("Arbeitsblatt unter CC BY")

    assert state.find_field("ccm:custom_license").value == "CC BY"
    assert len(license_prompts) == 2
    assert "Versuch 1" in license_prompts[1]
    assert state.special_fields == ()
    assert state.selected_content_type is None


@pytest.mark.asyncio
async def test_value_rejected_twice_ends_empty(photon: PhotonStub) -> None:
    answers = {"ccm:custom_license": "Quantenphysik"}
    pipeline = _pipeline(_responder(answers, detection={"schema": "none", "confidence": 0}), photon)

    state = await pipeline.start_extraction("Text")

    license_field = state.find_field("ccm:custom_license")
    assert license_field.status == FieldStatus.EMPTY
    assert license_field.value is None
    prompts = [r for r in _requests(pipeline) if prompt_field_id(r) == "ccm:custom_license"]
    assert len(prompts) == 2


@pytest.mark.asyncio
async def test_failed_extraction_leaves_field_empty(photon: PhotonStub) -> None:
    from metadata_canvas.utils.errors import GatewayError

    def responder(request: ChatRequest) -> Any:
        if prompt_field_id(request) == "cclom:title":
            return GatewayError("unavailable", status_code=503)
        return _responder(BERLIN_ANSWERS)(request)

    pipeline = _pipeline(responder, photon)

    state = await pipeline.start_extraction(BERLIN_TEXT)

    title = state.find_field("cclom:title")
    assert title.status == FieldStatus.EMPTY
    assert title.value is None
    assert state.find_field("cclom:general_description").status == FieldStatus.FILLED


class _GatedTransport:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.extraction_started = asyncio.Event()
        self.requests: List[ChatRequest] = []

    async def complete(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        if is_detection_prompt(request):
            return ChatResponse.from_text('{"schema": "none", "confidence": 0}')
        self.extraction_started.set()
        await self.release.wait()
        return ChatResponse.from_text(f'{{"{prompt_field_id(request)}": "veraltet"}}')


@pytest.mark.asyncio
async def test_reset_discards_in_flight_results(photon: PhotonStub) -> None:
    pipeline = _pipeline(_responder({}), photon)
    transport = _GatedTransport()
    pipeline.gateway.transport = transport
    pipeline.worker_pool.set_max_workers(2)

    run = asyncio.ensure_future(pipeline.start_extraction("Alter Text"))
    await transport.extraction_started.wait()

    generation = pipeline.generation
    state = pipeline.reset()
    assert pipeline.generation == generation + 1
    assert state.all_fields == ()

    transport.release.set()
    await run

    final = pipeline.state
    assert final.all_fields == ()
    assert final.user_text == ""
    assert final.metadata == {}
    assert pipeline.worker_pool.status().queue_length == 0


class _SpecialFieldGate(ScriptedTransport):
    """Answers at once except for ``schema:`` field prompts, which wait for ``release``.

    ``special_answers`` lists the answer per request of a special field, in request order.
    """

    def __init__(self, responder: Callable[[ChatRequest], Any], special_answers: Dict[str, List[Any]]) -> None:
        super().__init__(responder)
        self.special_answers = special_answers
        self.special_calls: Dict[str, int] = {}
        self.release = asyncio.Event()

    async def complete(self, request: ChatRequest) -> ChatResponse:
        field_id = prompt_field_id(request)
        if not field_id or not field_id.startswith("schema:"):
            return await super().complete(request)

        self.requests.append(request)
        call = self.special_calls.get(field_id, 0)
        self.special_calls[field_id] = call + 1
        await self.release.wait()

        answers = self.special_answers.get(field_id)
        value = answers[call] if answers else BERLIN_ANSWERS.get(field_id)
        return ChatResponse.from_text(json.dumps({field_id: value}, ensure_ascii=False))


def _gated_pipeline(photon: PhotonStub, special_answers: Dict[str, List[Any]]) -> tuple:
    pipeline = _pipeline(_responder({}), photon)
    gate = _SpecialFieldGate(_responder(BERLIN_ANSWERS), special_answers)
    pipeline.gateway.transport = gate
    return pipeline, gate


async def _wait_for_special_requests(gate: _SpecialFieldGate, count: int) -> None:
    for _ in range(1000):
        if sum(gate.special_calls.values()) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} special field requests, saw {gate.special_calls}")


@pytest.mark.asyncio
async def test_switching_to_missing_schema_during_extraction(photon: PhotonStub) -> None:
    pipeline, gate = _gated_pipeline(photon, {})

    run = asyncio.ensure_future(pipeline.start_extraction(BERLIN_TEXT))
    await _wait_for_special_requests(gate, 4)

    with pytest.raises(SchemaLoadError):
        await pipeline.change_content_type("learning_material.json")

    gate.release.set()
    state = await run

    assert state.special_fields == ()
    assert state.selected_content_type == "learning_material.json"
    assert state.find_field("schema:startDate") is None
    assert state.find_field("cclom:title").status == FieldStatus.FILLED
    assert state.is_extracting is False


@pytest.mark.asyncio
async def test_switching_content_type_drops_results_for_replaced_fields(photon: PhotonStub) -> None:
    pipeline, gate = _gated_pipeline(photon, {"schema:maximumAttendeeCapacity": [99, 20]})

    run = asyncio.ensure_future(pipeline.start_extraction(BERLIN_TEXT))
    await _wait_for_special_requests(gate, 4)

    switch = asyncio.ensure_future(pipeline.change_content_type("event.json"))
    await asyncio.sleep(0)
    gate.release.set()
    await switch
    state = await run

    capacity = state.find_field("schema:maximumAttendeeCapacity")
    assert capacity.value == 20
    assert capacity.status == FieldStatus.FILLED
    assert gate.special_calls["schema:maximumAttendeeCapacity"] == 2
    assert state.content_type_reason == MANUAL_SELECTION_REASON
    assert len(state.special_fields) == 4
    assert state.is_extracting is False


@pytest.mark.asyncio
async def test_new_run_supersedes_run_in_flight(photon: PhotonStub) -> None:
    pipeline, gate = _gated_pipeline(photon, {"schema:maximumAttendeeCapacity": [99, 20]})

    first = asyncio.ensure_future(pipeline.start_extraction("Alter Text"))
    await _wait_for_special_requests(gate, 4)

    second = asyncio.ensure_future(pipeline.start_extraction(BERLIN_TEXT))
    await asyncio.sleep(0)
    gate.release.set()
    await first
    state = await second

    assert state.user_text == BERLIN_TEXT
    assert state.find_field("schema:maximumAttendeeCapacity").value == 20
    assert pipeline.state.find_field("schema:maximumAttendeeCapacity").value == 20
    assert pipeline.state.is_extracting is False


@pytest.mark.asyncio
async def test_second_run_includes_previous_values_as_context(photon: PhotonStub) -> None:
    pipeline = _pipeline(_responder(BERLIN_ANSWERS), photon)
    await pipeline.start_extraction(BERLIN_TEXT)
    first_run = len(_requests(pipeline))

    await pipeline.start_extraction("Der Workshop wird verschoben.")

    later = _requests(pipeline)[first_run:]
    title_prompt = next(r for r in later if prompt_field_id(r) == "cclom:title")
    assert "Aktueller Metadaten-Stand:" in user_prompt(title_prompt)
    assert "Titel: Workshop Digitale Bildung" in user_prompt(title_prompt)


@pytest.mark.asyncio
async def test_change_content_type_loads_special_schema(photon: PhotonStub) -> None:
    pipeline = _pipeline(_responder({}), photon)
    await pipeline.initialize_core_fields()

    state = await pipeline.change_content_type("event.json")

    assert state.selected_content_type == "event.json"
    assert state.content_type_confidence == 1.0
    assert state.content_type_reason == MANUAL_SELECTION_REASON
    assert len(state.special_fields) == 4
    assert {g.key for g in state.field_groups} >= {"Event::schedule", "Event::venue"}
    assert _requests(pipeline) == []


@pytest.mark.asyncio
async def test_editing_content_type_field_switches_schema(photon: PhotonStub) -> None:
    pipeline = _pipeline(_responder({}), photon)
    await pipeline.initialize_core_fields()

    await pipeline.update_field_value("ccm:oeh_flex_lrt", "Veranstaltung")

    assert pipeline.state.selected_content_type == "event.json"
    assert pipeline.state.find_field("schema:startDate") is not None


@pytest.mark.asyncio
async def test_missing_special_schema_keeps_core_fields(photon: PhotonStub) -> None:
    answers = {"cclom:title": "Arbeitsblatt Brüche"}
    detection = {"schema": "learning_material.json", "confidence": 0.8}
    pipeline = _pipeline(_responder(answers, detection=detection), photon)

    state = await pipeline.start_extraction("Arbeitsblatt zu Brüchen")

    assert state.selected_content_type == "learning_material.json"
    assert state.special_fields == ()
    assert state.find_field("cclom:title").value == "Arbeitsblatt Brüche"
    assert state.find_field("ccm:oeh_flex_lrt").value.endswith("/learning_material")


@pytest.mark.asyncio
async def test_import_json_prefills_fields(photon: PhotonStub) -> None:
    pipeline = _pipeline(_responder({}), photon)
    data = {
        "title": "Importierter Workshop",
        "ccm:custom_license": "CC BY",
        "ccm:educationalcontext": [{"type": "vocab", "key": "Grundschule"}],
        "schema:location": [
            {"@type": "Place", "name": "Rathaus", "address": {"addressLocality": "Köln"}}
        ],
    }

    state = await pipeline.import_json(data, detected_schema="event")

    assert state.selected_content_type == "event.json"
    assert state.find_field("ccm:oeh_flex_lrt").value == EVENT_URI
    title = state.find_field("cclom:title")
    assert title.value == "Importierter Workshop"
    assert title.confidence == 1.0
    assert state.find_field("ccm:educationalcontext").value == ["Grundschule"]
    assert state.find_field("schema:location.address.addressLocality").value == "Köln"
    assert state.is_extracting is False
    assert _requests(pipeline) == []


def test_find_value_in_json_tolerates_prefixes() -> None:
    assert find_value_in_json({"title": "A"}, "cclom:title") == "A"
    assert find_value_in_json({"ccm:wwwurl": "B"}, "wwwurl") == "B"
    assert find_value_in_json({}, "cclom:title") is None


def test_repository_wrappers_are_unwrapped() -> None:
    assert is_repository_wrapper({"type": "vocab", "key": "x"})
    assert not is_repository_wrapper({"@type": "Offer", "type": "x", "key": "y"})
    assert not is_repository_wrapper({"type": "x", "key": "y", "price": 10})
    assert find_value_in_json({"a": {"type": "t", "item_id": "id-1"}}, "a") == "id-1"
