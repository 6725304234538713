"""Shared fakes: scripted LLM transport, sample schemas and a mocked Photon API."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from metadata_canvas.extraction.gateway import ChatRequest, ChatResponse, LLMGateway
from metadata_canvas.geocoding.client import PhotonGeocoder, RateLimiter
from metadata_canvas.utils.config import GeocodingConfig, LLMConfig, SchemaConfig
from metadata_canvas.utils.retry import RetryPolicy

SCHEMA_DIR = Path(__file__).resolve().parent.parent / "schemata"

_FIELD_ID = re.compile(r"^Feld: (\S+) \(", re.MULTILINE)

Responder = Callable[[ChatRequest], Any]


class ScriptedTransport:
    """Chat transport answering from a responder callable.

    The responder may return text, any JSON-serializable value, a ``ChatResponse``
    or an exception instance (which is raised).
    """

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.requests: List[ChatRequest] = []

    async def complete(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        answer = self.responder(request)
        if isinstance(answer, BaseException):
            raise answer
        if isinstance(answer, ChatResponse):
            return answer
        if not isinstance(answer, str):
            answer = json.dumps(answer, ensure_ascii=False)
        return ChatResponse.from_text(answer)


async def no_sleep(_: float) -> None:
    return None


def user_prompt(request: ChatRequest) -> str:
    return request.messages[-1].content


def prompt_field_id(request: ChatRequest) -> Optional[str]:
    """Field id of a field-extraction prompt, ``None`` for other prompts."""
    match = _FIELD_ID.search(user_prompt(request))
    return match.group(1) if match else None


def is_detection_prompt(request: ChatRequest) -> bool:
    return "Inhaltstyp zu" in user_prompt(request)


def is_normalization_prompt(request: ChatRequest) -> bool:
    return "Daten-Normalisierer" in user_prompt(request)


def make_test_gateway(responder: Responder, *, max_retries: int = 0) -> LLMGateway:
    return LLMGateway(
        ScriptedTransport(responder),
        LLMConfig(model="test-model"),
        RetryPolicy(max_retries=max_retries, base_delay=0.0, jitter=0.0),
        sleep=no_sleep,
    )


@pytest.fixture
def make_gateway() -> Callable[..., LLMGateway]:
    return make_test_gateway


@pytest.fixture
def schema_config() -> SchemaConfig:
    return SchemaConfig(schema_dir=SCHEMA_DIR, language="de")


BERLIN_FEATURE: Dict[str, Any] = {
    "type": "Feature",
    "geometry": {"type": "Point", "coordinates": [13.4132, 52.5219]},
    "properties": {
        "osm_type": "N",
        "osm_id": 123,
        "street": "Alexanderplatz",
        "housenumber": "1",
        "postcode": "10178",
        "city": "Berlin",
        "state": "Berlin",
        "country": "Deutschland",
        "countrycode": "DE",
        "district": "Mitte",
    },
}


class PhotonStub:
    """Records geocoding requests and answers with a fixed payload."""

    def __init__(self, payload: Any = None, status_code: int = 200) -> None:
        self.payload = {"features": [BERLIN_FEATURE]} if payload is None else payload
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.payload, str):
            return httpx.Response(self.status_code, text=self.payload)
        return httpx.Response(self.status_code, json=self.payload)

    def geocoder(self, **config: Any) -> PhotonGeocoder:
        settings = GeocodingConfig(min_interval=0.0, **config)
        return PhotonGeocoder(
            settings,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
            rate_limiter=RateLimiter(0.0, sleep=no_sleep),
        )


@pytest.fixture
def photon() -> PhotonStub:
    return PhotonStub()
