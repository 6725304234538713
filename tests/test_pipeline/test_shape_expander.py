"""Tests for sub-field expansion of structured values and their reconstruction."""

from __future__ import annotations

from metadata_canvas.extraction.models import FieldState, FieldStatus
from metadata_canvas.pipeline.shape_expander import ShapeExpander, format_label, sub_field_id
from metadata_canvas.schema.models import FieldDefinition, Shape

LOCATION_SHAPE = Shape.parse(
    {
        "oneOf": [
            {
                "@type": "Place",
                "name": "string",
                "address": {
                    "@type": "PostalAddress",
                    "streetAddress": "string",
                    "postalCode": "string",
                    "addressLocality": "string",
                },
                "geo": {"@type": "GeoCoordinates", "latitude": "number", "longitude": "number"},
            },
            {"@type": "VirtualLocation", "name": "string", "url": "uri"},
        ]
    }
)

LOCATION = FieldState.initial(
    FieldDefinition(
        id="schema:location",
        uri="https://schema.org/location",
        label="Ort",
        group="venue",
        schema_name="Event",
        datatype="array",
        multiple=True,
        shape=LOCATION_SHAPE,
    )
)

OFFER = FieldState.initial(
    FieldDefinition(
        id="schema:offers",
        label="Angebot",
        datatype="object",
        shape=Shape.parse({"@type": "Offer", "price": "number", "priceCurrency": "string"}),
    )
)

PLACE = {
    "@type": "Place",
    "name": "Alexanderplatz",
    "address": {
        "@type": "PostalAddress",
        "streetAddress": "Alexanderplatz 1",
        "postalCode": "10178",
        "addressLocality": "Berlin",
    },
    "geo": {"@type": "GeoCoordinates", "latitude": 52.5219, "longitude": 13.4132},
}
VIRTUAL = {"@type": "VirtualLocation", "name": "Zoom", "url": "https://zoom.test/j/1"}


def _with_sub_fields(parent: FieldState, value: object) -> FieldState:
    sub_fields = ShapeExpander().expand(parent, value)
    return parent.model_copy(update={"value": value, "sub_fields": tuple(sub_fields)})


def test_helpers() -> None:
    assert format_label("streetAddress") == "Street Address"
    assert format_label("price_currency") == "Price currency"
    assert sub_field_id("schema:location", "address.postalCode", 0) == "schema:location.address.postalCode"
    assert sub_field_id("schema:location", "name", 2) == "schema:location[2].name"


def test_expand_creates_leaf_sub_fields_with_paths() -> None:
    sub_fields = ShapeExpander().expand(LOCATION, [PLACE])

    by_path = {sub.path: sub for sub in sub_fields}
    assert set(by_path) == {
        "name",
        "address.streetAddress",
        "address.postalCode",
        "address.addressLocality",
        "geo.latitude",
        "geo.longitude",
    }
    street = by_path["address.streetAddress"]
    assert street.field_id == "schema:location.address.streetAddress"
    assert street.parent_field_id == "schema:location"
    assert street.status == FieldStatus.FILLED
    assert street.confidence == 1.0
    assert street.definition.label == "Street Address"
    assert street.definition.uri == "https://schema.org/location#address.streetAddress"
    assert street.definition.ai_fillable is False
    assert street.definition.group == "venue"
    assert by_path["geo.latitude"].definition.datatype == "number"


def test_missing_values_become_empty_sub_fields() -> None:
    sub_fields = ShapeExpander().expand(LOCATION, [{"@type": "Place", "name": "Rathaus"}])

    latitude = next(sub for sub in sub_fields if sub.path == "geo.latitude")
    assert latitude.status == FieldStatus.EMPTY
    assert latitude.value is None


def test_list_items_pick_their_own_variant() -> None:
    sub_fields = ShapeExpander().expand(LOCATION, [PLACE, VIRTUAL])

    second = [sub for sub in sub_fields if sub.array_index == 1]
    assert {sub.path for sub in second} == {"name", "url"}
    assert all(sub.shape_variant == "VirtualLocation" for sub in second)
    assert second[0].field_id.startswith("schema:location[1].")


def test_round_trip_restores_structured_values() -> None:
    parent = _with_sub_fields(LOCATION, [PLACE, VIRTUAL])

    assert ShapeExpander().reconstruct(parent) == [PLACE, VIRTUAL]


def test_reconstruct_single_object_and_skips_empty_nodes() -> None:
    offer = _with_sub_fields(OFFER, {"price": 20, "priceCurrency": "EUR"})
    place = _with_sub_fields(LOCATION, [{"@type": "Place", "name": "Rathaus"}])

    assert ShapeExpander().reconstruct(offer) == {"@type": "Offer", "price": 20, "priceCurrency": "EUR"}
    assert ShapeExpander().reconstruct(place) == [{"@type": "Place", "name": "Rathaus"}]


def test_edited_sub_field_is_reflected_in_reconstruction() -> None:
    parent = _with_sub_fields(LOCATION, [PLACE])
    edited = tuple(
        sub.model_copy(update={"value": "Alexanderplatz 5"})
        if sub.path == "address.streetAddress"
        else sub
        for sub in parent.sub_fields
    )

    rebuilt = ShapeExpander().reconstruct(parent.model_copy(update={"sub_fields": edited}))

    assert rebuilt[0]["address"]["streetAddress"] == "Alexanderplatz 5"


def test_parent_without_sub_fields_returns_own_value() -> None:
    parent = LOCATION.model_copy(update={"value": ["roh"]})

    assert ShapeExpander().reconstruct(parent) == ["roh"]
    assert ShapeExpander().expand(OFFER.model_copy(update={"definition": FieldDefinition(id="x")}), {}) == []
