"""Tests for metadata document, repository payload and export building."""

from __future__ import annotations

from metadata_canvas.extraction.models import FieldState, FieldStatus
from metadata_canvas.pipeline.reconciler import MetadataReconciler, label_uri_pair
from metadata_canvas.pipeline.shape_expander import ShapeExpander
from metadata_canvas.pipeline.state import CanvasState
from metadata_canvas.schema.models import FieldDefinition, Shape, Vocabulary, VocabularyConcept

LICENSES = Vocabulary(
    type="closed",
    concepts=[
        VocabularyConcept(label="CC BY", uri="http://creativecommons.org/licenses/by/4.0/"),
        VocabularyConcept(label="CC 0", uri="http://creativecommons.org/publicdomain/zero/1.0/", altLabels=["CC0"]),
    ],
)
CONTEXTS = Vocabulary(
    type="skos",
    concepts=[
        VocabularyConcept(label="Grundschule", uri="http://vocabs.test/grundschule"),
        VocabularyConcept(label="Hochschule", uri="http://vocabs.test/hochschule"),
    ],
)


def _filled(definition: FieldDefinition, value: object) -> FieldState:
    return FieldState(definition=definition, status=FieldStatus.FILLED, value=value, confidence=0.85)


def _state() -> CanvasState:
    location_def = FieldDefinition(
        id="schema:location",
        label="Ort",
        schema_name="Event",
        datatype="array",
        multiple=True,
        shape=Shape.parse({"@type": "Place", "name": "string", "address": {"@type": "PostalAddress", "addressLocality": "string"}}),
    )
    location = FieldState.initial(location_def)
    value = [{"@type": "Place", "name": "Rathaus", "address": {"addressLocality": "Köln"}}]
    sub_fields = ShapeExpander().expand(location, value)
    location = location.model_copy(
        update={"status": FieldStatus.FILLED, "value": value, "sub_fields": tuple(sub_fields)}
    )

    core = (
        _filled(FieldDefinition(id="cclom:title", label="Titel"), "Workshop"),
        _filled(FieldDefinition(id="ccm:custom_license", label="Lizenz", vocabulary=LICENSES), "CC BY"),
        _filled(
            FieldDefinition(id="ccm:educationalcontext", label="Bildungsstufe", multiple=True, vocabulary=CONTEXTS),
            ["Grundschule", "http://vocabs.test/hochschule"],
        ),
        FieldState.initial(FieldDefinition(id="cclom:general_keyword", label="Schlagworte", datatype="array", multiple=True)),
        FieldState.initial(FieldDefinition(id="ccm:oeh_flex_lrt", label="Inhaltstyp", vocabulary=LICENSES)),
    )
    return CanvasState(
        core_fields=core,
        special_fields=(location,),
        selected_content_type="event.json",
        metadata={"ccm:replicationsource": "import", "cclom:title": "Workshop"},
    )


def test_document_uses_label_uri_pairs_for_vocabularies() -> None:
    document = MetadataReconciler().build_document(_state())

    assert document["cclom:title"] == "Workshop"
    assert document["ccm:custom_license"] == {
        "label": "CC BY",
        "uri": "http://creativecommons.org/licenses/by/4.0/",
    }
    assert document["ccm:educationalcontext"] == [
        {"label": "Grundschule", "uri": "http://vocabs.test/grundschule"},
        {"label": "Hochschule", "uri": "http://vocabs.test/hochschule"},
    ]
    assert document["ccm:oeh_flex_lrt"] is None
    assert document["cclom:general_keyword"] == []
    assert document["ccm:replicationsource"] == "import"


def test_document_never_contains_sub_field_keys() -> None:
    document = MetadataReconciler().build_document(_state())

    assert not any(key.startswith("schema:location.") for key in document)
    assert document["schema:location"] == [
        {
            "@type": "Place",
            "name": "Rathaus",
            "address": {"@type": "PostalAddress", "addressLocality": "Köln"},
        }
    ]


def test_document_keeps_metadata_order_first() -> None:
    keys = list(MetadataReconciler().build_document(_state()))

    assert keys[:2] == ["ccm:replicationsource", "cclom:title"]


def test_repository_payload_uses_uri_lists() -> None:
    payload = MetadataReconciler().build_repository_payload(_state())

    assert payload["ccm:custom_license"] == ["http://creativecommons.org/licenses/by/4.0/"]
    assert payload["ccm:educationalcontext"] == [
        "http://vocabs.test/grundschule",
        "http://vocabs.test/hochschule",
    ]
    assert payload["ccm:oeh_flex_lrt"] == []
    assert payload["cclom:general_keyword"] == []
    assert payload["cclom:title"] == "Workshop"


def test_export_names_metadataset_and_skips_empty_values() -> None:
    exported = MetadataReconciler().export_as_json(_state())

    assert exported["metadataset"] == "mds_oeh_event"
    assert exported["cclom:title"] == "Workshop"
    assert "ccm:oeh_flex_lrt" not in exported
    assert exported["schema:location"][0]["name"] == "Rathaus"


def test_export_without_content_type() -> None:
    state = _state().model_copy(update={"selected_content_type": None})

    assert MetadataReconciler().export_as_json(state)["metadataset"] == "mds_oeh"


def test_metadata_context_lists_filled_fields() -> None:
    context = MetadataReconciler().metadata_context(_state())

    assert context.startswith("\n\nAktueller Metadaten-Stand:\n")
    assert "Titel: Workshop" in context
    assert "Bildungsstufe: Grundschule, http://vocabs.test/hochschule" in context
    assert "Schlagworte" not in context
    assert MetadataReconciler().metadata_context(CanvasState()) == ""


def test_label_uri_pair_for_unknown_value() -> None:
    assert label_uri_pair("CC0", LICENSES) == {
        "label": "CC 0",
        "uri": "http://creativecommons.org/publicdomain/zero/1.0/",
    }
    assert label_uri_pair("Unbekannt", LICENSES) == {"label": "Unbekannt", "uri": ""}
    assert label_uri_pair({"label": "X", "uri": "http://x"}, LICENSES) == {"label": "X", "uri": "http://x"}
