from __future__ import annotations

import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from flexiform.layout_parser import (  # noqa: E402
    LayoutShape,
    collect_field_ids,
    column_side,
    detect_layout_shape,
    parse_layout_document,
)


def _field_item(field_name: str, **properties) -> dict:
    field_instance = {
        "fieldItem": f"Record.{field_name}",
        "fieldInstanceProperties": [
            {"name": name, "value": value}
            for name, value in properties.items()
            if name != "visibilityRule"
        ],
    }
    if "visibilityRule" in properties:
        field_instance["visibilityRule"] = properties["visibilityRule"]
    return {"fieldInstance": field_instance}


def _component(component_name: str, identifier: str | None = None, **properties) -> dict:
    component = {
        "componentName": component_name,
        "componentInstanceProperties": [
            {"name": name, "value": value} for name, value in properties.items()
        ],
    }
    if identifier:
        component["identifier"] = identifier
    return {"componentInstance": component}


def _complex_document() -> dict:
    return {
        "flexiPageRegions": [
            {
                "name": "main",
                "type": "Region",
                "itemInstances": [
                    _component("flexipage:fieldSection", "flexipage_fieldSection", columns="Facet-sec1", label="Account Details"),
                    _component("flexipage:fieldSection", "flexipage_fieldSection2", columns="Facet-sec2"),
                    _component("flexipage:fieldSection", "flexipage_fieldSection3", columns="Facet-empty", label="Empty"),
                ],
            },
            {
                "name": "Facet-sec1",
                "type": "Facet",
                "itemInstances": [
                    _component("flexipage:column", "flexipage_column1", body="Facet-col1"),
                    _component("flexipage:column", "flexipage_column2", body="Facet-col2"),
                ],
            },
            {
                "name": "Facet-sec2",
                "type": "Facet",
                "itemInstances": [
                    _component("flexipage:column", "flexipage_column3", body="Facet-col3"),
                ],
            },
            {
                "name": "Facet-empty",
                "type": "Facet",
                "itemInstances": [
                    _component("flexipage:column", "flexipage_column4", body="Facet-col4"),
                ],
            },
            {
                "name": "Facet-col1",
                "type": "Facet",
                "itemInstances": [
                    _field_item("Name", uiBehavior="required"),
                    _component("flexipage:blankSpace", "flexipage_blankSpace1"),
                    _field_item(
                        "Status__c",
                        uiBehavior="readonly",
                        conditionalFormatRuleset="Status_Icons",
                        visibilityRule={
                            "criteria": [
                                {"leftValue": "{!Record.Status__c}", "operator": "EQUAL", "rightValue": "New"}
                            ]
                        },
                    ),
                ],
            },
            {
                "name": "Facet-col2",
                "type": "Facet",
                "itemInstances": [
                    _field_item("Industry", value="Banking"),
                    _component("flexipage:blankSpace"),
                ],
            },
            {
                "name": "Facet-col3",
                "type": "Facet",
                "itemInstances": [_field_item("OwnerId")],
            },
            {"name": "Facet-col4", "type": "Facet", "itemInstances": []},
        ]
    }


def test_detects_complex_layout_and_builds_sections_in_document_order():
    document = _complex_document()
    assert detect_layout_shape(document) is LayoutShape.COMPLEX

    sections = parse_layout_document(document)

    assert list(sections) == ["Facet-sec1", "Facet-sec2"]
    assert sections["Facet-sec1"].label == "Account Details"
    assert sections["Facet-sec2"].label == "Unnamed Section"
    assert list(sections["Facet-sec1"].columns) == ["Facet-col1", "Facet-col2"]
    assert sections["Facet-sec1"].columns["Facet-col1"].side == "left"
    assert sections["Facet-sec1"].columns["Facet-col2"].side == "right"


def test_complex_layout_reads_field_slot_properties():
    sections = parse_layout_document(_complex_document())
    fields = sections["Facet-sec1"].columns["Facet-col1"].fields

    assert list(fields) == ["Name", "flexipage_blankSpace1", "Status__c"]
    assert fields["Name"].is_required is True
    assert fields["Name"].is_read_only is False
    assert fields["Name"].order == 0
    assert fields["flexipage_blankSpace1"].is_blank_space is True
    assert fields["flexipage_blankSpace1"].order == 1
    status = fields["Status__c"]
    assert status.is_read_only is True
    assert status.order == 2
    assert status.conditional_format_ruleset == "Status_Icons"
    assert status.visibility_rule["criteria"][0]["rightValue"] == "New"


def test_blank_space_without_identifier_gets_positional_id_and_value_property_is_kept():
    sections = parse_layout_document(_complex_document())
    fields = sections["Facet-sec1"].columns["Facet-col2"].fields

    assert fields["Industry"].value == "Banking"
    assert fields["spacer_1"].is_blank_space is True
    assert fields["spacer_1"].order == 1


def test_sections_without_any_slots_are_dropped():
    sections = parse_layout_document(_complex_document())
    assert "Facet-empty" not in sections


def test_simple_layout_collapses_regions_into_default_section():
    document = {
        "flexiPageRegions": [
            {"name": "R1", "type": "Region", "itemInstances": [_field_item("a"), _field_item("b")]},
            {"name": "R2", "type": "Region", "itemInstances": [_field_item("c")]},
        ]
    }
    assert detect_layout_shape(document) is LayoutShape.SIMPLE

    sections = parse_layout_document(document)

    assert list(sections) == ["defaultSection"]
    section = sections["defaultSection"]
    assert section.label == "Information"
    fields = section.columns["defaultColumn"].fields
    assert [(field_id, slot.order) for field_id, slot in fields.items()] == [("a", 0), ("b", 1), ("c", 2)]


def test_parse_accepts_json_string_documents():
    document = _complex_document()
    assert parse_layout_document(json.dumps(document)) == parse_layout_document(document)


def test_parser_is_idempotent():
    document = _complex_document()
    first = parse_layout_document(document)
    second = parse_layout_document(document)

    assert first == second
    assert first is not second


def test_structurally_invalid_documents_yield_empty_layout():
    assert parse_layout_document(None) == {}
    assert parse_layout_document("not json") == {}
    assert parse_layout_document({"regions": []}) == {}
    assert parse_layout_document({"flexiPageRegions": "nope"}) == {}
    assert parse_layout_document([1, 2]) == {}


def test_malformed_items_are_skipped_without_failing_the_document():
    document = _complex_document()
    document["flexiPageRegions"].append({"name": "broken", "type": "Facet"})
    document["flexiPageRegions"][4]["itemInstances"].append("garbage")
    document["flexiPageRegions"][4]["itemInstances"].append({"fieldInstance": {"fieldItem": 7}})

    sections = parse_layout_document(document)

    assert list(sections["Facet-sec1"].columns["Facet-col1"].fields) == [
        "Name",
        "flexipage_blankSpace1",
        "Status__c",
    ]


def test_column_side_uses_identifier_parity():
    assert column_side("flexipage_column1") == "left"
    assert column_side("flexipage_column2") == "right"
    assert column_side("flexipage_column10") == "right"
    assert column_side("flexipage_column") == "left"
    assert column_side(None) == "left"


def test_collect_field_ids_skips_blank_spaces_and_exclusions():
    sections = parse_layout_document(_complex_document())

    assert collect_field_ids(sections) == ["Name", "Status__c", "Industry", "OwnerId"]
    assert collect_field_ids(sections, excluded=["ownerid", "INDUSTRY"]) == ["Name", "Status__c"]


def test_non_string_facet_names_and_identifiers_are_skipped():
    document = _complex_document()
    document["flexiPageRegions"].append(
        {"name": ["Facet-sec1"], "type": "Facet", "itemInstances": [_component("flexipage:column", body="Facet-x")]}
    )
    document["flexiPageRegions"].append({"name": {"id": 1}, "type": "Facet", "itemInstances": []})
    document["flexiPageRegions"][5]["itemInstances"].append(
        {"componentInstance": {"componentName": "flexipage:blankSpace", "identifier": ["spacer"]}}
    )

    sections = parse_layout_document(document)

    assert list(sections["Facet-sec1"].columns) == ["Facet-col1", "Facet-col2"]
    assert list(sections["Facet-sec1"].columns["Facet-col2"].fields) == ["Industry", "spacer_1", "spacer_2"]


def test_facet_named_with_a_list_yields_empty_layout_not_an_error():
    document = {
        "flexiPageRegions": [
            {
                "name": "main",
                "type": "Region",
                "itemInstances": [_component("flexipage:fieldSection", columns="f1")],
            },
            {"name": ["f1"], "type": "Facet", "itemInstances": []},
        ]
    }

    assert parse_layout_document(document) == {}
