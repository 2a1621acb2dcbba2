from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from flexiform.form_options import FormOptions  # noqa: E402
from flexiform.form_providers import FieldMetadata, ProviderError, StaticFormDataProvider  # noqa: E402
from flexiform.form_service import (  # noqa: E402
    FormRenderError,
    LayoutNotAvailableError,
    RecordFormService,
)

RECORD_ID = "001000000000001AAA"
ALT_RECORD_ID = "001000000000002AAA"


def _field_item(field_name: str, **properties) -> dict:
    return {
        "fieldInstance": {
            "fieldItem": f"Record.{field_name}",
            "fieldInstanceProperties": [{"name": name, "value": value} for name, value in properties.items()],
        }
    }


def _simple_layout(*field_names: str) -> dict:
    return {
        "flexiPageRegions": [
            {"name": "main", "type": "Region", "itemInstances": [_field_item(name) for name in field_names]},
        ]
    }


def _provider(**overrides) -> StaticFormDataProvider:
    options = {
        "layouts": {"Account_Record_Page": _simple_layout("Name", "Industry", "Parent__c", "OwnerId")},
        "records": {
            RECORD_ID: {"Name": "Acme", "Industry": "Banking", "Parent__c": ALT_RECORD_ID, "OwnerId": "005x"},
            ALT_RECORD_ID: {"Name": "Acme Holdings", "Industry": "Finance", "Parent__c": ALT_RECORD_ID},
        },
        "field_metadata": {
            "Name": {"label": "Account Name", "type": "string", "isNameField": True},
            "Industry": {"label": "Industry", "type": "picklist"},
        },
    }
    options.update(overrides)
    return StaticFormDataProvider(**options)


def _field_values(view_model) -> dict:
    return {
        enhanced.field_id: enhanced.value
        for section in view_model.sections
        for column in section.columns
        for enhanced in column.fields
    }


def test_render_form_loads_values_and_metadata_for_existing_record():
    provider = _provider()
    service = RecordFormService(provider=provider)

    view_model = asyncio.run(service.render_form("Account_Record_Page", object_type="Account", record_id=RECORD_ID))

    assert _field_values(view_model) == {"Name": "Acme", "Industry": "Banking", "Parent__c": ALT_RECORD_ID}
    assert view_model.active_field_ids == ["Name", "Industry", "Parent__c"]
    name = view_model.sections[0].columns[0].fields[0]
    assert name.label == "Account Name"
    assert name.is_name_field is True
    assert provider.calls == [
        ("layout", "Account_Record_Page"),
        ("values", RECORD_ID),
        ("metadata", "Account"),
    ]


def test_render_form_for_new_record_uses_defaults_without_fetching_values():
    provider = _provider()
    service = RecordFormService(provider=provider)
    options = FormOptions(default_values="Industry:Technology")

    view_model = asyncio.run(
        service.render_form("Account_Record_Page", object_type="Account", record_id=None, options=options)
    )

    assert _field_values(view_model) == {"Name": None, "Industry": "Technology", "Parent__c": None}
    assert view_model.changed_fields == ["industry"]
    assert ("values", "") not in provider.calls
    assert [call[0] for call in provider.calls] == ["layout", "metadata"]
    assert options.is_new_record is False


def test_alt_field_triggers_a_single_refetch():
    provider = _provider()
    service = RecordFormService(provider=provider)

    view_model = asyncio.run(
        service.render_form(
            "Account_Record_Page",
            object_type="Account",
            record_id=RECORD_ID,
            options=FormOptions(alt_field="Parent__c"),
        )
    )

    assert _field_values(view_model)["Name"] == "Acme Holdings"
    assert [call for call in provider.calls if call[0] == "values"] == [
        ("values", RECORD_ID),
        ("values", ALT_RECORD_ID),
    ]


def test_alt_field_without_a_different_value_is_ignored():
    provider = _provider()
    service = RecordFormService(provider=provider)

    asyncio.run(
        service.render_form(
            "Account_Record_Page",
            object_type="Account",
            record_id=RECORD_ID,
            options=FormOptions(alt_field="Industry__missing"),
        )
    )

    assert [call for call in provider.calls if call[0] == "values"] == [("values", RECORD_ID)]


def test_provider_errors_surface_as_render_errors():
    service = RecordFormService(provider=_provider())

    with pytest.raises(FormRenderError):
        asyncio.run(service.render_form("Unknown_Page", object_type="Account", record_id=RECORD_ID))
    with pytest.raises(FormRenderError):
        asyncio.run(
            service.render_form("Account_Record_Page", object_type="Account", record_id="001000000000009AAA")
        )


def test_unusable_layout_raises_layout_not_available():
    provider = _provider(layouts={"Broken": {"regions": []}, "Empty": {"flexiPageRegions": []}})
    service = RecordFormService(provider=provider)

    with pytest.raises(LayoutNotAvailableError):
        asyncio.run(service.render_form("Broken", object_type="Account", record_id=RECORD_ID))
    with pytest.raises(LayoutNotAvailableError):
        asyncio.run(service.load_sections("Empty"))


def test_active_field_ids_honour_exclusions():
    service = RecordFormService(provider=_provider())

    editable = asyncio.run(service.active_field_ids("Account_Record_Page"))
    display = asyncio.run(
        service.active_field_ids(
            "Account_Record_Page",
            FormOptions(is_read_only=True, excluded_fields="Industry"),
        )
    )

    assert editable == ["Name", "Industry", "Parent__c"]
    assert display == ["Name", "Parent__c", "OwnerId"]


def test_render_document_accepts_caller_supplied_data():
    service = RecordFormService(provider=_provider())

    view_model = asyncio.run(
        service.render_document(
            _simple_layout("Name", "AccountId"),
            record_data={"Name": "Acme", "AccountId": "001000000000003AAA"},
            field_metadata={
                "AccountId": {
                    "type": "reference",
                    "referenceObjectName": "Account",
                    "referenceNameValue": "Parent Co",
                },
                "Name": FieldMetadata(label="Name"),
            },
        )
    )

    account = view_model.sections[0].columns[0].fields[1]
    assert account.display_value == "Parent Co"
    assert account.record_url == "/lightning/r/Account/001000000000003AAA/view"
    assert view_model.record_data == {"name": "Acme", "accountid": "001000000000003AAA"}

    with pytest.raises(LayoutNotAvailableError):
        asyncio.run(service.render_document("not json"))


def test_static_provider_rejects_unknown_rule_sets():
    provider = StaticFormDataProvider()

    with pytest.raises(ProviderError):
        asyncio.run(provider.fetch_icon_rule_set("Missing"))
