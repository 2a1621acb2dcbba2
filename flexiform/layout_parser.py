from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

REGIONS_KEY = "flexiPageRegions"
REGION_TYPE = "Region"
FACET_TYPE = "Facet"

SECTION_COMPONENT = "flexipage:fieldSection"
COLUMN_COMPONENT = "flexipage:column"
BLANK_SPACE_COMPONENT = "flexipage:blankSpace"

RECORD_PREFIX = "Record."
DEFAULT_SECTION_ID = "defaultSection"
DEFAULT_COLUMN_ID = "defaultColumn"
DEFAULT_SECTION_LABEL = "Information"
UNNAMED_SECTION_LABEL = "Unnamed Section"

_TRAILING_NUMBER = re.compile(r"(\d+)$")


class LayoutStructureError(ValueError):
    pass


class LayoutShape(str, Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"


@dataclass
class FieldSlot:
    field_id: str
    order: int
    is_blank_space: bool = False
    value: Any = ""
    is_required: bool = False
    is_read_only: bool = False
    visibility_rule: dict[str, Any] | None = None
    conditional_format_ruleset: dict[str, Any] | str | None = None
    is_visible: bool = True


@dataclass
class Column:
    column_id: str
    side: str = "left"
    fields: dict[str, FieldSlot] = field(default_factory=dict)


@dataclass
class Section:
    section_id: str
    label: str
    columns: dict[str, Column] = field(default_factory=dict)

    def has_slots(self) -> bool:
        return any(column.fields for column in self.columns.values())


def parse_layout_document(document: Any) -> dict[str, Section]:
    """Normalize a raw layout document into ``section id -> Section``.

    Structural problems never escape: an unusable document is reported as
    "no layout" by returning an empty mapping.
    """
    try:
        payload = _load_document(document)
        shape = detect_layout_shape(payload)
    except LayoutStructureError as exc:
        logger.warning("Layout document rejected: %s", exc)
        return {}

    logger.debug("Detected %s layout shape", shape.value)
    sections = _SHAPE_BUILDERS[shape](payload[REGIONS_KEY])
    logger.debug(
        "Parsed %s sections with %s slots",
        len(sections),
        sum(len(column.fields) for section in sections.values() for column in section.columns.values()),
    )
    return sections


def detect_layout_shape(document: Any) -> LayoutShape:
    regions = _require_regions(document)
    for region in _iter_mappings(regions):
        if region.get("type") != REGION_TYPE:
            continue
        if any(isinstance(item.get("fieldInstance"), dict) for item in _item_instances(region)):
            return LayoutShape.SIMPLE
    return LayoutShape.COMPLEX


def collect_field_ids(
    sections: dict[str, Section],
    *,
    excluded: Iterable[str] = (),
) -> list[str]:
    excluded_ids = {field_id.lower() for field_id in excluded}
    collected: list[str] = []
    seen: set[str] = set()
    for section in sections.values():
        for column in section.columns.values():
            for field_id, slot in column.fields.items():
                if slot.is_blank_space or field_id.lower() in excluded_ids:
                    continue
                if field_id in seen:
                    continue
                seen.add(field_id)
                collected.append(field_id)
    return collected


def strip_record_prefix(field_reference: str) -> str:
    if field_reference.startswith(RECORD_PREFIX):
        return field_reference[len(RECORD_PREFIX):]
    return field_reference


def column_side(identifier: Any) -> str:
    if not isinstance(identifier, str):
        return "left"
    match = _TRAILING_NUMBER.search(identifier)
    if not match:
        return "left"
    return "right" if int(match.group(1)) % 2 == 0 else "left"


def _build_simple_layout(regions: list[Any]) -> dict[str, Section]:
    column = Column(column_id=DEFAULT_COLUMN_ID, side="left")
    order = 0
    for region in _iter_mappings(regions):
        if region.get("type") != REGION_TYPE:
            continue
        for item in _item_instances(region):
            field_instance = item.get("fieldInstance")
            if not isinstance(field_instance, dict):
                continue
            slot = _read_field_instance(field_instance, order=order)
            if slot is None:
                continue
            column.fields[slot.field_id] = slot
            order += 1

    section = Section(
        section_id=DEFAULT_SECTION_ID,
        label=DEFAULT_SECTION_LABEL,
        columns={DEFAULT_COLUMN_ID: column},
    )
    return {DEFAULT_SECTION_ID: section} if section.has_slots() else {}


def _build_complex_layout(regions: list[Any]) -> dict[str, Section]:
    sections: dict[str, Section] = {}
    mapped_regions = list(_iter_mappings(regions))
    facet_regions = [region for region in mapped_regions if region.get("type") == FACET_TYPE]

    # Sections, columns and placements are sibling records linked by facet id,
    # so each pass depends on the maps built by the one before it.
    for region in mapped_regions:
        for component in _component_instances(region, SECTION_COMPONENT):
            properties = _properties(component, "componentInstanceProperties")
            section_facet_id = properties.get("columns")
            if not isinstance(section_facet_id, str) or not section_facet_id:
                continue
            if section_facet_id in sections:
                continue
            label = properties.get("label")
            sections[section_facet_id] = Section(
                section_id=section_facet_id,
                label=label if isinstance(label, str) and label else UNNAMED_SECTION_LABEL,
            )

    for region in facet_regions:
        section_facet_id = region.get("name")
        section = sections.get(section_facet_id) if isinstance(section_facet_id, str) else None
        if section is None:
            continue
        for component in _component_instances(region, COLUMN_COMPONENT):
            column_facet_id = _properties(component, "componentInstanceProperties").get("body")
            if not isinstance(column_facet_id, str) or not column_facet_id:
                continue
            section.columns[column_facet_id] = Column(
                column_id=column_facet_id,
                side=column_side(component.get("identifier")),
            )

    owners = {
        column_id: section
        for section in sections.values()
        for column_id in section.columns
    }
    for region in facet_regions:
        column_facet_id = region.get("name")
        section = owners.get(column_facet_id) if isinstance(column_facet_id, str) else None
        if section is None:
            continue
        column = section.columns[column_facet_id]
        for item_index, item in enumerate(_item_instances(region)):
            field_instance = item.get("fieldInstance")
            if isinstance(field_instance, dict):
                slot = _read_field_instance(field_instance, order=item_index)
                if slot is not None:
                    column.fields[slot.field_id] = slot
                continue
            component = item.get("componentInstance")
            if isinstance(component, dict) and component.get("componentName") == BLANK_SPACE_COMPONENT:
                identifier = component.get("identifier")
                spacer_id = identifier if isinstance(identifier, str) and identifier else f"spacer_{item_index}"
                column.fields[spacer_id] = FieldSlot(
                    field_id=spacer_id,
                    order=item_index,
                    is_blank_space=True,
                    value=None,
                )

    return {section_id: section for section_id, section in sections.items() if section.has_slots()}


_SHAPE_BUILDERS: dict[LayoutShape, Callable[[list[Any]], dict[str, Section]]] = {
    LayoutShape.SIMPLE: _build_simple_layout,
    LayoutShape.COMPLEX: _build_complex_layout,
}


def _read_field_instance(field_instance: dict[str, Any], *, order: int) -> FieldSlot | None:
    field_reference = field_instance.get("fieldItem")
    if not isinstance(field_reference, str) or not field_reference.strip():
        return None

    properties = _properties(field_instance, "fieldInstanceProperties")
    ui_behavior = properties.get("uiBehavior")
    visibility_rule = field_instance.get("visibilityRule")
    ruleset = properties.get("conditionalFormatRuleset")
    value = properties.get("value")
    return FieldSlot(
        field_id=strip_record_prefix(field_reference.strip()),
        order=order,
        value=value if value else "",
        is_required=ui_behavior == "required",
        is_read_only=ui_behavior == "readonly",
        visibility_rule=visibility_rule if isinstance(visibility_rule, dict) else None,
        conditional_format_ruleset=ruleset if isinstance(ruleset, (dict, str)) and ruleset else None,
    )


def _load_document(document: Any) -> dict[str, Any]:
    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as exc:
            raise LayoutStructureError(f"Layout document is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise LayoutStructureError(
            f"Expected layout document object, got {type(document).__name__}"
        )
    _require_regions(document)
    return document


def _require_regions(document: Any) -> list[Any]:
    regions = document.get(REGIONS_KEY) if isinstance(document, dict) else None
    if not isinstance(regions, list):
        raise LayoutStructureError(f"Layout document is missing a '{REGIONS_KEY}' list.")
    return regions


def _iter_mappings(items: Any) -> Iterable[dict[str, Any]]:
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _item_instances(region: dict[str, Any]) -> Iterable[dict[str, Any]]:
    items = region.get("itemInstances")
    if not isinstance(items, list):
        return []
    # Non-mapping entries keep their slot so item indexes match the document.
    return [item if isinstance(item, dict) else {} for item in items]


def _component_instances(region: dict[str, Any], component_name: str) -> list[dict[str, Any]]:
    components = []
    for item in _item_instances(region):
        component = item.get("componentInstance")
        if isinstance(component, dict) and component.get("componentName") == component_name:
            components.append(component)
    return components


def _properties(instance: dict[str, Any], key: str) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    entries = instance.get(key)
    if not isinstance(entries, list):
        return properties
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        # First occurrence wins.
        if isinstance(name, str) and name not in properties:
            properties[name] = entry.get("value")
    return properties
