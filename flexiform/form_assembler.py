from __future__ import annotations

import asyncio
import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .form_options import DEFAULT_VOCABULARY, FormOptions, FormVocabulary
from .form_providers import FieldMetadata
from .format_rules import FormatEvaluator, StyleResolution, translate_format_style
from .layout_parser import FieldSlot, Section, collect_field_ids
from .visibility_rules import VisibilityEvaluator

logger = logging.getLogger(__name__)

SYSTEM_MARKER_PREFIX = "@@@SFDC"
SYSTEM_MARKER_SUFFIX = "SFDC@@@"

_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")

SlotKey = tuple[str, str, str]


@dataclass
class DefaultValueMerge:
    sections: dict[str, Section]
    record_data: dict[str, Any]
    changed_keys: list[str] = field(default_factory=list)


@dataclass
class EnhancedField:
    field_id: str
    order: int
    is_blank_space: bool = False
    value: Any = None
    display_value: Any = None
    label: str = ""
    type: str | None = None
    is_reference: bool = False
    is_checkbox: bool = False
    is_currency: bool = False
    reference_object_name: str | None = None
    reference_name_value: Any = None
    record_url: str | None = None
    is_name_field: bool = False
    is_editable: bool = False
    is_required: bool = False
    is_read_only: bool = False
    format_style: dict[str, Any] | None = None
    format_classes: str = ""
    icon_name: str | None = None
    icon_resource_path: str | None = None
    icon_color: str | None = None
    icon_class: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "fieldId": self.field_id,
            "order": self.order,
            "isBlankSpace": self.is_blank_space,
            "value": self.value,
            "displayValue": self.display_value,
            "label": self.label,
            "type": self.type,
            "isReference": self.is_reference,
            "isCheckbox": self.is_checkbox,
            "isCurrency": self.is_currency,
            "referenceObjectName": self.reference_object_name,
            "referenceNameValue": self.reference_name_value,
            "recordUrl": self.record_url,
            "isNameField": self.is_name_field,
            "isEditable": self.is_editable,
            "isRequired": self.is_required,
            "isReadOnly": self.is_read_only,
            "formatStyle": self.format_style,
            "formatClasses": self.format_classes,
            "iconName": self.icon_name,
            "iconResourcePath": self.icon_resource_path,
            "iconColor": self.icon_color,
            "iconClass": self.icon_class,
        }


@dataclass
class ColumnView:
    column_id: str
    side: str
    width_class: str
    fields: list[EnhancedField] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "columnId": self.column_id,
            "side": self.side,
            "widthClass": self.width_class,
            "fields": [enhanced.to_dict() for enhanced in self.fields],
        }


@dataclass
class SectionView:
    section_id: str
    section_label: str
    section_class: str
    is_open: bool = True
    columns: list[ColumnView] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sectionId": self.section_id,
            "sectionLabel": self.section_label,
            "sectionClass": self.section_class,
            "isOpen": self.is_open,
            "columns": [column.to_dict() for column in self.columns],
        }


@dataclass
class FormViewModel:
    sections: list[SectionView] = field(default_factory=list)
    active_field_ids: list[str] = field(default_factory=list)
    record_data: dict[str, Any] = field(default_factory=dict)
    changed_fields: list[str] = field(default_factory=list)

    @property
    def has_fields(self) -> bool:
        return any(column.fields for section in self.sections for column in section.columns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sections": [section.to_dict() for section in self.sections],
            "activeFieldIds": list(self.active_field_ids),
            "recordData": dict(self.record_data),
            "changedFields": list(self.changed_fields),
        }


def remove_excluded_fields(sections: dict[str, Section], excluded: Iterable[str]) -> dict[str, Section]:
    excluded_ids = {field_id.lower() for field_id in excluded}
    pruned = copy.deepcopy(sections)
    removed: list[str] = []
    for section in pruned.values():
        for column in section.columns.values():
            kept: dict[str, FieldSlot] = {}
            for field_id, slot in column.fields.items():
                if field_id.lower() in excluded_ids:
                    removed.append(field_id)
                    continue
                kept[field_id] = slot
            column.fields = kept
    if removed:
        logger.debug("Removed excluded fields: %s", removed)
    return pruned


def apply_default_values(
    sections: dict[str, Section],
    record_data: Mapping[str, Any],
    defaults: Mapping[str, Any],
    *,
    is_new_record: bool,
) -> DefaultValueMerge:
    merged = DefaultValueMerge(sections=copy.deepcopy(sections), record_data=dict(record_data))
    lookup = {str(key).lower(): value for key, value in defaults.items()}
    if not lookup:
        return merged

    for section in merged.sections.values():
        for column in section.columns.values():
            for field_id, slot in column.fields.items():
                if slot.is_blank_space:
                    continue
                key = field_id.lower()
                if key not in lookup:
                    continue
                if not is_new_record and not _is_blank(slot.value):
                    continue
                slot.value = lookup[key]
                merged.record_data[key] = lookup[key]
                if key not in merged.changed_keys:
                    merged.changed_keys.append(key)
                logger.debug("Applied default value to %s: %r", field_id, slot.value)
    return merged


def humanize_field_label(raw_label: str | None) -> str:
    if not raw_label:
        return ""
    label = raw_label
    if label.startswith(SYSTEM_MARKER_PREFIX) and label.endswith(SYSTEM_MARKER_SUFFIX):
        label = label.replace(SYSTEM_MARKER_PREFIX, "", 1).replace(SYSTEM_MARKER_SUFFIX, "", 1)
    label = label.replace("_", " ")
    label = _CAMEL_BOUNDARY.sub(r"\1 \2", label)
    return " ".join(word[:1].upper() + word[1:].lower() for word in label.split(" ") if word)


class FormAssembler:
    def __init__(
        self,
        *,
        vocabulary: FormVocabulary = DEFAULT_VOCABULARY,
        format_evaluator: FormatEvaluator | None = None,
        visibility_evaluator: VisibilityEvaluator | None = None,
    ) -> None:
        self.vocabulary = vocabulary
        self.format_evaluator = format_evaluator
        self.visibility_evaluator = visibility_evaluator or VisibilityEvaluator()

    async def assemble(
        self,
        sections: dict[str, Section],
        record_data: Mapping[str, Any],
        *,
        field_metadata: Mapping[str, FieldMetadata] | None = None,
        options: FormOptions | None = None,
    ) -> FormViewModel:
        options = options or FormOptions()
        metadata = {str(key).lower(): value for key, value in (field_metadata or {}).items()}
        excluded = options.excluded_field_set(self.vocabulary)

        working = remove_excluded_fields(sections, excluded)
        merge = apply_default_values(
            working,
            record_data,
            options.parsed_default_values().lowercase,
            is_new_record=options.is_new_record,
        )
        working, record = merge.sections, merge.record_data
        if options.enable_visibility_rules:
            working = self.visibility_evaluator.apply(working, record)

        placements: dict[str, dict[str, list[FieldSlot]]] = {}
        for section_id, section in working.items():
            placements[section_id] = {}
            for column_id, column in section.columns.items():
                visible = [slot for slot in column.fields.values() if slot.is_visible]
                placements[section_id][column_id] = sorted(visible, key=lambda slot: slot.order)

        styles: dict[SlotKey, StyleResolution] = {}
        if options.enable_conditional_formatting and self.format_evaluator is not None:
            styles = await self._evaluate_styles(placements, record)

        views: list[SectionView] = []
        for section_id, section in working.items():
            columns = []
            for column_id, slots in placements[section_id].items():
                if not any(not slot.is_blank_space for slot in slots):
                    continue
                enhanced = [
                    self._enhance(
                        slot,
                        record,
                        metadata,
                        styles.get((section_id, column_id, slot.field_id)),
                    )
                    for slot in slots
                ]
                columns.append((section.columns[column_id], enhanced))
            if not columns:
                continue
            width_class = self.vocabulary.width_class_for(len(columns))
            views.append(
                SectionView(
                    section_id=section_id,
                    section_label=humanize_field_label(section.label),
                    section_class=self.vocabulary.open_section_class,
                    columns=[
                        ColumnView(
                            column_id=column.column_id,
                            side=column.side,
                            width_class=width_class,
                            fields=enhanced,
                        )
                        for column, enhanced in columns
                    ],
                )
            )

        return FormViewModel(
            sections=views,
            active_field_ids=collect_field_ids(sections, excluded=excluded),
            record_data=record,
            changed_fields=merge.changed_keys,
        )

    async def _evaluate_styles(
        self,
        placements: dict[str, dict[str, list[FieldSlot]]],
        record_data: Mapping[str, Any],
    ) -> dict[SlotKey, StyleResolution]:
        keys: list[SlotKey] = []
        pending = []
        for section_id, columns in placements.items():
            for column_id, slots in columns.items():
                for slot in slots:
                    if slot.is_blank_space or not slot.conditional_format_ruleset:
                        continue
                    keys.append((section_id, column_id, slot.field_id))
                    pending.append(self._evaluate_style(slot, record_data))
        # Every evaluation finishes before grouping, so completion order never leaks.
        resolved = await asyncio.gather(*pending)
        return dict(zip(keys, resolved))

    async def _evaluate_style(self, slot: FieldSlot, record_data: Mapping[str, Any]) -> StyleResolution:
        try:
            style = await self.format_evaluator.evaluate(
                slot.conditional_format_ruleset,
                slot.field_id,
                record_data,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Conditional formatting failed for %s: %s", slot.field_id, exc)
            style = None
        return translate_format_style(style, self.vocabulary)

    def _enhance(
        self,
        slot: FieldSlot,
        record_data: Mapping[str, Any],
        metadata: Mapping[str, FieldMetadata],
        style: StyleResolution | None,
    ) -> EnhancedField:
        if slot.is_blank_space:
            return EnhancedField(field_id=slot.field_id, order=slot.order, is_blank_space=True)

        key = slot.field_id.lower()
        field_metadata = metadata.get(key) or FieldMetadata()
        style = style or translate_format_style(None, self.vocabulary)
        if key in record_data:
            value = record_data[key]
        else:
            value = None if _is_blank(slot.value) else slot.value

        display_value = value
        if field_metadata.is_reference and field_metadata.referenced_display_value:
            display_value = field_metadata.referenced_display_value

        field_type = field_metadata.type
        return EnhancedField(
            field_id=slot.field_id,
            order=slot.order,
            value=value,
            display_value=display_value,
            label=field_metadata.label or humanize_field_label(slot.field_id),
            type=field_type,
            is_reference=field_metadata.is_reference,
            is_checkbox=field_type == "BOOLEAN",
            is_currency=field_type == "CURRENCY",
            reference_object_name=field_metadata.reference_target,
            reference_name_value=field_metadata.referenced_display_value,
            record_url=(
                f"/lightning/r/{field_metadata.reference_target}/{value}/view"
                if value and field_metadata.reference_target
                else None
            ),
            is_name_field=field_metadata.is_name_field,
            is_editable=not self.vocabulary.is_read_only_system_field(slot.field_id) and not slot.is_read_only,
            is_required=slot.is_required,
            is_read_only=slot.is_read_only,
            format_style=style.format_style,
            format_classes=style.format_classes,
            icon_name=style.icon_name,
            icon_resource_path=style.icon_resource_path,
            icon_color=style.icon_color,
            icon_class=style.icon_class,
        )


def _is_blank(value: Any) -> bool:
    return value is None or value == ""
