from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

READ_ONLY_SYSTEM_FIELDS = (
    "CreatedById",
    "LastModifiedById",
    "Id",
    "SystemModstamp",
    "CreatedDate",
    "LastModifiedDate",
    "OwnerId",
)

FONT_COLOR_CLASSES = MappingProxyType(
    {
        "green": "slds-text-color_success",
        "red": "slds-text-color_error",
        "orange": "slds-text-color_warning",
        "blue": "slds-text-color_blue",
        "purple": "slds-text-color_purple",
        "yellow": "slds-text-color_yellow",
    }
)

BORDER_COLOR_CLASSES = MappingProxyType(
    {
        "green": "slds-border-success",
        "red": "slds-border-error",
        "orange": "slds-border-warning",
    }
)

# Salesforce ids are 15 or 18 characters; anything shorter is a new record.
MIN_RECORD_ID_LENGTH = 15

_NUMERIC_TEXT = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_INTEGER_TEXT = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class FormVocabulary:
    """Fixed lookup tables the assembler renders with.

    Instances are immutable and handed to the engine at construction time so
    alternative design systems can swap class names without touching the
    evaluators.
    """

    read_only_system_fields: frozenset[str] = frozenset(
        name.lower() for name in READ_ONLY_SYSTEM_FIELDS
    )
    font_color_classes: Mapping[str, str] = field(default_factory=lambda: FONT_COLOR_CLASSES)
    border_color_classes: Mapping[str, str] = field(default_factory=lambda: BORDER_COLOR_CLASSES)
    bold_class: str = "slds-text-heading_small"
    italic_class: str = "slds-text-italic"
    underline_class: str = "slds-text-underline"
    strikethrough_class: str = "slds-text-line-through"
    full_width_class: str = "slds-col slds-size_1-of-1"
    half_width_class: str = "slds-col slds-size_1-of-2 slds-p-horizontal_small"
    open_section_class: str = "slds-section slds-is-open"
    icon_base_class: str = "slds-m-left_x-small"
    icon_color_class_prefix: str = "slds-icon-text-"

    def is_read_only_system_field(self, field_id: str) -> bool:
        return field_id.lower() in self.read_only_system_fields

    def width_class_for(self, column_count: int) -> str:
        return self.full_width_class if column_count == 1 else self.half_width_class

    def icon_class_for(self, icon_color: str | None) -> str:
        if icon_color:
            return f"{self.icon_base_class} {self.icon_color_class_prefix}{icon_color}"
        return self.icon_base_class


DEFAULT_VOCABULARY = FormVocabulary()


@dataclass
class DefaultValues:
    original: dict[str, Any] = field(default_factory=dict)
    lowercase: dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.lowercase)


def parse_default_values(raw_value: str | None) -> DefaultValues:
    result = DefaultValues()
    if not raw_value or not raw_value.strip():
        return result

    separator = ";" if ";" in raw_value else ","
    for pair in raw_value.split(separator):
        if not pair.strip():
            continue
        field_name, _, value = pair.partition(":")
        field_name = field_name.strip()
        value = value.strip()
        if not field_name:
            logger.debug("Skipping default value pair without a field name %r", pair)
            continue
        # "Field:" and a bare "Field" both default the field to an empty string.
        coerced = coerce_default_value(value)
        result.original[field_name] = coerced
        result.lowercase[field_name.lower()] = coerced
    return result


def coerce_default_value(value: str) -> Any:
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _INTEGER_TEXT.match(value):
        return int(value)
    if _NUMERIC_TEXT.match(value):
        return float(value)
    return value


def parse_excluded_fields(raw_value: str | list[str] | tuple[str, ...] | None) -> frozenset[str]:
    if not raw_value:
        return frozenset()
    entries = raw_value.split(",") if isinstance(raw_value, str) else raw_value
    return frozenset(
        entry.strip().lower()
        for entry in entries
        if isinstance(entry, str) and entry.strip()
    )


def is_new_record_id(record_id: str | None) -> bool:
    return not record_id or len(record_id.strip()) < MIN_RECORD_ID_LENGTH


class FormOptions(BaseModel):
    excluded_fields: str | list[str] = ""
    default_values: str = ""
    is_read_only: bool = False
    is_new_record: bool = False
    enable_visibility_rules: bool = True
    enable_conditional_formatting: bool = True
    alt_field: str | None = Field(default=None)

    def excluded_field_set(self, vocabulary: FormVocabulary = DEFAULT_VOCABULARY) -> frozenset[str]:
        excluded = set(parse_excluded_fields(self.excluded_fields))
        # System fields are only hidden while editing; display mode shows them.
        if not self.is_read_only:
            excluded.update(vocabulary.read_only_system_fields)
        return frozenset(excluded)

    def parsed_default_values(self) -> DefaultValues:
        return parse_default_values(self.default_values)
