from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol

from .form_options import DEFAULT_VOCABULARY, FormVocabulary
from .visibility_rules import (
    Criterion,
    CriterionOperator,
    RuleEvaluationError,
    coerce_numeric_pair,
    compare_criterion,
    compare_values,
)

logger = logging.getLogger(__name__)

ICON_FORMAT = "icon"
TEXT_FORMAT = "text"


class IconRuleSetProvider(Protocol):
    async def fetch_icon_rule_set(self, identifier: str) -> Any:
        ...


class IconRuleSetCache:
    """Session-wide memo of fetched icon rule sets.

    Concurrent lookups of one identifier share a single in-flight fetch;
    failed fetches are not remembered so a later evaluation can try again.
    """

    def __init__(self) -> None:
        self._resolved: dict[str, Any] = {}
        self._pending: dict[str, asyncio.Task[Any]] = {}

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._resolved

    def __len__(self) -> int:
        return len(self._resolved)

    def clear(self) -> None:
        self._resolved.clear()
        self._pending.clear()

    async def get_or_fetch(self, identifier: str, fetch: Callable[[str], Awaitable[Any]]) -> Any:
        if identifier in self._resolved:
            return self._resolved[identifier]

        task = self._pending.get(identifier)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(identifier, fetch))
            self._pending[identifier] = task
        # shield() keeps one cancelled waiter from cancelling the shared fetch.
        return await asyncio.shield(task)

    async def _fetch_and_store(self, identifier: str, fetch: Callable[[str], Awaitable[Any]]) -> Any:
        try:
            logger.debug("Fetching icon rule set %s", identifier)
            rule_set = await fetch(identifier)
        finally:
            self._pending.pop(identifier, None)
        self._resolved[identifier] = rule_set
        return rule_set


@dataclass
class StyleResolution:
    format_style: dict[str, Any] | None = None
    format_classes: str = ""
    icon_name: str | None = None
    icon_resource_path: str | None = None
    icon_color: str | None = None
    icon_class: str = DEFAULT_VOCABULARY.icon_base_class


class FormatEvaluator:
    def __init__(
        self,
        rule_set_provider: IconRuleSetProvider | None,
        *,
        cache: IconRuleSetCache | None = None,
    ) -> None:
        self.rule_set_provider = rule_set_provider
        self.cache = cache if cache is not None else IconRuleSetCache()

    async def evaluate(
        self,
        ruleset: Mapping[str, Any] | str | None,
        field_id: str,
        record_data: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        if not ruleset:
            return None
        if isinstance(ruleset, str):
            ruleset = {"type": ICON_FORMAT, "value": ruleset}
        if not isinstance(ruleset, Mapping):
            logger.warning("Ignoring conditional format ruleset of type %s for %s", type(ruleset).__name__, field_id)
            return None

        identifier = ruleset.get("value")
        if ruleset.get("type") == ICON_FORMAT and isinstance(identifier, str) and identifier:
            rule_set = await self._icon_rule_set(identifier)
            if rule_set is None:
                return None
            rules = rule_set.get("rules") if isinstance(rule_set, Mapping) else None
            if isinstance(rules, list):
                return evaluate_icon_rules(rules, record_data.get(field_id.lower()))

        rules = ruleset.get("rules")
        if not isinstance(rules, list):
            logger.debug("No inline format rules for %s", field_id)
            return None
        return evaluate_text_rules(rules, record_data)

    async def _icon_rule_set(self, identifier: str) -> Any:
        if self.rule_set_provider is None:
            logger.warning("No icon rule set provider configured for %s", identifier)
            return None
        try:
            return await self.cache.get_or_fetch(identifier, self.rule_set_provider.fetch_icon_rule_set)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Formatting is cosmetic; a failed fetch renders the field unstyled.
            logger.warning("Failed to fetch icon rule set %s: %s", identifier, exc)
            return None


def evaluate_icon_rules(rules: list[Any], field_value: Any) -> dict[str, Any] | None:
    if field_value is None:
        return None

    candidates = [rule for rule in rules if isinstance(rule, Mapping)]
    ordered = sorted(candidates, key=lambda rule: (_rank(rule.get("visibilityGroup")), _rank(rule.get("visibilityRank"))))
    for rule in ordered:
        try:
            operator = CriterionOperator(rule.get("operator"))
        except ValueError:
            continue
        left, right = coerce_numeric_pair(field_value, rule.get("operand"))
        if not compare_values(operator, left, right):
            continue
        icon = rule.get("icon")
        if not isinstance(icon, Mapping):
            continue
        return {
            "type": ICON_FORMAT,
            "iconName": icon.get("iconName"),
            "iconResourcePath": icon.get("iconResourcePath"),
            "iconColor": rule.get("iconColor"),
        }
    return None


def evaluate_text_rules(rules: list[Any], record_data: Mapping[str, Any]) -> dict[str, Any] | None:
    for index, rule in enumerate(rules):
        if not isinstance(rule, Mapping) or not isinstance(rule.get("criteria"), list):
            continue
        try:
            criteria = [Criterion.from_payload(item) for item in rule["criteria"]]
        except (RuleEvaluationError, TypeError) as exc:
            logger.warning("Skipping malformed format rule %s: %s", index, exc)
            continue
        if not all(compare_criterion(criterion, record_data, coerce_numbers=True) for criterion in criteria):
            continue
        style = decode_format_value(rule.get("formatValue"))
        if style is not None:
            return style
    return None


def decode_format_value(format_value: Any) -> dict[str, Any] | None:
    if isinstance(format_value, Mapping):
        return dict(format_value)
    if not isinstance(format_value, str) or not format_value.strip():
        return None
    try:
        decoded = json.loads(format_value)
    except json.JSONDecodeError as exc:
        logger.warning("Error parsing format value %r: %s", format_value, exc)
        return None
    if not isinstance(decoded, dict):
        logger.warning("Format value %r is not a style object", format_value)
        return None
    return decoded


def translate_format_style(
    style: Mapping[str, Any] | None,
    vocabulary: FormVocabulary = DEFAULT_VOCABULARY,
) -> StyleResolution:
    resolution = StyleResolution(icon_class=vocabulary.icon_class_for(None))
    if not style:
        return resolution

    resolution.format_style = dict(style)
    classes: list[str] = []
    if style.get("type") == ICON_FORMAT:
        resolution.icon_name = style.get("iconName")
        resolution.icon_resource_path = style.get("iconResourcePath")
        resolution.icon_color = style.get("iconColor")
        resolution.icon_class = vocabulary.icon_class_for(resolution.icon_color)
    else:
        color_class = _lookup_class(vocabulary.font_color_classes, style.get("fontColor"))
        if color_class:
            classes.append(color_class)

    if style.get("fontWeight") == "bold":
        classes.append(vocabulary.bold_class)
    if style.get("fontStyle") == "italic":
        classes.append(vocabulary.italic_class)
    decoration = style.get("textDecoration")
    if decoration == "underline":
        classes.append(vocabulary.underline_class)
    elif decoration == "line-through":
        classes.append(vocabulary.strikethrough_class)

    border_class = _lookup_class(vocabulary.border_color_classes, style.get("borderColor"))
    if border_class:
        classes.append(border_class)

    resolution.format_classes = " ".join(classes)
    return resolution


def _lookup_class(table: Mapping[str, str], value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return table.get(value.strip().lower())


def _rank(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0
