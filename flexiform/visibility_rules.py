from __future__ import annotations

import copy
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from .layout_parser import Section

logger = logging.getLogger(__name__)

FIELD_REFERENCE_PREFIX = "{!Record."
FIELD_REFERENCE_SUFFIX = "}"

_AND_WORD = re.compile(r"\band\b")
_OR_WORD = re.compile(r"\bor\b")
_POSITION = re.compile(r"\b\d+\b")
_TOKEN = re.compile(r"\s*(&&|\|\||\(|\)|[^\s()&|]+|.)")
_NUMERIC_TEXT = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?\s*$")


class RuleEvaluationError(ValueError):
    pass


class BooleanFilterError(RuleEvaluationError):
    pass


class CriterionOperator(str, Enum):
    EQUAL = "EQUAL"
    NE = "NE"
    GT = "GT"
    GE = "GE"
    LT = "LT"
    LE = "LE"
    CONTAINS = "CONTAINS"


ORDERING_OPERATORS = frozenset(
    {CriterionOperator.GT, CriterionOperator.GE, CriterionOperator.LT, CriterionOperator.LE}
)


@dataclass(frozen=True)
class Criterion:
    left_field: str
    operator: CriterionOperator | None
    right_value: Any

    @classmethod
    def from_payload(cls, payload: Any) -> "Criterion":
        if not isinstance(payload, dict):
            raise RuleEvaluationError(f"Criterion must be an object, got {type(payload).__name__}")
        left_value = payload.get("leftValue")
        if not isinstance(left_value, str) or not left_value.strip():
            raise RuleEvaluationError("Criterion is missing a field reference in 'leftValue'.")
        operator = payload.get("operator")
        try:
            parsed_operator = CriterionOperator(operator)
        except ValueError:
            # Unknown operators never match instead of failing the whole rule.
            parsed_operator = None
        return cls(
            left_field=extract_field_reference(left_value),
            operator=parsed_operator,
            right_value=payload.get("rightValue"),
        )


@dataclass(frozen=True)
class VisibilityRule:
    criteria: tuple[Criterion, ...]
    boolean_filter: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "VisibilityRule":
        raw_criteria = payload.get("criteria")
        if not isinstance(raw_criteria, list):
            raise RuleEvaluationError("Visibility rule 'criteria' must be a list.")
        boolean_filter = payload.get("booleanFilter")
        return cls(
            criteria=tuple(Criterion.from_payload(item) for item in raw_criteria),
            boolean_filter=boolean_filter if isinstance(boolean_filter, str) and boolean_filter.strip() else None,
        )


def extract_field_reference(token: str) -> str:
    field_name = token.strip()
    if field_name.startswith(FIELD_REFERENCE_PREFIX):
        field_name = field_name[len(FIELD_REFERENCE_PREFIX):]
    if field_name.endswith(FIELD_REFERENCE_SUFFIX):
        field_name = field_name[: -len(FIELD_REFERENCE_SUFFIX)]
    return field_name.strip().lower()


def looks_numeric(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, (int, float)):
        return not math.isnan(value)
    if isinstance(value, str):
        return bool(_NUMERIC_TEXT.match(value))
    return False


def coerce_numeric_pair(left: Any, right: Any) -> tuple[Any, Any]:
    if looks_numeric(left) and looks_numeric(right):
        return float(left), float(right)
    return left, right


def values_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def compare_values(operator: CriterionOperator | None, left: Any, right: Any) -> bool:
    if operator is None:
        return False
    if left is None:
        # A missing field matches nothing but inequality.
        return operator is CriterionOperator.NE
    if operator is CriterionOperator.EQUAL:
        return values_equal(left, right)
    if operator is CriterionOperator.NE:
        return not values_equal(left, right)
    if operator is CriterionOperator.CONTAINS:
        return _contains(left, right)
    try:
        if operator is CriterionOperator.GT:
            return bool(left > right)
        if operator is CriterionOperator.GE:
            return bool(left >= right)
        if operator is CriterionOperator.LT:
            return bool(left < right)
        if operator is CriterionOperator.LE:
            return bool(left <= right)
    except TypeError:
        return False
    return False


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return right is not None and str(right) in left
    if isinstance(left, (list, tuple, set, frozenset)):
        return right in left
    return False


def compare_criterion(
    criterion: Criterion,
    record_data: Mapping[str, Any],
    *,
    coerce_numbers: bool = False,
) -> bool:
    left = record_data.get(criterion.left_field)
    right = criterion.right_value
    if coerce_numbers and criterion.operator in ORDERING_OPERATORS:
        left, right = coerce_numeric_pair(left, right)
    outcome = compare_values(criterion.operator, left, right)
    logger.debug(
        "Criterion %s %s %r against %r -> %s",
        criterion.left_field,
        criterion.operator.value if criterion.operator else "?",
        criterion.right_value,
        left,
        outcome,
    )
    return outcome


def evaluate_boolean_filter(expression: str, outcomes: list[bool] | tuple[bool, ...]) -> bool:
    substituted = substitute_positions(expression, outcomes)
    return BooleanExpressionParser(substituted).parse()


def substitute_positions(expression: str, outcomes: list[bool] | tuple[bool, ...]) -> str:
    lowered = expression.lower()
    lowered = _AND_WORD.sub("&&", lowered)
    lowered = _OR_WORD.sub("||", lowered)

    def _replace(match: re.Match[str]) -> str:
        position = int(match.group(0))
        if 1 <= position <= len(outcomes):
            return "1" if outcomes[position - 1] else "0"
        return match.group(0)

    # One pass, so a substituted "1" is never read back as criterion 1.
    return _POSITION.sub(_replace, lowered)


class BooleanExpressionParser:
    """Recursive descent over ``1``/``0`` literals joined by ``||`` and ``&&``.

    ``&&`` binds tighter than ``||`` and parentheses group. Anything else in
    the expression is rejected with :class:`BooleanFilterError`.
    """

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.tokens = [token for token in _TOKEN.findall(expression) if token.strip()]
        self.position = 0

    def parse(self) -> bool:
        if not self.tokens:
            raise BooleanFilterError("Boolean filter expression is empty.")
        result = self._parse_or()
        if self.position != len(self.tokens):
            raise BooleanFilterError(
                f"Unexpected token '{self.tokens[self.position]}' in '{self.expression}'."
            )
        return result

    def _parse_or(self) -> bool:
        result = self._parse_and()
        while self._peek() == "||":
            self.position += 1
            right = self._parse_and()
            result = result or right
        return result

    def _parse_and(self) -> bool:
        result = self._parse_atom()
        while self._peek() == "&&":
            self.position += 1
            right = self._parse_atom()
            result = result and right
        return result

    def _parse_atom(self) -> bool:
        token = self._peek()
        if token is None:
            raise BooleanFilterError(f"Boolean filter '{self.expression}' ends unexpectedly.")
        self.position += 1
        if token == "1":
            return True
        if token == "0":
            return False
        if token == "(":
            result = self._parse_or()
            if self._peek() != ")":
                raise BooleanFilterError(f"Unbalanced parentheses in '{self.expression}'.")
            self.position += 1
            return result
        raise BooleanFilterError(f"Unexpected value in boolean expression: {token}")

    def _peek(self) -> str | None:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None


class VisibilityEvaluator:
    def is_visible(self, rule_payload: Mapping[str, Any] | None, record_data: Mapping[str, Any]) -> bool:
        if not isinstance(rule_payload, Mapping) or "criteria" not in rule_payload:
            return True
        try:
            rule = VisibilityRule.from_payload(rule_payload)
            return self.evaluate(rule, record_data)
        except RuleEvaluationError as exc:
            logger.warning("Visibility rule failed, hiding field: %s", exc)
            return False

    def evaluate(self, rule: VisibilityRule, record_data: Mapping[str, Any]) -> bool:
        outcomes = [compare_criterion(criterion, record_data) for criterion in rule.criteria]
        if rule.boolean_filter is None:
            # Without a filter only the first criterion decides.
            return outcomes[0] if outcomes else True
        return evaluate_boolean_filter(rule.boolean_filter, outcomes)

    def apply(self, sections: dict[str, Section], record_data: Mapping[str, Any]) -> dict[str, Section]:
        evaluated = copy.deepcopy(sections)
        for section in evaluated.values():
            for column in section.columns.values():
                for slot in column.fields.values():
                    if slot.is_blank_space:
                        slot.is_visible = True
                        continue
                    slot.is_visible = self.is_visible(slot.visibility_rule, record_data)
        return evaluated
