"""
Condition Evaluator

One evaluation core shared by automation conditions and flow edge branches.
Values are compared stringified and case-insensitively; a field the lookup
does not know resolves to an empty string (permissive by default, not an
error).
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from pydantic import BaseModel, ValidationError

from omniflow.core.logging import get_logger

logger = get_logger(__name__)

FieldLookup = Callable[[str], Any]

LAST_USER_MESSAGE = "_lastUserMessage"
VARIABLES_PREFIX = "variables."


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


class Condition(BaseModel):
    """{field, operator, value}: AND-ed with its siblings"""
    field: str
    operator: ConditionOperator
    value: Any = None


def _stringify(value: Any) -> str:
    """None/''/0/False → '' ; אחרת מחרוזת באותיות קטנות"""
    if not value:
        return ""
    if isinstance(value, bool):
        return "true"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).lower()


_OPERATORS: dict[ConditionOperator, Callable[[str, str], bool]] = {
    ConditionOperator.EQUALS: lambda actual, expected: actual == expected,
    ConditionOperator.NOT_EQUALS: lambda actual, expected: actual != expected,
    ConditionOperator.CONTAINS: lambda actual, expected: expected in actual,
    ConditionOperator.NOT_CONTAINS: lambda actual, expected: expected not in actual,
    ConditionOperator.IS_EMPTY: lambda actual, _: actual == "",
    ConditionOperator.IS_NOT_EMPTY: lambda actual, _: actual != "",
    ConditionOperator.STARTS_WITH: lambda actual, expected: actual.startswith(expected),
    ConditionOperator.ENDS_WITH: lambda actual, expected: actual.endswith(expected),
}


def parse_condition(raw: Any) -> Optional[Condition]:
    """
    Parse a stored condition dict.

    Returns None when the field or operator is missing or the operator is not
    one of ConditionOperator; such a condition never matches.
    """
    if isinstance(raw, Condition):
        return raw
    if not isinstance(raw, Mapping) or not raw.get("field") or not raw.get("operator"):
        return None
    try:
        return Condition.model_validate(raw)
    except ValidationError:
        logger.warning(
            "Ignoring malformed condition",
            extra_data={"field": raw.get("field"), "operator": raw.get("operator")},
        )
        return None


def is_fallback_condition(raw: Any) -> bool:
    """קשת בלי תנאי (None או dict ריק) היא ה-fallback"""
    return not raw


def evaluate_condition(condition: Any, lookup: FieldLookup) -> bool:
    parsed = parse_condition(condition)
    if parsed is None:
        return False
    actual = _stringify(lookup(parsed.field))
    expected = _stringify(parsed.value)
    return _OPERATORS[parsed.operator](actual, expected)


def evaluate_conditions(conditions: Optional[Iterable[Any]], lookup: FieldLookup) -> bool:
    """AND over all conditions. An empty list passes."""
    for condition in conditions or ():
        if not evaluate_condition(condition, lookup):
            return False
    return True


def flow_variable_lookup(variables: Mapping[str, Any]) -> FieldLookup:
    """
    Field resolution for flow edges: ``_lastUserMessage``, ``variables.<name>``
    or a bare variable name.
    """
    def lookup(field: str) -> Any:
        if field.startswith(VARIABLES_PREFIX):
            field = field[len(VARIABLES_PREFIX):]
        return variables.get(field)

    return lookup
