"""
בדיקות property-based עם hypothesis למנוע התנאים, ל-interpolation ול-backoff.

בודקים אינווריאנטים על:
1. אופרטורים משלימים (equals / not_equals, contains / not_contains)
2. placeholders לא מוכרים נשארים בטקסט כמו שהם
3. backoff של ה-outbox מונוטוני וחסום
"""
import pytest
from hypothesis import given, settings as h_settings
from hypothesis.strategies import (
    dictionaries,
    from_regex,
    integers,
    lists,
    none,
    one_of,
    sampled_from,
    text,
)

from omniflow.domain.conditions import evaluate_condition, evaluate_conditions
from omniflow.domain.interpolation import interpolate_template, extract_variables
from omniflow.domain.triggers import matches_keywords
from omniflow.domain.services.outbox_service import _calculate_backoff_seconds


# ============================================================================
# אסטרטגיות (strategies)
# ============================================================================

FIELD_VALUES = one_of(none(), text(max_size=30), integers(min_value=-1000, max_value=1000))

VARIABLE_NAMES = from_regex(r"[a-z_][a-z0-9_]{0,10}", fullmatch=True)

OPERATORS = sampled_from([
    "equals", "not_equals", "contains", "not_contains",
    "is_empty", "is_not_empty", "starts_with", "ends_with",
])


def _lookup_for(value):
    return lambda field: value


# ============================================================================
# תנאים
# ============================================================================

class TestConditionProperties:
    @pytest.mark.unit
    @given(actual=FIELD_VALUES, expected=FIELD_VALUES)
    def test_equals_and_not_equals_are_complementary(self, actual, expected):
        lookup = _lookup_for(actual)
        equals = evaluate_condition({"field": "f", "operator": "equals", "value": expected}, lookup)
        not_equals = evaluate_condition({"field": "f", "operator": "not_equals", "value": expected}, lookup)
        assert equals != not_equals

    @pytest.mark.unit
    @given(actual=FIELD_VALUES, expected=FIELD_VALUES)
    def test_contains_and_not_contains_are_complementary(self, actual, expected):
        lookup = _lookup_for(actual)
        contains = evaluate_condition({"field": "f", "operator": "contains", "value": expected}, lookup)
        not_contains = evaluate_condition({"field": "f", "operator": "not_contains", "value": expected}, lookup)
        assert contains != not_contains

    @pytest.mark.unit
    @given(actual=FIELD_VALUES)
    def test_is_empty_and_is_not_empty_are_complementary(self, actual):
        lookup = _lookup_for(actual)
        assert evaluate_condition({"field": "f", "operator": "is_empty"}, lookup) != \
            evaluate_condition({"field": "f", "operator": "is_not_empty"}, lookup)

    @pytest.mark.unit
    @given(value=text(max_size=30))
    def test_equals_ignores_case(self, value):
        lookup = _lookup_for(value.upper())
        # lower() של upper() לא תמיד חוזר לאותה מחרוזת (ß וכו'): משווים מול אותו נרמול
        assert evaluate_condition(
            {"field": "f", "operator": "equals", "value": value.upper().lower()}, lookup
        )

    @pytest.mark.unit
    @given(conditions=lists(
        one_of(
            sampled_from([{"field": "f", "operator": "is_empty"}, {"field": "f", "operator": "is_not_empty"}]),
            sampled_from([{"field": "f", "operator": "regex"}, {"operator": "equals"}, {}]),
        ),
        max_size=6,
    ), actual=FIELD_VALUES)
    def test_and_semantics(self, conditions, actual):
        lookup = _lookup_for(actual)
        expected = all(evaluate_condition(c, lookup) for c in conditions)
        assert evaluate_conditions(conditions, lookup) == expected

    @pytest.mark.unit
    @given(operator=OPERATORS, value=FIELD_VALUES)
    def test_never_raises(self, operator, value):
        evaluate_condition({"field": "f", "operator": operator, "value": value}, _lookup_for(value))


# ============================================================================
# Interpolation
# ============================================================================

class TestInterpolationProperties:
    @pytest.mark.unit
    @given(name=VARIABLE_NAMES, prefix=text(alphabet="abc xyz.,!", max_size=10))
    def test_unknown_placeholder_left_verbatim(self, name, prefix):
        template = prefix + "{{" + name + "}}"
        assert interpolate_template(template, {}) == template

    @pytest.mark.unit
    @given(variables=dictionaries(VARIABLE_NAMES, text(alphabet="abcdef 123", max_size=10), min_size=1, max_size=5))
    def test_known_placeholders_replaced(self, variables):
        template = " ".join("{{" + name + "}}" for name in variables)
        assert interpolate_template(template, variables) == " ".join(variables.values())

    @pytest.mark.unit
    @given(names=lists(VARIABLE_NAMES, max_size=6))
    def test_extract_variables_unique_in_order(self, names):
        template = "".join("{{" + name + "}}" for name in names)
        assert extract_variables(template) == list(dict.fromkeys(names))


# ============================================================================
# Keywords
# ============================================================================

class TestKeywordProperties:
    @pytest.mark.unit
    @given(keyword=text(alphabet="abcdefgh", min_size=1, max_size=8), before=text(alphabet="xyz ", max_size=8))
    def test_contains_mode_finds_embedded_keyword(self, keyword, before):
        assert matches_keywords(before + keyword.upper(), [keyword], "contains")

    @pytest.mark.unit
    @given(content=text(max_size=20))
    def test_no_keywords_never_match(self, content):
        assert not matches_keywords(content, [], "exact")


# ============================================================================
# Outbox backoff
# ============================================================================

class TestBackoffProperties:
    @pytest.mark.unit
    @h_settings(max_examples=200)
    @given(
        retry_count=integers(min_value=-5, max_value=10_000),
        base=integers(min_value=1, max_value=600),
        cap=integers(min_value=1, max_value=86_400),
    )
    def test_bounded(self, retry_count, base, cap):
        backoff = _calculate_backoff_seconds(retry_count, base_seconds=base, max_backoff_seconds=cap)
        assert 0 < backoff <= cap

    @pytest.mark.unit
    @given(
        retry_count=integers(min_value=0, max_value=200),
        base=integers(min_value=1, max_value=600),
        cap=integers(min_value=1, max_value=86_400),
    )
    def test_monotonic(self, retry_count, base, cap):
        current = _calculate_backoff_seconds(retry_count, base_seconds=base, max_backoff_seconds=cap)
        following = _calculate_backoff_seconds(retry_count + 1, base_seconds=base, max_backoff_seconds=cap)
        assert following >= current

    @pytest.mark.unit
    @given(retry_count=integers(min_value=0, max_value=20), base=integers(min_value=1, max_value=60))
    def test_matches_formula_below_cap(self, retry_count, base):
        cap = 10 ** 9
        expected = min(base * (2 ** retry_count), cap)
        assert _calculate_backoff_seconds(retry_count, base_seconds=base, max_backoff_seconds=cap) == expected
