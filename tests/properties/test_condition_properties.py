"""Property-based tests for the branch condition language."""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from atp.workflow.conditions import parse_condition


@given(st.integers(-1000, 1000), st.integers(-1000, 1000))
def test_integer_comparisons_match_python(left: int, right: int) -> None:
    data = {"x": left}
    assert parse_condition(f"x < {right}").evaluate(data) is (left < right)
    assert parse_condition(f"x == {right}").evaluate(data) is (left == right)


@given(
    st.text(
        alphabet=st.characters(exclude_categories=("Cs",), exclude_characters="'\\"),
        max_size=20,
    )
)
def test_string_literals_round_trip(text: str) -> None:
    assert parse_condition(f"value == '{text}'").evaluate({"value": text})


@given(st.integers(0, 30))
def test_parenthesized_expression_matches_bare(depth: int) -> None:
    expression = "(" * depth + "count >= 2" + ")" * depth
    assert parse_condition(expression).evaluate({"count": 3})
    assert not parse_condition(expression).evaluate({"count": 1})
