"""Tests for expression resolution, templates and condition evaluation."""

import pytest

from core.exceptions import DefinitionError, ResolutionError
from workflow.expressions import (
    ExpressionContext,
    condition_problems,
    evaluate_condition,
    is_reference,
    render,
    render_deep,
    resolve,
    resolve_mapping,
    resolve_strict,
)


@pytest.fixture
def context():
    ctx = ExpressionContext(input={"user": {"id": 7, "name": "Ada"}, "items": [{"sku": "a"}, {"sku": "b"}], "score": 85})
    ctx.record_output(0, "fetch", {"status": 200, "data": {"rows": [1, 2, 3]}})
    ctx.record_output(1, "summarize", "all good")
    return ctx


# ─── References ───

@pytest.mark.unit
class TestResolve:
    def test_input_path(self, context):
        assert resolve("input.user.id", context) == 7

    def test_whole_input(self, context):
        assert resolve("input", context) == context.input

    def test_step_output_by_key(self, context):
        assert resolve("step_fetch_output.data.rows", context) == [1, 2, 3]

    def test_step_output_by_order(self, context):
        assert resolve("step_0_output.status", context) == 200

    def test_braced_reference_keeps_type(self, context):
        assert resolve("{{ input.score }}", context) == 85
        assert resolve("{{step_fetch_output.data}}", context) == {"rows": [1, 2, 3]}

    def test_list_index(self, context):
        assert resolve("input.items.1.sku", context) == "b"
        assert resolve("input.items[0].sku", context) == "a"

    def test_missing_path_is_none(self, context):
        assert resolve("input.user.email", context) is None
        assert resolve("input.items.9", context) is None

    def test_missing_step_is_none(self, context):
        assert resolve("step_never_ran_output.value", context) is None

    def test_literals_pass_through(self, context):
        assert resolve(42, context) == 42
        assert resolve("hello world", context) == "hello world"
        assert resolve(None, context) is None
        assert resolve("inputs.user", context) == "inputs.user"

    def test_strict_raises_on_missing(self, context):
        with pytest.raises(ResolutionError):
            resolve_strict("input.user.email", context)
        with pytest.raises(ResolutionError):
            resolve_strict("step_missing_output", context)
        assert resolve_strict("input.user.name", context) == "Ada"

    def test_is_reference(self):
        assert is_reference("input.a")
        assert is_reference("{{ step_3_output.x }}")
        assert not is_reference("Hello {{ input.a }}")
        assert not is_reference(3)

    def test_resolve_mapping_recurses(self, context):
        mapping = {
            "who": "input.user.name",
            "nested": {"rows": "step_fetch_output.data.rows", "fixed": 1},
            "list": ["input.score", "literal"],
        }
        assert resolve_mapping(mapping, context) == {
            "who": "Ada",
            "nested": {"rows": [1, 2, 3], "fixed": 1},
            "list": [85, "literal"],
        }


# ─── Templates ───

@pytest.mark.unit
class TestRender:
    def test_substitutes_placeholders(self, context):
        assert render("Hi {{ input.user.name }}, score {{input.score}}", context) == "Hi Ada, score 85"

    def test_single_placeholder_keeps_type(self, context):
        assert render("{{ step_fetch_output.data.rows }}", context) == [1, 2, 3]

    def test_structures_render_as_json(self, context):
        assert render("rows={{ step_fetch_output.data.rows }}", context) == "rows=[1, 2, 3]"

    def test_missing_renders_empty(self, context):
        assert render("[{{ input.nope }}]", context) == "[]"

    def test_non_reference_placeholder_untouched(self, context):
        assert render("{{ not a ref }}", context) == "{{ not a ref }}"

    def test_render_deep(self, context):
        value = {"title": "For {{ input.user.name }}", "tags": ["{{ step_summarize_output }}", 1]}
        assert render_deep(value, context) == {"title": "For Ada", "tags": ["all good", 1]}


# ─── Conditions ───

@pytest.mark.unit
class TestEvaluateCondition:
    @pytest.mark.parametrize(
        "condition, expected",
        [
            ({"field": "input.score", "operator": "gt", "value": 80}, True),
            ({"field": "input.score", "operator": "lt", "value": 80}, False),
            ({"field": "input.score", "operator": ">=", "value": "85"}, True),
            ({"field": "input.user.name", "operator": "eq", "value": "Ada"}, True),
            ({"field": "input.user.name", "operator": "ne", "value": "Ada"}, False),
            ({"field": "step_summarize_output", "operator": "contains", "value": "good"}, True),
            ({"field": "input.user.name", "operator": "in", "value": ["Ada", "Bob"]}, True),
            ({"field": "input.user.email", "operator": "exists"}, False),
            ({"field": "input.user.email", "operator": "not_exists"}, True),
        ],
    )
    def test_operators(self, context, condition, expected):
        assert evaluate_condition(condition, context) is expected

    def test_missing_field_compares_false(self, context):
        assert evaluate_condition({"field": "input.nope", "operator": "lt", "value": 10}, context) is False
        assert evaluate_condition({"field": "input.nope", "operator": "ne", "value": 10}, context) is False

    def test_empty_condition_is_true(self, context):
        assert evaluate_condition(None, context) is True
        assert evaluate_condition({}, context) is True

    def test_value_can_be_reference(self, context):
        condition = {"field": "step_fetch_output.status", "operator": "eq", "value": "step_0_output.status"}
        assert evaluate_condition(condition, context) is True

    def test_all_and_any(self, context):
        high = {"field": "input.score", "operator": "gt", "value": 80}
        bob = {"field": "input.user.name", "operator": "eq", "value": "Bob"}
        assert evaluate_condition({"all": [high, bob]}, context) is False
        assert evaluate_condition({"any": [high, bob]}, context) is True

    def test_unknown_operator_raises(self, context):
        with pytest.raises(DefinitionError):
            evaluate_condition({"field": "input.score", "operator": "between"}, context)

    def test_strings_and_numbers_do_not_compare(self, context):
        assert evaluate_condition({"field": "input.user.name", "operator": "gt", "value": 3}, context) is False

    def test_condition_problems(self):
        assert condition_problems({"field": "input.score", "operator": "gt", "value": 1}) == []
        assert condition_problems(None) == []
        assert condition_problems({"field": "score", "operator": "gt"}) == [
            "condition field 'score' is not a reference (expected input.<path> or step_<key>_output.<path>)"
        ]
        assert condition_problems({"operator": "between"}) == [
            "condition requires 'field'",
            "unknown condition operator 'between'",
        ]
        assert condition_problems("input.x") == ["condition must be an object, got str"]


# ─── Context ───

@pytest.mark.unit
class TestExpressionContext:
    def test_collected_outputs_by_key(self, context):
        assert context.collected_outputs() == {
            "fetch": {"status": 200, "data": {"rows": [1, 2, 3]}},
            "summarize": "all good",
        }

    def test_output_addressable_by_order_and_key(self, context):
        assert context.root("step_1_output") == "all good"
        assert context.root("step_summarize_output") == "all good"
