"""Tests for workflow definition validation."""

import pytest

from core.exceptions import DefinitionError
from workflow.validation import find_cycle, natural_next, ordered_steps, successors, validate_definition

from conftest import make_step


def problems_of(steps, registry):
    with pytest.raises(DefinitionError) as exc_info:
        validate_definition(steps, registry)
    return exc_info.value.problems


@pytest.mark.unit
class TestOrdering:
    def test_ordered_steps_sorts_by_order(self):
        steps = [make_step("c", 5), make_step("a", 0), make_step("b", 2)]
        assert [s.key for s in ordered_steps(steps)] == ["a", "b", "c"]

    def test_natural_next_skips_gaps(self):
        steps = [make_step("a", 0), make_step("b", 10), make_step("c", 20)]
        assert natural_next(steps, steps[0]).key == "b"
        assert natural_next(steps, steps[2]) is None


@pytest.mark.unit
class TestValidateDefinition:
    def test_valid_linear_definition(self, registry):
        validate_definition([make_step("a", 0), make_step("b", 1)], registry)

    def test_empty_definition(self, registry):
        with pytest.raises(DefinitionError):
            validate_definition([], registry)

    def test_duplicate_keys_and_orders(self, registry):
        problems = problems_of([make_step("a", 0), make_step("a", 0)], registry)
        assert "duplicate step key 'a'" in problems
        assert "duplicate step order 0" in problems

    def test_unknown_step_type(self, registry):
        problems = problems_of([make_step("a", 0, "teleport")], registry)
        assert problems == ["step 'a': unknown step type 'teleport'"]

    def test_parallel_is_reserved(self, registry):
        problems = problems_of([make_step("fan_out", 0, "parallel")], registry)
        assert "reserved" in problems[0]

    def test_dangling_pointer(self, registry):
        problems = problems_of([make_step("a", 0, on_success_step="missing")], registry)
        assert problems == ["step 'a': on_success_step 'missing' does not exist"]

    def test_self_pointer(self, registry):
        problems = problems_of([make_step("a", 0, on_failure_step="a")], registry)
        assert any("points at itself" in p for p in problems)

    def test_branch_routing_targets_checked(self, registry):
        step = make_step(
            "route", 0, "conditional_branch",
            config={"conditions": [{"field": "input.x", "value": 1, "next_step": "ghost"}]},
        )
        problems = problems_of([step], registry)
        assert "routing target 'ghost' does not exist" in problems[0]

    def test_handler_config_checked(self, registry):
        problems = problems_of([make_step("route", 0, "conditional_branch")], registry)
        assert "requires 'condition' or 'conditions'" in problems[0]

    def test_bad_condition_operator(self, registry):
        step = make_step("a", 0, condition={"field": "input.x", "operator": "between"})
        problems = problems_of([step], registry)
        assert problems == ["step 'a': unknown condition operator 'between'"]

    def test_condition_field_must_be_reference(self, registry):
        step = make_step("a", 0, condition={"field": "score", "operator": ">", "value": 80})
        problems = problems_of([step], registry)
        assert len(problems) == 1
        assert problems[0].startswith("step 'a': condition field 'score' is not a reference")

    def test_branch_condition_field_must_be_reference(self, registry):
        step = make_step(
            "route", 0, "conditional_branch",
            config={"conditions": [{"field": "priority", "value": "high"}]},
        )
        problems = problems_of([step], registry)
        assert "condition field 'priority' is not a reference" in problems[0]

    def test_nested_condition_fields_checked(self, registry):
        condition = {"any": [{"field": "input.score", "operator": "gt", "value": 80}, {"field": "tier", "value": "gold"}]}
        problems = problems_of([make_step("a", 0, condition=condition)], registry)
        assert len(problems) == 1
        assert "'tier'" in problems[0]

    def test_braced_condition_field_is_accepted(self, registry):
        step = make_step("a", 0, condition={"field": "{{ input.score }}", "operator": ">", "value": 80})
        validate_definition([step], registry)

    def test_unknown_retry_preset(self, registry):
        problems = problems_of([make_step("a", 0, retry_policy={"preset": "forever"})], registry)
        assert problems == ["step 'a': unknown retry preset 'forever'"]

    def test_non_positive_timeout(self, registry):
        problems = problems_of([make_step("a", 0, timeout_ms=0)], registry)
        assert problems == ["step 'a': timeout_ms must be positive"]

    def test_all_problems_reported(self, registry):
        steps = [
            make_step("a", 0, "teleport"),
            make_step("b", 1, on_success_step="nowhere"),
        ]
        error = pytest.raises(DefinitionError, validate_definition, steps, registry).value
        assert len(error.problems) == 2
        assert error.message == error.problems[0]


@pytest.mark.unit
class TestCycles:
    def test_success_pointer_cycle(self, registry):
        steps = [make_step("a", 0, on_success_step="b"), make_step("b", 1, on_success_step="a")]
        assert find_cycle(steps, registry) == ["a", "b", "a"]
        with pytest.raises(DefinitionError, match="reachable cycle"):
            validate_definition(steps, registry)

    def test_failure_pointer_cycle(self, registry):
        steps = [
            make_step("a", 0),
            make_step("b", 1, "always_fail", on_failure_step="a"),
        ]
        assert find_cycle(steps, registry) == ["a", "b", "a"]

    def test_forward_pointers_are_acyclic(self, registry):
        steps = [
            make_step("a", 0, on_success_step="c"),
            make_step("b", 1),
            make_step("c", 2, on_failure_step="d"),
            make_step("d", 3),
        ]
        assert find_cycle(steps, registry) is None

    def test_unreachable_cycle_is_ignored(self, registry):
        steps = [
            make_step("a", 0, on_success_step="d"),
            make_step("b", 1, on_success_step="c"),
            make_step("c", 2, on_success_step="b"),
            make_step("d", 3),
        ]
        assert find_cycle(steps, registry) is None

    def test_successors_of_branch_step(self, registry):
        steps = [
            make_step(
                "check", 0, "conditional_branch",
                config={"condition": {"field": "input.x", "value": 1}},
                on_success_step="yes",
                on_failure_step="no",
            ),
            make_step("yes", 1),
            make_step("no", 2),
        ]
        assert successors(steps, steps[0], registry) == {"yes", "no"}

    def test_optional_step_may_continue_naturally(self, registry):
        steps = [make_step("a", 0, is_optional=True, on_success_step="c"), make_step("b", 1), make_step("c", 2)]
        assert successors(steps, steps[0], registry) == {"b", "c"}
