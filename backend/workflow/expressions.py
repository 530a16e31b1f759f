"""Expression resolution for step inputs, conditions and templates.

One grammar is used everywhere a step refers to data produced earlier in
the execution:

    reference := root ("." segment)*
    root      := "input" | "step_" (ORDER | KEY) "_output"
    segment   := NAME | INDEX          (``items[0]`` is accepted as ``items.0``)

A value is resolved as follows:

- non-strings, and strings that are not references, are literals;
- ``"input.user.id"`` and ``"{{ input.user.id }}"`` both resolve to the
  referenced value with its type preserved;
- a missing root (a step that was branched around) or a missing path
  resolves to ``None``.

``render()`` substitutes ``{{ reference }}`` placeholders inside a larger
string. Nothing here evaluates arbitrary code.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from core.exceptions import DefinitionError, ResolutionError

_SEGMENT = r"[A-Za-z0-9_\-]+"
_ROOT = r"(?:input|step_[A-Za-z0-9_\-]+?_output)"
REFERENCE_RE = re.compile(rf"^{_ROOT}(?:\.{_SEGMENT}|\[\d+\])*$")
TEMPLATE_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_STEP_ROOT_RE = re.compile(r"^step_(.+)_output$")
_BRACKET_RE = re.compile(r"\[(\d+)\]")

_MISSING = object()


# ─── Context ──────────────────────────────────────────────────


@dataclass
class ExpressionContext:
    """Data visible to expressions during one execution.

    Step outputs are addressable both by step order and by step key.
    """

    input: Any = None
    outputs_by_order: dict[int, Any] = field(default_factory=dict)
    outputs_by_key: dict[str, Any] = field(default_factory=dict)

    def record_output(self, step_order: int, step_key: str, output: Any) -> None:
        self.outputs_by_order[step_order] = output
        self.outputs_by_key[step_key] = output

    def _step_output(self, ref: str) -> Any:
        if ref.isdigit() and int(ref) in self.outputs_by_order:
            return self.outputs_by_order[int(ref)]
        return self.outputs_by_key.get(ref, _MISSING)

    def root(self, name: str) -> Any:
        """Value of a root token, or the internal missing marker."""
        if name == "input":
            return self.input
        match = _STEP_ROOT_RE.match(name)
        if not match:
            return _MISSING
        return self._step_output(match.group(1))

    def collected_outputs(self) -> dict[str, Any]:
        return dict(self.outputs_by_key)


# ─── Resolution ───────────────────────────────────────────────


def is_reference(value: Any) -> bool:
    """True if value is a bare reference or a single ``{{ reference }}``."""
    return _unwrap(value) is not None


def _unwrap(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    expr = value.strip()
    if expr.startswith("{{") and expr.endswith("}}") and expr.count("{{") == 1:
        expr = expr[2:-2].strip()
    return expr if REFERENCE_RE.match(expr) else None


def _split(expr: str) -> list[str]:
    return _BRACKET_RE.sub(r".\1", expr).split(".")


def _lookup(expr: str, context: ExpressionContext, strict: bool) -> Any:
    parts = _split(expr)
    current = context.root(parts[0])
    if current is _MISSING:
        if strict:
            raise ResolutionError(expr, f"'{parts[0]}' has no output")
        return None

    for part in parts[1:]:
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING

        if current is _MISSING:
            if strict:
                raise ResolutionError(expr, f"no value at '{part}'")
            return None

    return current


def resolve(expression: Any, context: ExpressionContext) -> Any:
    """Resolve an expression; literals pass through, missing paths yield None."""
    expr = _unwrap(expression)
    if expr is None:
        return expression
    return _lookup(expr, context, strict=False)


def resolve_strict(expression: Any, context: ExpressionContext) -> Any:
    """Like resolve() but raises ResolutionError for missing roots or paths."""
    expr = _unwrap(expression)
    if expr is None:
        return expression
    return _lookup(expr, context, strict=True)


def resolve_mapping(mapping: Any, context: ExpressionContext) -> Any:
    """Recursively resolve every value of an input mapping."""
    if isinstance(mapping, dict):
        return {key: resolve_mapping(value, context) for key, value in mapping.items()}
    if isinstance(mapping, list):
        return [resolve_mapping(value, context) for value in mapping]
    return resolve(mapping, context)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(template: Any, context: ExpressionContext) -> Any:
    """Substitute every ``{{ reference }}`` placeholder in a string.

    A template that is exactly one placeholder keeps the value's type.
    Placeholders that are not references are left untouched.
    """
    if not isinstance(template, str):
        return template
    if is_reference(template) and "{{" in template:
        return resolve(template, context)

    def _replace(match: re.Match) -> str:
        expr = match.group(1)
        if not REFERENCE_RE.match(expr):
            return match.group(0)
        return _stringify(_lookup(expr, context, strict=False))

    return TEMPLATE_RE.sub(_replace, template)


def render_deep(value: Any, context: ExpressionContext) -> Any:
    """render() applied to every string inside nested dicts and lists."""
    if isinstance(value, dict):
        return {k: render_deep(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_deep(v, context) for v in value]
    return render(value, context)


# ─── Conditions ───────────────────────────────────────────────


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _compare(actual: Any, expected: Any, op) -> bool:
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return op(left, right)
    if isinstance(actual, str) and isinstance(expected, str):
        return op(actual, expected)
    return False


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, (list, tuple, set, dict)):
        return item in container
    return False


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    left, right = _as_number(actual), _as_number(expected)
    return left is not None and right is not None and left == right


_OPERATORS = {
    "eq": lambda a, e: a is not None and _equals(a, e),
    "ne": lambda a, e: a is not None and not _equals(a, e),
    "gt": lambda a, e: a is not None and _compare(a, e, lambda x, y: x > y),
    "gte": lambda a, e: a is not None and _compare(a, e, lambda x, y: x >= y),
    "lt": lambda a, e: a is not None and _compare(a, e, lambda x, y: x < y),
    "lte": lambda a, e: a is not None and _compare(a, e, lambda x, y: x <= y),
    "contains": lambda a, e: a is not None and _contains(a, e),
    "not_contains": lambda a, e: a is not None and not _contains(a, e),
    "in": lambda a, e: a is not None and _contains(e, a),
    "exists": lambda a, e: a is not None,
    "not_exists": lambda a, e: a is None,
}

OPERATOR_ALIASES = {
    "==": "eq",
    "!=": "ne",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
    "equals": "eq",
    "notEquals": "ne",
    "greaterThan": "gt",
    "lessThan": "lt",
    "notContains": "not_contains",
    "notExists": "not_exists",
}

CONDITION_OPERATORS = frozenset(_OPERATORS) | frozenset(OPERATOR_ALIASES)


def normalize_operator(operator: str) -> str:
    op = OPERATOR_ALIASES.get(operator, operator)
    if op not in _OPERATORS:
        raise DefinitionError(f"Unknown condition operator '{operator}'")
    return op


def condition_problems(condition: Any) -> list[str]:
    """Problems that would stop a guard from evaluating as written."""
    if condition is None:
        return []
    if not isinstance(condition, dict):
        return [f"condition must be an object, got {type(condition).__name__}"]
    for combinator in ("all", "any"):
        if combinator in condition:
            problems = []
            for nested in condition[combinator] or []:
                problems.extend(condition_problems(nested))
            return problems

    problems = []
    field = condition.get("field")
    if not field:
        problems.append("condition requires 'field'")
    elif not is_reference(field):
        problems.append(
            f"condition field '{field}' is not a reference "
            "(expected input.<path> or step_<key>_output.<path>)"
        )
    operator = condition.get("operator", "eq")
    if operator not in CONDITION_OPERATORS:
        problems.append(f"unknown condition operator '{operator}'")
    return problems


def evaluate_condition(condition: Optional[dict], context: ExpressionContext) -> bool:
    """Evaluate a ``{field, operator, value}`` guard.

    ``{"all": [...]}`` and ``{"any": [...]}`` combine nested guards. A missing
    or empty condition is true. Comparisons against a missing value are false,
    except ``not_exists``.
    """
    if not condition:
        return True
    if "all" in condition:
        return all(evaluate_condition(c, context) for c in condition["all"])
    if "any" in condition:
        return any(evaluate_condition(c, context) for c in condition["any"])

    op = normalize_operator(condition.get("operator", "eq"))
    actual = resolve(condition.get("field"), context)
    expected = resolve(condition.get("value"), context)
    return bool(_OPERATORS[op](actual, expected))
