"""Custom function handler.

Invokes one of a closed set of pure functions by name. Functions are
registered statically in ``FUNCTIONS``; caller-supplied code is never run.
"""

import math
from typing import Any, Callable, Dict, List

from handlers.base_handler import BaseHandler, HandlerResult, StepContext
from core.utils import generate_slug


def _numbers(value: Any) -> List[float]:
    if isinstance(value, dict):
        value = list(value.values())
    if not isinstance(value, (list, tuple)):
        value = [value]
    numbers = []
    for item in value:
        if item is None:
            continue
        if isinstance(item, bool) or not isinstance(item, (int, float, str)):
            raise TypeError(f"not a number: {item!r}")
        numbers.append(float(item) if isinstance(item, str) else item)
    return numbers


def _text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"expected text, got {type(value).__name__}")
    return value


def _sum(value, **_):
    return sum(_numbers(value))


def _average(value, **_):
    numbers = _numbers(value)
    return sum(numbers) / len(numbers) if numbers else None


def _min(value, **_):
    numbers = _numbers(value)
    return min(numbers) if numbers else None


def _max(value, **_):
    numbers = _numbers(value)
    return max(numbers) if numbers else None


def _count(value, **_):
    if value is None:
        return 0
    if isinstance(value, (list, tuple, dict, str)):
        return len(value)
    return 1


def _truncate(value, length: int = 100, suffix: str = "...", **_):
    text = _text(value)
    if len(text) <= length:
        return text
    return text[: max(length - len(suffix), 0)] + suffix


def _join(value, separator: str = ", ", **_):
    if not isinstance(value, (list, tuple)):
        raise TypeError("join needs a list")
    return separator.join("" if v is None else str(v) for v in value)


def _split(value, separator: str = ",", strip: bool = True, **_):
    parts = _text(value).split(separator)
    return [p.strip() for p in parts] if strip else parts


def _coalesce(value, **_):
    if isinstance(value, dict):
        value = list(value.values())
    if not isinstance(value, (list, tuple)):
        return value
    return next((v for v in value if v is not None and v != ""), None)


def _round(value, digits: int = 0, **_):
    if isinstance(value, (list, tuple)):
        return [_round(v, digits) for v in value]
    number = _numbers(value)[0] if value is not None else None
    if number is None or math.isnan(number):
        return None
    result = round(number, int(digits))
    return int(result) if int(digits) == 0 else result


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "uppercase": lambda value, **_: _text(value).upper(),
    "lowercase": lambda value, **_: _text(value).lower(),
    "slugify": lambda value, **_: generate_slug(_text(value)),
    "word_count": lambda value, **_: len(_text(value).split()),
    "truncate": _truncate,
    "sum": _sum,
    "average": _average,
    "min": _min,
    "max": _max,
    "count": _count,
    "join": _join,
    "split": _split,
    "coalesce": _coalesce,
    "round": _round,
}


class CustomFunctionHandler(BaseHandler):
    """Apply a registered pure function to the step's input.

    Config:
        function: Name of a function in FUNCTIONS (required)
        field: Input field holding the argument; defaults to ``value`` when
            present, otherwise the whole resolved input
        args: Keyword options, e.g. {"length": 20} for truncate
    """

    handler_type = "custom_function"
    display_name = "Custom Function"
    description = "Apply a built-in function (uppercase, sum, join, ...)"

    def _argument(self, resolved_input: Any, config: Dict[str, Any]) -> Any:
        if isinstance(resolved_input, dict):
            if config.get("field"):
                return resolved_input.get(config["field"])
            if "value" in resolved_input:
                return resolved_input["value"]
        return resolved_input

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        name = context.config.get("function")
        func = FUNCTIONS.get(name)
        if func is None:
            return HandlerResult(success=False, error=f"Unknown function '{name}'", retryable=False)

        argument = self._argument(resolved_input, context.config)
        options = context.render_config("args") or {}
        try:
            result = func(argument, **options)
        except (TypeError, ValueError) as e:
            return HandlerResult(
                success=False,
                error=f"{name} failed: {e}",
                retryable=False,
            )

        return HandlerResult(success=True, output={"function": name, "result": result})

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        name = config.get("function")
        if name not in FUNCTIONS:
            return [f"unknown custom function '{name}'"]
        return []

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["function"],
            "properties": {
                "function": {"type": "string", "enum": sorted(FUNCTIONS)},
                "field": {"type": "string"},
                "args": {"type": "object"},
            },
        }


# Export for handler registry
FUNCTION_HANDLER_TYPES = {
    "custom_function": CustomFunctionHandler,
}
