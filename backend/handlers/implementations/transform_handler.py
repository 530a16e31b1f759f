"""Data transform handler.

Applies an ordered list of declared operations to the step's data. The
data starts as ``config.source`` (a reference), the output of the step
named by ``config.source_key``, or the resolved input.
"""

import copy
from typing import Any, Dict, List

from handlers.base_handler import BaseHandler, HandlerResult, StepContext
from workflow.expressions import ExpressionContext, evaluate_condition, resolve


# ─── Path helpers ─────────────────────────────────────────────


def get_path(data: Any, path: str) -> Any:
    """Dotted lookup into dicts/lists; None if any segment is missing."""
    current = data
    for part in str(path).split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def set_path(data: dict, path: str, value: Any) -> None:
    parts = str(path).split(".")
    current = data
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def delete_path(data: dict, path: str) -> Any:
    parts = str(path).split(".")
    parent = get_path(data, ".".join(parts[:-1])) if len(parts) > 1 else data
    if isinstance(parent, dict):
        return parent.pop(parts[-1], None)
    return None


class TransformError(ValueError):
    pass


class DataTransformHandler(BaseHandler):
    """Reshape data between steps.

    Config:
        operations: ordered list, each with an ``op`` key:
            rename  {from, to}
            set     {field, value}         value may be a reference
            remove  {field} | {fields}
            merge   {with}                 reference or object; defaults to the input
            filter  {where, field?}        keep list items matching a condition
                                           (``where.field`` is item-relative)
            pluck   {fields}               keep only the named fields
            map     {mapping}              {new_name: source_path}
            sort    {by, reverse?}
        operation: single-operation shorthand, e.g. {"operation": "pluck", "fields": [...]}
        source / source_key: where the data comes from
    """

    handler_type = "data_transform"
    display_name = "Data Transform"
    description = "Rename, filter, pluck, map and merge data"

    OPERATIONS = ("rename", "set", "remove", "merge", "filter", "pluck", "map", "sort", "transform")

    def _operations(self, config: Dict[str, Any]) -> List[Dict[str, Any]]:
        if config.get("operations") is not None:
            return list(config["operations"])
        if config.get("operation"):
            return [{**config, "op": config["operation"]}]
        return []

    def _source(self, resolved_input: Any, context: StepContext) -> Any:
        config = context.config
        if config.get("source") is not None:
            return resolve(config["source"], context.expressions)
        if config.get("source_key"):
            return context.expressions.outputs_by_key.get(config["source_key"])
        return resolved_input

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        data = copy.deepcopy(self._source(resolved_input, context))
        if data is None:
            data = {}

        try:
            for operation in self._operations(context.config):
                data = self._apply(operation, data, resolved_input, context)
        except (TransformError, KeyError) as e:
            return HandlerResult(success=False, error=f"Transform failed: {e}", retryable=False)

        return HandlerResult(success=True, output=data)

    def _apply(self, operation: dict, data: Any, resolved_input: Any, context: StepContext) -> Any:
        op = operation.get("op")
        if op == "transform":
            return data
        if op in ("filter", "sort"):
            return getattr(self, f"_{op}")(data, operation)
        if op in ("pluck", "map"):
            if isinstance(data, list):
                return [getattr(self, f"_{op}")(item, operation) for item in data]
            return getattr(self, f"_{op}")(data, operation)

        if not isinstance(data, dict):
            raise TransformError(f"'{op}' needs object data, got {type(data).__name__}")

        if op == "rename":
            if get_path(data, operation["from"]) is not None or operation["from"] in data:
                set_path(data, operation["to"], delete_path(data, operation["from"]))
        elif op == "set":
            set_path(data, operation["field"], context.render(operation.get("value")))
        elif op == "remove":
            for path in operation.get("fields") or [operation.get("field")]:
                if path:
                    delete_path(data, path)
        elif op == "merge":
            other = operation.get("with", resolved_input)
            other = context.render(other) if isinstance(other, str) else other
            if isinstance(other, dict):
                data = {**data, **other}
            elif other is not None:
                raise TransformError(f"cannot merge {type(other).__name__} into object")
        else:
            raise TransformError(f"unknown operation '{op}'")
        return data

    def _pluck(self, item: Any, operation: dict) -> Any:
        fields = operation.get("fields") or []
        if not fields:
            raise TransformError("'pluck' requires 'fields'")
        if not isinstance(item, dict):
            raise TransformError("cannot pluck from non-object data")
        return {field: get_path(item, field) for field in fields}

    def _map(self, item: Any, operation: dict) -> Any:
        mapping = operation.get("mapping")
        if not mapping:
            raise TransformError("'map' requires 'mapping'")
        if not isinstance(item, dict):
            raise TransformError("cannot map non-object data")
        return {target: get_path(item, source) for target, source in mapping.items()}

    def _list_at(self, data: Any, operation: dict) -> list:
        items = get_path(data, operation["field"]) if operation.get("field") else data
        if not isinstance(items, list):
            raise TransformError(f"'{operation.get('op')}' needs a list")
        return items

    def _store_list(self, data: Any, operation: dict, items: list) -> Any:
        if operation.get("field"):
            set_path(data, operation["field"], items)
            return data
        return items

    def _filter(self, data: Any, operation: dict) -> Any:
        where = dict(operation.get("where") or {})
        if where.get("field") and not (where["field"] == "input" or str(where["field"]).startswith("input.")):
            where["field"] = f"input.{where['field']}"
        kept = [
            item for item in self._list_at(data, operation)
            if evaluate_condition(where, ExpressionContext(input=item))
        ]
        return self._store_list(data, operation, kept)

    def _sort(self, data: Any, operation: dict) -> Any:
        by = operation.get("by")
        items = self._list_at(data, operation)

        def sort_key(item):
            value = get_path(item, by) if by else item
            return (value is None, value if value is not None else 0)

        try:
            ordered = sorted(items, key=sort_key, reverse=bool(operation.get("reverse")))
        except TypeError as e:
            raise TransformError(f"cannot sort mixed values: {e}")
        return self._store_list(data, operation, ordered)

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        problems = []
        for operation in self._operations(config):
            op = operation.get("op") if isinstance(operation, dict) else None
            if op not in self.OPERATIONS:
                problems.append(f"unknown data_transform operation '{op}'")
        return problems

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "operations": {"type": "array", "items": {"type": "object"}},
                "operation": {"type": "string", "enum": list(cls.OPERATIONS)},
                "source": {"type": "string"},
                "source_key": {"type": "string"},
            },
        }


# Export for handler registry
TRANSFORM_HANDLER_TYPES = {
    "data_transform": DataTransformHandler,
}
