"""Workflow definition validation.

Rejects definitions the engine could not run safely:

- duplicate step orders or keys, malformed keys
- unknown (or reserved) step types and invalid handler config
- branch pointers to keys that do not exist in the workflow
- cycles reachable from the first step under any routing outcome

Works on anything exposing the step attributes (pydantic ``StepCreate``
or ORM ``WorkflowStep``).
"""

import re
from typing import Any, Iterable, Optional, Sequence

from core.constants import PARALLEL_STEP_TYPE
from core.exceptions import DefinitionError
from handlers.registry import HandlerRegistry, get_handler_registry
from workflow.expressions import condition_problems
from workflow.retry_strategies import RETRY_PRESETS, RetryPolicy

STEP_KEY_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


def ordered_steps(steps: Iterable[Any]) -> list:
    return sorted(steps, key=lambda s: s.step_order)


def natural_next(steps: Sequence[Any], step: Any) -> Optional[Any]:
    """The step with the next-higher order, if any."""
    later = [s for s in steps if s.step_order > step.step_order]
    return min(later, key=lambda s: s.step_order) if later else None


def _condition_problems(condition: Any, where: str) -> list[str]:
    return [f"{where}: {problem}" for problem in condition_problems(condition)]


def _retry_policy_problems(policy: Any, where: str) -> list[str]:
    if not policy:
        return []
    if not isinstance(policy, dict):
        return [f"{where}: retry_policy must be an object"]
    problems = []
    if policy.get("preset") and policy["preset"] not in RETRY_PRESETS:
        problems.append(f"{where}: unknown retry preset '{policy['preset']}'")
    if "policy" in policy and policy["policy"] not in {p.value for p in RetryPolicy}:
        problems.append(f"{where}: unknown retry policy '{policy['policy']}'")
    return problems


def successors(steps: Sequence[Any], step: Any, registry: HandlerRegistry) -> set[str]:
    """Every step key the engine could move to after ``step``."""
    nxt = natural_next(steps, step)
    natural_key = nxt.key if nxt else None
    handler = registry.get(step.step_type)
    config = step.config or {}

    targets = {step.on_success_step or natural_key}
    if step.condition:
        targets.add(step.on_failure_step or natural_key)
    if handler is not None and handler.may_branch:
        targets.add(step.on_failure_step or natural_key)
        targets.update(handler.routing_targets(config))
    if step.is_optional:
        targets.add(natural_key)
    elif step.on_failure_step:
        targets.add(step.on_failure_step)

    targets.discard(None)
    return targets


def find_cycle(steps: Sequence[Any], registry: HandlerRegistry) -> Optional[list[str]]:
    """Return the keys of a cycle reachable from the first step, or None."""
    if not steps:
        return None
    by_key = {s.key: s for s in steps}
    start = ordered_steps(steps)[0].key

    WHITE, GREY, BLACK = 0, 1, 2
    color = {key: WHITE for key in by_key}
    path: list[str] = []

    # Iterative DFS: definitions may be long enough to hit the recursion limit
    stack: list[tuple[str, Iterable[str]]] = [(start, iter(sorted(successors(steps, by_key[start], registry))))]
    color[start] = GREY
    path.append(start)
    while stack:
        key, children = stack[-1]
        child = next(children, None)
        if child is None:
            color[key] = BLACK
            path.pop()
            stack.pop()
            continue
        if child not in by_key:
            continue
        if color[child] == GREY:
            return path[path.index(child):] + [child]
        if color[child] == WHITE:
            color[child] = GREY
            path.append(child)
            stack.append((child, iter(sorted(successors(steps, by_key[child], registry)))))
    return None


def validate_definition(steps: Sequence[Any], registry: Optional[HandlerRegistry] = None) -> None:
    """Validate a full step list.

    Raises:
        DefinitionError: listing every problem found
    """
    registry = registry or get_handler_registry()
    problems: list[str] = []

    if not steps:
        raise DefinitionError("Workflow must have at least one step")

    keys: dict[str, Any] = {}
    orders: set[int] = set()
    for step in steps:
        if not step.key or not STEP_KEY_RE.match(step.key):
            problems.append(f"step key '{step.key}' must match {STEP_KEY_RE.pattern}")
        if step.key in keys:
            problems.append(f"duplicate step key '{step.key}'")
        keys[step.key] = step
        if step.step_order in orders:
            problems.append(f"duplicate step order {step.step_order}")
        orders.add(step.step_order)

    for step in steps:
        where = f"step '{step.key}'"
        if step.step_type == PARALLEL_STEP_TYPE:
            problems.append(f"{where}: step type '{PARALLEL_STEP_TYPE}' is reserved and not executable")
            continue
        handler = registry.get(step.step_type)
        if handler is None:
            problems.append(f"{where}: unknown step type '{step.step_type}'")
            continue

        config = step.config or {}
        problems.extend(f"{where}: {p}" for p in handler.validate_config(config))
        problems.extend(_condition_problems(step.condition, where))
        problems.extend(_retry_policy_problems(step.retry_policy, where))

        pointers = [
            ("on_success_step", step.on_success_step),
            ("on_failure_step", step.on_failure_step),
        ] + [("routing target", key) for key in handler.routing_targets(config)]
        for label, target in pointers:
            if target and target not in keys:
                problems.append(f"{where}: {label} '{target}' does not exist")
            if target == step.key:
                problems.append(f"{where}: {label} points at itself")

        if step.timeout_ms is not None and step.timeout_ms <= 0:
            problems.append(f"{where}: timeout_ms must be positive")
        if step.max_retries is not None and step.max_retries < 0:
            problems.append(f"{where}: max_retries must be >= 0")

    if problems:
        raise DefinitionError(problems[0], problems=problems)

    cycle = find_cycle(list(steps), registry)
    if cycle:
        message = f"Step graph has a reachable cycle: {' -> '.join(cycle)}"
        raise DefinitionError(message, problems=[message])
