"""Conditional branch handler.

Produces no business output; it evaluates conditions and reports which
way execution should go through ``HandlerResult.branch`` (and, for an
ordered ``conditions`` list, an explicit ``next_step``).
"""

from typing import Any, Dict, List

from core.constants import BranchOutcome
from handlers.base_handler import BaseHandler, HandlerResult, StepContext
from workflow.expressions import condition_problems, evaluate_condition


class ConditionalBranchHandler(BaseHandler):
    """Route execution based on conditions over execution data.

    Config (one of):
        condition: {field, operator, value}; true routes to the step's
            success pointer, false to its failure pointer
        conditions: ordered list of {field, operator, value, next_step};
            the first match routes to its next_step
        default_step: next_step when no entry of ``conditions`` matches
    """

    handler_type = "conditional_branch"
    display_name = "Conditional Branch"
    description = "Choose the next step based on a condition"
    may_branch = True

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        config = context.config

        if "conditions" in config:
            for index, condition in enumerate(config.get("conditions") or []):
                if evaluate_condition(condition, context.expressions):
                    return HandlerResult(
                        success=True,
                        output={
                            "matched": True,
                            "branch": BranchOutcome.SUCCESS.value,
                            "matched_index": index,
                            "next_step": condition.get("next_step"),
                        },
                        branch=BranchOutcome.SUCCESS.value,
                        next_step=condition.get("next_step"),
                    )
            default_step = config.get("default_step")
            return HandlerResult(
                success=True,
                output={
                    "matched": False,
                    "branch": BranchOutcome.FAILURE.value,
                    "matched_index": None,
                    "next_step": default_step,
                },
                branch=BranchOutcome.FAILURE.value,
                next_step=default_step,
            )

        condition = config.get("condition")
        matched = evaluate_condition(condition, context.expressions)
        branch = BranchOutcome.SUCCESS if matched else BranchOutcome.FAILURE
        return HandlerResult(
            success=True,
            output={"matched": matched, "branch": branch.value, "condition": condition},
            branch=branch.value,
        )

    def routing_targets(self, config: Dict[str, Any]) -> List[str]:
        targets = [
            c.get("next_step")
            for c in config.get("conditions") or []
            if isinstance(c, dict) and c.get("next_step")
        ]
        if config.get("default_step"):
            targets.append(config["default_step"])
        return targets

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        problems = []
        if "condition" not in config and "conditions" not in config:
            problems.append("conditional_branch requires 'condition' or 'conditions'")
        conditions = list(config.get("conditions") or [])
        if config.get("condition"):
            conditions.append(config["condition"])
        for condition in conditions:
            problems.extend(condition_problems(condition))
        return problems

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        condition = {
            "type": "object",
            "required": ["field"],
            "properties": {
                "field": {"type": "string"},
                "operator": {"type": "string"},
                "value": {},
                "next_step": {"type": "string"},
            },
        }
        return {
            "type": "object",
            "properties": {
                "condition": condition,
                "conditions": {"type": "array", "items": condition},
                "default_step": {"type": "string"},
            },
        }


# Export for handler registry
BRANCH_HANDLER_TYPES = {
    "conditional_branch": ConditionalBranchHandler,
}
