"""
Base handler interface for all step handler implementations.

Every step type (agent invocation, data transform, external call, etc.)
inherits from BaseHandler and implements execute(). Handlers are stateless:
one instance serves every execution, so nothing may be kept on ``self``
between calls.
"""

import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from core.constants import BranchOutcome
from core.exceptions import HandlerError
from workflow.expressions import ExpressionContext, render, render_deep

logger = structlog.get_logger(__name__)


class HandlerResult:
    """Standardized result from a step handler.

    ``branch`` lets a handler steer routing ("success" / "failure") and
    ``next_step`` names an explicit step key to continue at.
    """

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        branch: Optional[str] = None,
        next_step: Optional[str] = None,
        retryable: bool = True,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.metadata = metadata or {}
        self.branch = BranchOutcome(branch).value if branch else None
        self.next_step = next_step
        self.retryable = retryable
        self.duration_ms = duration_ms


@dataclass
class StepContext:
    """Everything a handler may know about the step it is running."""

    execution_id: str
    workflow_id: str
    organization_id: str
    step_id: str
    step_key: str
    step_name: str
    step_type: str
    config: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    expressions: ExpressionContext = field(default_factory=ExpressionContext)

    def render(self, value: Any) -> Any:
        """Render ``{{ reference }}`` placeholders against execution data."""
        return render(value, self.expressions)

    def render_config(self, key: str, default: Any = None) -> Any:
        return render_deep(self.config.get(key, default), self.expressions)

    def log_fields(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "step_key": self.step_key,
            "step_type": self.step_type,
            "attempt": self.attempt,
        }


class BaseHandler(ABC):
    """
    Abstract base class for all step handlers.

    Subclasses must implement:
    - execute(resolved_input, context) -> HandlerResult
    - handler_type (class property)
    - display_name (class property)
    """

    handler_type: str = "base"
    display_name: str = "Base Handler"
    description: str = "Abstract base handler"
    # Handlers that report HandlerResult.branch / next_step set this
    may_branch: bool = False

    @abstractmethod
    async def execute(
        self,
        resolved_input: Any,
        context: StepContext,
    ) -> HandlerResult:
        """
        Execute the step.

        Args:
            resolved_input: The step's input mapping with every expression resolved
            context: Step identity, configuration and execution data

        Returns:
            HandlerResult with output or error
        """
        pass

    async def run(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        """
        Run the handler with timing and error normalization.

        This is the entry point used by the engine. A failed result or any
        exception surfaces as HandlerError.
        """
        start = time.monotonic()
        log = logger.bind(**context.log_fields())
        log.info("Handler starting", handler=self.display_name)

        try:
            result = await self.execute(resolved_input, context)
        except HandlerError as e:
            log.warning(
                "Handler failed",
                error=e.message,
                retryable=e.retryable,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise
        except Exception as e:
            log.error(
                "Handler raised",
                error=str(e),
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise HandlerError(
                f"{type(e).__name__}: {e}",
                retryable=True,
                detail=traceback.format_exc(),
            ) from e

        result.duration_ms = (time.monotonic() - start) * 1000
        if not result.success:
            log.warning(
                "Handler failed",
                error=result.error,
                retryable=result.retryable,
                duration_ms=round(result.duration_ms, 2),
            )
            raise HandlerError(
                result.error or f"{self.handler_type} step failed",
                retryable=result.retryable,
            )

        log.info(
            "Handler completed",
            branch=result.branch,
            duration_ms=round(result.duration_ms, 2),
        )
        return result

    def routing_targets(self, config: Dict[str, Any]) -> List[str]:
        """Step keys this handler may route to via ``next_step``.

        Definition validation treats these as graph edges.
        """
        return []

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        """Return a list of problems with a step's config (empty if valid)."""
        return []

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for handler configuration.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}
