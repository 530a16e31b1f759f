"""Workflow Execution Engine: sequential step-graph runner.

Takes a claimed execution and drives its workflow version step by step:

- Conditional skip per step (``condition`` guard)
- Input mapping resolution against execution input and prior step outputs
- Handler dispatch through the HandlerRegistry
- Retry with backoff and per-attempt timeout (StepAttemptRunner)
- Success / failure / handler-directed routing between steps
- Optional steps, failure branches, execution-level time limit
- Cooperative cancel and pause between steps
- Resume from the persisted current step after pause or crash
- Best-effort run completion webhook once the execution is terminal

All state lives in the Execution and StepResult rows. The engine keeps an
in-memory expression context only as a cache, rebuilt from persisted
COMPLETED attempts each time it claims an execution. Every row write is
version-checked; losing the claim stops the engine without further writes.

Routing after a step:

    condition false      -> SKIPPED, on_failure_step or natural next
    success              -> handler next_step, else
                            failure branch: on_failure_step or natural next
                            otherwise:      on_success_step or natural next
    failure (exhausted)  -> optional: natural next
                            on_failure_step: continue there
                            otherwise: execution FAILED
    no next step         -> execution COMPLETED
"""

import asyncio
import os
import socket
import traceback
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Optional
from uuid import uuid4

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from core.constants import BranchOutcome, ExecutionStatus, StepResultStatus
from core.exceptions import (
    ConflictError,
    EngineException,
    FatalExecutionError,
    HandlerError,
    InvalidTransitionError,
    StepTimeoutError,
)
from core.logging_config import execution_log_context
from core.utils import elapsed_ms, utc_now
from db.models.workflow import Workflow
from db.models.workflow_step import WorkflowStep
from handlers.base_handler import HandlerResult, StepContext
from handlers.registry import HandlerRegistry, get_handler_registry
from schemas.execution import ProgressEvent
from services.execution_service import progress_percentage
from workflow.expressions import ExpressionContext, evaluate_condition, resolve_mapping
from workflow.progress import ProgressBroadcaster
from workflow.retry_strategies import AttemptOutcome, RetryStrategy, StepAttemptRunner
from workflow.store import ExecutionClaim, ExecutionStore, rebuild_context
from workflow.validation import natural_next, ordered_steps
from workflow.webhooks import RunWebhookNotifier

logger = structlog.get_logger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


def _first_set(*values: Optional[int]) -> Optional[int]:
    for value in values:
        if value is not None:
            return value
    return None


def _error_detail(error: BaseException) -> str:
    detail = getattr(error, "detail", None)
    if detail:
        return detail
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


@dataclass
class _RunState:
    """Per-claim bookkeeping; every field is derivable from persisted rows."""

    workflow: Workflow
    steps: list[WorkflowStep]
    by_key: dict[str, WorkflowStep]
    context: ExpressionContext
    sequence: int
    attempts: dict[str, int]
    visit_ceiling: int
    completed_steps: int
    total_steps: int
    last_output: Any = None


class ExecutionEngine:
    """Runs executions claimed by this worker.

    Args:
        session_factory: async session factory for the state store
        registry: step handler registry
        settings: engine defaults (timeouts, retries, visit ceiling)
        broadcaster: optional progress push channel
        webhooks: run completion webhook sender
        worker_id: identity written to claimed executions
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        registry: Optional[HandlerRegistry] = None,
        settings: Optional[Settings] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        webhooks: Optional[RunWebhookNotifier] = None,
        worker_id: Optional[str] = None,
    ):
        if session_factory is None:
            from db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.registry = registry or get_handler_registry()
        self.settings = settings or get_settings()
        self.broadcaster = broadcaster
        self.webhooks = webhooks or RunWebhookNotifier(self.settings)
        self.worker_id = worker_id or default_worker_id()

    # ─── Entry point ───────────────────────────────────────

    async def run(self, execution_id: str, organization_id: str) -> Optional[ExecutionStatus]:
        """Claim and drive one execution until it stops.

        Returns:
            The status the execution was left in by this worker, or None if
            it could not be claimed or the claim was lost midway.
        """
        with execution_log_context(execution_id, organization_id):
            return await self._run(execution_id, organization_id)

    async def _run(self, execution_id: str, organization_id: str) -> Optional[ExecutionStatus]:
        store = ExecutionStore(self.session_factory, organization_id)
        log = logger.bind(execution_id=execution_id, worker_id=self.worker_id)

        try:
            claim = await store.claim(
                execution_id,
                self.worker_id,
                stale_after_seconds=self.settings.ENGINE_STALE_EXECUTION_SECONDS,
            )
        except (ConflictError, InvalidTransitionError) as e:
            log.info("Execution not claimed", reason=e.message)
            return None

        try:
            return await self._drive(store, claim, log)
        except ConflictError as e:
            log.warning("Claim lost, stopping without further writes", reason=e.message)
            return None
        except asyncio.CancelledError:
            log.warning("Execution task cancelled; it can be recovered once its heartbeat goes stale")
            raise
        except Exception as e:
            log.error("Execution crashed", error=str(e), exc_info=True)
            return await self._fail_after_crash(store, claim, e, log)

    async def _fail_after_crash(
        self,
        store: ExecutionStore,
        claim: ExecutionClaim,
        error: Exception,
        log,
    ) -> Optional[ExecutionStatus]:
        if claim.status.is_terminal:
            return claim.status
        message = error.message if isinstance(error, EngineException) else f"{type(error).__name__}: {error}"
        try:
            await self._finish(
                store,
                claim,
                ExecutionStatus.FAILED,
                execution=await store.get_execution(claim.execution_id),
                error_message=f"Internal error: {message}",
                error_detail=_error_detail(error),
            )
        except ConflictError as e:
            log.warning("Could not record crash, claim already lost", reason=e.message)
            return None
        except Exception:
            log.error("Could not record crash", exc_info=True)
            raise
        return ExecutionStatus.FAILED

    # ─── Main loop ─────────────────────────────────────────

    async def _load(self, store: ExecutionStore, claim: ExecutionClaim):
        execution = await store.refresh(claim)
        workflow = await store.load_definition(execution.workflow_id)
        steps = ordered_steps(workflow.steps)
        history = await store.load_history(claim.execution_id)

        attempts: dict[str, int] = {}
        for result in history:
            attempts[result.step_id] = max(attempts.get(result.step_id, 0), result.attempt)

        budget = sum(self._max_retries(step, workflow) + 1 for step in steps)
        state = _RunState(
            workflow=workflow,
            steps=steps,
            by_key={step.key: step for step in steps},
            context=rebuild_context(execution.input_data, history),
            sequence=max((r.sequence for r in history), default=0),
            attempts=attempts,
            visit_ceiling=min(self.settings.ENGINE_MAX_STEP_VISITS, budget),
            completed_steps=execution.completed_steps,
            total_steps=execution.total_steps or len(steps),
            last_output=next(
                (r.output_data for r in reversed(history) if r.status == StepResultStatus.COMPLETED.value),
                None,
            ),
        )
        return execution, state

    async def _drive(self, store: ExecutionStore, claim: ExecutionClaim, log) -> ExecutionStatus:
        execution, state = await self._load(store, claim)
        self._publish(claim, state, "status")

        if not state.steps:
            error = FatalExecutionError(f"Workflow {state.workflow.id} has no steps")
            await self._finish(store, claim, ExecutionStatus.FAILED, execution=execution, state=state, error_message=error.message)
            return claim.status

        step_key = execution.current_step_id
        if step_key not in state.by_key:
            step_key = state.steps[0].key
        log.info(
            "Execution running",
            workflow_id=state.workflow.id,
            start_step=step_key,
            resumed=bool(execution.current_step_id),
        )

        while True:
            execution = await store.refresh(claim)
            state.completed_steps = execution.completed_steps
            step = state.by_key[step_key]
            step_log = log.bind(step_key=step.key)

            stop = self._check_between_steps(execution, state)
            if stop is not None:
                status, values = stop
                if status == ExecutionStatus.PAUSED:
                    values["current_step_id"] = step.key
                step_log.info("Execution stopping between steps", status=status.value)
                await self._finish(store, claim, status, execution=execution, state=state, **values)
                return claim.status

            if step.condition and not evaluate_condition(step.condition, state.context):
                next_key = step.on_failure_step or self._natural_key(state, step)
                step_log.info("Step condition false, skipping", next_step=next_key)
                await self._record_skip(store, claim, state, execution, step, next_key)
            else:
                next_key = await self._run_step(store, claim, state, execution, step, step_log)

            if claim.status.is_terminal:
                log.info("Execution finished", status=claim.status.value)
                return claim.status
            step_key = next_key

    def _check_between_steps(self, execution, state: _RunState) -> Optional[tuple[ExecutionStatus, dict]]:
        if execution.cancel_requested:
            return ExecutionStatus.CANCELLED, {"error_message": "Cancelled by request"}
        if execution.pause_requested:
            return ExecutionStatus.PAUSED, {"pause_requested": False}

        max_duration = state.workflow.max_duration_ms
        if max_duration and elapsed_ms(execution.started_at) > max_duration:
            return ExecutionStatus.TIMEOUT, {
                "error_message": f"Execution exceeded its time limit of {max_duration}ms",
            }

        if execution.step_visits >= state.visit_ceiling:
            error = FatalExecutionError(
                f"Step visit ceiling reached ({state.visit_ceiling}); routing may be looping"
            )
            return ExecutionStatus.FAILED, {"error_message": error.message}
        return None

    # ─── Step execution ────────────────────────────────────

    def _natural_key(self, state: _RunState, step: WorkflowStep) -> Optional[str]:
        nxt = natural_next(state.steps, step)
        return nxt.key if nxt else None

    def _max_retries(self, step: WorkflowStep, workflow: Workflow) -> int:
        return _first_set(
            step.max_retries,
            workflow.default_max_retries,
            self.settings.ENGINE_DEFAULT_MAX_RETRIES,
        )

    def _timeout_ms(self, step: WorkflowStep, workflow: Workflow) -> int:
        return _first_set(
            step.timeout_ms,
            workflow.default_timeout_ms,
            self.settings.ENGINE_DEFAULT_TIMEOUT_MS,
        )

    def _completion_values(self, state: _RunState, execution, last_output: Any) -> dict:
        now = utc_now()
        return {
            "status": ExecutionStatus.COMPLETED,
            "output_data": {**state.context.collected_outputs(), "result": last_output},
            "current_step_id": None,
            "completed_at": now,
            "duration_ms": elapsed_ms(execution.started_at, now),
        }

    async def _record_skip(self, store, claim, state: _RunState, execution, step, next_key):
        now = utc_now()
        state.sequence += 1
        state.attempts[step.id] = state.attempts.get(step.id, 0) + 1

        values: dict[str, Any] = {
            "step_visits": execution.step_visits + 1,
            "current_step_id": next_key,
        }
        if next_key is None:
            values.update(self._completion_values(state, execution, state.last_output))

        await store.record_result(
            claim,
            {
                "step_id": step.id,
                "step_key": step.key,
                "step_order": step.step_order,
                "sequence": state.sequence,
                "attempt": state.attempts[step.id],
                "status": StepResultStatus.SKIPPED.value,
                "next_step_id": next_key,
                "started_at": now,
                "completed_at": now,
                "duration_ms": 0,
            },
            **values,
        )
        self._publish(claim, state, "step_finished", step_key=step.key, step_status=StepResultStatus.SKIPPED.value)
        if claim.status.is_terminal:
            self._publish(claim, state, "status")
            await self._notify_run_finished(claim, execution, values)

    async def _run_step(self, store, claim, state: _RunState, execution, step: WorkflowStep, log) -> Optional[str]:
        """Run one step through its retry budget; returns the next step key."""
        workflow = state.workflow
        handler = self.registry.get(step.step_type)
        resolved_input = resolve_mapping(step.input_mapping, state.context) if step.input_mapping else state.context.input
        base_attempt = state.attempts.get(step.id, 0)
        visits = execution.step_visits
        attempt_rows: dict[int, tuple[str, Any]] = {}

        async def on_attempt_start(attempt: int) -> None:
            now = utc_now()
            state.sequence += 1
            result_id = await store.start_attempt(
                claim,
                {
                    "step_id": step.id,
                    "step_key": step.key,
                    "step_order": step.step_order,
                    "sequence": state.sequence,
                    "attempt": base_attempt + attempt,
                    "input_data": resolved_input,
                    "started_at": now,
                },
                current_step_id=step.key,
                step_visits=visits + attempt,
            )
            state.attempts[step.id] = base_attempt + attempt
            attempt_rows[attempt] = (result_id, now)
            self._publish(
                claim, state, "step_started",
                step_key=step.key, step_status=StepResultStatus.RUNNING.value, attempt=base_attempt + attempt,
            )

        async def on_attempt_end(attempt: int, result: Any, error: Optional[Exception], is_final: bool) -> None:
            # The final attempt is written together with the routing decision
            if is_final:
                return
            result_id, started_at = attempt_rows[attempt]
            await store.finish_attempt(claim, result_id, self._failed_fields(error, started_at))
            log.info("Step attempt failed, retrying", attempt=base_attempt + attempt, error=str(error))
            self._publish(
                claim, state, "step_finished",
                step_key=step.key, step_status=self._failed_status(error).value,
                attempt=base_attempt + attempt, error_message=str(error),
            )

        async def attempt(number: int) -> HandlerResult:
            if handler is None:
                raise HandlerError(f"No handler registered for step type '{step.step_type}'", retryable=False)
            context = StepContext(
                execution_id=claim.execution_id,
                workflow_id=workflow.id,
                organization_id=claim.organization_id,
                step_id=step.id,
                step_key=step.key,
                step_name=step.name,
                step_type=step.step_type,
                config=step.config or {},
                attempt=base_attempt + number,
                expressions=state.context,
            )
            return await handler.run(resolved_input, context)

        runner = StepAttemptRunner(
            RetryStrategy.for_step(self._max_retries(step, workflow), step.retry_policy, self.settings),
            timeout_ms=self._timeout_ms(step, workflow),
            on_attempt_start=on_attempt_start,
            on_attempt_end=on_attempt_end,
        )

        heartbeat = self._start_heartbeat(store, claim, log)
        try:
            outcome = await runner.run(attempt)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await heartbeat

        result_id, started_at = attempt_rows[outcome.attempts]
        if outcome.success:
            return await self._on_success(store, claim, state, execution, step, outcome, result_id, started_at, log)
        return await self._on_failure(store, claim, state, execution, step, outcome, result_id, started_at, log)

    async def _on_success(self, store, claim, state, execution, step, outcome: AttemptOutcome, result_id, started_at, log):
        result: HandlerResult = outcome.result
        natural_key = self._natural_key(state, step)
        if result.next_step:
            next_key = result.next_step
        elif result.branch == BranchOutcome.FAILURE.value:
            next_key = step.on_failure_step or natural_key
        else:
            next_key = step.on_success_step or natural_key

        if next_key is not None and next_key not in state.by_key:
            raise FatalExecutionError(f"Step '{step.key}' routed to unknown step '{next_key}'")

        state.context.record_output(step.step_order, step.key, result.output)
        state.last_output = result.output
        state.completed_steps = min(state.completed_steps + 1, state.total_steps)

        now = utc_now()
        values: dict[str, Any] = {
            "completed_steps": state.completed_steps,
            "current_step_id": next_key,
        }
        if next_key is None:
            values.update(self._completion_values(state, execution, result.output))

        await store.finish_attempt(
            claim,
            result_id,
            {
                "status": StepResultStatus.COMPLETED.value,
                "output_data": result.output,
                "next_step_id": next_key,
                "completed_at": now,
                "duration_ms": elapsed_ms(started_at, now),
            },
            **values,
        )
        log.info("Step completed", attempts=outcome.attempts, branch=result.branch, next_step=next_key)
        self._publish(
            claim, state, "step_finished",
            step_key=step.key, step_status=StepResultStatus.COMPLETED.value,
            attempt=state.attempts.get(step.id),
        )
        if claim.status.is_terminal:
            self._publish(claim, state, "status")
            await self._notify_run_finished(claim, execution, values)
        return next_key

    async def _on_failure(self, store, claim, state, execution, step, outcome: AttemptOutcome, result_id, started_at, log):
        error = outcome.error
        if step.is_optional:
            next_key = self._natural_key(state, step)
        else:
            next_key = step.on_failure_step

        values: dict[str, Any] = {"current_step_id": next_key}
        if next_key is None and not step.is_optional:
            fatal = FatalExecutionError(
                f"Step '{step.key}' failed after {outcome.attempts} attempt(s): {error}",
                detail=_error_detail(error),
            )
            now = utc_now()
            values.update({
                "status": ExecutionStatus.FAILED,
                "current_step_id": step.key,
                "error_message": fatal.message,
                "error_detail": fatal.detail,
                "completed_at": now,
                "duration_ms": elapsed_ms(execution.started_at, now),
            })
        elif next_key is None:
            values.update(self._completion_values(state, execution, state.last_output))

        fields = self._failed_fields(error, started_at)
        fields["next_step_id"] = next_key
        await store.finish_attempt(claim, result_id, fields, **values)

        log.warning(
            "Step failed",
            attempts=outcome.attempts,
            error=str(error),
            optional=step.is_optional,
            next_step=next_key,
        )
        self._publish(
            claim, state, "step_finished",
            step_key=step.key, step_status=fields["status"],
            attempt=state.attempts.get(step.id), error_message=str(error),
        )
        if claim.status.is_terminal:
            self._publish(claim, state, "status", error_message=values.get("error_message"))
            await self._notify_run_finished(claim, execution, values)
        return next_key

    @staticmethod
    def _failed_status(error: Optional[Exception]) -> StepResultStatus:
        if isinstance(error, StepTimeoutError):
            return StepResultStatus.TIMEOUT
        return StepResultStatus.FAILED

    def _failed_fields(self, error: Optional[Exception], started_at) -> dict[str, Any]:
        now = utc_now()
        return {
            "status": self._failed_status(error).value,
            "error_message": str(error),
            "error_detail": getattr(error, "detail", None),
            "completed_at": now,
            "duration_ms": elapsed_ms(started_at, now),
        }

    # ─── Terminal writes ───────────────────────────────────

    async def _finish(
        self,
        store: ExecutionStore,
        claim: ExecutionClaim,
        status: ExecutionStatus,
        execution=None,
        state: Optional[_RunState] = None,
        **values: Any,
    ) -> None:
        if status.is_terminal:
            now = utc_now()
            values.setdefault("completed_at", now)
            started_at = execution.started_at if execution is not None else None
            if started_at is not None:
                values.setdefault("duration_ms", elapsed_ms(started_at, now))
        await store.update_execution(claim, status=status, **values)
        self._publish(claim, state, "status", error_message=values.get("error_message"))
        await self._notify_run_finished(claim, execution, values)

    async def _notify_run_finished(self, claim: ExecutionClaim, execution, values: dict) -> None:
        url = getattr(execution, "webhook_url", None)
        if not url or not claim.status.is_terminal:
            return
        completed_at = values.get("completed_at")
        payload: dict[str, Any] = {
            "type": f"run.{claim.status.value}",
            "execution_id": claim.execution_id,
            "workflow_id": execution.workflow_id,
            "status": claim.status.value,
            "completed_at": completed_at.isoformat() if completed_at else None,
        }
        if claim.status == ExecutionStatus.COMPLETED:
            payload["output"] = values.get("output_data")
        else:
            payload["error"] = {"message": values.get("error_message")}
        await self.webhooks.send(url, payload)

    # ─── Heartbeat ─────────────────────────────────────────

    def _start_heartbeat(self, store: ExecutionStore, claim: ExecutionClaim, log) -> Optional[asyncio.Task]:
        interval = self.settings.ENGINE_STALE_EXECUTION_SECONDS / 3
        if interval <= 0:
            return None
        return asyncio.create_task(self._heartbeat_loop(store, claim, interval, log))

    async def _heartbeat_loop(self, store: ExecutionStore, claim: ExecutionClaim, interval: float, log) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                if not await store.heartbeat(claim):
                    log.debug("Heartbeat skipped, row moved on")
            except Exception:
                log.warning("Heartbeat write failed", exc_info=True)

    # ─── Progress ──────────────────────────────────────────

    def _publish(self, claim: ExecutionClaim, state: Optional[_RunState], event: str, **fields: Any) -> None:
        if self.broadcaster is None:
            return
        completed = state.completed_steps if state else 0
        total = state.total_steps if state else 0
        if claim.status == ExecutionStatus.COMPLETED:
            percentage = 100.0
        else:
            percentage = progress_percentage(completed, total)
        self.broadcaster.publish(ProgressEvent(
            event=event,
            execution_id=claim.execution_id,
            status=claim.status.value,
            completed_steps=completed,
            total_steps=total,
            progress_percentage=percentage,
            timestamp=utc_now(),
            **fields,
        ))
