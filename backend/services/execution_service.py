"""Execution service: creation, progress and result queries, control requests.

Control requests (cancel, pause, resume) never run steps themselves. A
pending or paused execution is cancelled directly; a running one gets a
cooperative flag that the engine checks between steps.
"""

import logging
from typing import Any, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import EXECUTION_TRANSITIONS, ExecutionStatus, WorkflowStatus
from core.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from core.utils import elapsed_ms, utc_now
from db.models.execution import Execution
from db.models.step_result import StepResult
from db.models.workflow import Workflow
from db.models.workflow_step import WorkflowStep
from handlers.implementations.http_handler import validate_url_safety
from schemas.execution import (
    ExecutionCreate,
    ExecutionProgress,
    ExecutionResponse,
    ExecutionResult,
    StepResultResponse,
)
from services.base import TenantScopedService

logger = logging.getLogger(__name__)

# Concurrent writers (the engine) may move the row between our read and write
_CONTROL_ATTEMPTS = 3


def progress_percentage(completed_steps: int, total_steps: int) -> float:
    if not total_steps:
        return 0.0
    return round(min(completed_steps, total_steps) / total_steps * 100, 2)


class ExecutionService(TenantScopedService[Execution]):
    """Service for execution management within one tenant."""

    def __init__(self, db: AsyncSession, organization_id: str):
        super().__init__(Execution, db, organization_id)

    # ─── Create ────────────────────────────────────────────

    async def create_execution(self, data: ExecutionCreate) -> Execution:
        """Create a pending execution of an active workflow version.

        Raises:
            NotFoundError: workflow missing or owned by another tenant
            ValidationError: workflow is not active or webhook_url targets a private network
        """
        result = await self.db.execute(
            select(Workflow).where(
                Workflow.id == data.workflow_id,
                Workflow.organization_id == self.organization_id,
                Workflow.is_deleted == False,  # noqa: E712
            )
        )
        workflow = result.scalar_one_or_none()
        if workflow is None:
            raise NotFoundError(f"Workflow {data.workflow_id} not found")
        if workflow.status != WorkflowStatus.ACTIVE.value:
            raise ValidationError(
                f"Workflow {workflow.id} is {workflow.status}; only active workflows can be executed"
            )
        if data.webhook_url and get_settings().HTTP_BLOCK_PRIVATE_NETWORKS:
            try:
                validate_url_safety(data.webhook_url)
            except ValueError as e:
                raise ValidationError(f"Invalid webhook_url: {e}")

        execution = await self.create({
            "workflow_id": workflow.id,
            "name": data.execution_name,
            "trigger_source": data.trigger_source.value,
            "status": ExecutionStatus.PENDING.value,
            "input_data": data.input_data,
            "total_steps": len(workflow.steps),
            "completed_steps": 0,
            "webhook_url": data.webhook_url,
        })
        logger.info(
            f"Created execution {execution.id} for workflow {workflow.id} "
            f"v{workflow.version} ({execution.trigger_source})"
        )
        return execution

    # ─── Read ──────────────────────────────────────────────

    async def get_by_workflow(
        self,
        workflow_id: str,
        offset: int = 0,
        limit: int = 20,
        status: Optional[str] = None,
    ):
        """Get executions for a specific workflow."""
        filters: dict[str, Any] = {"workflow_id": workflow_id}
        if status:
            filters["status"] = status
        return await self.list(offset=offset, limit=limit, filters=filters)

    async def list_step_results(self, execution_id: str) -> Sequence[StepResult]:
        """Attempt history of an execution in write order."""
        await self.get_or_404(execution_id)
        result = await self.db.execute(
            select(StepResult)
            .where(
                StepResult.execution_id == execution_id,
                StepResult.organization_id == self.organization_id,
            )
            .order_by(StepResult.sequence)
        )
        return result.scalars().all()

    async def get_progress(self, execution_id: str) -> ExecutionProgress:
        execution = await self.get_or_404(execution_id)

        current_step_name = None
        if execution.current_step_id:
            result = await self.db.execute(
                select(WorkflowStep.name).where(
                    WorkflowStep.workflow_id == execution.workflow_id,
                    WorkflowStep.organization_id == self.organization_id,
                    WorkflowStep.key == execution.current_step_id,
                )
            )
            current_step_name = result.scalar_one_or_none()

        if execution.duration_ms is not None:
            elapsed = execution.duration_ms
        elif execution.is_terminal:
            elapsed = elapsed_ms(execution.started_at, execution.completed_at)
        else:
            elapsed = elapsed_ms(execution.started_at)

        if execution.status == ExecutionStatus.COMPLETED.value:
            percentage = 100.0
        else:
            percentage = progress_percentage(execution.completed_steps, execution.total_steps)

        return ExecutionProgress(
            execution_id=execution.id,
            status=execution.status,
            progress_percentage=percentage,
            current_step_name=current_step_name,
            completed_steps=execution.completed_steps,
            total_steps=execution.total_steps,
            elapsed_time_ms=elapsed,
        )

    async def get_result(self, execution_id: str) -> ExecutionResult:
        execution = await self.get_or_404(execution_id)
        step_results = await self.list_step_results(execution_id)
        return ExecutionResult(
            execution=ExecutionResponse.model_validate(execution),
            step_results=[StepResultResponse.model_validate(r) for r in step_results],
        )

    async def count_by_status(self, workflow_id: Optional[str] = None) -> dict[str, int]:
        query = select(Execution.status, func.count()).where(
            Execution.organization_id == self.organization_id
        )
        if workflow_id:
            query = query.where(Execution.workflow_id == workflow_id)
        rows = await self.db.execute(query.group_by(Execution.status))
        return {status: count for status, count in rows.all()}

    # ─── Control ───────────────────────────────────────────

    async def _reload(self, execution: Execution) -> Execution:
        await self.db.refresh(execution)
        return execution

    async def _finish_directly(self, execution: Execution, status: ExecutionStatus) -> bool:
        """Version-checked move of an unclaimed execution to a terminal status."""
        current = ExecutionStatus(execution.status)
        if status not in EXECUTION_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, status.value)

        now = utc_now()
        result = await self.db.execute(
            update(Execution)
            .where(
                Execution.id == execution.id,
                Execution.organization_id == self.organization_id,
                Execution.version == execution.version,
                Execution.status == current.value,
            )
            .values(
                status=status.value,
                version=Execution.version + 1,
                completed_at=now,
                duration_ms=elapsed_ms(execution.started_at, now) if execution.started_at else 0,
                cancel_requested=status == ExecutionStatus.CANCELLED,
                pause_requested=False,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _set_flag(self, execution: Execution, **flags: bool) -> bool:
        """Set control flags on a running execution without bumping its version."""
        result = await self.db.execute(
            update(Execution)
            .where(
                Execution.id == execution.id,
                Execution.organization_id == self.organization_id,
                Execution.status == ExecutionStatus.RUNNING.value,
            )
            .values(**flags)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def request_cancel(self, execution_id: str) -> Execution:
        """Cancel an execution.

        Pending and paused executions become CANCELLED immediately. A running
        execution is flagged and stops before its next step.

        Raises:
            InvalidTransitionError: execution already finished
        """
        execution = await self.get_or_404(execution_id)
        for _ in range(_CONTROL_ATTEMPTS):
            status = ExecutionStatus(execution.status)
            if status.is_terminal:
                raise InvalidTransitionError(status.value, ExecutionStatus.CANCELLED.value)

            if status == ExecutionStatus.RUNNING:
                applied = await self._set_flag(execution, cancel_requested=True)
            else:
                applied = await self._finish_directly(execution, ExecutionStatus.CANCELLED)

            execution = await self._reload(execution)
            if applied:
                logger.info(f"Cancel requested for execution {execution_id} (was {status.value})")
                return execution

        raise ConflictError(f"Execution {execution_id} changed concurrently; cancel not applied")

    async def request_pause(self, execution_id: str) -> Execution:
        """Ask a running execution to pause before its next step."""
        execution = await self.get_or_404(execution_id)
        for _ in range(_CONTROL_ATTEMPTS):
            status = ExecutionStatus(execution.status)
            if status == ExecutionStatus.PAUSED:
                return execution
            if status != ExecutionStatus.RUNNING:
                raise InvalidTransitionError(status.value, ExecutionStatus.PAUSED.value)

            applied = await self._set_flag(execution, pause_requested=True)
            execution = await self._reload(execution)
            if applied:
                logger.info(f"Pause requested for execution {execution_id}")
                return execution

        raise ConflictError(f"Execution {execution_id} changed concurrently; pause not applied")

    async def resume(self, execution_id: str) -> Execution:
        """Prepare an execution to continue.

        A paused execution is returned as-is for the caller to re-dispatch
        (the engine's claim moves it to RUNNING). A running execution with
        a pending pause request has that request withdrawn.
        """
        execution = await self.get_or_404(execution_id)
        status = ExecutionStatus(execution.status)
        if status == ExecutionStatus.PAUSED:
            return execution
        if status == ExecutionStatus.RUNNING and execution.pause_requested:
            await self._set_flag(execution, pause_requested=False)
            return await self._reload(execution)
        raise InvalidTransitionError(status.value, ExecutionStatus.RUNNING.value)


class StepResultService(TenantScopedService[StepResult]):
    """Attempt records of one tenant's executions."""

    def __init__(self, db: AsyncSession, organization_id: str):
        super().__init__(StepResult, db, organization_id)

    async def list_for_execution(
        self,
        execution_id: str,
        status: Optional[str] = None,
    ) -> Sequence[StepResult]:
        query = select(StepResult).where(
            StepResult.execution_id == execution_id,
            StepResult.organization_id == self.organization_id,
        )
        if status:
            query = query.where(StepResult.status == status)
        result = await self.db.execute(query.order_by(StepResult.sequence))
        return result.scalars().all()
