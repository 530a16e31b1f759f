"""Workflow definition service: create, version, publish, summarize."""

import logging
from typing import Optional, Sequence
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import TERMINAL_EXECUTION_STATUSES, ExecutionStatus, WorkflowStatus
from core.exceptions import InvalidTransitionError, ValidationError
from db.models.execution import Execution
from db.models.workflow import Workflow
from db.models.workflow_step import WorkflowStep
from handlers.registry import HandlerRegistry
from schemas.workflow import StepCreate, WorkflowCreate, WorkflowResponse, WorkflowSummary, WorkflowUpdate
from services.base import TenantScopedService
from workflow.validation import validate_definition

logger = logging.getLogger(__name__)

# Allowed definition status changes
_STATUS_TRANSITIONS = {
    WorkflowStatus.DRAFT: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ACTIVE: {WorkflowStatus.ARCHIVED, WorkflowStatus.DEPRECATED},
    WorkflowStatus.DEPRECATED: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ARCHIVED: {WorkflowStatus.DRAFT},
}

_DEFINITION_FIELDS = (
    "name",
    "description",
    "input_schema",
    "output_schema",
    "default_timeout_ms",
    "default_max_retries",
    "max_duration_ms",
    "tags",
)


class WorkflowService(TenantScopedService[Workflow]):
    """Service for workflow definition CRUD and versioning."""

    def __init__(self, db: AsyncSession, organization_id: str, registry: Optional[HandlerRegistry] = None):
        super().__init__(Workflow, db, organization_id)
        self.registry = registry

    def _build_steps(self, workflow_id: str, steps: Sequence[StepCreate]) -> list[WorkflowStep]:
        return [
            WorkflowStep(
                id=str(uuid4()),
                organization_id=self.organization_id,
                workflow_id=workflow_id,
                **step.model_dump(),
            )
            for step in steps
        ]

    # ─── Create ────────────────────────────────────────────

    async def create_workflow(self, data: WorkflowCreate) -> Workflow:
        """Validate and persist a new draft workflow (version 1).

        Raises:
            DefinitionError: if the step graph is invalid
        """
        validate_definition(data.steps, self.registry)

        workflow_id = str(uuid4())
        workflow = Workflow(
            id=workflow_id,
            family_id=workflow_id,
            organization_id=self.organization_id,
            version=1,
            status=WorkflowStatus.DRAFT.value,
            **data.model_dump(include=set(_DEFINITION_FIELDS)),
        )
        workflow.steps = self._build_steps(workflow_id, data.steps)
        self.db.add(workflow)
        await self.db.flush()

        logger.info(
            f"Created workflow {workflow.id} '{workflow.name}' with {len(data.steps)} steps "
            f"(org: {self.organization_id})"
        )
        return workflow

    # ─── Read ──────────────────────────────────────────────

    async def get_definition(self, workflow_id: str) -> WorkflowResponse:
        """Workflow with its steps in natural order."""
        workflow = await self.get_or_404(workflow_id)
        return WorkflowResponse.model_validate(workflow)

    async def list_steps(self, workflow_id: str) -> Sequence[WorkflowStep]:
        await self.get_or_404(workflow_id)
        result = await self.db.execute(
            select(WorkflowStep)
            .where(
                WorkflowStep.workflow_id == workflow_id,
                WorkflowStep.organization_id == self.organization_id,
            )
            .order_by(WorkflowStep.step_order)
        )
        return result.scalars().all()

    async def has_executions(self, workflow_id: str) -> bool:
        result = await self.db.execute(
            select(func.count())
            .select_from(Execution)
            .where(
                Execution.workflow_id == workflow_id,
                Execution.organization_id == self.organization_id,
            )
        )
        return (result.scalar() or 0) > 0

    async def list_versions(self, family_id: str) -> Sequence[Workflow]:
        """All versions of one workflow, oldest first."""
        result = await self.db.execute(
            self._scoped(select(Workflow).where(Workflow.family_id == family_id))
            .order_by(Workflow.version)
        )
        return result.scalars().all()

    async def get_latest_version(self, family_id: str) -> Optional[Workflow]:
        versions = await self.list_versions(family_id)
        return versions[-1] if versions else None

    # ─── Update ────────────────────────────────────────────

    async def update_workflow(self, workflow_id: str, data: WorkflowUpdate) -> Workflow:
        """Apply a partial update.

        A workflow referenced by any execution is immutable: changes are
        written to a new version row sharing the same family_id. The new
        version keeps the old status; an active old version is deprecated.
        """
        workflow = await self.get_or_404(workflow_id)
        changes = {
            k: v for k, v in data.model_dump(exclude_unset=True, exclude={"steps"}).items()
            if v is not None
        }

        if data.steps is not None:
            validate_definition(data.steps, self.registry)

        if await self.has_executions(workflow_id):
            return await self._create_version(workflow, changes, data.steps)

        for key, value in changes.items():
            setattr(workflow, key, value)

        if data.steps is not None:
            # Old rows must be gone before the new ones claim their orders and keys
            workflow.steps.clear()
            await self.db.flush()
            workflow.steps.extend(self._build_steps(workflow.id, data.steps))

        await self.db.flush()
        logger.info(f"Updated workflow {workflow.id} in place (version {workflow.version})")
        return workflow

    async def _create_version(
        self,
        current: Workflow,
        changes: dict,
        steps: Optional[Sequence[StepCreate]],
    ) -> Workflow:
        latest = await self.get_latest_version(current.family_id)
        new_id = str(uuid4())

        fields = {name: getattr(current, name) for name in _DEFINITION_FIELDS}
        fields.update(changes)
        new_version = Workflow(
            id=new_id,
            family_id=current.family_id,
            organization_id=self.organization_id,
            version=(latest.version if latest else current.version) + 1,
            status=current.status,
            **fields,
        )

        if steps is None:
            steps = [StepCreate.model_validate(step, from_attributes=True) for step in current.steps]
        new_version.steps = self._build_steps(new_id, steps)
        self.db.add(new_version)

        if current.status == WorkflowStatus.ACTIVE.value:
            current.status = WorkflowStatus.DEPRECATED.value

        await self.db.flush()
        logger.info(
            f"Workflow {current.id} is referenced by executions; "
            f"created version {new_version.version} as {new_version.id}"
        )
        return new_version

    async def _set_status(self, workflow_id: str, status: WorkflowStatus) -> Workflow:
        workflow = await self.get_or_404(workflow_id)
        current = WorkflowStatus(workflow.status)
        if current == status:
            return workflow
        if status not in _STATUS_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, status.value)

        if status == WorkflowStatus.ACTIVE:
            # Definitions may predate handler registrations; re-check before going live
            validate_definition(list(workflow.steps), self.registry)

        workflow.status = status.value
        await self.db.flush()
        logger.info(f"Workflow {workflow.id} status {current.value} -> {status.value}")
        return workflow

    async def publish(self, workflow_id: str) -> Workflow:
        """Make a workflow runnable."""
        return await self._set_status(workflow_id, WorkflowStatus.ACTIVE)

    async def archive(self, workflow_id: str) -> Workflow:
        return await self._set_status(workflow_id, WorkflowStatus.ARCHIVED)

    async def deprecate(self, workflow_id: str) -> Workflow:
        return await self._set_status(workflow_id, WorkflowStatus.DEPRECATED)

    # ─── Delete ────────────────────────────────────────────

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Soft-delete a workflow that has no unfinished executions."""
        workflow = await self.get_or_404(workflow_id)
        result = await self.db.execute(
            select(func.count())
            .select_from(Execution)
            .where(
                Execution.workflow_id == workflow.id,
                Execution.organization_id == self.organization_id,
                Execution.status.notin_([s.value for s in TERMINAL_EXECUTION_STATUSES]),
            )
        )
        if result.scalar():
            raise ValidationError(f"Workflow {workflow_id} has unfinished executions")
        return await self.soft_delete(workflow_id)

    # ─── Statistics ────────────────────────────────────────

    async def get_workflow_summary(self, workflow_id: str, all_versions: bool = True) -> WorkflowSummary:
        """Aggregate execution statistics for a workflow.

        Args:
            workflow_id: Any version of the workflow
            all_versions: Include executions of every version in the family

        Success rate is completed runs over finished (terminal) runs.
        """
        workflow = await self.get_or_404(workflow_id)
        if all_versions:
            ids = [w.id for w in await self.list_versions(workflow.family_id)]
        else:
            ids = [workflow.id]

        scope = (
            Execution.organization_id == self.organization_id,
            Execution.workflow_id.in_(ids),
        )

        rows = await self.db.execute(
            select(Execution.status, func.count()).where(*scope).group_by(Execution.status)
        )
        status_counts = {status: count for status, count in rows.all()}
        total = sum(status_counts.values())

        finished = sum(
            count for status, count in status_counts.items()
            if ExecutionStatus(status).is_terminal
        )
        completed = status_counts.get(ExecutionStatus.COMPLETED.value, 0)

        aggregates = await self.db.execute(
            select(func.avg(Execution.duration_ms), func.max(Execution.created_at)).where(*scope)
        )
        average_duration, last_run_at = aggregates.one()

        return WorkflowSummary(
            workflow_id=workflow.id,
            total_runs=total,
            status_counts=status_counts,
            success_rate=round(completed / finished * 100, 2) if finished else 0.0,
            average_duration_ms=round(float(average_duration), 2) if average_duration is not None else None,
            last_run_at=last_run_at,
        )
