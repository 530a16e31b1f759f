"""Execution state store used by the engine.

Wraps the tenant-scoped services behind a session factory so every engine
write is one short transaction. Writes to an execution row are guarded by
its ``version`` column: ``UPDATE ... WHERE version = :expected`` bumps the
version, and an update that touches no rows means another worker holds the
execution (ConflictError). The in-memory ``ExecutionClaim`` only advances
after a write commits.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Sequence
from uuid import uuid4

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import EXECUTION_TRANSITIONS, ExecutionStatus, StepResultStatus
from core.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from core.utils import utc_now
from db.models.execution import Execution
from db.models.step_result import StepResult
from db.models.workflow import Workflow
from services.execution_service import ExecutionService, StepResultService
from services.workflow_service import WorkflowService
from workflow.expressions import ExpressionContext

logger = structlog.get_logger(__name__)

ABANDONED_ATTEMPT_MESSAGE = "Attempt abandoned: worker lost its claim before finishing"


@dataclass
class ExecutionClaim:
    """A worker's hold on one execution.

    ``version`` and ``status`` mirror the row as of this worker's last
    committed write.
    """

    execution_id: str
    organization_id: str
    worker_id: str
    version: int
    status: ExecutionStatus


def rebuild_context(input_data: Optional[dict], history: Sequence[StepResult]) -> ExpressionContext:
    """Expression context from persisted attempts (completed ones only)."""
    context = ExpressionContext(input=dict(input_data or {}))
    for result in history:
        if result.status == StepResultStatus.COMPLETED.value:
            context.record_output(result.step_order, result.step_key, result.output_data)
    return context


class ExecutionStore:
    """Persistence gateway for one tenant's executions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], organization_id: str):
        self._session_factory = session_factory
        self.organization_id = organization_id

    # ─── Read ──────────────────────────────────────────────

    async def get_execution(self, execution_id: str) -> Execution:
        async with self._session_factory() as db:
            return await ExecutionService(db, self.organization_id).get_or_404(execution_id)

    async def load_definition(self, workflow_id: str) -> Workflow:
        """Workflow version with its steps loaded."""
        async with self._session_factory() as db:
            service = WorkflowService(db, self.organization_id)
            # Executions keep running against the exact version they were created for
            workflow = await service.get_by_id(workflow_id, include_deleted=True)
            if workflow is None:
                raise NotFoundError(f"Workflow {workflow_id} not found")
            return workflow

    async def load_history(self, execution_id: str) -> Sequence[StepResult]:
        async with self._session_factory() as db:
            return await StepResultService(db, self.organization_id).list_for_execution(execution_id)

    async def refresh(self, claim: ExecutionClaim) -> Execution:
        """Re-read the row and confirm this worker still holds it.

        Raises:
            ConflictError: another worker has claimed or written the execution
        """
        execution = await self.get_execution(claim.execution_id)
        if execution.version != claim.version or execution.worker_id != claim.worker_id:
            raise ConflictError(
                f"Execution {claim.execution_id} is now held by {execution.worker_id} "
                f"(version {execution.version}, expected {claim.version})"
            )
        return execution

    # ─── Claim ─────────────────────────────────────────────

    async def claim(self, execution_id: str, worker_id: str, stale_after_seconds: float) -> ExecutionClaim:
        """Take ownership of an execution and move it to RUNNING.

        Pending and paused executions can always be claimed. A running one
        can be claimed only when its heartbeat is older than
        ``stale_after_seconds`` (its worker is presumed dead). Attempts the
        previous worker left RUNNING are closed as FAILED and taken back out
        of ``step_visits``.

        Raises:
            ConflictError: the row changed underneath us, or a live worker holds it
            InvalidTransitionError: the execution is already finished
        """
        now = utc_now()
        async with self._session_factory() as db:
            async with db.begin():
                execution = await ExecutionService(db, self.organization_id).get_or_404(execution_id)
                status = ExecutionStatus(execution.status)

                if status == ExecutionStatus.RUNNING:
                    heartbeat = execution.heartbeat_at
                    if heartbeat is not None and heartbeat > now - timedelta(seconds=stale_after_seconds):
                        raise ConflictError(
                            f"Execution {execution_id} is held by live worker {execution.worker_id}"
                        )
                elif ExecutionStatus.RUNNING not in EXECUTION_TRANSITIONS[status]:
                    raise InvalidTransitionError(status.value, ExecutionStatus.RUNNING.value)

                # Attempts the previous worker never finished do not count as visits
                abandoned = await db.execute(
                    update(StepResult)
                    .where(
                        StepResult.execution_id == execution_id,
                        StepResult.organization_id == self.organization_id,
                        StepResult.status == StepResultStatus.RUNNING.value,
                    )
                    .values(
                        status=StepResultStatus.FAILED.value,
                        error_message=ABANDONED_ATTEMPT_MESSAGE,
                        completed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

                result = await db.execute(
                    update(Execution)
                    .where(
                        Execution.id == execution_id,
                        Execution.organization_id == self.organization_id,
                        Execution.version == execution.version,
                    )
                    .values(
                        status=ExecutionStatus.RUNNING.value,
                        version=Execution.version + 1,
                        worker_id=worker_id,
                        heartbeat_at=now,
                        started_at=execution.started_at or now,
                        pause_requested=False,
                        step_visits=max(0, (execution.step_visits or 0) - abandoned.rowcount),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError(f"Execution {execution_id} was claimed concurrently")

        if abandoned.rowcount:
            logger.warning(
                "Closed abandoned attempts",
                execution_id=execution_id,
                count=abandoned.rowcount,
                previous_worker=execution.worker_id,
            )
        logger.info(
            "Execution claimed",
            execution_id=execution_id,
            worker_id=worker_id,
            from_status=status.value,
            version=execution.version + 1,
        )
        return ExecutionClaim(
            execution_id=execution_id,
            organization_id=self.organization_id,
            worker_id=worker_id,
            version=execution.version + 1,
            status=ExecutionStatus.RUNNING,
        )

    async def heartbeat(self, claim: ExecutionClaim) -> bool:
        """Refresh ``heartbeat_at`` without bumping the version.

        Returns False when the row has moved on; the next guarded write
        decides whether the claim is really lost.
        """
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(Execution)
                    .where(
                        Execution.id == claim.execution_id,
                        Execution.organization_id == self.organization_id,
                        Execution.version == claim.version,
                        Execution.worker_id == claim.worker_id,
                    )
                    .values(heartbeat_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    # ─── Guarded writes ────────────────────────────────────

    async def _guarded_update(self, db: AsyncSession, claim: ExecutionClaim, values: dict[str, Any]) -> ExecutionStatus:
        target = claim.status
        if "status" in values:
            target = ExecutionStatus(values["status"])
            if target not in EXECUTION_TRANSITIONS[claim.status]:
                raise InvalidTransitionError(claim.status.value, target.value)
            values["status"] = target.value

        result = await db.execute(
            update(Execution)
            .where(
                Execution.id == claim.execution_id,
                Execution.organization_id == self.organization_id,
                Execution.version == claim.version,
            )
            .values(version=Execution.version + 1, heartbeat_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Execution {claim.execution_id} version {claim.version} is stale; claim lost"
            )
        return target

    async def update_execution(self, claim: ExecutionClaim, **values: Any) -> None:
        """Version-checked update of the execution row (status changes validated)."""
        async with self._session_factory() as db:
            async with db.begin():
                status = await self._guarded_update(db, claim, values)
        claim.version += 1
        claim.status = status

    async def start_attempt(self, claim: ExecutionClaim, result_fields: dict[str, Any], **values: Any) -> str:
        """Insert a RUNNING attempt row and update the execution atomically."""
        result_id = str(uuid4())
        async with self._session_factory() as db:
            async with db.begin():
                status = await self._guarded_update(db, claim, values)
                await StepResultService(db, self.organization_id).create({
                    "id": result_id,
                    "execution_id": claim.execution_id,
                    "status": StepResultStatus.RUNNING.value,
                    **result_fields,
                })
        claim.version += 1
        claim.status = status
        return result_id

    async def finish_attempt(
        self,
        claim: ExecutionClaim,
        result_id: str,
        result_fields: dict[str, Any],
        **values: Any,
    ) -> None:
        """Finalize an attempt row and update the execution atomically."""
        async with self._session_factory() as db:
            async with db.begin():
                status = await self._guarded_update(db, claim, values)
                await db.execute(
                    update(StepResult)
                    .where(
                        StepResult.id == result_id,
                        StepResult.execution_id == claim.execution_id,
                        StepResult.organization_id == self.organization_id,
                    )
                    .values(**result_fields)
                    .execution_options(synchronize_session=False)
                )
        claim.version += 1
        claim.status = status

    async def record_result(self, claim: ExecutionClaim, result_fields: dict[str, Any], **values: Any) -> str:
        """Insert an already-final StepResult (e.g. SKIPPED) atomically with an execution update."""
        result_id = str(uuid4())
        async with self._session_factory() as db:
            async with db.begin():
                status = await self._guarded_update(db, claim, values)
                await StepResultService(db, self.organization_id).create({
                    "id": result_id,
                    "execution_id": claim.execution_id,
                    **result_fields,
                })
        claim.version += 1
        claim.status = status
        return result_id


async def find_recoverable_executions(
    session_factory: async_sessionmaker[AsyncSession],
    stale_after_seconds: float,
) -> list[tuple[str, str]]:
    """(organization_id, execution_id) of every pending or stale running execution.

    Used at startup across tenants; paused executions wait for an explicit resume.
    """
    cutoff = utc_now() - timedelta(seconds=stale_after_seconds)
    async with session_factory() as db:
        result = await db.execute(
            select(Execution.organization_id, Execution.id)
            .where(
                or_(
                    Execution.status == ExecutionStatus.PENDING.value,
                    and_(
                        Execution.status == ExecutionStatus.RUNNING.value,
                        or_(Execution.heartbeat_at.is_(None), Execution.heartbeat_at < cutoff),
                    ),
                )
            )
            .order_by(Execution.created_at)
        )
        return [(org_id, execution_id) for org_id, execution_id in result.all()]
