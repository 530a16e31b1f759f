"""Background dispatch of executions onto the event loop.

``create_and_dispatch`` answers the caller as soon as the pending row is
committed; the engine then runs in an ``asyncio`` task. Task references
are held until completion so they are not garbage collected mid-run.
"""

import asyncio
import logging
from typing import Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import ExecutionStatus
from schemas.execution import ExecutionCreate, ExecutionCreated
from services.execution_service import ExecutionService
from workflow.engine import ExecutionEngine
from workflow.store import find_recoverable_executions

logger = logging.getLogger(__name__)


class ExecutionDispatcher:
    """Creates executions and runs them in background tasks."""

    def __init__(self, engine: ExecutionEngine, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.engine = engine
        self.session_factory = session_factory or engine.session_factory
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def create_and_dispatch(self, organization_id: str, data: ExecutionCreate) -> ExecutionCreated:
        """Persist a pending execution and start it in the background.

        Raises:
            NotFoundError / ValidationError: from ExecutionService.create_execution
        """
        async with self.session_factory() as db:
            execution = await ExecutionService(db, organization_id).create_execution(data)
            await db.commit()

        self.dispatch(execution.id, organization_id)
        return ExecutionCreated(execution_id=execution.id, status=ExecutionStatus.PENDING.value)

    def dispatch(self, execution_id: str, organization_id: str) -> asyncio.Task:
        """Run an execution in a background task."""
        task = asyncio.create_task(
            self.engine.run(execution_id, organization_id),
            name=f"execution:{execution_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.info(f"Execution {execution_id} dispatched (org: {organization_id})")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Execution task {task.get_name()} failed: {error}", exc_info=error)

    async def resume(self, organization_id: str, execution_id: str) -> Optional[asyncio.Task]:
        """Resume a paused execution (or withdraw a pending pause request)."""
        async with self.session_factory() as db:
            execution = await ExecutionService(db, organization_id).resume(execution_id)
            await db.commit()

        if execution.status == ExecutionStatus.PAUSED.value:
            return self.dispatch(execution_id, organization_id)
        return None

    async def recover(self) -> int:
        """Re-dispatch pending executions and running ones whose worker went silent.

        Returns:
            Number of executions dispatched
        """
        stale_after = self.engine.settings.ENGINE_STALE_EXECUTION_SECONDS
        recoverable = await find_recoverable_executions(self.session_factory, stale_after)
        for organization_id, execution_id in recoverable:
            self.dispatch(execution_id, organization_id)
        if recoverable:
            logger.info(f"Recovered {len(recoverable)} execution(s)")
        return len(recoverable)

    async def wait_idle(self) -> None:
        """Wait for every dispatched execution to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Give running executions ``timeout`` seconds, then cancel the rest.

        Cancelled executions stay RUNNING and are picked up by ``recover()``
        once their heartbeat goes stale.
        """
        if not self._tasks:
            return
        done, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} execution task(s) at shutdown")
