"""Playbook Engine - process lifecycle.

``engine_lifespan`` wires logging, the database, the execution engine and
its dispatcher for a host process (a web app, a worker, a script), and
re-dispatches interrupted executions on startup::

    async with engine_lifespan() as dispatcher:
        await dispatcher.create_and_dispatch(org_id, ExecutionCreate(...))
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from app.config import Settings, get_settings
from core.logging_config import setup_logging
from db.session import AsyncSessionLocal, close_db, init_db
from integrations.claude_client import get_claude_client
from workflow.dispatcher import ExecutionDispatcher
from workflow.engine import ExecutionEngine, default_worker_id
from workflow.progress import get_progress_broadcaster

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def engine_lifespan(
    settings: Optional[Settings] = None,
    recover: bool = True,
    shutdown_timeout: float = 10.0,
) -> AsyncIterator[ExecutionDispatcher]:
    """Start the engine, yield its dispatcher, and stop it cleanly."""
    # Startup
    settings = settings or get_settings()
    worker_id = default_worker_id()
    setup_logging(settings, worker_id=worker_id)
    await init_db()

    claude = get_claude_client()
    if claude.is_configured:
        logger.info("Claude AI configured", model=settings.CLAUDE_MODEL)
    else:
        logger.info("Claude AI not configured (set ANTHROPIC_API_KEY to enable agent steps)")

    engine = ExecutionEngine(
        session_factory=AsyncSessionLocal,
        settings=settings,
        broadcaster=get_progress_broadcaster(),
        worker_id=worker_id,
    )
    dispatcher = ExecutionDispatcher(engine)
    logger.info("Execution engine ready", worker_id=engine.worker_id, handlers=len(engine.registry.available_types))

    # Recover interrupted executions from a previous run
    if recover:
        recovered = await dispatcher.recover()
        logger.info("Recovery scan finished", recovered=recovered)

    logger.info("Engine started", app=settings.APP_NAME, version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
    try:
        yield dispatcher
    finally:
        # Shutdown
        await dispatcher.shutdown(timeout=shutdown_timeout)
        await claude.close()
        await close_db()
        logger.info("Engine stopped")
