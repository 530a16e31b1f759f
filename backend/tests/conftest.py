"""Shared pytest fixtures for the playbook engine test suite.

Provides:
- In-memory async SQLite database per test (StaticPool, one shared connection)
- AsyncSession factory wired like production (expire_on_commit=False)
- Tenant ids
- Handler registry with deterministic fake handlers and collaborators
- Helpers to create workflows and executions and to read them back
"""

import asyncio
import os
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ANTHROPIC_API_KEY", "")

from app.config import Settings  # noqa: E402
from handlers.base_handler import BaseHandler, HandlerResult, StepContext  # noqa: E402
from handlers.registry import HandlerRegistry  # noqa: E402
from integrations.claude_client import GenerationResult  # noqa: E402
from schemas.execution import ExecutionCreate  # noqa: E402
from schemas.workflow import StepCreate, WorkflowCreate  # noqa: E402
from services.execution_service import ExecutionService  # noqa: E402
from services.workflow_service import WorkflowService  # noqa: E402
from workflow.engine import ExecutionEngine  # noqa: E402
from workflow.progress import ProgressBroadcaster  # noqa: E402


# ---------------------------------------------------------------------------
# Fake handlers
# ---------------------------------------------------------------------------

class EchoHandler(BaseHandler):
    """Returns its resolved input."""

    handler_type = "echo"
    display_name = "Echo"

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        return HandlerResult(success=True, output={"echo": resolved_input, "step": context.step_key})


class FlakyHandler(BaseHandler):
    """Fails while ``context.attempt <= config.failures``, then succeeds."""

    handler_type = "flaky"
    display_name = "Flaky"

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        if context.attempt <= int(context.config.get("failures", 0)):
            return HandlerResult(success=False, error=f"transient failure on attempt {context.attempt}")
        return HandlerResult(success=True, output={"attempt": context.attempt})


class AlwaysFailHandler(BaseHandler):
    handler_type = "always_fail"
    display_name = "Always Fail"

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        return HandlerResult(
            success=False,
            error="permanent failure",
            retryable=context.config.get("retryable", True),
        )


class HangingHandler(BaseHandler):
    """Never returns on its own."""

    handler_type = "hang"
    display_name = "Hang"

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        await asyncio.Event().wait()
        return HandlerResult(success=True)


class HookHandler(BaseHandler):
    """Runs a test-supplied coroutine while the step is in flight."""

    handler_type = "hook"
    display_name = "Hook"

    def __init__(self):
        self.hook: Optional[Callable[[StepContext], Awaitable[None]]] = None

    async def execute(self, resolved_input: Any, context: StepContext) -> HandlerResult:
        if self.hook is not None:
            await self.hook(context)
        return HandlerResult(success=True, output={"hooked": context.step_key})


class FakeGenerationService:
    """Deterministic stand-in for the Claude client."""

    def __init__(self, text: Optional[str] = None):
        self.text = text
        self.calls: list[dict] = []

    @property
    def is_configured(self) -> bool:
        return True

    async def generate(self, prompt, system=None, model=None, max_tokens=None, temperature=None):
        self.calls.append({"prompt": prompt, "system": system, "model": model})
        return GenerationResult(
            text=self.text if self.text is not None else f"echo: {prompt}",
            model=model or "fake-model",
            usage={"input_tokens": len(prompt.split()), "output_tokens": 3},
            stop_reason="end_turn",
        )


class FakeMemoryService:
    def __init__(self, results: Optional[list] = None):
        self.results = results if results is not None else [
            {"id": "doc-1", "score": 0.92, "text": "Crisis playbook"},
            {"id": "doc-2", "score": 0.41, "text": "Quarterly report"},
        ]
        self.calls: list[dict] = []

    async def search(self, query, top_k=5, collection=None, filters=None):
        self.calls.append({"query": query, "top_k": top_k, "collection": collection})
        return self.results[:top_k]


def make_step(key: str, order: int, step_type: str = "echo", **fields: Any) -> StepCreate:
    return StepCreate(key=key, name=fields.pop("name", key.replace("_", " ").title()),
                      step_type=step_type, step_order=order, **fields)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database for each test."""
    from db.session import init_db

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from db.session import build_session_factory

    return build_session_factory(db_engine)


@pytest.fixture
def org_id() -> str:
    return str(uuid4())


@pytest.fixture
def other_org_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        ENGINE_RETRY_BASE_DELAY=0.0,
        ENGINE_RETRY_MAX_DELAY=0.0,
        ENGINE_DEFAULT_TIMEOUT_MS=5000,
        ENGINE_DEFAULT_MAX_RETRIES=0,
    )


@pytest.fixture
def generation_service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def memory_service() -> FakeMemoryService:
    return FakeMemoryService()


@pytest.fixture
def hook_handler() -> HookHandler:
    return HookHandler()


@pytest.fixture
def registry(generation_service, memory_service, hook_handler) -> HandlerRegistry:
    registry = HandlerRegistry(
        generation_service=generation_service,
        memory_service=memory_service,
    )
    registry.register("echo", EchoHandler())
    registry.register("flaky", FlakyHandler())
    registry.register("always_fail", AlwaysFailHandler())
    registry.register("hang", HangingHandler())
    registry.register("hook", hook_handler)
    return registry


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster(queue_size=100)


@pytest.fixture
def engine(session_factory, registry, settings, broadcaster) -> ExecutionEngine:
    return ExecutionEngine(
        session_factory=session_factory,
        registry=registry,
        settings=settings,
        broadcaster=broadcaster,
        worker_id="worker-test",
    )


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def create_workflow(session_factory, org_id, registry):
    """Create (and by default publish) a workflow; returns its id."""

    async def _create(steps, organization_id: str = None, publish: bool = True, **fields) -> str:
        async with session_factory() as db:
            service = WorkflowService(db, organization_id or org_id, registry=registry)
            workflow = await service.create_workflow(
                WorkflowCreate(name=fields.pop("name", "Test Playbook"), steps=steps, **fields)
            )
            if publish:
                await service.publish(workflow.id)
            await db.commit()
            return workflow.id

    return _create


@pytest.fixture
def create_execution(session_factory, org_id):
    async def _create(workflow_id: str, input_data: dict = None, organization_id: str = None, **fields) -> str:
        async with session_factory() as db:
            execution = await ExecutionService(db, organization_id or org_id).create_execution(
                ExecutionCreate(workflow_id=workflow_id, input_data=input_data or {}, **fields)
            )
            await db.commit()
            return execution.id

    return _create


@pytest.fixture
def get_result(session_factory, org_id):
    async def _get(execution_id: str, organization_id: str = None):
        async with session_factory() as db:
            return await ExecutionService(db, organization_id or org_id).get_result(execution_id)

    return _get


@pytest.fixture
def get_progress(session_factory, org_id):
    async def _get(execution_id: str, organization_id: str = None):
        async with session_factory() as db:
            return await ExecutionService(db, organization_id or org_id).get_progress(execution_id)

    return _get
