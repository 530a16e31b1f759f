"""Tests for engine logging context."""

import json
import logging

import pytest
import structlog

from app.config import Settings
from core.logging_config import ProcessContext, execution_log_context, setup_logging

from conftest import make_step


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.mark.unit
class TestProcessContext:
    def test_stamps_worker_and_environment(self):
        entry = ProcessContext("host:1:abc", "staging")(None, "info", {"event": "started"})
        assert entry == {"event": "started", "worker_id": "host:1:abc", "environment": "staging"}

    def test_bound_worker_wins(self):
        entry = ProcessContext("host:1:abc", "staging")(None, "info", {"event": "x", "worker_id": "other"})
        assert entry["worker_id"] == "other"

    def test_no_worker_id(self):
        entry = ProcessContext(None, "testing")(None, "info", {"event": "x"})
        assert "worker_id" not in entry


@pytest.mark.unit
class TestExecutionLogContext:
    def test_binds_for_the_block_only(self):
        with execution_log_context("exec-1", "org-1"):
            assert structlog.contextvars.get_contextvars() == {
                "execution_id": "exec-1",
                "organization_id": "org-1",
            }
        assert "execution_id" not in structlog.contextvars.get_contextvars()

    def test_stdlib_entries_carry_worker_and_execution(self, capsys, restore_logging):
        setup_logging(Settings(ENVIRONMENT="testing", LOG_FORMAT="json"), worker_id="host:1:abc")

        with execution_log_context("exec-1", "org-1"):
            logging.getLogger("services.execution_service").info("Created execution exec-1")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        entry = json.loads(line)
        assert entry["event"] == "Created execution exec-1"
        assert entry["worker_id"] == "host:1:abc"
        assert entry["environment"] == "testing"
        assert entry["execution_id"] == "exec-1"
        assert entry["organization_id"] == "org-1"


@pytest.mark.integration
class TestEngineLogContext:
    async def test_execution_bound_while_steps_run(self, engine, org_id, hook_handler, create_workflow, create_execution):
        seen = {}

        async def capture(context):
            seen.update(structlog.contextvars.get_contextvars())

        hook_handler.hook = capture
        wf = await create_workflow([make_step("step1", 0, "hook")])
        execution_id = await create_execution(wf)

        await engine.run(execution_id, org_id)

        assert seen["execution_id"] == execution_id
        assert seen["organization_id"] == org_id
        assert "execution_id" not in structlog.contextvars.get_contextvars()
