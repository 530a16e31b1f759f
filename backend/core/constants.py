"""Constants and enums for the playbook engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMEOUT,
})

# Allowed execution state transitions: from -> {to}
EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.RUNNING,  # heartbeat / stale re-claim
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
    }),
    ExecutionStatus.PAUSED: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
    ExecutionStatus.TIMEOUT: frozenset(),
}


class StepResultStatus(str, Enum):
    """Status of a single step attempt."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


class TriggerSource(str, Enum):
    """How an execution was started."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    API = "api"
    EVENT = "event"


class WorkflowStatus(str, Enum):
    """Workflow definition status."""

    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"
    DEPRECATED = "deprecated"


class StepType(str, Enum):
    """Built-in step handler variants."""

    AGENT_INVOCATION = "agent_invocation"
    DATA_TRANSFORM = "data_transform"
    CONDITIONAL_BRANCH = "conditional_branch"
    EXTERNAL_CALL = "external_call"
    MEMORY_SEARCH = "memory_search"
    TEMPLATE_RESOLUTION = "template_resolution"
    CUSTOM_FUNCTION = "custom_function"


# Reserved for concurrent branches; not executable yet.
PARALLEL_STEP_TYPE = "parallel"


class BranchOutcome(str, Enum):
    """Routing directive a handler may report."""

    SUCCESS = "success"
    FAILURE = "failure"
