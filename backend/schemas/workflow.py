"""Workflow definition schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StepCreate(BaseModel):
    """One step of a workflow definition."""

    key: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_\-]+$", description="Unique step identifier within the workflow")
    name: str = Field(min_length=1, description="Human-readable step name")
    step_type: str = Field(min_length=1, description="Registered handler type (e.g. 'data_transform')")
    step_order: int = Field(ge=0, description="Position in natural execution order")
    config: Dict[str, Any] = Field(default_factory=dict, description="Handler configuration")
    input_mapping: Dict[str, Any] = Field(default_factory=dict, description="Target field -> expression")
    condition: Optional[Dict[str, Any]] = Field(default=None, description="Guard {field, operator, value}")
    on_success_step: Optional[str] = Field(default=None, description="Step key to run after success")
    on_failure_step: Optional[str] = Field(default=None, description="Step key to run after exhausted failure")
    timeout_ms: Optional[int] = Field(default=None, description="Per-attempt timeout override")
    max_retries: Optional[int] = Field(default=None, description="Retry budget override")
    retry_policy: Optional[Dict[str, Any]] = Field(default=None, description="Backoff override")
    is_optional: bool = Field(default=False, description="Failure does not fail the execution")


class StepResponse(StepCreate):
    """Persisted step."""

    id: str = Field(description="Step ID")
    workflow_id: str = Field(description="Workflow ID")

    class Config:
        from_attributes = True


class WorkflowCreate(BaseModel):
    """Request to create a workflow definition."""

    name: str = Field(min_length=1, description="Workflow name")
    description: str = Field(default="", description="Workflow description")
    steps: List[StepCreate] = Field(min_length=1, description="Ordered steps")
    input_schema: Optional[Dict[str, Any]] = Field(default=None, description="Declared input shape")
    output_schema: Optional[Dict[str, Any]] = Field(default=None, description="Declared output shape")
    default_timeout_ms: Optional[int] = Field(default=None, description="Step timeout default")
    default_max_retries: Optional[int] = Field(default=None, description="Step retry default")
    max_duration_ms: Optional[int] = Field(default=None, description="Whole-execution time limit")
    tags: List[str] = Field(default_factory=list, description="Labels")


class WorkflowUpdate(BaseModel):
    """Partial update of a workflow definition.

    Changing ``steps`` on a workflow that has executions creates a new version.
    """

    name: Optional[str] = Field(default=None, min_length=1, description="Workflow name")
    description: Optional[str] = Field(default=None, description="Workflow description")
    steps: Optional[List[StepCreate]] = Field(default=None, description="Replacement step list")
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    default_timeout_ms: Optional[int] = None
    default_max_retries: Optional[int] = None
    max_duration_ms: Optional[int] = None
    tags: Optional[List[str]] = None


class WorkflowResponse(BaseModel):
    """Workflow definition response."""

    id: str = Field(description="Workflow ID")
    family_id: str = Field(description="ID shared by all versions")
    organization_id: str = Field(description="Owning organization")
    name: str
    description: str
    version: int
    status: str
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    default_timeout_ms: Optional[int] = None
    default_max_retries: Optional[int] = None
    max_duration_ms: Optional[int] = None
    tags: Optional[List[str]] = None
    steps: List[StepResponse] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WorkflowSummary(BaseModel):
    """Aggregate statistics over a workflow's executions."""

    workflow_id: str
    total_runs: int = 0
    status_counts: Dict[str, int] = Field(default_factory=dict)
    success_rate: float = Field(default=0.0, description="Completed / finished runs, in percent")
    average_duration_ms: Optional[float] = None
    last_run_at: Optional[datetime] = None

