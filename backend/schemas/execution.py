"""Execution and step result schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.constants import TriggerSource


class ExecutionCreate(BaseModel):
    """Request to start a workflow execution."""

    workflow_id: str = Field(description="ID of the workflow version to execute")
    input_data: Dict[str, Any] = Field(default_factory=dict, description="Initial payload")
    execution_name: Optional[str] = Field(default=None, description="Optional label")
    trigger_source: TriggerSource = Field(default=TriggerSource.MANUAL, description="How the run was started")
    webhook_url: Optional[str] = Field(default=None, description="POSTed a run.<status> event when the run finishes")


class ExecutionCreated(BaseModel):
    """Immediate response to a create-execution request."""

    execution_id: str = Field(description="Execution ID")
    status: str = Field(description="Always 'pending' at creation")


class ExecutionProgress(BaseModel):
    """Progress snapshot of one execution."""

    execution_id: str = Field(description="Execution ID")
    status: str = Field(description="Execution status")
    progress_percentage: float = Field(description="completed_steps / total_steps * 100")
    current_step_name: Optional[str] = Field(default=None, description="Name of the step being executed")
    completed_steps: int = Field(default=0)
    total_steps: int = Field(default=0)
    elapsed_time_ms: int = Field(default=0, description="Time since start (or total duration once finished)")


class StepResultResponse(BaseModel):
    """One step attempt."""

    id: str
    step_id: str
    step_key: str
    step_order: int
    sequence: int
    attempt: int
    status: str
    input_data: Optional[Any] = None
    output_data: Optional[Any] = None
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    next_step_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    class Config:
        from_attributes = True


class ExecutionResponse(BaseModel):
    """Execution record."""

    id: str = Field(description="Execution ID")
    workflow_id: str = Field(description="Workflow ID")
    organization_id: str
    name: Optional[str] = None
    trigger_source: str = Field(description="manual, scheduled, webhook, api, event")
    status: str = Field(description="Execution status")
    input_data: Optional[Dict[str, Any]] = None
    output_data: Optional[Dict[str, Any]] = None
    current_step_id: Optional[str] = None
    completed_steps: int = 0
    total_steps: int = 0
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    version: int = 1
    cancel_requested: bool = False
    pause_requested: bool = False
    step_visits: int = 0
    webhook_url: Optional[str] = None

    class Config:
        from_attributes = True


class ExecutionResult(BaseModel):
    """Execution plus its ordered step attempt history."""

    execution: ExecutionResponse
    step_results: List[StepResultResponse] = Field(default_factory=list)


class ProgressEvent(BaseModel):
    """Message pushed to progress subscribers."""

    event: str = Field(description="status | step_started | step_finished")
    execution_id: str
    status: str
    step_key: Optional[str] = None
    step_status: Optional[str] = None
    attempt: Optional[int] = None
    completed_steps: int = 0
    total_steps: int = 0
    progress_percentage: float = 0.0
    error_message: Optional[str] = None
    timestamp: datetime
