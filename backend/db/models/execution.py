"""Execution model for the playbook engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus, TriggerSource
from db.base import TenantModel


class Execution(TenantModel):
    """Execution model representing one run of a workflow definition.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning tenant
        workflow_id: Foreign key to the exact Workflow version being run
        name: Optional human-readable label
        trigger_source: manual, scheduled, webhook, api, event
        status: pending, running, paused, completed, failed, cancelled, timeout
        input_data: Initial payload
        output_data: Collected step outputs once completed
        current_step_id: Key of the step being (or about to be) executed
        completed_steps: Number of step completions so far
        total_steps: Number of steps in the definition
        error_message: Terminal error summary
        error_detail: Traceback or handler detail for the terminal error
        started_at / completed_at / duration_ms: Timing
        version: Optimistic concurrency counter, bumped on every engine write
        worker_id: Worker currently holding the claim
        heartbeat_at: Last time the claiming worker wrote to the row
        cancel_requested / pause_requested: Cooperative control flags
        step_visits: Handler attempts made so far (cycle circuit breaker)
        webhook_url: Optional endpoint notified when the run reaches a terminal status
    """

    __tablename__ = "executions"

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[Optional[str]] = mapped_column(nullable=True)
    trigger_source: Mapped[str] = mapped_column(
        default=TriggerSource.MANUAL.value, index=True
    )
    status: Mapped[str] = mapped_column(
        default=ExecutionStatus.PENDING.value, index=True
    )
    input_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    output_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    current_step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    completed_steps: Mapped[int] = mapped_column(default=0)
    total_steps: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(default=1, nullable=False)
    worker_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    cancel_requested: Mapped[bool] = mapped_column(default=False)
    pause_requested: Mapped[bool] = mapped_column(default=False)
    step_visits: Mapped[int] = mapped_column(default=0)
    webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="executions", lazy="noload"
    )
    step_results: Mapped[list["StepResult"]] = relationship(
        "StepResult",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="StepResult.sequence",
        lazy="noload",
    )

    @property
    def is_terminal(self) -> bool:
        return ExecutionStatus(self.status).is_terminal
