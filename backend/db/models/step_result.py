"""StepResult model: one row per step attempt."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import StepResultStatus
from db.base import TenantModel


class StepResult(TenantModel):
    """Record of a single attempt (or skip) of a step within an execution.

    Retries append new rows with a higher `attempt`; prior rows are never
    rewritten once the attempt has finished.

    Attributes:
        execution_id: Foreign key to Execution
        step_id: WorkflowStep id
        step_key / step_order: Denormalized step identity
        sequence: Global write order within the execution
        attempt: 1-based attempt number for this step visit
        status: pending, running, completed, failed, skipped, timeout
        input_data: Resolved input snapshot
        output_data: Handler output (completed only)
        error_message / error_detail: Failure information
        next_step_id: Key of the step routed to after the final attempt
        started_at / completed_at / duration_ms: Timing
    """

    __tablename__ = "step_results"

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_id: Mapped[str] = mapped_column(nullable=False, index=True)
    step_key: Mapped[str] = mapped_column(nullable=False)
    step_order: Mapped[int] = mapped_column(nullable=False)
    sequence: Mapped[int] = mapped_column(nullable=False)
    attempt: Mapped[int] = mapped_column(default=1)
    status: Mapped[str] = mapped_column(
        default=StepResultStatus.PENDING.value, index=True
    )
    input_data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    output_data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(nullable=True)

    # Relationships
    execution: Mapped["Execution"] = relationship(
        "Execution", back_populates="step_results", lazy="noload"
    )
