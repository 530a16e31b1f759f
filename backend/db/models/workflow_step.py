"""WorkflowStep model for the playbook engine."""

from typing import Optional

from sqlalchemy import JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import TenantModel


class WorkflowStep(TenantModel):
    """WorkflowStep model representing a single node of the step graph.

    Attributes:
        id: Unique identifier (UUID string)
        workflow_id: Foreign key to Workflow
        key: Caller-facing identifier, unique within the workflow
        name: Step name
        step_type: Registered handler variant (e.g. 'data_transform')
        step_order: Position in the natural execution order
        config: Handler configuration
        input_mapping: Target field -> expression
        condition: Optional guard {field, operator, value}
        on_success_step: Key of the step to run after success
        on_failure_step: Key of the step to run after exhausted failure
        timeout_ms: Per-attempt timeout override
        max_retries: Retry budget override
        retry_policy: Backoff override (see RetryStrategy.from_dict)
        is_optional: Failure continues at the natural next step
    """

    __tablename__ = "workflow_steps"
    __table_args__ = (
        UniqueConstraint("workflow_id", "step_order", name="uq_workflow_step_order"),
        UniqueConstraint("workflow_id", "key", name="uq_workflow_step_key"),
    )

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    key: Mapped[str] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(nullable=False)
    step_type: Mapped[str] = mapped_column(nullable=False, index=True)
    step_order: Mapped[int] = mapped_column(nullable=False)
    config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    input_mapping: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    condition: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    on_success_step: Mapped[Optional[str]] = mapped_column(nullable=True)
    on_failure_step: Mapped[Optional[str]] = mapped_column(nullable=True)
    timeout_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    max_retries: Mapped[Optional[int]] = mapped_column(nullable=True)
    retry_policy: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_optional: Mapped[bool] = mapped_column(default=False)

    # Relationships
    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="steps", lazy="noload"
    )
