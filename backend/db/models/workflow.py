"""Workflow definition model for the playbook engine."""

from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import WorkflowStatus
from db.base import SoftDeleteMixin, TenantModel


class Workflow(SoftDeleteMixin, TenantModel):
    """Workflow model representing a versioned playbook definition.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning tenant
        family_id: Identifier shared by every version of the same workflow
        name: Workflow name
        description: Workflow description
        version: Version number within the family (starts at 1)
        status: Definition status (draft, active, archived, deprecated)
        input_schema: Declared shape of execution input
        output_schema: Declared shape of execution output
        default_timeout_ms: Per-step timeout used when a step has none
        default_max_retries: Per-step retry budget used when a step has none
        max_duration_ms: Optional wall-clock limit for a whole execution
        tags: Free-form labels
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "workflows"

    family_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    version: Mapped[int] = mapped_column(default=1)
    status: Mapped[str] = mapped_column(
        default=WorkflowStatus.DRAFT.value, index=True
    )
    input_schema: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    output_schema: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    default_timeout_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    default_max_retries: Mapped[Optional[int]] = mapped_column(nullable=True)
    max_duration_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Relationships
    steps: Mapped[list["WorkflowStep"]] = relationship(
        "WorkflowStep",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.step_order",
        lazy="selectin",
    )
    executions: Mapped[list["Execution"]] = relationship(
        "Execution",
        back_populates="workflow",
        lazy="noload",
    )
