"""
Module: approval_kernel.models.instance
Responsibility: ORM persistence for workflow instances and approval records.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Lifecycle: DB check constraint limits status values; the service layer
      enforces transition rules; an ORM listener refuses any UPDATE of an
      instance whose stored status is already terminal.
    - One record per approver per step: UNIQUE(instance_id, step_id,
      approver_id).  Later decisions overwrite the row in place.
    - Optimistic concurrency: the instance row carries a version_id_col.
      Every changed decision touches the row, so the read-aggregate-transition
      unit for one instance can only commit once per version.

Failure modes:
    - StaleDataError when a concurrent unit bumped the version first.
    - IntegrityError on a duplicate (instance, step, approver) record.
    - ImmutabilityViolationError on UPDATE of a terminal instance.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, TimestampedBase, UUIDString, as_utc
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.workflow import ApprovalRecord, WorkflowInstance

_TERMINAL_STATUS_VALUES = frozenset({"approved", "rejected", "cancelled"})


class WorkflowInstanceModel(TimestampedBase):
    """Persistent workflow instance.

    Contract:
        ``steps_snapshot`` is written once at creation and never changed;
        later template edits do not reach running instances.
    """

    __tablename__ = "workflow_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'pending', 'approved', 'rejected', 'cancelled')",
            name="ck_workflow_instances_valid_status",
        ),
        CheckConstraint(
            "current_step_index >= 0",
            name="ck_workflow_instances_step_index",
        ),
        Index("ix_workflow_instances_requester_status", "requester_id", "status"),
        Index("ix_workflow_instances_status_activated", "status", "step_activated_at"),
        Index("ix_workflow_instances_template", "template_id"),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_templates.id"),
        nullable=False,
    )
    template_version: Mapped[int] = mapped_column(Integer, nullable=False)
    requester_id: Mapped[str] = mapped_column(String(200), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    current_step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    steps_snapshot: Mapped[list] = mapped_column(JSON, nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    step_activated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    cancelled_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<WorkflowInstance {self.id} status={self.status} "
            f"step={self.current_step_index} v{self.version}>"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATUS_VALUES

    def to_dto(self) -> WorkflowInstance:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.workflow import (
            InstanceStatus,
            StepDefinition,
            WorkflowInstance,
        )

        return WorkflowInstance(
            id=self.id,
            template_id=self.template_id,
            template_version=self.template_version,
            requester_id=self.requester_id,
            status=InstanceStatus(self.status),
            steps=tuple(StepDefinition.from_snapshot(s) for s in self.steps_snapshot),
            current_step_index=self.current_step_index,
            payload=dict(self.payload or {}),
            version=self.version,
            created_at=as_utc(self.created_at),
            submitted_at=as_utc(self.submitted_at),
            step_activated_at=as_utc(self.step_activated_at),
            updated_at=as_utc(self.updated_at),
            completed_at=as_utc(self.completed_at),
            cancelled_by=self.cancelled_by,
        )


class ApprovalRecordModel(Base):
    """One approver's standing decision on one step of one instance."""

    __tablename__ = "approval_records"

    __table_args__ = (
        UniqueConstraint(
            "instance_id", "step_id", "approver_id",
            name="uq_approval_records_approver",
        ),
        CheckConstraint(
            "decision IN ('pending', 'approved', 'rejected')",
            name="ck_approval_records_decision",
        ),
        Index("ix_approval_records_instance", "instance_id", "step_id"),
        Index("ix_approval_records_approver", "approver_id", "decision"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_instances.id"),
        nullable=False,
    )
    step_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    approver_id: Mapped[str] = mapped_column(String(200), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    comment: Mapped[str] = mapped_column(Text, default="", nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRecord {self.id} instance={self.instance_id} "
            f"approver={self.approver_id} decision={self.decision}>"
        )

    def to_dto(self) -> ApprovalRecord:
        from approval_kernel.domain.workflow import ApprovalRecord, Decision

        return ApprovalRecord(
            id=self.id,
            instance_id=self.instance_id,
            step_id=self.step_id,
            approver_id=self.approver_id,
            decision=Decision(self.decision),
            comment=self.comment,
            decided_at=as_utc(self.decided_at),
            created_at=as_utc(self.created_at),
        )


# =============================================================================
# ORM-Level protection of terminal instances
# =============================================================================


@event.listens_for(WorkflowInstanceModel, "before_update")
def prevent_terminal_instance_update(mapper, connection, target):
    """Refuse to UPDATE an instance whose stored status is terminal."""
    history = inspect(target).attrs.status.history
    if history.deleted:
        stored = history.deleted[0]
    else:
        stored = target.status
    if stored in _TERMINAL_STATUS_VALUES:
        raise ImmutabilityViolationError(
            entity_type="WorkflowInstance",
            entity_id=str(target.id),
            reason=f"Instance is {stored} -- terminal instances cannot be modified",
        )
