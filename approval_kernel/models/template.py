"""
Module: approval_kernel.models.template
Responsibility: ORM persistence for workflow templates and their steps.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Step orders are unique within a template: UNIQUE(template_id, step_order).
    - Optimistic concurrency: the template row carries a version_id_col, so
      two administrators editing the same template cannot both commit.
    - Templates are soft-deleted (is_active); rows are never removed while
      instances reference them.

Failure modes:
    - StaleDataError when a concurrent edit bumped the version first.
    - IntegrityError on duplicate step order.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, TimestampedBase, UUIDString, as_utc

if TYPE_CHECKING:
    from approval_kernel.domain.workflow import StepDefinition, WorkflowTemplate


class WorkflowTemplateModel(TimestampedBase):
    """Persistent workflow template.

    Guarantees:
        - ``version`` starts at 1 and increases on every UPDATE of the row.
        - ``steps`` are loaded in ``step_order`` order.
    """

    __tablename__ = "workflow_templates"

    __table_args__ = (
        CheckConstraint(
            "domain_type IN ('leave', 'expense', 'purchase', 'custom')",
            name="ck_workflow_templates_domain_type",
        ),
        Index("ix_workflow_templates_type_active", "domain_type", "is_active"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    domain_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    allow_drafts: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    steps: Mapped[list["StepDefinitionModel"]] = relationship(
        "StepDefinitionModel",
        back_populates="template",
        order_by="StepDefinitionModel.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<WorkflowTemplate {self.id} {self.name!r} "
            f"type={self.domain_type} v{self.version}>"
        )

    def to_dto(self) -> WorkflowTemplate:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.workflow import DomainType, WorkflowTemplate

        return WorkflowTemplate(
            id=self.id,
            name=self.name,
            description=self.description,
            domain_type=DomainType(self.domain_type),
            steps=tuple(s.to_dto() for s in self.steps),
            is_active=self.is_active,
            allow_drafts=self.allow_drafts,
            version=self.version,
            created_by=self.created_by,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )


class StepDefinitionModel(Base):
    """One ordered step of a template."""

    __tablename__ = "workflow_template_steps"

    __table_args__ = (
        UniqueConstraint(
            "template_id", "step_order",
            name="uq_workflow_template_steps_order",
        ),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_templates.id"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    approver_refs: Mapped[list] = mapped_column(JSON, nullable=False)
    rule: Mapped[str] = mapped_column(String(30), nullable=False, default="ALL")

    template: Mapped["WorkflowTemplateModel"] = relationship(
        "WorkflowTemplateModel",
        back_populates="steps",
    )

    def __repr__(self) -> str:
        return f"<StepDefinition {self.step_order}:{self.name!r} {self.rule}>"

    def to_dto(self) -> StepDefinition:
        from approval_kernel.domain.workflow import AggregationRule, StepDefinition

        return StepDefinition(
            id=self.id,
            order=self.step_order,
            name=self.name,
            approver_refs=tuple(self.approver_refs),
            rule=AggregationRule.parse(self.rule),
        )

    @classmethod
    def from_dto(cls, dto: StepDefinition) -> StepDefinitionModel:
        return cls(
            id=dto.id,
            step_order=dto.order,
            name=dto.name,
            approver_refs=list(dto.approver_refs),
            rule=str(dto.rule),
        )
