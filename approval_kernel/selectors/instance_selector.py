"""
Module: approval_kernel.selectors.instance_selector
Responsibility: Read queries over workflow instances and their decision
    records: by approver, by requester, by status, decision history and
    overdue active steps.
Architecture position: Kernel > Selectors.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select

from approval_kernel.db.base import as_utc
from approval_kernel.domain.workflow import (
    ApprovalRecord,
    Decision,
    InstanceStatus,
    WorkflowInstance,
)
from approval_kernel.exceptions import InstanceNotFoundError
from approval_kernel.models.instance import ApprovalRecordModel, WorkflowInstanceModel
from approval_kernel.selectors.base import BaseSelector


def _status_value(status: InstanceStatus | str | None) -> str | None:
    if status is None:
        return None
    return InstanceStatus(status).value


class InstanceSelector(BaseSelector):
    """Queries that return ``WorkflowInstance`` / ``ApprovalRecord`` DTOs."""

    def list_by_requester(
        self,
        requester_id: str,
        status: InstanceStatus | str | None = None,
    ) -> list[WorkflowInstance]:
        query = select(WorkflowInstanceModel).where(
            WorkflowInstanceModel.requester_id == requester_id
        )
        status_value = _status_value(status)
        if status_value is not None:
            query = query.where(WorkflowInstanceModel.status == status_value)
        models = self.session.execute(
            query.order_by(WorkflowInstanceModel.created_at, WorkflowInstanceModel.id)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def list_by_approver(
        self,
        approver_id: str,
        status: InstanceStatus | str | None = None,
        awaiting_only: bool = False,
    ) -> list[WorkflowInstance]:
        """Instances on which ``approver_id`` holds a record on any step.

        With ``awaiting_only`` the result is narrowed to pending instances
        whose active step still waits on this approver.
        """
        assigned = (
            select(ApprovalRecordModel.instance_id)
            .where(ApprovalRecordModel.approver_id == approver_id)
            .distinct()
        )
        query = select(WorkflowInstanceModel).where(WorkflowInstanceModel.id.in_(assigned))
        status_value = _status_value(status)
        if status_value is not None:
            query = query.where(WorkflowInstanceModel.status == status_value)
        models = self.session.execute(
            query.order_by(WorkflowInstanceModel.created_at, WorkflowInstanceModel.id)
        ).scalars().all()
        instances = [m.to_dto() for m in models]

        if not awaiting_only:
            return instances

        waiting_on = {
            (r.instance_id, r.step_id)
            for r in self.session.execute(
                select(ApprovalRecordModel).where(
                    ApprovalRecordModel.approver_id == approver_id,
                    ApprovalRecordModel.decision == Decision.PENDING.value,
                )
            ).scalars()
        }
        return [
            i for i in instances
            if i.active_step is not None and (i.id, i.active_step.id) in waiting_on
        ]

    def decision_history(self, instance_id: UUID) -> list[ApprovalRecord]:
        """Every record of an instance, by step order then decision time.

        Undecided records sort after decided ones within their step.
        """
        instance = self.session.get(WorkflowInstanceModel, instance_id)
        if instance is None:
            raise InstanceNotFoundError(str(instance_id))
        step_index = {
            UUID(step["id"]): i for i, step in enumerate(instance.steps_snapshot)
        }
        records = [
            m.to_dto()
            for m in self.session.execute(
                select(ApprovalRecordModel).where(ApprovalRecordModel.instance_id == instance_id)
            ).scalars()
        ]
        return sorted(
            records,
            key=lambda r: (
                step_index.get(r.step_id, len(step_index)),
                r.decided_at is None,
                r.decided_at or r.created_at,
                r.approver_id,
            ),
        )

    def list_overdue(self, older_than: datetime) -> list[WorkflowInstance]:
        """Pending instances whose active step was activated before ``older_than``."""
        older_than = as_utc(older_than)
        models = self.session.execute(
            select(WorkflowInstanceModel)
            .where(
                WorkflowInstanceModel.status == InstanceStatus.PENDING.value,
                WorkflowInstanceModel.step_activated_at < older_than,
            )
            .order_by(WorkflowInstanceModel.step_activated_at, WorkflowInstanceModel.id)
        ).scalars().all()
        return [m.to_dto() for m in models]
