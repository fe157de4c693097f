"""
approval_kernel.services.approval_recorder -- Decision intake for the active step.

Responsibility:
    Accepts one approver's decision on the active step of a pending
    instance, upserts their record, and (when the decision changed) runs the
    aggregation engine and hands its transition to the lifecycle manager,
    all inside the caller's unit of work.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/ and the pure
    approval_engines layer.

Invariants enforced:
    - Decisions are accepted only for the step at current_step_index, only
      from identities holding a record on that step.
    - One record per (instance, step, approver); resubmission overwrites.
    - Resubmitting the same decision is idempotent: no aggregation, no
      transition and no notification.
    - A changed decision touches the instance row, bumping its version, so
      two concurrent deciding units cannot both commit.

Failure modes:
    - InstanceNotFoundError if instance_id not found.
    - InvalidStateError if the instance is not pending.
    - OutOfOrderStepError if step_id is not the active step.
    - UnauthorizedApproverError if approver_id holds no record on the step.
    - ValidationError for a pending/unknown decision or a missing comment.
    - StaleStateError on expected_version mismatch or a lost race.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from approval_engines.aggregation import compute_instance_transition
from approval_kernel.domain.clock import Clock
from approval_kernel.domain.workflow import (
    ApprovalRecord,
    Decision,
    InstanceStatus,
    InstanceTransition,
    WorkflowInstance,
)
from approval_kernel.exceptions import (
    InvalidStateError,
    OutOfOrderStepError,
    UnauthorizedApproverError,
    ValidationError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.instance import ApprovalRecordModel
from approval_kernel.services.auditor_service import INSTANCE_ENTITY, AuditorService
from approval_kernel.services.base import BaseService
from approval_kernel.services.instance_lifecycle import InstanceLifecycleManager

logger = get_logger("services.approval_recorder")


@dataclass(frozen=True)
class DecisionOutcome:
    """What one ``record_decision`` call did."""

    instance: WorkflowInstance
    record: ApprovalRecord
    changed: bool
    transition: InstanceTransition | None = None


def _coerce_decision(decision: Decision | str) -> Decision:
    try:
        value = Decision(decision.value if isinstance(decision, Decision) else str(decision).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown decision {decision!r} (expected 'approved' or 'rejected')"
        ) from None
    if value == Decision.PENDING:
        raise ValidationError("A decision must be 'approved' or 'rejected', not 'pending'")
    return value


class ApprovalRecorder(BaseService):
    """Records approver decisions and drives aggregation."""

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        lifecycle: InstanceLifecycleManager,
        clock: Clock | None = None,
        *,
        require_comment_on_reject: bool = False,
        require_comment_on_approve: bool = False,
    ) -> None:
        super().__init__(session, clock)
        self._auditor = auditor
        self._lifecycle = lifecycle
        self._require_comment = {
            Decision.APPROVED: require_comment_on_approve,
            Decision.REJECTED: require_comment_on_reject,
        }

    def record_decision(
        self,
        instance_id: UUID,
        step_id: UUID | str,
        approver_id: str,
        decision: Decision | str,
        comment: str = "",
        expected_version: int | None = None,
    ) -> DecisionOutcome:
        """Upsert ``approver_id``'s decision on the active step.

        Every write bumps the instance version, comment-only edits included,
        so a unit that read a stale instance cannot commit a record change.
        """
        model = self._lifecycle.load_instance_model(instance_id, expected_version)

        if model.status != InstanceStatus.PENDING.value:
            raise InvalidStateError(str(instance_id), model.status, "record a decision on")

        active_step_id = self._lifecycle.active_step_id(model)
        if str(step_id) != str(active_step_id):
            raise OutOfOrderStepError(
                str(instance_id),
                str(step_id),
                str(active_step_id) if active_step_id else None,
            )

        record = self.session.execute(
            select(ApprovalRecordModel).where(
                ApprovalRecordModel.instance_id == model.id,
                ApprovalRecordModel.step_id == active_step_id,
                ApprovalRecordModel.approver_id == approver_id,
            )
        ).scalar_one_or_none()
        if record is None:
            raise UnauthorizedApproverError(approver_id, str(instance_id), str(step_id))

        value = _coerce_decision(decision)
        comment = (comment or "").strip()
        if self._require_comment[value] and not comment:
            raise ValidationError(f"A comment is required when the decision is {value.value}")

        if record.decision == value.value:
            if comment and comment != record.comment:
                record.comment = comment
                model.updated_at = self.clock.now()
                flag_modified(model, "updated_at")
                self.flush(INSTANCE_ENTITY, instance_id)
            logger.info(
                "decision_unchanged",
                extra={
                    "instance_id": str(instance_id),
                    "step_id": str(active_step_id),
                    "approver_id": approver_id,
                    "decision": value.value,
                },
            )
            return DecisionOutcome(
                instance=model.to_dto(), record=record.to_dto(), changed=False
            )

        previous = record.decision
        now = self.clock.now()
        record.decision = value.value
        record.comment = comment
        record.decided_at = now
        model.updated_at = now
        flag_modified(model, "updated_at")
        self.flush(INSTANCE_ENTITY, instance_id)

        self._auditor.record_decision(
            instance_id=model.id,
            step_id=active_step_id,
            approver_id=approver_id,
            decision=value.value,
            previous_decision=previous,
        )

        logger.info(
            "decision_recorded",
            extra={
                "instance_id": str(instance_id),
                "step_id": str(active_step_id),
                "approver_id": approver_id,
                "decision": value.value,
                "previous_decision": previous,
            },
        )

        records = self._lifecycle.step_records(model, active_step_id)
        transition = compute_instance_transition(
            instance=model.to_dto(),
            records=tuple(r.to_dto() for r in records),
        )
        self._lifecycle.apply_transition(model, transition, actor_id=approver_id)

        return DecisionOutcome(
            instance=model.to_dto(),
            record=record.to_dto(),
            changed=True,
            transition=transition,
        )
