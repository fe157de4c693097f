"""
approval_kernel.services.instance_lifecycle -- Workflow instance state machine.

Responsibility:
    Creates instances from templates, submits drafts, activates steps,
    applies the transitions computed by the aggregation engine, and cancels
    requests.  Collects the notifications each unit of work produces.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/, and the pure
    approval_engines layer.

Invariants enforced:
    - INSTANCE_TRANSITIONS is checked before every status change; terminal
      instances are never mutated.
    - The step list is snapshotted at creation.
    - Activating a step writes one pending record per resolved approver.
      Those records are the step's authorized set.
    - current_step_index never decreases; cancellation keeps it.

Failure modes:
    - TemplateNotFoundError / TemplateInactiveError on creation.
    - InstanceNotFoundError if instance_id not found.
    - InvalidStateError on a status precondition failure.
    - UnauthorizedActorError when the actor may not submit or cancel.
    - ApproverResolutionError when a step resolves to too few approvers.
    - StaleStateError on expected_version mismatch or a lost race.
"""

from __future__ import annotations

import json
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock
from approval_kernel.domain.notifications import NotificationEvent, NotificationType
from approval_kernel.domain.workflow import (
    ApproverResolver,
    InstanceStatus,
    InstanceTransition,
    StepDefinition,
    TransitionKind,
    WorkflowInstance,
    can_transition,
)
from approval_kernel.exceptions import (
    ApproverResolutionError,
    InstanceNotFoundError,
    InvalidStateError,
    StaleStateError,
    TemplateInactiveError,
    TemplateNotFoundError,
    UnauthorizedActorError,
    ValidationError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.audit_event import AuditAction
from approval_kernel.models.instance import ApprovalRecordModel, WorkflowInstanceModel
from approval_kernel.models.template import WorkflowTemplateModel
from approval_kernel.services.auditor_service import INSTANCE_ENTITY, AuditorService
from approval_kernel.services.base import BaseService
from approval_kernel.utils.hashing import canonicalize_json

logger = get_logger("services.instance_lifecycle")

_COMPLETION_AUDIT = {
    InstanceStatus.APPROVED: AuditAction.INSTANCE_APPROVED,
    InstanceStatus.REJECTED: AuditAction.INSTANCE_REJECTED,
    InstanceStatus.CANCELLED: AuditAction.INSTANCE_CANCELLED,
}


class InstanceLifecycleManager(BaseService):
    """Owns every status change of a workflow instance.

    ``outbox`` accumulates the notification events of the current unit of
    work.  The caller dispatches them only after the unit commits.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        resolver: ApproverResolver,
        clock: Clock | None = None,
        *,
        allow_drafts: bool = True,
        admin_reference: str = "role:admin",
    ) -> None:
        super().__init__(session, clock)
        self._auditor = auditor
        self._resolver = resolver
        self._allow_drafts = allow_drafts
        self._admin_reference = admin_reference
        self.outbox: list[NotificationEvent] = []

    # =========================================================================
    # Commands
    # =========================================================================

    def create_instance(
        self,
        template_id: UUID,
        requester_id: str,
        payload: dict[str, Any] | None = None,
    ) -> WorkflowInstance:
        """Create an instance from an active template.

        The instance starts as a draft only when both the template and the
        engine allow drafts; otherwise it is pending with step 0 active.
        """
        template_model = self.session.get(WorkflowTemplateModel, template_id)
        if template_model is None:
            raise TemplateNotFoundError(str(template_id))
        if not template_model.is_active:
            raise TemplateInactiveError(str(template_id), "create an instance from")

        payload = self._validate_payload(payload)
        template = template_model.to_dto()
        as_draft = self._allow_drafts and template.allow_drafts

        first_approvers: tuple[str, ...] = ()
        if not as_draft:
            first_approvers = self.resolve_approvers(template.steps[0])

        now = self.clock.now()
        model = WorkflowInstanceModel(
            id=uuid4(),
            template_id=template.id,
            template_version=template.version,
            requester_id=requester_id,
            payload=payload,
            status=(InstanceStatus.DRAFT if as_draft else InstanceStatus.PENDING).value,
            current_step_index=0,
            steps_snapshot=[s.to_snapshot() for s in template.steps],
            created_at=now,
            updated_at=now,
            submitted_at=None if as_draft else now,
        )
        self.session.add(model)
        self.flush(INSTANCE_ENTITY, model.id)

        self._auditor.record_instance_created(
            instance_id=model.id,
            template_id=template.id,
            template_version=template.version,
            status=model.status,
            actor_id=requester_id,
        )

        logger.info(
            "instance_created",
            extra={
                "instance_id": str(model.id),
                "template_id": str(template.id),
                "template_version": template.version,
                "status": model.status,
                "requester_id": requester_id,
            },
        )

        if not as_draft:
            self._activate_step(model, 0, first_approvers, actor_id=requester_id)

        return model.to_dto()

    def submit_instance(
        self,
        instance_id: UUID,
        actor_id: str,
        expected_version: int | None = None,
    ) -> WorkflowInstance:
        """Move a draft to pending and activate its first step."""
        model = self.load_instance_model(instance_id, expected_version)
        if model.status != InstanceStatus.DRAFT.value:
            raise InvalidStateError(str(instance_id), model.status, "submit")
        if actor_id != model.requester_id:
            raise UnauthorizedActorError(
                actor_id, "submit", "only the requester may submit a request"
            )

        first_step = StepDefinition.from_snapshot(model.steps_snapshot[0])
        approvers = self.resolve_approvers(first_step)

        now = self.clock.now()
        model.status = InstanceStatus.PENDING.value
        model.submitted_at = now
        model.updated_at = now
        self.flush(INSTANCE_ENTITY, instance_id)

        self._auditor.record_instance_submitted(instance_id=model.id, actor_id=actor_id)
        logger.info(
            "instance_submitted",
            extra={"instance_id": str(model.id), "actor_id": actor_id},
        )

        self._activate_step(model, 0, approvers, actor_id=actor_id)
        return model.to_dto()

    def cancel_instance(
        self,
        instance_id: UUID,
        actor_id: str,
        expected_version: int | None = None,
    ) -> WorkflowInstance:
        """Cancel a draft or pending instance (requester or administrator only)."""
        model = self.load_instance_model(instance_id, expected_version)
        if model.is_terminal:
            raise InvalidStateError(str(instance_id), model.status, "cancel")
        if actor_id != model.requester_id and not self.is_admin(actor_id):
            raise UnauthorizedActorError(
                actor_id, "cancel", "only the requester or an administrator may cancel"
            )

        recipients = [model.requester_id]
        if model.status == InstanceStatus.PENDING.value:
            recipients.extend(
                r.approver_id for r in self.step_records(model, self.active_step_id(model))
            )

        self._complete(model, InstanceStatus.CANCELLED, actor_id, reason=f"cancelled by {actor_id}")
        self._notify(model, NotificationType.REQUEST_CANCELLED, recipients, cancelled_by=actor_id)
        return model.to_dto()

    def apply_transition(
        self,
        model: WorkflowInstanceModel,
        transition: InstanceTransition,
        actor_id: str,
    ) -> None:
        """Apply an aggregation result to a pending instance."""
        if transition.kind == TransitionKind.NONE:
            return

        reason = transition.evaluation.reason if transition.evaluation else ""

        if transition.kind == TransitionKind.REJECT:
            self._complete(model, InstanceStatus.REJECTED, actor_id, reason=reason)
            self._notify(model, NotificationType.REQUEST_REJECTED, [model.requester_id])
            return

        if transition.kind == TransitionKind.APPROVE:
            model.current_step_index = transition.to_index
            self._complete(model, InstanceStatus.APPROVED, actor_id, reason=reason)
            self._notify(model, NotificationType.REQUEST_APPROVED, [model.requester_id])
            return

        approvers = self.resolve_approvers(transition.next_step)
        self._activate_step(model, transition.to_index, approvers, actor_id=actor_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, instance_id: UUID) -> WorkflowInstance:
        return self.load_instance_model(instance_id).to_dto()

    def is_admin(self, actor_id: str) -> bool:
        return actor_id in self._resolver.resolve(self._admin_reference)

    def resolve_approvers(self, step: StepDefinition) -> tuple[str, ...]:
        """Resolve a step's references to distinct identities, first-seen order.

        Raises:
            ApproverResolutionError: fewer identities than the rule needs.
        """
        identities: dict[str, None] = {}
        for reference in step.approver_refs:
            for identity in self._resolver.resolve(reference):
                identities.setdefault(identity, None)
        resolved = tuple(identities)

        required = step.rule.minimum_approvers
        if len(resolved) < required:
            logger.warning(
                "approver_resolution_failed",
                extra={
                    "step_id": str(step.id),
                    "references": list(step.approver_refs),
                    "required": required,
                    "resolved": len(resolved),
                },
            )
            raise ApproverResolutionError(
                str(step.id), step.approver_refs, required, len(resolved)
            )
        return resolved

    # =========================================================================
    # Helpers (shared with ApprovalRecorder)
    # =========================================================================

    def load_instance_model(
        self,
        instance_id: UUID,
        expected_version: int | None = None,
    ) -> WorkflowInstanceModel:
        model = self.session.get(WorkflowInstanceModel, instance_id)
        if model is None:
            raise InstanceNotFoundError(str(instance_id))
        if expected_version is not None and model.version != expected_version:
            raise StaleStateError(
                INSTANCE_ENTITY, str(instance_id), expected_version, model.version
            )
        return model

    def step_records(
        self, model: WorkflowInstanceModel, step_id: UUID | None
    ) -> list[ApprovalRecordModel]:
        if step_id is None:
            return []
        return list(
            self.session.execute(
                select(ApprovalRecordModel)
                .where(
                    ApprovalRecordModel.instance_id == model.id,
                    ApprovalRecordModel.step_id == step_id,
                )
                .order_by(ApprovalRecordModel.created_at, ApprovalRecordModel.approver_id)
            ).scalars().all()
        )

    @staticmethod
    def active_step_id(model: WorkflowInstanceModel) -> UUID | None:
        if model.current_step_index >= len(model.steps_snapshot):
            return None
        return UUID(model.steps_snapshot[model.current_step_index]["id"])

    @staticmethod
    def _validate_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValidationError("Request payload must be a mapping")
        try:
            canonical = canonicalize_json(payload)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Request payload is not JSON-serializable: {exc}") from exc
        # Stored as plain JSON: dates, UUIDs and enums become strings
        return json.loads(canonical)

    def _activate_step(
        self,
        model: WorkflowInstanceModel,
        index: int,
        approver_ids: tuple[str, ...],
        actor_id: str,
    ) -> None:
        step = StepDefinition.from_snapshot(model.steps_snapshot[index])
        now = self.clock.now()

        model.current_step_index = index
        model.step_activated_at = now
        model.updated_at = now
        for approver_id in approver_ids:
            self.session.add(
                ApprovalRecordModel(
                    id=uuid4(),
                    instance_id=model.id,
                    step_id=step.id,
                    approver_id=approver_id,
                    decision="pending",
                    comment="",
                    created_at=now,
                )
            )
        self.flush(INSTANCE_ENTITY, model.id)

        self._auditor.record_step_activated(
            instance_id=model.id,
            step_id=step.id,
            step_index=index,
            approver_ids=approver_ids,
            actor_id=actor_id,
        )

        logger.info(
            "step_activated",
            extra={
                "instance_id": str(model.id),
                "step_id": str(step.id),
                "step_index": index,
                "step_name": step.name,
                "rule": str(step.rule),
                "approver_count": len(approver_ids),
            },
        )

        self._notify(
            model,
            NotificationType.APPROVAL_NEEDED,
            approver_ids,
            step_id=str(step.id),
            step_name=step.name,
            step_index=index,
        )

    def _complete(
        self,
        model: WorkflowInstanceModel,
        target: InstanceStatus,
        actor_id: str,
        reason: str = "",
    ) -> None:
        current = InstanceStatus(model.status)
        if not can_transition(current, target):
            raise InvalidStateError(str(model.id), current.value, f"move to {target.value}")

        now = self.clock.now()
        model.status = target.value
        model.completed_at = now
        model.updated_at = now
        if target == InstanceStatus.CANCELLED:
            model.cancelled_by = actor_id
        self.flush(INSTANCE_ENTITY, model.id)

        self._auditor.record_instance_completed(
            instance_id=model.id,
            action=_COMPLETION_AUDIT[target],
            actor_id=actor_id,
            reason=reason,
        )

        logger.info(
            "instance_transitioned",
            extra={
                "instance_id": str(model.id),
                "from_status": current.value,
                "to_status": target.value,
                "step_index": model.current_step_index,
                "actor_id": actor_id,
                "reason": reason,
            },
        )

    def _notify(
        self,
        model: WorkflowInstanceModel,
        notification_type: NotificationType,
        recipients,
        **extra: Any,
    ) -> None:
        payload = {
            "template_id": str(model.template_id),
            "requester_id": model.requester_id,
            "status": model.status,
            "step_index": model.current_step_index,
        }
        payload.update(extra)
        self.outbox.append(
            NotificationEvent(
                type=notification_type,
                instance_id=model.id,
                recipient_ids=tuple(dict.fromkeys(recipients)),
                payload=payload,
            )
        )
