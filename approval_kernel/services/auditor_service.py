"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every template and
    instance lifecycle action.  Provides chain validation for tamper
    detection and trace queries for review.

Architecture position:
    Kernel > Services -- imperative shell, called by TemplateRegistry,
    InstanceLifecycleManager and ApprovalRecorder within their unit of work.

Invariants enforced:
    - Chain integrity: ``hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash)``; each entity has its own chain.
    - Append-only: audit events are never modified or deleted (ORM
      listeners on the AuditEvent model).

Failure modes:
    - AuditChainBrokenError: a recomputed hash does not match, or prev_hash
      does not match the predecessor's hash.
    - StaleStateError: two units appended the same seq for one entity.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_kernel.db.base import as_utc
from approval_kernel.domain.clock import Clock
from approval_kernel.exceptions import AuditChainBrokenError
from approval_kernel.logging_config import get_logger
from approval_kernel.models.audit_event import AuditAction, AuditEvent
from approval_kernel.services.base import BaseService
from approval_kernel.utils.hashing import hash_audit_event, hash_payload

logger = get_logger("services.auditor")

TEMPLATE_ENTITY = "WorkflowTemplate"
INSTANCE_ENTITY = "WorkflowInstance"


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: str
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """Complete audit trace for an entity, oldest first."""

    entity_type: str | None
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


class AuditorService(BaseService):
    """
    Service for creating and validating tamper-evident audit events.

    Guarantees:
        - Every event's ``hash`` is a deterministic function of
          ``(entity_type, entity_id, action, payload_hash, prev_hash)``.
        - ``seq`` increases by one per entity; a concurrent append of the
          same seq fails the unique constraint at flush.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    def _last_event(self, entity_type: str, entity_id: UUID) -> AuditEvent | None:
        return self.session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: str,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Create a new audit event linked to the entity's previous event.

        Postconditions:
            - A new ``AuditEvent`` row is flushed with ``seq`` one past the
              entity's last event and a valid hash chain link.
        """
        last = self._last_event(entity_type, entity_id)
        seq = (last.seq + 1) if last else 1
        prev_hash = last.hash if last else None

        payload_data = payload or {}
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self.clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self.session.add(audit_event)
        self.flush("AuditEvent", entity_id)

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )

        return audit_event

    # Template lifecycle

    def record_template_created(
        self, template_id: UUID, name: str, domain_type: str, step_count: int, actor_id: str
    ) -> AuditEvent:
        return self._create_audit_event(
            TEMPLATE_ENTITY,
            template_id,
            AuditAction.TEMPLATE_CREATED,
            actor_id,
            {"name": name, "domain_type": domain_type, "step_count": step_count},
        )

    def record_template_updated(
        self, template_id: UUID, version: int, step_count: int, actor_id: str
    ) -> AuditEvent:
        return self._create_audit_event(
            TEMPLATE_ENTITY,
            template_id,
            AuditAction.TEMPLATE_UPDATED,
            actor_id,
            {"version": version, "step_count": step_count},
        )

    def record_template_deactivated(self, template_id: UUID, actor_id: str) -> AuditEvent:
        return self._create_audit_event(
            TEMPLATE_ENTITY, template_id, AuditAction.TEMPLATE_DEACTIVATED, actor_id
        )

    # Instance lifecycle

    def record_instance_created(
        self, instance_id: UUID, template_id: UUID, template_version: int, status: str, actor_id: str
    ) -> AuditEvent:
        return self._create_audit_event(
            INSTANCE_ENTITY,
            instance_id,
            AuditAction.INSTANCE_CREATED,
            actor_id,
            {
                "template_id": str(template_id),
                "template_version": template_version,
                "status": status,
            },
        )

    def record_instance_submitted(self, instance_id: UUID, actor_id: str) -> AuditEvent:
        return self._create_audit_event(
            INSTANCE_ENTITY, instance_id, AuditAction.INSTANCE_SUBMITTED, actor_id
        )

    def record_step_activated(
        self,
        instance_id: UUID,
        step_id: UUID,
        step_index: int,
        approver_ids: tuple[str, ...],
        actor_id: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            INSTANCE_ENTITY,
            instance_id,
            AuditAction.STEP_ACTIVATED,
            actor_id,
            {
                "step_id": str(step_id),
                "step_index": step_index,
                "approver_ids": list(approver_ids),
            },
        )

    def record_decision(
        self,
        instance_id: UUID,
        step_id: UUID,
        approver_id: str,
        decision: str,
        previous_decision: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            INSTANCE_ENTITY,
            instance_id,
            AuditAction.DECISION_RECORDED,
            approver_id,
            {
                "step_id": str(step_id),
                "decision": decision,
                "previous_decision": previous_decision,
            },
        )

    def record_instance_completed(
        self, instance_id: UUID, action: AuditAction, actor_id: str, reason: str = ""
    ) -> AuditEvent:
        """Record the instance reaching approved, rejected or cancelled."""
        return self._create_audit_event(
            INSTANCE_ENTITY, instance_id, action, actor_id, {"reason": reason}
        )

    # Queries and validation

    def get_trace(self, entity_id: UUID, entity_type: str | None = None) -> AuditTrace:
        """Get the complete audit trace for an entity, oldest first."""
        query = select(AuditEvent).where(AuditEvent.entity_id == entity_id)
        if entity_type is not None:
            query = query.where(AuditEvent.entity_type == entity_type)
        events = self.session.execute(
            query.order_by(AuditEvent.entity_type, AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=AuditAction(event.action),
                occurred_at=as_utc(event.occurred_at),
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )
        return AuditTrace(entity_type=entity_type, entity_id=entity_id, entries=entries)

    def validate_chain(self, entity_id: UUID | None = None) -> bool:
        """
        Validate audit chains, for one entity or for every entity.

        Returns:
            True when every chain verifies.

        Raises:
            AuditChainBrokenError: at the first event that does not verify.
        """
        query = select(AuditEvent)
        if entity_id is not None:
            query = query.where(AuditEvent.entity_id == entity_id)
        events = self.session.execute(
            query.order_by(AuditEvent.entity_type, AuditEvent.entity_id, AuditEvent.seq)
        ).scalars().all()

        previous: AuditEvent | None = None
        for event in events:
            same_chain = (
                previous is not None
                and previous.entity_type == event.entity_type
                and previous.entity_id == event.entity_id
            )
            expected_prev = previous.hash if same_chain else None
            if event.prev_hash != expected_prev:
                logger.critical(
                    "audit_chain_broken",
                    extra={"event_id": str(event.id), "check": "linkage"},
                )
                raise AuditChainBrokenError(
                    str(event.id), expected_prev or "None", event.prev_hash or "None"
                )

            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action,
                payload_hash=hash_payload(event.payload or {}),
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash or event.payload_hash != hash_payload(event.payload or {}):
                logger.critical(
                    "audit_chain_broken",
                    extra={"event_id": str(event.id), "check": "hash"},
                )
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)
            previous = event

        return True
