"""
approval_services.workflow_engine -- Public API of the approval workflow engine.

Responsibility:
    The single entrypoint callers use.  Each command runs as one unit of
    work: open a session, build the kernel services on it, execute, commit,
    then dispatch the notifications the unit produced.  Every operation
    takes the calling identity explicitly.

Architecture position:
    Services layer.  May import from approval_kernel (services, selectors,
    domain, db), approval_engines and approval_config.

Invariants enforced:
    - Commit or rollback happens here and nowhere below.
    - A unit that loses an optimistic-concurrency race is re-run from a
      fresh read, at most ``max_commit_attempts`` times, with backoff.
    - Notifications are dispatched only after a successful commit; a failed
      delivery becomes a warning on the result.
    - Template administration requires membership of ``admin_reference``.

Failure modes:
    - Every WorkflowEngineError raised by the kernel propagates unchanged.
    - StaleStateError once the retry budget is exhausted, or immediately
      when the caller's ``expected_version`` does not match.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from approval_config import EngineSettings, get_active_settings, load_template_definitions
from approval_kernel.db.engine import build_engine, create_tables, session_scope
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.notifications import NotificationDispatcher, NotificationEvent
from approval_kernel.domain.workflow import (
    ApprovalRecord,
    ApproverResolver,
    Decision,
    DomainType,
    InstanceStatus,
    TemplateDefinition,
    TransitionKind,
    WorkflowInstance,
    WorkflowTemplate,
)
from approval_kernel.exceptions import (
    InstanceNotFoundError,
    NotFoundError,
    StaleStateError,
    TemplateNotFoundError,
    UnauthorizedActorError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.selectors.instance_selector import InstanceSelector
from approval_kernel.services.approval_recorder import ApprovalRecorder
from approval_kernel.services.auditor_service import AuditorService, AuditTrace
from approval_kernel.services.instance_lifecycle import InstanceLifecycleManager
from approval_kernel.services.template_registry import TemplateRegistry
from approval_services.notifications import LoggingNotificationDispatcher, dispatch_events

logger = get_logger("services.workflow_engine")

T = TypeVar("T")


def compute_backoff(attempt: int, base: float, jitter: float | None = None) -> float:
    """Exponential backoff with jitter: ``base * 2**(attempt-1) + U(0, jitter)``."""
    if base <= 0:
        return 0.0
    jitter = base if jitter is None else jitter
    return base * (2 ** (attempt - 1)) + random.uniform(0, jitter)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstanceResult:
    """Outcome of create / submit / cancel."""

    instance: WorkflowInstance
    notifications: tuple[NotificationEvent, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def status(self) -> InstanceStatus:
        return self.instance.status


@dataclass(frozen=True)
class DecisionResult:
    """Outcome of ``record_decision``.

    ``changed`` is False for an idempotent resubmission; ``transition`` is
    then NONE and nothing was dispatched.
    """

    instance: WorkflowInstance
    record: ApprovalRecord
    changed: bool
    transition: TransitionKind = TransitionKind.NONE
    notifications: tuple[NotificationEvent, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def status(self) -> InstanceStatus:
        return self.instance.status


@dataclass
class _Unit:
    """Kernel services bound to one session."""

    session: Session
    auditor: AuditorService
    templates: TemplateRegistry
    lifecycle: InstanceLifecycleManager
    recorder: ApprovalRecorder
    instances: InstanceSelector


# ---------------------------------------------------------------------------
# WorkflowEngine
# ---------------------------------------------------------------------------


class WorkflowEngine:
    """Facade over the template registry, lifecycle manager and recorder."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        resolver: ApproverResolver,
        dispatcher: NotificationDispatcher | None = None,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._resolver = resolver
        self._dispatcher = dispatcher or LoggingNotificationDispatcher()
        self._settings = settings or EngineSettings()
        self._clock = clock or SystemClock()
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        resolver: ApproverResolver,
        settings: EngineSettings | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        create_schema: bool = True,
    ) -> WorkflowEngine:
        """Build an engine (and optionally its tables) from ``EngineSettings``."""
        settings = settings or get_active_settings()
        engine = build_engine(settings.database.url, echo=settings.database.echo)
        if create_schema:
            create_tables(engine)
        factory = sessionmaker(bind=engine, expire_on_commit=False)
        return cls(factory, resolver, dispatcher, settings, clock)

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # =========================================================================
    # Template administration
    # =========================================================================

    def create_template(
        self,
        definition: TemplateDefinition | dict[str, Any],
        actor: str,
    ) -> WorkflowTemplate:
        self._require_admin(actor, "create a template")
        definition = self._as_definition(definition)
        template, _, _ = self._run(
            "create_template",
            lambda u: u.templates.create_template(definition, actor),
            actor_id=actor,
        )
        return template

    def update_template(
        self,
        template_id: UUID | str,
        definition: TemplateDefinition | dict[str, Any],
        actor: str,
        expected_version: int | None = None,
    ) -> WorkflowTemplate:
        self._require_admin(actor, "update a template")
        template_id = self._template_uuid(template_id)
        definition = self._as_definition(definition)
        template, _, _ = self._run(
            "update_template",
            lambda u: u.templates.update_template(
                template_id, definition, actor, expected_version
            ),
            actor_id=actor,
            template_id=template_id,
        )
        return template

    def deactivate_template(
        self,
        template_id: UUID | str,
        actor: str,
        expected_version: int | None = None,
    ) -> WorkflowTemplate:
        self._require_admin(actor, "deactivate a template")
        template_id = self._template_uuid(template_id)
        template, _, _ = self._run(
            "deactivate_template",
            lambda u: u.templates.deactivate_template(template_id, actor, expected_version),
            actor_id=actor,
            template_id=template_id,
        )
        return template

    def copy_template(
        self,
        template_id: UUID | str,
        actor: str,
        name: str | None = None,
    ) -> WorkflowTemplate:
        self._require_admin(actor, "copy a template")
        template_id = self._template_uuid(template_id)
        template, _, _ = self._run(
            "copy_template",
            lambda u: u.templates.copy_template(template_id, actor, name),
            actor_id=actor,
            template_id=template_id,
        )
        return template

    def seed_templates(
        self,
        source: str | Path | Iterable[TemplateDefinition],
        actor: str,
    ) -> list[WorkflowTemplate]:
        """Create every template of a YAML seed file (or iterable) in one unit."""
        self._require_admin(actor, "seed templates")
        if isinstance(source, (str, Path)):
            definitions = load_template_definitions(Path(source))
        else:
            definitions = tuple(source)
        templates, _, _ = self._run(
            "seed_templates",
            lambda u: [u.templates.create_template(d, actor) for d in definitions],
            actor_id=actor,
        )
        return templates

    def get_template(self, template_id: UUID | str) -> WorkflowTemplate:
        template_id = self._template_uuid(template_id)
        return self._read(lambda u: u.templates.get_template(template_id))

    def list_templates(
        self,
        domain_type: DomainType | str | None = None,
        active_only: bool = True,
    ) -> list[WorkflowTemplate]:
        return self._read(lambda u: u.templates.list_templates(domain_type, active_only))

    # =========================================================================
    # Instance lifecycle
    # =========================================================================

    def create_instance(
        self,
        template_id: UUID | str,
        requester: str,
        payload: dict[str, Any] | None = None,
    ) -> InstanceResult:
        template_id = self._template_uuid(template_id)
        instance, delivered, warnings = self._run(
            "create_instance",
            lambda u: u.lifecycle.create_instance(template_id, requester, payload),
            actor_id=requester,
            template_id=template_id,
        )
        return InstanceResult(instance, delivered, warnings)

    def submit_instance(
        self,
        instance_id: UUID | str,
        actor: str,
        expected_version: int | None = None,
    ) -> InstanceResult:
        instance_id = self._instance_uuid(instance_id)
        instance, delivered, warnings = self._run(
            "submit_instance",
            lambda u: u.lifecycle.submit_instance(instance_id, actor, expected_version),
            actor_id=actor,
            instance_id=instance_id,
        )
        return InstanceResult(instance, delivered, warnings)

    def record_decision(
        self,
        instance_id: UUID | str,
        step_id: UUID | str,
        approver_id: str,
        decision: Decision | str,
        comment: str = "",
        expected_version: int | None = None,
    ) -> DecisionResult:
        instance_id = self._instance_uuid(instance_id)
        outcome, delivered, warnings = self._run(
            "record_decision",
            lambda u: u.recorder.record_decision(
                instance_id, step_id, approver_id, decision, comment, expected_version
            ),
            actor_id=approver_id,
            instance_id=instance_id,
        )
        return DecisionResult(
            instance=outcome.instance,
            record=outcome.record,
            changed=outcome.changed,
            transition=outcome.transition.kind if outcome.transition else TransitionKind.NONE,
            notifications=delivered,
            warnings=warnings,
        )

    def cancel_instance(
        self,
        instance_id: UUID | str,
        actor: str,
        expected_version: int | None = None,
    ) -> InstanceResult:
        instance_id = self._instance_uuid(instance_id)
        instance, delivered, warnings = self._run(
            "cancel_instance",
            lambda u: u.lifecycle.cancel_instance(instance_id, actor, expected_version),
            actor_id=actor,
            instance_id=instance_id,
        )
        return InstanceResult(instance, delivered, warnings)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, instance_id: UUID | str) -> WorkflowInstance:
        instance_id = self._instance_uuid(instance_id)
        return self._read(lambda u: u.lifecycle.get_instance(instance_id))

    def list_instances_by_approver(
        self,
        approver_id: str,
        status: InstanceStatus | str | None = None,
        awaiting_only: bool = False,
    ) -> list[WorkflowInstance]:
        return self._read(
            lambda u: u.instances.list_by_approver(approver_id, status, awaiting_only)
        )

    def list_instances_by_requester(
        self,
        requester_id: str,
        status: InstanceStatus | str | None = None,
    ) -> list[WorkflowInstance]:
        return self._read(lambda u: u.instances.list_by_requester(requester_id, status))

    def get_decision_history(self, instance_id: UUID | str) -> list[ApprovalRecord]:
        instance_id = self._instance_uuid(instance_id)
        return self._read(lambda u: u.instances.decision_history(instance_id))

    def list_overdue_instances(self, older_than: datetime | timedelta) -> list[WorkflowInstance]:
        """Pending instances whose active step waited longer than ``older_than``.

        ``older_than`` is either an absolute cutoff or an age measured back
        from the engine clock.
        """
        if isinstance(older_than, timedelta):
            cutoff = self._clock.now() - older_than
        else:
            cutoff = older_than
        return self._read(lambda u: u.instances.list_overdue(cutoff))

    def get_audit_trail(self, entity_id: UUID | str) -> AuditTrace:
        entity_id = self._entity_uuid(entity_id)
        return self._read(lambda u: u.auditor.get_trace(entity_id))

    def validate_audit_chain(self, entity_id: UUID | str | None = None) -> bool:
        entity_id = self._entity_uuid(entity_id) if entity_id is not None else None
        return self._read(lambda u: u.auditor.validate_chain(entity_id))

    # =========================================================================
    # Unit of work
    # =========================================================================

    def _open_unit(self, session: Session) -> _Unit:
        settings = self._settings
        auditor = AuditorService(session, self._clock)
        lifecycle = InstanceLifecycleManager(
            session,
            auditor,
            self._resolver,
            self._clock,
            allow_drafts=settings.allow_drafts,
            admin_reference=settings.admin_reference,
        )
        return _Unit(
            session=session,
            auditor=auditor,
            templates=TemplateRegistry(session, auditor, self._clock),
            lifecycle=lifecycle,
            recorder=ApprovalRecorder(
                session,
                auditor,
                lifecycle,
                self._clock,
                require_comment_on_reject=settings.require_comment_on_reject,
                require_comment_on_approve=settings.require_comment_on_approve,
            ),
            instances=InstanceSelector(session),
        )

    def _read(self, work: Callable[[_Unit], T]) -> T:
        with session_scope(self._session_factory) as session:
            return work(self._open_unit(session))

    def _run(
        self,
        operation: str,
        work: Callable[[_Unit], T],
        *,
        actor_id: str,
        instance_id: UUID | None = None,
        template_id: UUID | None = None,
    ) -> tuple[T, tuple[NotificationEvent, ...], tuple[str, ...]]:
        """Execute ``work`` in its own transaction, retrying lost races."""
        max_attempts = self._settings.max_commit_attempts
        with LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=actor_id,
            instance_id=str(instance_id) if instance_id else None,
            template_id=str(template_id) if template_id else None,
        ):
            attempt = 1
            while True:
                try:
                    value, outbox = self._attempt(work)
                    break
                except StaleStateError as exc:
                    if exc.expected_version is not None or attempt >= max_attempts:
                        logger.warning(
                            "commit_conflict_unresolved",
                            extra={
                                "operation": operation,
                                "attempt": attempt,
                                "max_attempts": max_attempts,
                            },
                        )
                        raise
                    delay = compute_backoff(attempt, self._settings.retry_backoff_seconds)
                    logger.warning(
                        "commit_conflict_retry",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "delay_seconds": round(delay, 4),
                        },
                    )
                    self._sleep(delay)
                    attempt += 1

            delivered, warnings = dispatch_events(
                self._dispatcher, outbox, self._settings.notifications
            )
            logger.info(
                "operation_committed",
                extra={
                    "operation": operation,
                    "attempts": attempt,
                    "notifications": len(delivered),
                    "warnings": len(warnings),
                },
            )
            return value, delivered, warnings

    def _attempt(self, work: Callable[[_Unit], T]) -> tuple[T, tuple[NotificationEvent, ...]]:
        try:
            with session_scope(self._session_factory) as session:
                unit = self._open_unit(session)
                value = work(unit)
                outbox = tuple(unit.lifecycle.outbox)
        except (StaleDataError, IntegrityError) as exc:
            # Raised by the final flush inside commit
            raise StaleStateError("unit_of_work", "commit") from exc
        return value, outbox

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_admin(self, actor: str, action: str) -> None:
        if actor not in self._resolver.resolve(self._settings.admin_reference):
            raise UnauthorizedActorError(
                actor, action, f"requires membership of {self._settings.admin_reference}"
            )

    @staticmethod
    def _as_definition(definition: TemplateDefinition | dict[str, Any]) -> TemplateDefinition:
        if isinstance(definition, dict):
            return TemplateDefinition.from_dict(definition)
        return definition

    @staticmethod
    def _template_uuid(value: UUID | str) -> UUID:
        try:
            return value if isinstance(value, UUID) else UUID(str(value))
        except ValueError:
            raise TemplateNotFoundError(str(value)) from None

    @staticmethod
    def _instance_uuid(value: UUID | str) -> UUID:
        try:
            return value if isinstance(value, UUID) else UUID(str(value))
        except ValueError:
            raise InstanceNotFoundError(str(value)) from None

    @staticmethod
    def _entity_uuid(value: UUID | str) -> UUID:
        try:
            return value if isinstance(value, UUID) else UUID(str(value))
        except ValueError:
            raise NotFoundError(f"Audited entity not found: {value}") from None
