"""
approval_kernel.services.template_registry -- Workflow template management.

Responsibility:
    Creates, edits, copies and deactivates workflow templates, and serves
    them back as frozen domain DTOs.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - A definition is fully validated before anything is persisted; the
      ValidationError lists every problem.
    - Edits replace the step list and bump the template version.  Running
      instances keep their own step snapshot and are never touched.
    - Deactivation is a soft delete and is idempotent.

Failure modes:
    - TemplateNotFoundError if template_id not found.
    - TemplateInactiveError when editing a deactivated template.
    - StaleStateError on expected_version mismatch or a lost edit race.
"""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock
from approval_kernel.domain.template_validation import build_steps, normalize_definition
from approval_kernel.domain.workflow import (
    DomainType,
    StepSpec,
    TemplateDefinition,
    WorkflowTemplate,
)
from approval_kernel.exceptions import (
    StaleStateError,
    TemplateInactiveError,
    TemplateNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.template import StepDefinitionModel, WorkflowTemplateModel
from approval_kernel.services.auditor_service import TEMPLATE_ENTITY, AuditorService
from approval_kernel.services.base import BaseService

logger = get_logger("services.template_registry")


class TemplateRegistry(BaseService):
    """Administers workflow templates.

    Authorization of the acting administrator happens in the facade; the
    registry records ``actor`` on the rows and in the audit trail.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(session, clock)
        self._auditor = auditor

    def create_template(
        self,
        definition: TemplateDefinition,
        actor: str,
    ) -> WorkflowTemplate:
        """Validate and persist a new active template."""
        normalized = normalize_definition(definition)
        now = self.clock.now()

        model = WorkflowTemplateModel(
            id=uuid4(),
            name=normalized.name,
            description=normalized.description,
            domain_type=normalized.domain_type.value,
            is_active=True,
            allow_drafts=normalized.allow_drafts,
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        model.steps = [StepDefinitionModel.from_dto(s) for s in build_steps(normalized)]
        self.session.add(model)
        self.flush(TEMPLATE_ENTITY, model.id)

        self._auditor.record_template_created(
            template_id=model.id,
            name=model.name,
            domain_type=model.domain_type,
            step_count=len(model.steps),
            actor_id=actor,
        )

        logger.info(
            "template_created",
            extra={
                "template_id": str(model.id),
                "template_name": model.name,
                "domain_type": model.domain_type,
                "step_count": len(model.steps),
                "actor_id": actor,
            },
        )
        return model.to_dto()

    def update_template(
        self,
        template_id: UUID,
        definition: TemplateDefinition,
        actor: str,
        expected_version: int | None = None,
    ) -> WorkflowTemplate:
        """Revalidate and replace a template's fields and steps."""
        model = self._load_template_model(template_id)
        self._check_version(model, expected_version)
        if not model.is_active:
            raise TemplateInactiveError(str(template_id), "update")

        normalized = normalize_definition(definition)

        model.name = normalized.name
        model.description = normalized.description
        model.domain_type = normalized.domain_type.value
        model.allow_drafts = normalized.allow_drafts
        model.updated_by = actor
        model.updated_at = self.clock.now()
        # Old rows must be gone before the new ones reuse their step orders.
        model.steps.clear()
        self.flush(TEMPLATE_ENTITY, template_id)

        model.steps.extend(
            StepDefinitionModel.from_dto(s) for s in build_steps(normalized)
        )
        self.flush(TEMPLATE_ENTITY, template_id)

        self._auditor.record_template_updated(
            template_id=model.id,
            version=model.version,
            step_count=len(model.steps),
            actor_id=actor,
        )

        logger.info(
            "template_updated",
            extra={
                "template_id": str(model.id),
                "version": model.version,
                "step_count": len(model.steps),
                "actor_id": actor,
            },
        )
        return model.to_dto()

    def deactivate_template(
        self,
        template_id: UUID,
        actor: str,
        expected_version: int | None = None,
    ) -> WorkflowTemplate:
        """Soft-delete a template. Deactivating twice is a no-op."""
        model = self._load_template_model(template_id)
        self._check_version(model, expected_version)
        if not model.is_active:
            logger.info(
                "template_already_inactive",
                extra={"template_id": str(template_id)},
            )
            return model.to_dto()

        model.is_active = False
        model.updated_by = actor
        model.updated_at = self.clock.now()
        self.flush(TEMPLATE_ENTITY, template_id)

        self._auditor.record_template_deactivated(template_id=model.id, actor_id=actor)

        logger.info(
            "template_deactivated",
            extra={"template_id": str(model.id), "actor_id": actor},
        )
        return model.to_dto()

    def copy_template(
        self,
        template_id: UUID,
        actor: str,
        name: str | None = None,
    ) -> WorkflowTemplate:
        """Create a new active template with the same steps as an existing one."""
        source = self.get_template(template_id)
        definition = TemplateDefinition(
            name=name if name is not None else f"{source.name} (Copy)",
            description=source.description,
            domain_type=source.domain_type,
            allow_drafts=source.allow_drafts,
            steps=tuple(
                StepSpec(
                    order=s.order,
                    name=s.name,
                    approver_refs=s.approver_refs,
                    rule=s.rule,
                )
                for s in source.steps
            ),
        )
        return self.create_template(definition, actor)

    def get_template(self, template_id: UUID) -> WorkflowTemplate:
        return self._load_template_model(template_id).to_dto()

    def list_templates(
        self,
        domain_type: DomainType | str | None = None,
        active_only: bool = True,
    ) -> list[WorkflowTemplate]:
        """Templates ordered by name, optionally filtered by domain type."""
        query = select(WorkflowTemplateModel)
        if domain_type is not None:
            query = query.where(
                WorkflowTemplateModel.domain_type == DomainType(domain_type).value
            )
        if active_only:
            query = query.where(WorkflowTemplateModel.is_active.is_(True))
        models = self.session.execute(
            query.order_by(WorkflowTemplateModel.name, WorkflowTemplateModel.created_at)
        ).scalars().all()
        return [m.to_dto() for m in models]

    # =========================================================================
    # Internal helpers
    # =========================================================================

    def _load_template_model(self, template_id: UUID) -> WorkflowTemplateModel:
        model = self.session.get(WorkflowTemplateModel, template_id)
        if model is None:
            raise TemplateNotFoundError(str(template_id))
        return model

    @staticmethod
    def _check_version(model: WorkflowTemplateModel, expected_version: int | None) -> None:
        if expected_version is not None and model.version != expected_version:
            raise StaleStateError(
                TEMPLATE_ENTITY, str(model.id), expected_version, model.version
            )
