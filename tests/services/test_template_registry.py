"""
Tests for TemplateRegistry -- workflow template administration.

Covers:
- create_template(): validation before persistence, step ordering, audit
- update_template(): version bump, step replacement, running instances
  keep their snapshot, stale version, inactive template
- deactivate_template(): soft delete, idempotency, existing instances
- copy_template(), get_template(), list_templates()
"""

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from approval_kernel.domain.workflow import (
    AggregationRule,
    DomainType,
    InstanceStatus,
    StepSpec,
    TemplateDefinition,
)
from approval_kernel.exceptions import (
    StaleStateError,
    TemplateInactiveError,
    TemplateNotFoundError,
    ValidationError,
)
from approval_kernel.models.audit_event import AuditAction
from approval_kernel.models.template import WorkflowTemplateModel


class TestCreateTemplate:

    def test_creates_active_template(self, template_registry, expense_definition):
        template = template_registry.create_template(expense_definition, "hr-admin")

        assert template.name == "ExpenseApproval"
        assert template.domain_type == DomainType.EXPENSE
        assert template.is_active
        assert template.version == 1
        assert template.created_by == "hr-admin"
        assert [s.name for s in template.steps] == ["Manager", "Finance"]
        assert all(s.rule == AggregationRule.all() for s in template.steps)

    def test_steps_stored_in_order(self, template_registry):
        definition = TemplateDefinition(
            name="Reordered",
            domain_type="custom",
            steps=(
                StepSpec(order=2, name="Second", approver_refs=("bob",)),
                StepSpec(order=1, name="First", approver_refs=("carol",)),
            ),
        )
        template = template_registry.create_template(definition, "hr-admin")
        assert [s.name for s in template.steps] == ["First", "Second"]

    def test_unnamed_steps_are_accepted(self, template_registry):
        definition = TemplateDefinition(
            name="Leave",
            domain_type="leave",
            steps=(
                StepSpec(order=1, name="", approver_refs=("role:manager",)),
                StepSpec(order=2, name="  ", approver_refs=("role:finance",)),
            ),
        )
        template = template_registry.create_template(definition, "hr-admin")

        assert [s.name for s in template.steps] == ["Step 1", "Step 2"]
        assert template_registry.get_template(template.id).steps[1].name == "Step 2"

    def test_invalid_definition_persists_nothing(self, session, template_registry):
        bad = TemplateDefinition(name="", domain_type="expense", steps=())

        with pytest.raises(ValidationError) as exc_info:
            template_registry.create_template(bad, "hr-admin")

        assert len(exc_info.value.errors) == 2
        count = session.execute(select(func.count()).select_from(WorkflowTemplateModel)).scalar()
        assert count == 0

    def test_audit_event_written(self, template_registry, auditor_service, expense_definition):
        template = template_registry.create_template(expense_definition, "hr-admin")

        trace = auditor_service.get_trace(template.id)
        assert trace.actions == (AuditAction.TEMPLATE_CREATED,)
        assert trace.entries[0].payload["step_count"] == 2

    def test_logs_template_created(self, template_registry, expense_definition, captured_logs):
        template_registry.create_template(expense_definition, "hr-admin")

        created = [r for r in captured_logs() if r["message"] == "template_created"]
        assert len(created) == 1
        assert created[0]["template_name"] == "ExpenseApproval"


class TestUpdateTemplate:

    def test_update_replaces_steps_and_bumps_version(self, template_registry, expense_definition):
        template = template_registry.create_template(expense_definition, "hr-admin")
        revised = TemplateDefinition(
            name="ExpenseApproval v2",
            domain_type="expense",
            steps=(
                StepSpec(order=1, name="Panel", approver_refs=("role:reviewers",), rule="QUORUM(2)"),
            ),
        )

        updated = template_registry.update_template(template.id, revised, "hr-admin")

        assert updated.version == 2
        assert updated.name == "ExpenseApproval v2"
        assert [s.name for s in updated.steps] == ["Panel"]
        assert updated.steps[0].rule == AggregationRule.quorum(2)
        assert updated.steps[0].id not in {s.id for s in template.steps}

    def test_running_instances_keep_their_snapshot(
        self, template_registry, lifecycle, make_definition
    ):
        template = template_registry.create_template(make_definition(), "hr-admin")
        instance = lifecycle.create_instance(template.id, "alice")

        template_registry.update_template(
            template.id,
            make_definition(steps=(("A", ("bob",), "ALL"), ("B", ("carol",), "ALL"))),
            "hr-admin",
        )

        reloaded = lifecycle.get_instance(instance.id)
        assert reloaded.steps == instance.steps
        assert reloaded.template_version == 1

    def test_update_validates(self, template_registry, expense_definition):
        template = template_registry.create_template(expense_definition, "hr-admin")
        with pytest.raises(ValidationError):
            template_registry.update_template(
                template.id,
                TemplateDefinition(name="x", domain_type="expense", steps=()),
                "hr-admin",
            )

    def test_stale_expected_version(self, template_registry, expense_definition):
        template = template_registry.create_template(expense_definition, "hr-admin")
        with pytest.raises(StaleStateError) as exc_info:
            template_registry.update_template(
                template.id, expense_definition, "hr-admin", expected_version=7
            )
        assert exc_info.value.actual_version == 1

    def test_inactive_template_cannot_be_updated(self, template_registry, expense_definition):
        template = template_registry.create_template(expense_definition, "hr-admin")
        template_registry.deactivate_template(template.id, "hr-admin")

        with pytest.raises(TemplateInactiveError):
            template_registry.update_template(template.id, expense_definition, "hr-admin")

    def test_unknown_template(self, template_registry, expense_definition):
        with pytest.raises(TemplateNotFoundError):
            template_registry.update_template(uuid4(), expense_definition, "hr-admin")


class TestDeactivateTemplate:

    def test_soft_delete(self, template_registry, auditor_service, expense_definition):
        template = template_registry.create_template(expense_definition, "hr-admin")

        result = template_registry.deactivate_template(template.id, "hr-admin")

        assert result.is_active is False
        assert template_registry.get_template(template.id).is_active is False
        assert auditor_service.get_trace(template.id).last_action == AuditAction.TEMPLATE_DEACTIVATED

    def test_idempotent(self, template_registry, auditor_service, expense_definition):
        template = template_registry.create_template(expense_definition, "hr-admin")
        template_registry.deactivate_template(template.id, "hr-admin")
        again = template_registry.deactivate_template(template.id, "hr-admin")

        assert again.is_active is False
        actions = auditor_service.get_trace(template.id).actions
        assert actions.count(AuditAction.TEMPLATE_DEACTIVATED) == 1

    def test_existing_instances_unaffected(self, template_registry, lifecycle, make_definition):
        template = template_registry.create_template(make_definition(), "hr-admin")
        instance = lifecycle.create_instance(template.id, "alice")

        template_registry.deactivate_template(template.id, "hr-admin")

        assert lifecycle.get_instance(instance.id).status == InstanceStatus.PENDING


class TestCatalogue:

    def test_copy_template(self, template_registry, expense_definition):
        source = template_registry.create_template(expense_definition, "hr-admin")

        copy = template_registry.copy_template(source.id, "hr-admin")

        assert copy.id != source.id
        assert copy.name == "ExpenseApproval (Copy)"
        assert [(s.name, s.rule) for s in copy.steps] == [(s.name, s.rule) for s in source.steps]
        assert {s.id for s in copy.steps}.isdisjoint({s.id for s in source.steps})

    def test_copy_with_name(self, template_registry, expense_definition):
        source = template_registry.create_template(expense_definition, "hr-admin")
        assert template_registry.copy_template(source.id, "hr-admin", name="Travel").name == "Travel"

    def test_list_templates_filters(self, template_registry, make_definition):
        leave = template_registry.create_template(
            make_definition(name="Leave", domain_type="leave"), "hr-admin"
        )
        template_registry.create_template(
            make_definition(name="Buy", domain_type="purchase"), "hr-admin"
        )
        old = template_registry.create_template(
            make_definition(name="Annual Leave", domain_type="leave"), "hr-admin"
        )
        template_registry.deactivate_template(old.id, "hr-admin")

        assert [t.name for t in template_registry.list_templates()] == ["Buy", "Leave"]
        assert [t.id for t in template_registry.list_templates(DomainType.LEAVE)] == [leave.id]
        assert [t.name for t in template_registry.list_templates("leave", active_only=False)] == [
            "Annual Leave",
            "Leave",
        ]

    def test_get_unknown_template(self, template_registry):
        with pytest.raises(TemplateNotFoundError):
            template_registry.get_template(uuid4())
