"""Tests for template definition validation (collect-all-errors)."""

from uuid import UUID

import pytest

from approval_kernel.domain.template_validation import build_steps, normalize_definition
from approval_kernel.domain.workflow import (
    AggregationRule,
    DomainType,
    StepSpec,
    TemplateDefinition,
)
from approval_kernel.exceptions import ValidationError


def definition(steps, name="Expense", domain_type="expense") -> TemplateDefinition:
    return TemplateDefinition(name=name, domain_type=domain_type, steps=tuple(steps))


def step(order, name="Step", refs=("role:manager",), rule="ALL") -> StepSpec:
    return StepSpec(order=order, name=name, approver_refs=refs, rule=rule)


class TestNormalizeDefinition:

    def test_valid_definition_is_normalized(self):
        result = normalize_definition(
            definition(
                [step(2, "Finance", rule="any"), step(1, "  Manager  ", rule="QUORUM(1)")],
                name="  Expense  ",
                domain_type="EXPENSE",
            )
        )

        assert result.name == "Expense"
        assert result.domain_type == DomainType.EXPENSE
        assert [s.order for s in result.steps] == [1, 2]
        assert result.steps[0].name == "Manager"
        assert result.steps[0].rule == AggregationRule.quorum(1)
        assert result.steps[1].rule == AggregationRule.any()

    def test_step_name_is_optional(self):
        result = normalize_definition(definition([step(1, name=""), step(2, name=None)]))
        assert [s.name for s in result.steps] == ["Step 1", "Step 2"]

    def test_orders_may_start_anywhere(self):
        result = normalize_definition(definition([step(0), step(1)]))
        assert [s.order for s in result.steps] == [0, 1]

    def test_blank_references_are_dropped(self):
        result = normalize_definition(definition([step(1, refs=("role:manager", "  "))]))
        assert result.steps[0].approver_refs == ("role:manager",)

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_definition(definition([step(1)], name="   "))
        assert exc_info.value.errors == ("Template name is required",)

    def test_no_steps_rejected(self):
        with pytest.raises(ValidationError, match="at least one step"):
            normalize_definition(definition([]))

    def test_step_without_approvers_rejected(self):
        with pytest.raises(ValidationError, match="approver reference"):
            normalize_definition(definition([step(1, refs=())]))

    def test_gap_in_orders_rejected(self):
        with pytest.raises(ValidationError, match="contiguous"):
            normalize_definition(definition([step(1), step(3)]))

    def test_duplicate_orders_rejected(self):
        with pytest.raises(ValidationError, match="unique"):
            normalize_definition(definition([step(1), step(1)]))

    def test_non_integer_order_rejected(self):
        with pytest.raises(ValidationError, match="integer"):
            normalize_definition(definition([step("1")]))

    def test_bool_order_rejected(self):
        with pytest.raises(ValidationError, match="integer"):
            normalize_definition(definition([step(True)]))

    def test_unknown_rule_rejected(self):
        with pytest.raises(ValidationError, match="Unknown aggregation rule"):
            normalize_definition(definition([step(1, rule="MAJORITY")]))

    def test_zero_quorum_rejected(self):
        with pytest.raises(ValidationError, match="QUORUM threshold"):
            normalize_definition(definition([step(1, rule="QUORUM(0)")]))

    def test_unknown_domain_type_rejected(self):
        with pytest.raises(ValidationError, match="Unknown domain type"):
            normalize_definition(definition([step(1)], domain_type="payroll"))

    def test_every_problem_is_reported(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_definition(
                definition(
                    [step(1, name="", refs=()), step(3, rule="QUORUM(0)")],
                    name="",
                    domain_type="payroll",
                )
            )
        errors = exc_info.value.errors
        assert len(errors) == 5
        assert exc_info.value.code == "VALIDATION_FAILED"


def test_build_steps_assigns_distinct_ids():
    normalized = normalize_definition(definition([step(1), step(2)]))
    steps = build_steps(normalized)

    assert all(isinstance(s.id, UUID) for s in steps)
    assert len({s.id for s in steps}) == 2
    assert [s.order for s in steps] == [1, 2]
