"""
Template definition validation.

Pure checks with no I/O.  Every problem in a definition is collected so an
administrator sees the full list at once; nothing is persisted unless the
list is empty.
"""

from __future__ import annotations

from uuid import uuid4

from approval_kernel.domain.workflow import (
    AggregationRule,
    DomainType,
    RuleKind,
    StepDefinition,
    StepSpec,
    TemplateDefinition,
)
from approval_kernel.exceptions import ValidationError


def _parse_domain_type(value, errors: list[str]) -> DomainType | None:
    try:
        return DomainType(value.value if isinstance(value, DomainType) else str(value).lower())
    except ValueError:
        known = ", ".join(d.value for d in DomainType)
        errors.append(f"Unknown domain type {value!r} (expected one of: {known})")
        return None


def _normalize_step(position: int, spec: StepSpec, errors: list[str]) -> StepSpec:
    name = str(spec.name or "").strip()
    label = f"Step {position + 1} ({name})" if name else f"Step {position + 1}"

    if not isinstance(spec.order, int) or isinstance(spec.order, bool):
        errors.append(f"{label}: order must be an integer")

    refs = tuple(str(r).strip() for r in spec.approver_refs if str(r).strip())
    if not refs:
        errors.append(f"{label}: at least one approver reference is required")

    try:
        rule = AggregationRule.parse(spec.rule)
    except ValueError as exc:
        errors.append(f"{label}: {exc}")
        rule = AggregationRule.all()
    else:
        if rule.kind == RuleKind.QUORUM and (rule.threshold is None or rule.threshold < 1):
            errors.append(f"{label}: QUORUM threshold must be at least 1, got {rule.threshold}")

    return StepSpec(
        order=spec.order,
        name=name or f"Step {spec.order}",
        approver_refs=refs,
        rule=rule,
    )


def normalize_definition(definition: TemplateDefinition) -> TemplateDefinition:
    """Validate ``definition`` and return it with parsed types and sorted steps.

    Checks: non-empty name, known domain type, at least one step, every
    step with an integer order and one or more approver references,
    orders unique and contiguous, QUORUM threshold >= 1.  Unnamed steps
    are called "Step <order>".

    Raises:
        ValidationError: carrying every problem found.
    """
    errors: list[str] = []

    name = str(definition.name or "").strip()
    if not name:
        errors.append("Template name is required")

    domain_type = _parse_domain_type(definition.domain_type, errors)

    if not definition.steps:
        errors.append("Template must have at least one step")

    steps = [
        _normalize_step(i, spec, errors) for i, spec in enumerate(definition.steps)
    ]

    orders = [s.order for s in steps if isinstance(s.order, int) and not isinstance(s.order, bool)]
    if len(orders) == len(steps) and steps:
        if len(set(orders)) != len(orders):
            duplicates = sorted({o for o in orders if orders.count(o) > 1})
            errors.append(f"Step orders must be unique (duplicated: {duplicates})")
        else:
            expected = list(range(min(orders), min(orders) + len(orders)))
            if sorted(orders) != expected:
                errors.append(
                    f"Step orders must be contiguous, got {sorted(orders)}"
                )

    if errors:
        raise ValidationError(errors)

    return TemplateDefinition(
        name=name,
        description=str(definition.description or "").strip(),
        domain_type=domain_type,
        steps=tuple(sorted(steps, key=lambda s: s.order)),
        allow_drafts=bool(definition.allow_drafts),
    )


def build_steps(
    definition: TemplateDefinition,
    id_factory=uuid4,
) -> tuple[StepDefinition, ...]:
    """Assign ids to the steps of an already-normalized definition."""
    return tuple(
        StepDefinition(
            id=id_factory(),
            order=spec.order,
            name=spec.name,
            approver_refs=spec.approver_refs,
            rule=spec.rule,
        )
        for spec in definition.steps
    )
