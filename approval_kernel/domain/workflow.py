"""
Workflow domain types (``approval_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the multi-step approval engine.  Defines the
instance lifecycle state machine, the per-step aggregation rule, template
and step definitions, instance and decision records, and evaluation
results.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``INSTANCE_TRANSITIONS`` defines the only valid status transitions.
  Terminal states have no outgoing edges.
* A ``WorkflowInstance`` carries its own snapshot of the step list, so
  later template edits never change a running request.
* ``AggregationRule`` is a tagged variant: ALL, ANY or QUORUM(n).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID


# =========================================================================
# Enumerations
# =========================================================================


class DomainType(str, Enum):
    """Kind of HR request a template governs."""

    LEAVE = "leave"
    EXPENSE = "expense"
    PURCHASE = "purchase"
    CUSTOM = "custom"


class InstanceStatus(str, Enum):
    """Workflow instance lifecycle states."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


INSTANCE_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.DRAFT: frozenset({
        InstanceStatus.PENDING,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.PENDING: frozenset({
        InstanceStatus.APPROVED,
        InstanceStatus.REJECTED,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.APPROVED: frozenset(),
    InstanceStatus.REJECTED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: frozenset[InstanceStatus] = frozenset({
    InstanceStatus.APPROVED,
    InstanceStatus.REJECTED,
    InstanceStatus.CANCELLED,
})


def can_transition(current: InstanceStatus, target: InstanceStatus) -> bool:
    """True if ``current -> target`` is an edge of the lifecycle."""
    return target in INSTANCE_TRANSITIONS.get(current, frozenset())


class Decision(str, Enum):
    """Value of a single approver's record."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class StepStatus(str, Enum):
    """Aggregated outcome of one step."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# =========================================================================
# Aggregation rule (tagged variant)
# =========================================================================


class RuleKind(str, Enum):
    ALL = "ALL"
    ANY = "ANY"
    QUORUM = "QUORUM"


_QUORUM_PATTERN = re.compile(r"^\s*QUORUM\s*\(\s*(-?\d+)\s*\)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class AggregationRule:
    """How the decisions of one step's approvers combine.

    ``threshold`` is only meaningful for QUORUM.  It is not range-checked
    here; template validation reports a non-positive threshold alongside
    every other problem in the definition.
    """

    kind: RuleKind = RuleKind.ALL
    threshold: int | None = None

    @classmethod
    def all(cls) -> AggregationRule:
        return cls(RuleKind.ALL)

    @classmethod
    def any(cls) -> AggregationRule:
        return cls(RuleKind.ANY)

    @classmethod
    def quorum(cls, n: int) -> AggregationRule:
        return cls(RuleKind.QUORUM, n)

    @classmethod
    def parse(cls, text: str | AggregationRule | None) -> AggregationRule:
        """Parse ``"ALL"``, ``"ANY"`` or ``"QUORUM(n)"`` (case-insensitive).

        Raises:
            ValueError: unrecognised text.
        """
        if text is None:
            return cls.all()
        if isinstance(text, AggregationRule):
            return text
        normalized = str(text).strip().upper()
        if normalized == RuleKind.ALL.value:
            return cls.all()
        if normalized == RuleKind.ANY.value:
            return cls.any()
        match = _QUORUM_PATTERN.match(normalized)
        if match:
            return cls.quorum(int(match.group(1)))
        raise ValueError(f"Unknown aggregation rule: {text!r}")

    @property
    def minimum_approvers(self) -> int:
        """Fewest authorized identities a step needs to be satisfiable."""
        if self.kind == RuleKind.QUORUM:
            return max(self.threshold or 0, 1)
        return 1

    def __str__(self) -> str:
        if self.kind == RuleKind.QUORUM:
            return f"QUORUM({self.threshold})"
        return self.kind.value


# =========================================================================
# Template and step definitions
# =========================================================================


@dataclass(frozen=True)
class StepSpec:
    """Caller-supplied step, before validation assigns it an id.

    ``rule`` may still be raw text here; validation parses it.
    """

    order: int
    name: str
    approver_refs: tuple[str, ...]
    rule: AggregationRule | str = field(default_factory=AggregationRule.all)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepSpec:
        refs = data.get("approvers", data.get("approver_refs", ()))
        if isinstance(refs, str):
            refs = (refs,)
        return cls(
            order=data.get("order"),
            name=data.get("name", ""),
            approver_refs=tuple(refs or ()),
            rule=data.get("rule", AggregationRule.all()),
        )


@dataclass(frozen=True)
class TemplateDefinition:
    """Everything an administrator supplies to create or edit a template."""

    name: str
    domain_type: DomainType | str
    steps: tuple[StepSpec, ...]
    description: str = ""
    allow_drafts: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TemplateDefinition:
        return cls(
            name=data.get("name", ""),
            description=data.get("description", "") or "",
            domain_type=data.get("domain_type", data.get("type", "")),
            steps=tuple(StepSpec.from_dict(s) for s in data.get("steps", ()) or ()),
            allow_drafts=bool(data.get("allow_drafts", False)),
        )


@dataclass(frozen=True)
class StepDefinition:
    """One validated step of a template (and of an instance snapshot)."""

    id: UUID
    order: int
    name: str
    approver_refs: tuple[str, ...]
    rule: AggregationRule = field(default_factory=AggregationRule.all)

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "order": self.order,
            "name": self.name,
            "approver_refs": list(self.approver_refs),
            "rule": str(self.rule),
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> StepDefinition:
        return cls(
            id=UUID(data["id"]),
            order=int(data["order"]),
            name=data["name"],
            approver_refs=tuple(data["approver_refs"]),
            rule=AggregationRule.parse(data["rule"]),
        )


@dataclass(frozen=True)
class WorkflowTemplate:
    """Immutable snapshot of a template row and its ordered steps."""

    id: UUID
    name: str
    description: str
    domain_type: DomainType
    steps: tuple[StepDefinition, ...]
    is_active: bool = True
    allow_drafts: bool = False
    version: int = 1
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# =========================================================================
# Instances and decision records
# =========================================================================


@dataclass(frozen=True)
class WorkflowInstance:
    """Immutable snapshot of a running (or finished) request."""

    id: UUID
    template_id: UUID
    template_version: int
    requester_id: str
    status: InstanceStatus
    steps: tuple[StepDefinition, ...]
    current_step_index: int = 0
    payload: dict[str, Any] = field(default_factory=dict)
    version: int = 1
    created_at: datetime | None = None
    submitted_at: datetime | None = None
    step_activated_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active_step(self) -> StepDefinition | None:
        """The step awaiting decisions, or None when nothing is awaited."""
        if self.status != InstanceStatus.PENDING:
            return None
        if self.current_step_index >= len(self.steps):
            return None
        return self.steps[self.current_step_index]


@dataclass(frozen=True)
class ApprovalRecord:
    """One approver's standing decision on one step. ``decided_at`` is None while pending."""

    id: UUID
    instance_id: UUID
    step_id: UUID
    approver_id: str
    decision: Decision = Decision.PENDING
    comment: str = ""
    decided_at: datetime | None = None
    created_at: datetime | None = None


# =========================================================================
# Evaluation results
# =========================================================================


@dataclass(frozen=True)
class StepEvaluation:
    """Result of aggregating one step's records."""

    step_id: UUID
    status: StepStatus
    rule: AggregationRule
    authorized: tuple[str, ...] = ()
    approvals: int = 0
    rejections: int = 0
    reason: str = ""


class TransitionKind(str, Enum):
    NONE = "none"
    ADVANCE = "advance"
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class InstanceTransition:
    """What the lifecycle manager should do after a changed decision."""

    kind: TransitionKind
    from_index: int
    to_index: int
    evaluation: StepEvaluation | None = None
    next_step: StepDefinition | None = None

    @property
    def target_status(self) -> InstanceStatus | None:
        if self.kind == TransitionKind.APPROVE:
            return InstanceStatus.APPROVED
        if self.kind == TransitionKind.REJECT:
            return InstanceStatus.REJECTED
        return None


# =========================================================================
# ApproverResolver Protocol
# =========================================================================


class ApproverResolver(Protocol):
    """Pluggable interface mapping an approver reference to identities."""

    def resolve(self, reference: str) -> tuple[str, ...]:
        """Return the concrete identities a reference names (may be empty)."""
        ...
