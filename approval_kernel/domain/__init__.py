"""
Pure domain layer.

Immutable value objects and pure logic with NO dependencies on the ORM,
the database, or I/O (the SystemClock being the one time boundary).
"""

from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.notifications import (
    NotificationDispatcher,
    NotificationEvent,
    NotificationType,
)
from approval_kernel.domain.workflow import (
    INSTANCE_TRANSITIONS,
    TERMINAL_STATUSES,
    AggregationRule,
    ApprovalRecord,
    ApproverResolver,
    Decision,
    DomainType,
    InstanceStatus,
    InstanceTransition,
    RuleKind,
    StepDefinition,
    StepEvaluation,
    StepSpec,
    StepStatus,
    TemplateDefinition,
    TransitionKind,
    WorkflowInstance,
    WorkflowTemplate,
)

__all__ = [
    "INSTANCE_TRANSITIONS",
    "TERMINAL_STATUSES",
    "AggregationRule",
    "ApprovalRecord",
    "ApproverResolver",
    "Clock",
    "Decision",
    "DeterministicClock",
    "DomainType",
    "InstanceStatus",
    "InstanceTransition",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationType",
    "RuleKind",
    "StepDefinition",
    "StepEvaluation",
    "StepSpec",
    "StepStatus",
    "SystemClock",
    "TemplateDefinition",
    "TransitionKind",
    "WorkflowInstance",
    "WorkflowTemplate",
]
