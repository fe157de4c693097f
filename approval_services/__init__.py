"""
approval_services -- Application layer of the approval workflow engine.

``WorkflowEngine`` is the public API.  The resolver and dispatchers here
are in-process implementations of the kernel's collaborator protocols.
"""

from approval_services.approver_resolver import StaticApproverResolver
from approval_services.notifications import (
    LoggingNotificationDispatcher,
    RecordingNotificationDispatcher,
    dispatch_events,
)
from approval_services.workflow_engine import (
    DecisionResult,
    InstanceResult,
    WorkflowEngine,
    compute_backoff,
)

__all__ = [
    "DecisionResult",
    "InstanceResult",
    "LoggingNotificationDispatcher",
    "RecordingNotificationDispatcher",
    "StaticApproverResolver",
    "WorkflowEngine",
    "compute_backoff",
    "dispatch_events",
]
