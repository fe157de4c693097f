"""Kernel services: flush-only, transaction owned by the caller."""

from approval_kernel.services.approval_recorder import ApprovalRecorder, DecisionOutcome
from approval_kernel.services.auditor_service import AuditorService, AuditTrace, AuditTraceEntry
from approval_kernel.services.instance_lifecycle import InstanceLifecycleManager
from approval_kernel.services.template_registry import TemplateRegistry

__all__ = [
    "ApprovalRecorder",
    "AuditTrace",
    "AuditTraceEntry",
    "AuditorService",
    "DecisionOutcome",
    "InstanceLifecycleManager",
    "TemplateRegistry",
]
