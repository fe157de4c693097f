"""ORM models for the approval kernel."""

from approval_kernel.models.audit_event import AuditAction, AuditEvent
from approval_kernel.models.instance import ApprovalRecordModel, WorkflowInstanceModel
from approval_kernel.models.template import StepDefinitionModel, WorkflowTemplateModel

__all__ = [
    "ApprovalRecordModel",
    "AuditAction",
    "AuditEvent",
    "StepDefinitionModel",
    "WorkflowInstanceModel",
    "WorkflowTemplateModel",
]
