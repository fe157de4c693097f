"""
Approval Kernel

The persistence and lifecycle core of the HR approval workflow engine:
- Versioned workflow templates with ordered steps
- Per-approver decision records with optimistic concurrency
- Single authoritative instance state machine
- Full auditability via per-entity hash chains
"""

__version__ = "0.1.0"
