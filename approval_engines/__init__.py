"""
Module: approval_engines
Responsibility:
    Pure calculation layer of the workflow engine.  Re-exports the
    aggregation functions used by the lifecycle services.

Architecture position:
    Engines -- zero I/O.  May only import approval_kernel/domain types.
    MUST NOT import approval_services.

Invariants enforced:
    - Engines never read the clock; timestamps are stamped by services.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every engine invocation is traced via ``@traced_engine``, emitting
    ENGINE_TRACE log records with engine name, version, input fingerprint
    and duration.
"""

from approval_engines.aggregation import (
    authorized_for_step,
    compute_instance_transition,
    compute_step_status,
)
from approval_engines.tracer import traced_engine

__all__ = [
    "authorized_for_step",
    "compute_instance_transition",
    "compute_step_status",
    "traced_engine",
]
