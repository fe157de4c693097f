"""
approval_engines.aggregation -- Pure step and instance aggregation engine.

Responsibility:
    Decide, from a step's rule and the current approval records, whether
    the step is approved, rejected or still pending, and turn that into the
    single transition the lifecycle manager must apply.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ types.

Invariants enforced:
    - Status is always recomputed from the records; there are no cached
      counters to drift.
    - Records from identities outside the step's authorized set are ignored.
    - Reject-dominance for ALL and QUORUM(n): any counted rejection rejects
      the step, even if the approval threshold was also reached.
    - ANY approves on the first approval and rejects only when every
      authorized approver has rejected.
    - Purity: no clock access, no I/O, no database.
"""

from __future__ import annotations

from collections.abc import Iterable

from approval_engines.tracer import traced_engine
from approval_kernel.domain.workflow import (
    ApprovalRecord,
    Decision,
    InstanceStatus,
    InstanceTransition,
    RuleKind,
    StepDefinition,
    StepEvaluation,
    StepStatus,
    TransitionKind,
    WorkflowInstance,
)


def _counted_decisions(
    step: StepDefinition,
    authorized: tuple[str, ...],
    records: Iterable[ApprovalRecord],
) -> dict[str, Decision]:
    allowed = set(authorized)
    decisions: dict[str, Decision] = {}
    for record in records:
        if record.step_id != step.id or record.approver_id not in allowed:
            continue
        decisions[record.approver_id] = record.decision
    return decisions


@traced_engine("aggregation", "1.0", fingerprint_fields=("step", "authorized"))
def compute_step_status(
    step: StepDefinition,
    authorized: tuple[str, ...],
    records: Iterable[ApprovalRecord],
) -> StepEvaluation:
    """Aggregate one step's records under its rule.

    Args:
        step: The step being evaluated.
        authorized: Identities allowed to decide this step.
        records: Any records; only this step's authorized ones count.

    Returns:
        StepEvaluation with status and approval / rejection counts.
    """
    authorized = tuple(dict.fromkeys(authorized))
    decisions = _counted_decisions(step, authorized, records)
    approvals = sum(1 for d in decisions.values() if d == Decision.APPROVED)
    rejections = sum(1 for d in decisions.values() if d == Decision.REJECTED)
    rule = step.rule

    def result(status: StepStatus, reason: str) -> StepEvaluation:
        return StepEvaluation(
            step_id=step.id,
            status=status,
            rule=rule,
            authorized=authorized,
            approvals=approvals,
            rejections=rejections,
            reason=reason,
        )

    if not authorized:
        return result(StepStatus.PENDING, "No authorized approvers")

    if rule.kind == RuleKind.ALL:
        if rejections:
            return result(StepStatus.REJECTED, "Rejected by an approver")
        if approvals == len(authorized):
            return result(StepStatus.APPROVED, "All approvers approved")
        return result(StepStatus.PENDING, f"{approvals}/{len(authorized)} approvals")

    if rule.kind == RuleKind.ANY:
        if approvals:
            return result(StepStatus.APPROVED, "Approved by an approver")
        if rejections == len(authorized):
            return result(StepStatus.REJECTED, "Rejected by every approver")
        return result(StepStatus.PENDING, "Awaiting any approval")

    required = rule.threshold or 0
    if rejections:
        return result(StepStatus.REJECTED, "Rejected by an approver")
    if approvals >= required:
        return result(StepStatus.APPROVED, f"Quorum of {required} reached")
    return result(StepStatus.PENDING, f"{approvals}/{required} approvals")


def authorized_for_step(
    step: StepDefinition,
    records: Iterable[ApprovalRecord],
) -> tuple[str, ...]:
    """The approver identities holding a record on ``step``, in first-seen order."""
    return tuple(dict.fromkeys(r.approver_id for r in records if r.step_id == step.id))


@traced_engine("instance_transition", "1.0", fingerprint_fields=("instance",))
def compute_instance_transition(
    instance: WorkflowInstance,
    records: Iterable[ApprovalRecord],
) -> InstanceTransition:
    """Decide what happens to ``instance`` given its current records.

    The active step's authorized set is the set of identities holding a
    record on it (written at step activation).

    Returns:
        NONE while the step is pending (or nothing is active), REJECT when
        the step is rejected, ADVANCE to the next step, or APPROVE when the
        last step is approved (``to_index`` then equals the step count).
    """
    index = instance.current_step_index
    step = instance.active_step
    if instance.status != InstanceStatus.PENDING or step is None:
        return InstanceTransition(TransitionKind.NONE, index, index)

    records = tuple(records)
    evaluation = compute_step_status(
        step=step,
        authorized=authorized_for_step(step, records),
        records=records,
    )

    if evaluation.status == StepStatus.REJECTED:
        return InstanceTransition(TransitionKind.REJECT, index, index, evaluation)

    if evaluation.status == StepStatus.APPROVED:
        next_index = index + 1
        if next_index >= len(instance.steps):
            return InstanceTransition(
                TransitionKind.APPROVE, index, len(instance.steps), evaluation
            )
        return InstanceTransition(
            TransitionKind.ADVANCE,
            index,
            next_index,
            evaluation,
            next_step=instance.steps[next_index],
        )

    return InstanceTransition(TransitionKind.NONE, index, index, evaluation)
