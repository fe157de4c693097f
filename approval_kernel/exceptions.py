"""
Typed exception hierarchy for the approval workflow kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (HTTP handlers, RPC layers, background jobs) must react to engine
errors without parsing message strings.  Every exception here:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes

Example - WRONG way to handle errors:
    try:
        engine.record_decision(...)
    except Exception as e:
        if "not the active step" in str(e):  # FRAGILE
            ...

Example - RIGHT way:
    try:
        engine.record_decision(...)
    except OutOfOrderStepError as e:
        api_response(code=e.code, expected_step=e.expected_step_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    WorkflowEngineError (base)
    |
    +-- ValidationError
    |   +-- ApproverResolutionError
    |
    +-- NotFoundError
    |   +-- TemplateNotFoundError
    |   +-- InstanceNotFoundError
    |
    +-- AuthorizationError
    |   +-- UnauthorizedApproverError
    |   +-- UnauthorizedActorError
    |
    +-- OutOfOrderStepError
    |
    +-- InvalidStateError
    |   +-- TemplateInactiveError
    |
    +-- ConcurrencyError
    |   +-- StaleStateError
    |
    +-- ImmutabilityViolationError
    |
    +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_FAILED           | Malformed template / decision input
                | APPROVER_RESOLUTION_FAILED  | Step resolves to too few approvers
----------------|-----------------------------|-----------------------------------------
Lookup          | TEMPLATE_NOT_FOUND          | Template ID doesn't exist
                | INSTANCE_NOT_FOUND          | Instance ID doesn't exist
----------------|-----------------------------|-----------------------------------------
Authorization   | UNAUTHORIZED_APPROVER       | Approver not assigned to active step
                | UNAUTHORIZED_ACTOR          | Actor may not submit / cancel / administer
----------------|-----------------------------|-----------------------------------------
Ordering        | OUT_OF_ORDER_STEP           | Decision targets a non-active step
----------------|-----------------------------|-----------------------------------------
State           | INVALID_STATE               | Mutation on terminal / wrong-state instance
                | TEMPLATE_INACTIVE           | Template deactivated
----------------|-----------------------------|-----------------------------------------
Concurrency     | STALE_STATE                 | Optimistic-concurrency conflict at commit
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying an append-only audit record
                | AUDIT_CHAIN_BROKEN          | Stored audit hash chain does not verify

===============================================================================
HANDLING PATTERNS
===============================================================================

1. CONCURRENCY ERRORS ARE RETRYABLE:

    except StaleStateError:
        # Re-run the full read-decide-write cycle with bounded backoff.

2. EVERYTHING ELSE IS A CALLER ERROR:

    except (ValidationError, AuthorizationError, InvalidStateError) as e:
        return {"error": e.code, "message": str(e)}
"""


class WorkflowEngineError(Exception):
    """
    Base exception for all approval workflow errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "WORKFLOW_ENGINE_ERROR"


# Validation


class ValidationError(WorkflowEngineError):
    """Malformed template, step or decision input.

    ``errors`` lists every problem found, so a form can show them all at once.
    """

    code: str = "VALIDATION_FAILED"

    def __init__(self, errors: list[str] | tuple[str, ...] | str):
        if isinstance(errors, str):
            errors = (errors,)
        self.errors = tuple(errors)
        super().__init__("Validation failed: " + "; ".join(self.errors))


class ApproverResolutionError(ValidationError):
    """A step's approver references resolved to too few identities."""

    code: str = "APPROVER_RESOLUTION_FAILED"

    def __init__(self, step_id: str, references: tuple[str, ...], required: int, resolved: int):
        self.step_id = step_id
        self.references = references
        self.required = required
        self.resolved = resolved
        super().__init__(
            f"Step {step_id} resolved {resolved} approver(s) from "
            f"{list(references)}, at least {required} required"
        )


# Lookup


class NotFoundError(WorkflowEngineError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class TemplateNotFoundError(NotFoundError):
    """Workflow template with given ID was not found."""

    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Workflow template not found: {template_id}")


class InstanceNotFoundError(NotFoundError):
    """Workflow instance with given ID was not found."""

    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Workflow instance not found: {instance_id}")


# Authorization


class AuthorizationError(WorkflowEngineError):
    """Base exception for identity-related refusals."""

    code: str = "AUTHORIZATION_ERROR"


class UnauthorizedApproverError(AuthorizationError):
    """Decision from an approver not assigned to the active step."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, approver_id: str, instance_id: str, step_id: str):
        self.approver_id = approver_id
        self.instance_id = instance_id
        self.step_id = step_id
        super().__init__(
            f"Approver {approver_id} is not authorized for step {step_id} "
            f"of instance {instance_id}"
        )


class UnauthorizedActorError(AuthorizationError):
    """Actor is not allowed to perform a lifecycle or admin operation."""

    code: str = "UNAUTHORIZED_ACTOR"

    def __init__(self, actor_id: str, action: str, reason: str):
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        super().__init__(f"Actor {actor_id} may not {action}: {reason}")


# Ordering


class OutOfOrderStepError(WorkflowEngineError):
    """Decision targets a step other than the active one."""

    code: str = "OUT_OF_ORDER_STEP"

    def __init__(self, instance_id: str, step_id: str, expected_step_id: str | None):
        self.instance_id = instance_id
        self.step_id = step_id
        self.expected_step_id = expected_step_id
        super().__init__(
            f"Step {step_id} is not the active step of instance {instance_id} "
            f"(active: {expected_step_id})"
        )


# State


class InvalidStateError(WorkflowEngineError):
    """Operation not permitted from the entity's current state."""

    code: str = "INVALID_STATE"

    def __init__(self, entity_id: str, current_status: str, action: str):
        self.entity_id = entity_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} {entity_id}: status is {current_status}"
        )


class TemplateInactiveError(InvalidStateError):
    """Template has been deactivated."""

    code: str = "TEMPLATE_INACTIVE"

    def __init__(self, template_id: str, action: str):
        self.template_id = template_id
        super().__init__(template_id, "inactive", action)


# Concurrency


class ConcurrencyError(WorkflowEngineError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class StaleStateError(ConcurrencyError):
    """Optimistic-concurrency conflict: the entity changed since it was read."""

    code: str = "STALE_STATE"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        detail = ""
        if expected_version is not None:
            detail = f" (expected version {expected_version}, found {actual_version})"
        super().__init__(
            f"Stale state on {entity_type} {entity_id}: "
            f"modified by another transaction{detail}"
        )


# Immutability


class ImmutabilityViolationError(WorkflowEngineError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class AuditChainBrokenError(WorkflowEngineError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, event_id: str, expected_hash: str, actual_hash: str):
        self.event_id = event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at event {event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )
