"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Entity-owning features translate engine failures into human-readable
messages ("You are not an assigned reviewer for this item").  They must be
able to do so by TYPE and CODE, never by parsing message strings:

    try:
        workflow.respond(round_id, user_id, Decision.APPROVED)
    except AuthorizationError as e:
        flash(e.reason)                         # Stable message
        api_response(code=e.code, round=e.round_id)

Every exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ApprovalKernelError (base)
    |
    +-- AuthorizationError
    +-- InvalidStateError
    +-- PreconditionFailedError
    +-- NotFoundError
    |   +-- RoundNotFoundError
    +-- ConcurrencyConflictError
    +-- ImmutabilityViolationError
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                    | When Raised
------------------------|------------------------------------------------------
AUTHORIZATION_DENIED    | Caller lacks the right relationship to the round
INVALID_STATE           | Operation not valid for the round's current status
PRECONDITION_FAILED     | Structural requirement unmet (e.g. no approvers)
NOT_FOUND               | Referenced record does not exist
ROUND_NOT_FOUND         | Approval round id does not exist
CONCURRENCY_CONFLICT    | Optimistic retry budget exhausted
IMMUTABILITY_VIOLATION  | Attempt to modify an append-only / frozen row
CONFIGURATION_ERROR     | Settings file failed validation

===============================================================================
PROPAGATION
===============================================================================

The workflow service never commits partially: any exception raised inside
an operation rolls back the whole transaction before it reaches the
caller.  ``ConcurrencyConflictError`` is only surfaced after the internal
retry loop gives up.
"""

from __future__ import annotations


class ApprovalKernelError(Exception):
    """
    Base exception for all approval kernel errors.

    All subclasses must have a ``code`` class attribute for
    machine-readable error identification.
    """

    code: str = "APPROVAL_KERNEL_ERROR"


class AuthorizationError(ApprovalKernelError):
    """The caller does not have the relationship to the round that the
    requested action needs (owner, assigned approver, or container role)."""

    code: str = "AUTHORIZATION_DENIED"

    def __init__(
        self,
        action: str,
        round_id: str,
        user_id: str,
        reason: str,
    ):
        self.action = action
        self.round_id = round_id
        self.user_id = user_id
        self.reason = reason
        super().__init__(reason)


class InvalidStateError(ApprovalKernelError):
    """Operation is not valid given the round's current status."""

    code: str = "INVALID_STATE"

    def __init__(self, operation: str, current_status: str | None, reason: str):
        self.operation = operation
        self.current_status = current_status
        self.reason = reason
        super().__init__(reason)


class PreconditionFailedError(ApprovalKernelError):
    """A structural requirement for the operation is not met."""

    code: str = "PRECONDITION_FAILED"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(reason)


class NotFoundError(ApprovalKernelError):
    """Referenced record does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class RoundNotFoundError(NotFoundError):
    """Approval round with the given id was not found."""

    code: str = "ROUND_NOT_FOUND"

    def __init__(self, round_id: str):
        self.round_id = round_id
        super().__init__("ApprovalRound", round_id)


class ConcurrencyConflictError(ApprovalKernelError):
    """
    Concurrent modification kept invalidating the operation.

    Raised only after the optimistic retry loop has exhausted its budget.
    """

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, operation: str, round_id: str | None, attempts: int):
        self.operation = operation
        self.round_id = round_id
        self.attempts = attempts
        super().__init__(
            f"{operation} on round {round_id} conflicted with concurrent "
            f"writers after {attempts} attempt(s)"
        )


class ImmutabilityViolationError(ApprovalKernelError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


class ConfigurationError(ApprovalKernelError):
    """Workflow settings failed validation."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid setting '{field_name}': {reason}")
