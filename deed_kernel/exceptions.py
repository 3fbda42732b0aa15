"""
Typed Exception Hierarchy for the Deed Workflow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A staff dashboard has to tell a reviewer *why* an action was refused:
"waiting on staff1 approval" is actionable, "operation failed" is not.
Callers therefore catch by type, never by message text:

    try:
        workflow.decide(form_id, actor, approved=True)
    except OutOfOrderError as e:
        show(e.user_message)               # "Waiting on staff1 approval."
        api_response(code=e.code, waiting_on=e.missing_roles)

Every exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (form_id, role, ...)
  4. Exposes ``user_message`` -- a short, actionable sentence for end users

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    DeedWorkflowError (base)
    |
    +-- ValidationError
    +-- FormNotFoundError
    +-- StaffNotFoundError
    |
    +-- AccessError
    |   +-- AccessDeniedError
    |
    +-- WorkflowError
    |   +-- InvalidStateError
    |   +-- OutOfOrderError
    |   +-- MissingReasonError
    |   +-- LockedError
    |   +-- InvalidTargetError
    |
    +-- ConcurrencyError
    |   +-- ConflictError
    |   +-- RetryExhaustedError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                   | When Raised
--------------|------------------------|-------------------------------------------
Input         | VALIDATION_ERROR       | Unknown form type, missing required field
              | FORM_NOT_FOUND         | Form ID doesn't exist
              | STAFF_NOT_FOUND        | Staff account ID doesn't exist
--------------|------------------------|-------------------------------------------
Access        | ACCESS_DENIED          | Role lacks capability for the action
--------------|------------------------|-------------------------------------------
Workflow      | INVALID_STATE          | Transition not legal from current status,
              |                        | or the role already decided
              | OUT_OF_ORDER           | Stage gate prerequisites not approved
              | MISSING_REASON         | Rejection without notes
              | FORM_LOCKED            | Mutation of a locked form
              | INVALID_TARGET         | Assignment to an ineligible account
--------------|------------------------|-------------------------------------------
Concurrency   | CONFLICT               | Optimistic version mismatch (retried once)
              | RETRY_EXHAUSTED        | Conflict persisted after the retry
--------------|------------------------|-------------------------------------------
Immutability  | IMMUTABILITY_VIOLATION | UPDATE/DELETE of a ledger row

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ConflictError never reaches end users.  WorkflowService retries the
   whole transition once against a fresh read; if the second attempt also
   conflicts it raises RetryExhaustedError instead.

2. AccessDeniedError is a security event.  The raising service logs it at
   WARNING with the actor and form before propagating.

3. Nothing in this hierarchy is swallowed by the kernel.  Every failure
   leaves the form exactly as it was (the transaction is rolled back).
"""

from __future__ import annotations


class DeedWorkflowError(Exception):
    """
    Base exception for all deed workflow errors.

    All subclasses must have a ``code`` class attribute for
    machine-readable error identification.
    """

    code: str = "DEED_WORKFLOW_ERROR"

    @property
    def user_message(self) -> str:
        """Short, actionable message suitable for end users."""
        return str(self)


# Input-related exceptions


class ValidationError(DeedWorkflowError):
    """Malformed input: unknown form type, missing required fields, bad values."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class FormNotFoundError(DeedWorkflowError):
    """Form with the given ID was not found."""

    code: str = "FORM_NOT_FOUND"

    def __init__(self, form_id: str):
        self.form_id = form_id
        super().__init__(f"Form not found: {form_id}")


class StaffNotFoundError(DeedWorkflowError):
    """Staff account with the given ID was not found."""

    code: str = "STAFF_NOT_FOUND"

    def __init__(self, staff_id: str):
        self.staff_id = staff_id
        super().__init__(f"Staff account not found: {staff_id}")


# Access-related exceptions


class AccessError(DeedWorkflowError):
    """Base exception for access-control errors."""

    code: str = "ACCESS_ERROR"


class AccessDeniedError(AccessError):
    """The acting role lacks the capability required for the action."""

    code: str = "ACCESS_DENIED"

    def __init__(
        self,
        form_id: str,
        role: str,
        action: str,
        capability: str,
        reason: str = "",
    ):
        self.form_id = form_id
        self.role = role
        self.action = action
        self.capability = capability
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Role '{role}' may not {action} form {form_id} "
            f"(capability={capability}){detail}"
        )

    @property
    def user_message(self) -> str:
        return f"You do not have permission to {self.action} this form."


# Workflow-related exceptions


class WorkflowError(DeedWorkflowError):
    """Base exception for workflow state-machine errors."""

    code: str = "WORKFLOW_ERROR"


class InvalidStateError(WorkflowError):
    """The requested transition is not legal from the form's current state."""

    code: str = "INVALID_STATE"

    def __init__(self, form_id: str, current_state: str, action: str, reason: str = ""):
        self.form_id = form_id
        self.current_state = current_state
        self.action = action
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Cannot {action} form {form_id} in state '{current_state}'{detail}"
        )

    @property
    def user_message(self) -> str:
        if self.reason:
            return f"'{self.action}' is not available for this form: {self.reason}."
        return f"'{self.action}' is not available while the form is {self.current_state}."


class OutOfOrderError(WorkflowError):
    """The role's stage gate is not satisfied: prerequisite roles pending."""

    code: str = "OUT_OF_ORDER"

    def __init__(self, form_id: str, role: str, missing_roles: tuple[str, ...]):
        self.form_id = form_id
        self.role = role
        self.missing_roles = missing_roles
        super().__init__(
            f"Role '{role}' cannot decide form {form_id} before "
            f"{', '.join(missing_roles)} approve"
        )

    @property
    def user_message(self) -> str:
        return f"Waiting on {' and '.join(self.missing_roles)} approval."


class MissingReasonError(WorkflowError):
    """A rejection was submitted without notes."""

    code: str = "MISSING_REASON"

    def __init__(self, form_id: str, role: str):
        self.form_id = form_id
        self.role = role
        super().__init__(f"Rejection of form {form_id} by '{role}' requires notes")

    @property
    def user_message(self) -> str:
        return "Please give a reason for the rejection."


class LockedError(WorkflowError):
    """Attempted mutation of a locked form."""

    code: str = "FORM_LOCKED"

    def __init__(self, form_id: str, status: str):
        self.form_id = form_id
        self.status = status
        super().__init__(f"Form {form_id} is locked ({status})")

    @property
    def user_message(self) -> str:
        return "This form is locked. Only an administrator can unlock it."


class InvalidTargetError(WorkflowError):
    """Assignment target is not an eligible, active staff account."""

    code: str = "INVALID_TARGET"

    def __init__(self, form_id: str, staff_id: str, reason: str):
        self.form_id = form_id
        self.staff_id = staff_id
        self.reason = reason
        super().__init__(f"Cannot assign form {form_id} to {staff_id}: {reason}")

    @property
    def user_message(self) -> str:
        return f"This staff member cannot take the form: {self.reason}."


# Concurrency-related exceptions


class ConcurrencyError(DeedWorkflowError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConflictError(ConcurrencyError):
    """Optimistic concurrency conflict: the form changed underneath us."""

    code: str = "CONFLICT"

    def __init__(self, form_id: str, expected_version: int | None = None):
        self.form_id = form_id
        self.expected_version = expected_version
        super().__init__(
            f"Form {form_id} was modified by another transaction "
            f"(expected version {expected_version})"
        )


class RetryExhaustedError(ConcurrencyError):
    """A conflicting transition still conflicted after the single retry."""

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, form_id: str, operation: str, attempts: int):
        self.form_id = form_id
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"Operation '{operation}' on form {form_id} conflicted "
            f"{attempts} times"
        )

    @property
    def user_message(self) -> str:
        return "Someone else is working on this form. Please reload and try again."


# Immutability-related exceptions


class ImmutabilityError(DeedWorkflowError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )
