"""
Kernel domain layer -- pure value objects for the verification workflow.

Nothing in this package performs I/O.  Services, models and engines import
from here; this package imports from nothing outside itself.
"""

from deed_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from deed_kernel.domain.forms import (
    Actor,
    ApprovalRecord,
    ApprovalVector,
    AssignmentRecord,
    ChangeLogEntry,
    Form,
    FormView,
    StaffAccount,
    StatusChange,
)
from deed_kernel.domain.workflow import (
    FORM_TRANSITIONS,
    LOCKABLE_STATUSES,
    OPEN_STATUSES,
    REVIEWABLE_STATUSES,
    REVIEWER_ROLES,
    ROLE_ORDER,
    STAFF_ROLES,
    ApprovalState,
    Capability,
    ChangeType,
    FormStatus,
    FormType,
    Pipeline,
    Role,
    can_transition,
)

__all__ = [
    "Actor",
    "ApprovalRecord",
    "ApprovalState",
    "ApprovalVector",
    "AssignmentRecord",
    "Capability",
    "ChangeLogEntry",
    "ChangeType",
    "Clock",
    "DeterministicClock",
    "FORM_TRANSITIONS",
    "Form",
    "FormStatus",
    "FormType",
    "FormView",
    "LOCKABLE_STATUSES",
    "OPEN_STATUSES",
    "Pipeline",
    "REVIEWABLE_STATUSES",
    "REVIEWER_ROLES",
    "ROLE_ORDER",
    "Role",
    "STAFF_ROLES",
    "StaffAccount",
    "StatusChange",
    "SystemClock",
    "can_transition",
]
