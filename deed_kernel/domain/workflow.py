"""
Canonical workflow types (``deed_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the form verification state machine: the closed
role, status and form-type enumerations, the explicit status transition
table, and the ``Pipeline`` that describes which reviewer roles gate which.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``models/``, or outer layers.

Invariants enforced
-------------------
* ``FORM_TRANSITIONS`` defines the only valid status transitions outside
  an administrator override.
* ``LOCKABLE_STATUSES`` are the only statuses a locked form may carry.
* ``ROLE_ORDER`` is the strict total order of reviewer stages; approval
  vectors are always reported in this order.
* A ``Pipeline`` only references roles from ``REVIEWER_ROLES`` and every
  prerequisite of a role is itself a pipeline role.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """Closed set of acting roles."""

    USER = "user"
    STAFF1 = "staff1"
    STAFF2 = "staff2"
    STAFF3 = "staff3"
    STAFF4 = "staff4"
    STAFF5 = "staff5"
    ADMIN = "admin"

    @property
    def is_reviewer(self) -> bool:
        return self in REVIEWER_ROLES

    @property
    def rank(self) -> int:
        """Stage position; the submitter sorts before every reviewer."""
        if self is Role.USER:
            return -1
        return ROLE_ORDER.index(self)


# Strict total order of pipeline stages.
ROLE_ORDER: tuple[Role, ...] = (
    Role.STAFF1,
    Role.STAFF2,
    Role.STAFF3,
    Role.STAFF4,
    Role.STAFF5,
    Role.ADMIN,
)

REVIEWER_ROLES: frozenset[Role] = frozenset(ROLE_ORDER)

STAFF_ROLES: frozenset[Role] = frozenset({
    Role.STAFF1,
    Role.STAFF2,
    Role.STAFF3,
    Role.STAFF4,
    Role.STAFF5,
})


class FormType(str, Enum):
    """Closed enumeration of document requests the office accepts."""

    SALE_DEED = "sale-deed"
    WILL_DEED = "will-deed"
    TRUST_DEED = "trust-deed"
    PROPERTY_REGISTRATION = "property-registration"
    POWER_OF_ATTORNEY = "power-of-attorney"
    ADOPTION_DEED = "adoption-deed"
    PROPERTY_SALE_CERTIFICATE = "property-sale-certificate"
    CONTACT_FORM = "contact-form"


class FormStatus(str, Enum):
    """Form lifecycle states."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    IN_PROGRESS = "in-progress"
    UNDER_REVIEW = "under-review"
    VERIFIED = "verified"
    COMPLETED = "completed"
    REJECTED = "rejected"


FORM_TRANSITIONS: dict[FormStatus, frozenset[FormStatus]] = {
    FormStatus.DRAFT: frozenset({FormStatus.SUBMITTED}),
    FormStatus.SUBMITTED: frozenset({
        FormStatus.IN_PROGRESS,
        FormStatus.UNDER_REVIEW,
        FormStatus.VERIFIED,
        FormStatus.REJECTED,
    }),
    FormStatus.IN_PROGRESS: frozenset({
        FormStatus.UNDER_REVIEW,
        FormStatus.REJECTED,
    }),
    FormStatus.UNDER_REVIEW: frozenset({
        FormStatus.VERIFIED,
        FormStatus.REJECTED,
    }),
    FormStatus.VERIFIED: frozenset({
        FormStatus.COMPLETED,
        FormStatus.REJECTED,
    }),
    # Re-opened by admin unlock (completed/rejected) or submitter resubmit.
    FormStatus.COMPLETED: frozenset({FormStatus.SUBMITTED}),
    FormStatus.REJECTED: frozenset({
        FormStatus.SUBMITTED,
        FormStatus.IN_PROGRESS,
        FormStatus.UNDER_REVIEW,
        FormStatus.VERIFIED,
    }),
}

LOCKABLE_STATUSES: frozenset[FormStatus] = frozenset({
    FormStatus.COMPLETED,
    FormStatus.REJECTED,
})

# Statuses in which reviewers may record decisions.
REVIEWABLE_STATUSES: frozenset[FormStatus] = frozenset({
    FormStatus.SUBMITTED,
    FormStatus.IN_PROGRESS,
    FormStatus.UNDER_REVIEW,
    FormStatus.VERIFIED,
})

# Statuses that still count toward a staff member's workload.
OPEN_STATUSES: frozenset[FormStatus] = frozenset({
    FormStatus.SUBMITTED,
    FormStatus.IN_PROGRESS,
    FormStatus.UNDER_REVIEW,
    FormStatus.VERIFIED,
})


def can_transition(current: FormStatus, target: FormStatus) -> bool:
    """True if ``current -> target`` is a legal non-override transition."""
    return target in FORM_TRANSITIONS.get(current, frozenset())


class ApprovalState(str, Enum):
    """Tri-state of one role's approval record."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ChangeType(str, Enum):
    """Kinds of change-ledger entries."""

    EDIT = "edit"
    CORRECTION = "correction"
    ADMIN_OVERRIDE = "admin-override"


class Capability(str, Enum):
    """Ordered capability levels granted by the access control gate."""

    NONE = "none"
    READ = "read"
    WRITE = "write"
    APPROVE = "approve"

    @property
    def level(self) -> int:
        return _CAPABILITY_LEVELS[self]

    def allows(self, required: Capability) -> bool:
        return self.level >= required.level


_CAPABILITY_LEVELS: dict[Capability, int] = {
    Capability.NONE: 0,
    Capability.READ: 1,
    Capability.WRITE: 2,
    Capability.APPROVE: 3,
}


# =========================================================================
# Pipeline
# =========================================================================


@dataclass(frozen=True)
class Pipeline:
    """Reviewer stages of one family of form types.

    ``review_roles`` verify sub-sections of the document; once all of them
    approve the form is under review.  ``verification_roles`` (possibly
    none) then cross-verify the whole document, moving it to verified.
    Any one of ``final_roles`` finally approves (completing and locking the
    form) or rejects it.

    Prerequisites are a per-role set rather than a single predecessor so
    that staff2 and staff3 can both be gated on staff1 alone, and so that
    the admin may finish a form without waiting for cross-verification.
    """

    name: str
    review_roles: tuple[Role, ...]
    final_roles: tuple[Role, ...]
    prerequisites: tuple[tuple[Role, frozenset[Role]], ...] = ()
    verification_roles: tuple[Role, ...] = ()

    def __post_init__(self) -> None:
        roles = self.review_roles + self.verification_roles + self.final_roles
        if not self.review_roles:
            raise ValueError(f"Pipeline '{self.name}' has no review roles")
        if not self.final_roles:
            raise ValueError(f"Pipeline '{self.name}' has no final roles")
        if len(set(roles)) != len(roles):
            raise ValueError(f"Pipeline '{self.name}' lists a role twice")
        for role in roles:
            if role not in REVIEWER_ROLES:
                raise ValueError(
                    f"Pipeline '{self.name}' uses non-reviewer role '{role.value}'"
                )
        for role, prereqs in self.prerequisites:
            if role not in roles:
                raise ValueError(
                    f"Pipeline '{self.name}' gates unknown role '{role.value}'"
                )
            unknown = prereqs - set(roles)
            if unknown:
                raise ValueError(
                    f"Pipeline '{self.name}' role '{role.value}' depends on "
                    f"roles outside the pipeline: {sorted(r.value for r in unknown)}"
                )
            if role in prereqs:
                raise ValueError(
                    f"Pipeline '{self.name}' role '{role.value}' depends on itself"
                )

    @property
    def roles(self) -> tuple[Role, ...]:
        """All pipeline roles in stage order."""
        members = (
            set(self.review_roles)
            | set(self.verification_roles)
            | set(self.final_roles)
        )
        return tuple(r for r in ROLE_ORDER if r in members)

    def includes(self, role: Role) -> bool:
        return role in self.roles

    def is_final(self, role: Role) -> bool:
        return role in self.final_roles

    def is_verification(self, role: Role) -> bool:
        return role in self.verification_roles

    def prerequisites_for(self, role: Role) -> frozenset[Role]:
        for gated, prereqs in self.prerequisites:
            if gated == role:
                return prereqs
        return frozenset()
