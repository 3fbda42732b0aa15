"""
Form domain DTOs (``deed_kernel.domain.forms``).

Responsibility
--------------
Frozen value objects handed across the service boundary: the acting
identity, the form snapshot, approval records and the approval vector,
change-ledger entries, assignment history and staff accounts.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  ORM models
convert to these via ``to_dto()``; callers never receive live ORM rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from deed_kernel.domain.workflow import (
    ApprovalState,
    ChangeType,
    FormStatus,
    FormType,
    ROLE_ORDER,
    Role,
)


@dataclass(frozen=True)
class Actor:
    """Authenticated ``(user_id, role)`` pair supplied by the boundary layer."""

    user_id: UUID
    role: Role


@dataclass(frozen=True)
class ApprovalRecord:
    """One reviewer role's decision on one form."""

    form_id: UUID
    role: Role
    state: ApprovalState = ApprovalState.PENDING
    reviewer_id: UUID | None = None
    notes: str = ""
    decided_at: datetime | None = None

    @property
    def is_decided(self) -> bool:
        return self.state is not ApprovalState.PENDING

    @property
    def approved(self) -> bool | None:
        """Tri-state view: None while undecided."""
        if self.state is ApprovalState.PENDING:
            return None
        return self.state is ApprovalState.APPROVED


@dataclass(frozen=True)
class ApprovalVector:
    """The ordered tuple of approval records of one form."""

    form_id: UUID
    records: tuple[ApprovalRecord, ...] = ()

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.records, key=lambda r: ROLE_ORDER.index(r.role)))
        object.__setattr__(self, "records", ordered)

    def get(self, role: Role) -> ApprovalRecord | None:
        for record in self.records:
            if record.role == role:
                return record
        return None

    def state_of(self, role: Role) -> ApprovalState | None:
        record = self.get(role)
        return record.state if record is not None else None

    def is_approved(self, role: Role) -> bool:
        return self.state_of(role) is ApprovalState.APPROVED

    @property
    def roles(self) -> tuple[Role, ...]:
        return tuple(r.role for r in self.records)

    def as_states(self) -> dict[Role, ApprovalState]:
        return {r.role: r.state for r in self.records}


@dataclass(frozen=True)
class Form:
    """Snapshot of the form aggregate."""

    id: UUID
    form_type: FormType
    payload: dict[str, Any]
    status: FormStatus
    locked: bool
    created_by: UUID
    created_at: datetime
    last_activity_at: datetime
    version: int
    assigned_to: UUID | None = None
    last_activity_by: UUID | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    rejection_reason: str | None = None


@dataclass(frozen=True)
class FormView:
    """Role-scoped projection returned by ``read_view``."""

    form_id: UUID
    form_type: FormType
    role: Role
    status: FormStatus
    locked: bool
    capability: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChangeLogEntry:
    """One field-level mutation of a form. Immutable."""

    form_id: UUID
    seq: int
    field: str
    old_value: Any
    new_value: Any
    changed_by_role: Role
    changed_by_user_id: UUID
    timestamp: datetime
    change_type: ChangeType
    id: UUID | None = None


@dataclass(frozen=True)
class AssignmentRecord:
    """One change of a form's assignee. Immutable."""

    form_id: UUID
    staff_id: UUID | None
    previous_staff_id: UUID | None
    assigned_by: UUID | None
    reason: str
    assigned_at: datetime


@dataclass(frozen=True)
class StaffAccount:
    """A staff member who can be assigned forms."""

    id: UUID
    name: str
    role: Role
    is_active: bool = True


@dataclass(frozen=True)
class StatusChange:
    """A committed status transition, delivered to notification listeners."""

    form_id: UUID
    old_status: FormStatus
    new_status: FormStatus
