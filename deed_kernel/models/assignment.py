"""
Module: deed_kernel.models.assignment
Responsibility: ORM persistence for staff accounts and the append-only
    assignment history.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Assignment history rows are append-only (db/immutability.py).
    - The authoritative current assignee lives on ``forms.assigned_to``;
      history rows are audit only.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deed_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from deed_kernel.domain.forms import AssignmentRecord, StaffAccount
    from deed_kernel.models.form import FormModel


class StaffAccountModel(Base):
    """A staff member who can be assigned forms."""

    __tablename__ = "staff_accounts"

    __table_args__ = (
        CheckConstraint(
            "role IN ('staff1', 'staff2', 'staff3', 'staff4', 'staff5', 'admin')",
            name="ck_staff_accounts_role",
        ),
        Index("ix_staff_accounts_role_active", "role", "is_active"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<StaffAccount {self.name} ({self.role}) active={self.is_active}>"

    def to_dto(self) -> StaffAccount:
        from deed_kernel.domain.forms import StaffAccount as StaffAccountDTO
        from deed_kernel.domain.workflow import Role

        return StaffAccountDTO(
            id=self.id,
            name=self.name,
            role=Role(self.role),
            is_active=bool(self.is_active),
        )


class AssignmentHistoryModel(Base):
    """One change of a form's assignee. Append-only."""

    __tablename__ = "assignment_history"

    __table_args__ = (
        UniqueConstraint("form_id", "seq", name="uq_assignment_history_form_seq"),
        Index("ix_assignment_history_staff", "staff_id"),
    )

    form_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("forms.id"), nullable=False,
    )
    form: Mapped["FormModel"] = relationship("FormModel", lazy="raise")
    seq: Mapped[int] = mapped_column(nullable=False)
    staff_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    previous_staff_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    assigned_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reason: Mapped[str] = mapped_column(String(200), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<AssignmentHistory form={self.form_id} #{self.seq} "
            f"{self.previous_staff_id} -> {self.staff_id} ({self.reason})>"
        )

    def to_dto(self) -> AssignmentRecord:
        from deed_kernel.domain.forms import AssignmentRecord as AssignmentRecordDTO

        return AssignmentRecordDTO(
            form_id=self.form_id,
            staff_id=self.staff_id,
            previous_staff_id=self.previous_staff_id,
            assigned_by=self.assigned_by,
            reason=self.reason,
            assigned_at=self.assigned_at,
        )
