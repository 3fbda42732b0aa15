"""
Module: deed_kernel.models.approval
Responsibility: ORM persistence for per-(form, role) approval records.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - UNIQUE(form_id, role): exactly one record per reviewer role per form.
    - Valid state values enforced by CHECK constraint.
    - Stage-gate and transition rules are enforced by ApprovalRecordStore;
      the table only stores their outcome.

Audit relevance:
    Every change of ``state`` is mirrored by a change-ledger entry on field
    ``approvals.<role>``, which is what ledger replay reconstructs the
    vector from.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deed_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from deed_kernel.domain.forms import ApprovalRecord
    from deed_kernel.models.form import FormModel


class ApprovalRecordModel(Base):
    """Persistent approval record for one reviewer role on one form."""

    __tablename__ = "approval_records"

    __table_args__ = (
        UniqueConstraint("form_id", "role", name="uq_approval_records_form_role"),
        CheckConstraint(
            "state IN ('pending', 'approved', 'rejected')",
            name="ck_approval_records_valid_state",
        ),
        CheckConstraint(
            "role IN ('staff1', 'staff2', 'staff3', 'staff4', 'staff5', 'admin')",
            name="ck_approval_records_reviewer_role",
        ),
    )

    form_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("forms.id"), nullable=False,
    )
    form: Mapped["FormModel"] = relationship("FormModel", lazy="raise")
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    reviewer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ApprovalRecord form={self.form_id} {self.role}={self.state}>"

    def to_dto(self) -> ApprovalRecord:
        """Convert ORM model to frozen domain DTO."""
        from deed_kernel.domain.forms import ApprovalRecord as ApprovalRecordDTO
        from deed_kernel.domain.workflow import ApprovalState, Role

        return ApprovalRecordDTO(
            form_id=self.form_id,
            role=Role(self.role),
            state=ApprovalState(self.state),
            reviewer_id=self.reviewer_id,
            notes=self.notes or "",
            decided_at=self.decided_at,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalRecord) -> ApprovalRecordModel:
        """Create ORM model from domain DTO."""
        return cls(
            form_id=dto.form_id,
            role=dto.role.value,
            state=dto.state.value,
            reviewer_id=dto.reviewer_id,
            notes=dto.notes,
            decided_at=dto.decided_at,
        )
