"""
Module: deed_kernel.models.form
Responsibility: ORM persistence for the form aggregate root.
Architecture position: Kernel > Models.  May import from db/base.py only
    (domain DTOs are imported lazily inside to_dto()).

Invariants enforced:
    - Lock/status coherence: a CHECK constraint rejects any row where
      ``locked`` is true and ``status`` is not completed/rejected.
    - Optimistic concurrency: ``version`` is SQLAlchemy's version_id_col, so
      every UPDATE carries ``WHERE version = :loaded`` and a concurrent
      writer surfaces as StaleDataError.
    - ``ledger_seq`` is the per-form change-ledger counter.  It lives on the
      form row so sequence allocation is serialized by the same version
      check that guards the rest of the aggregate.

Failure modes:
    - StaleDataError on concurrent UPDATE (translated to ConflictError by
      FormRepository).
    - IntegrityError on the lock/status CHECK constraint.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from deed_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from deed_kernel.domain.forms import Form


class FormModel(Base):
    """Persistent form aggregate.

    Contract:
        ``created_by`` and ``form_type`` never change after INSERT.
        ``payload`` is replaced wholesale (never mutated in place) so the
        ORM detects every change.
    """

    __tablename__ = "forms"

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'submitted', 'in-progress', 'under-review', "
            "'verified', 'completed', 'rejected')",
            name="ck_forms_valid_status",
        ),
        CheckConstraint(
            "NOT locked OR status IN ('completed', 'rejected')",
            name="ck_forms_lock_requires_terminal_status",
        ),
        Index("ix_forms_status_assigned", "status", "assigned_to"),
        Index("ix_forms_created_by", "created_by"),
        Index("ix_forms_last_activity", "last_activity_at"),
    )

    form_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="draft")
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    assigned_to: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("staff_accounts.id"), nullable=True,
    )
    created_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(nullable=False)
    last_activity_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    ledger_seq: Mapped[int] = mapped_column(nullable=False, default=0)
    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Form {self.id} {self.form_type} status={self.status} "
            f"locked={self.locked} v{self.version}>"
        )

    def next_ledger_seq(self) -> int:
        """Allocate the next change-ledger sequence number for this form."""
        self.ledger_seq = (self.ledger_seq or 0) + 1
        return self.ledger_seq

    def to_dto(self) -> Form:
        """Convert ORM model to frozen domain DTO."""
        from deed_kernel.domain.forms import Form as FormDTO
        from deed_kernel.domain.workflow import FormStatus, FormType

        return FormDTO(
            id=self.id,
            form_type=FormType(self.form_type),
            payload=dict(self.payload or {}),
            status=FormStatus(self.status),
            locked=bool(self.locked),
            created_by=self.created_by,
            created_at=self.created_at,
            last_activity_at=self.last_activity_at,
            version=self.version,
            assigned_to=self.assigned_to,
            last_activity_by=self.last_activity_by,
            submitted_at=self.submitted_at,
            completed_at=self.completed_at,
            rejection_reason=self.rejection_reason,
        )
