"""
Module: deed_kernel.models.change_log
Responsibility: ORM persistence for the append-only, field-level change ledger.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE, no DELETE (ORM listeners in db/immutability.py).
    - UNIQUE(form_id, seq): per-form ordering is total and gap-free.
    - Valid change_type values enforced by CHECK constraint.

Audit relevance:
    The ledger of a form is the complete record of who touched what and
    when.  Replaying it from seq 1 reconstructs the payload and approval
    vector exactly (see deed_engines.ledger_replay).
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deed_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from deed_kernel.domain.forms import ChangeLogEntry
    from deed_kernel.models.form import FormModel


class ChangeLogEntryModel(Base):
    """One field-level mutation of a form. Append-only."""

    __tablename__ = "change_log_entries"

    __table_args__ = (
        UniqueConstraint("form_id", "seq", name="uq_change_log_form_seq"),
        CheckConstraint(
            "change_type IN ('edit', 'correction', 'admin-override')",
            name="ck_change_log_valid_type",
        ),
        Index("ix_change_log_form_id", "form_id"),
        Index("ix_change_log_user", "changed_by_user_id"),
    )

    form_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("forms.id"), nullable=False,
    )
    form: Mapped["FormModel"] = relationship("FormModel", lazy="raise")
    seq: Mapped[int] = mapped_column(nullable=False)
    field: Mapped[str] = mapped_column(String(200), nullable=False)
    old_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    changed_by_role: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by_user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    change_type: Mapped[str] = mapped_column(String(20), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ChangeLogEntry form={self.form_id} #{self.seq} "
            f"{self.field} ({self.change_type})>"
        )

    def to_dto(self) -> ChangeLogEntry:
        """Convert ORM model to frozen domain DTO."""
        from deed_kernel.domain.forms import ChangeLogEntry as ChangeLogEntryDTO
        from deed_kernel.domain.workflow import ChangeType, Role

        return ChangeLogEntryDTO(
            id=self.id,
            form_id=self.form_id,
            seq=self.seq,
            field=self.field,
            old_value=self.old_value,
            new_value=self.new_value,
            changed_by_role=Role(self.changed_by_role),
            changed_by_user_id=self.changed_by_user_id,
            timestamp=self.timestamp,
            change_type=ChangeType(self.change_type),
        )
