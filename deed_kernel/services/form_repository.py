"""
FormRepository -- persistence interface of the workflow core.

Responsibility:
    Loads and saves the form aggregate and its approval records and
    appends change-ledger rows.  This is the only service that issues
    queries against the form tables; everything above it works with
    models it hands out or with frozen DTOs.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - ``save_form(form, expected_version)`` is optimistic: the flush carries
      ``WHERE version = :expected`` and a concurrent writer surfaces as
      ConflictError, never as a silent overwrite.
    - ``load_form(..., for_update=True)`` issues SELECT ... FOR UPDATE
      (a row lock on PostgreSQL, compiled away on SQLite).
    - Approval vectors are always returned in role order.

Failure modes:
    - FormNotFoundError if the form does not exist.
    - ConflictError on a version mismatch.
"""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from deed_kernel.domain.forms import ApprovalRecord, ApprovalVector, ChangeLogEntry
from deed_kernel.domain.workflow import FormStatus
from deed_kernel.exceptions import ConflictError, FormNotFoundError
from deed_kernel.logging_config import get_logger
from deed_kernel.models.approval import ApprovalRecordModel
from deed_kernel.models.change_log import ChangeLogEntryModel
from deed_kernel.models.form import FormModel
from deed_kernel.services.base import BaseService

logger = get_logger("services.form_repository")


class FormRepository(BaseService):
    """Transactional access to forms, approval records and the ledger."""

    # ------------------------------------------------------------------
    # Forms
    # ------------------------------------------------------------------

    def __init__(self, session, clock=None):
        super().__init__(session, clock)
        self._loaded_versions: dict[UUID, int] = {}

    def load_form(self, form_id: UUID, *, for_update: bool = False) -> FormModel:
        """Load the form row, optionally locking it for the transaction."""
        stmt = select(FormModel).where(FormModel.id == form_id)
        if for_update:
            stmt = stmt.with_for_update()
        form = self.session.execute(stmt).scalar_one_or_none()
        if form is None:
            raise FormNotFoundError(str(form_id))
        self._loaded_versions.setdefault(form.id, form.version)
        return form

    def add_form(self, form: FormModel) -> FormModel:
        self.session.add(form)
        return form

    def save_form(self, form: FormModel, expected_version: int) -> None:
        """Flush pending changes, failing if the form moved underneath us.

        Three checks, any of which raises ConflictError:
            1. The version this repository loaded differs from
               ``expected_version``.
            2. An UPDATE matched no row at the version it was based on
               (SQLAlchemy StaleDataError).
            3. After the flush the stored version is not the one this
               session last wrote or read (a writer slipped in although
               this transaction changed nothing).
        """
        # A failed flush expires the instance; only plain values are safe after it.
        form_id = form.id
        loaded = self._loaded_versions.get(form_id, expected_version)
        if loaded != expected_version:
            self._conflict(form_id, expected_version, "loaded_version_mismatch")
        try:
            self.session.flush()
        except StaleDataError as exc:
            self._conflict(form_id, expected_version, "stale_update", exc)

        stored = self.session.execute(
            select(FormModel.version).where(FormModel.id == form_id)
        ).scalar_one()
        if stored != form.version:
            self._conflict(form_id, expected_version, "stored_version_moved")

    def _conflict(
        self,
        form_id: UUID,
        expected_version: int,
        check: str,
        cause: Exception | None = None,
    ) -> None:
        logger.info(
            "form_version_conflict",
            extra={
                "form_id": str(form_id),
                "expected_version": expected_version,
                "check": check,
            },
        )
        raise ConflictError(str(form_id), expected_version) from cause

    def forms_awaiting_assignment(self) -> list[UUID]:
        """IDs of unassigned, unlocked forms still early in review."""
        stmt = (
            select(FormModel.id)
            .where(
                FormModel.assigned_to.is_(None),
                FormModel.locked.is_(False),
                FormModel.status.in_(
                    [FormStatus.SUBMITTED.value, FormStatus.IN_PROGRESS.value]
                ),
            )
            .order_by(FormModel.submitted_at, FormModel.id)
        )
        return list(self.session.execute(stmt).scalars())

    def open_workload(self, staff_ids: Iterable[UUID]) -> dict[UUID, int]:
        """Number of open forms currently assigned to each staff member."""
        ids = list(staff_ids)
        load = {staff_id: 0 for staff_id in ids}
        if not ids:
            return load
        open_values = [
            FormStatus.SUBMITTED.value,
            FormStatus.IN_PROGRESS.value,
            FormStatus.UNDER_REVIEW.value,
            FormStatus.VERIFIED.value,
        ]
        stmt = (
            select(FormModel.assigned_to, func.count(FormModel.id))
            .where(
                FormModel.assigned_to.in_(ids),
                FormModel.status.in_(open_values),
            )
            .group_by(FormModel.assigned_to)
        )
        for staff_id, count in self.session.execute(stmt):
            load[staff_id] = count
        return load

    # ------------------------------------------------------------------
    # Approval records
    # ------------------------------------------------------------------

    def approval_record_model(self, form_id: UUID, role: str) -> ApprovalRecordModel | None:
        stmt = select(ApprovalRecordModel).where(
            ApprovalRecordModel.form_id == form_id,
            ApprovalRecordModel.role == role,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert_approval_record(self, record: ApprovalRecord) -> ApprovalRecordModel:
        """Insert the record or overwrite the stored one for (form, role)."""
        model = self.approval_record_model(record.form_id, record.role.value)
        if model is None:
            model = ApprovalRecordModel.from_dto(record)
            self.session.add(model)
            return model
        model.state = record.state.value
        model.reviewer_id = record.reviewer_id
        model.notes = record.notes
        model.decided_at = record.decided_at
        return model

    def load_approval_vector(self, form_id: UUID) -> ApprovalVector:
        stmt = select(ApprovalRecordModel).where(ApprovalRecordModel.form_id == form_id)
        records = tuple(m.to_dto() for m in self.session.execute(stmt).scalars())
        return ApprovalVector(form_id=form_id, records=records)

    # ------------------------------------------------------------------
    # Change ledger
    # ------------------------------------------------------------------

    def append_change_log(self, entry: ChangeLogEntryModel) -> ChangeLogEntryModel:
        self.session.add(entry)
        return entry

    def load_change_log(self, form_id: UUID) -> tuple[ChangeLogEntry, ...]:
        stmt = (
            select(ChangeLogEntryModel)
            .where(ChangeLogEntryModel.form_id == form_id)
            .order_by(ChangeLogEntryModel.seq)
        )
        return tuple(m.to_dto() for m in self.session.execute(stmt).scalars())
