"""
deed_kernel.services.assignment_service -- Assignment Registry.

Responsibility:
    Maps a form to the staff member currently responsible for it, keeps the
    append-only history of every change, and picks a least-loaded account
    when no explicit assignment exists.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/ and the pure
    deed_engines package.

Invariants enforced:
    - Only an active account whose role is among the form's next required
      roles can be assigned (InvalidTargetError otherwise).
    - ``forms.assigned_to`` is authoritative; every change of it appends one
      AssignmentHistory row.
    - ``auto_assign`` is deterministic: lowest open workload, then name,
      then id.
    - Administrators are never auto-assigned; they pick up forms directly.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select

from deed_engines.access_control import next_required_roles
from deed_kernel.domain.forms import Actor, ApprovalVector, AssignmentRecord, StaffAccount
from deed_kernel.domain.workflow import STAFF_ROLES, Pipeline, Role
from deed_kernel.exceptions import AccessDeniedError, InvalidTargetError
from deed_kernel.logging_config import get_logger
from deed_kernel.models.assignment import AssignmentHistoryModel
from deed_kernel.models.form import FormModel
from deed_kernel.services.base import BaseService
from deed_kernel.services.form_repository import FormRepository
from deed_kernel.services.staff_service import StaffDirectory

logger = get_logger("services.assignment")

REASON_MANUAL = "manual"
REASON_AUTO = "auto_least_loaded"
REASON_STAGE_COMPLETED = "stage_completed"
REASON_FORM_CLOSED = "form_closed"


class AssignmentRegistry(BaseService):
    """Current assignee plus audit history per form."""

    def __init__(
        self,
        session,
        repository: FormRepository,
        staff: StaffDirectory,
        clock=None,
    ):
        super().__init__(session, clock)
        self._repository = repository
        self._staff = staff

    def _write(
        self,
        form: FormModel,
        staff_id: UUID | None,
        assigned_by: UUID | None,
        reason: str,
    ) -> AssignmentRecord:
        now = self.clock.now()
        seq = self.session.execute(
            select(func.count(AssignmentHistoryModel.id)).where(
                AssignmentHistoryModel.form_id == form.id
            )
        ).scalar_one() + 1
        row = AssignmentHistoryModel(
            form_id=form.id,
            seq=seq,
            staff_id=staff_id,
            previous_staff_id=form.assigned_to,
            assigned_by=assigned_by,
            reason=reason,
            assigned_at=now,
        )
        self.session.add(row)
        form.assigned_to = staff_id
        form.last_activity_at = now
        if assigned_by is not None:
            form.last_activity_by = assigned_by

        logger.info(
            "assignment_changed",
            extra={
                "form_id": str(form.id),
                "staff_id": str(staff_id) if staff_id else None,
                "previous_staff_id": str(row.previous_staff_id) if row.previous_staff_id else None,
                "reason": reason,
            },
        )
        return row.to_dto()

    def assign(
        self,
        form: FormModel,
        staff_id: UUID,
        assigned_by: Actor,
        *,
        vector: ApprovalVector,
        pipeline: Pipeline,
        reason: str = REASON_MANUAL,
    ) -> AssignmentRecord:
        """Hand ``form`` to ``staff_id``, replacing any current assignee.

        Raises:
            AccessDeniedError: ``assigned_by`` is not an administrator.
            InvalidTargetError: The account is missing, inactive, or its
                role is not next in the pipeline.
        """
        if assigned_by.role is not Role.ADMIN:
            raise AccessDeniedError(
                str(form.id), assigned_by.role.value, "assign", "n/a",
                reason="only administrators assign forms",
            )

        account = self._staff.find(staff_id)
        self._check_target(form, staff_id, account, vector, pipeline)
        return self._write(form, staff_id, assigned_by.user_id, reason)

    def _check_target(
        self,
        form: FormModel,
        staff_id: UUID,
        account: StaffAccount | None,
        vector: ApprovalVector,
        pipeline: Pipeline,
    ) -> None:
        if account is None:
            raise InvalidTargetError(str(form.id), str(staff_id), "no such staff account")
        if not account.is_active:
            raise InvalidTargetError(str(form.id), str(staff_id), "account is inactive")
        required = next_required_roles(vector, pipeline)
        if account.role not in required:
            wanted = ", ".join(r.value for r in required) or "none"
            raise InvalidTargetError(
                str(form.id), str(staff_id),
                f"form needs {wanted}, account is {account.role.value}",
            )

    def auto_assign(
        self,
        form: FormModel,
        *,
        vector: ApprovalVector,
        pipeline: Pipeline,
    ) -> AssignmentRecord | None:
        """Assign the least-loaded eligible account, if any.

        Returns None when the form already has an assignee or no active
        account holds a next required staff role.
        """
        if form.assigned_to is not None:
            return None

        roles = [r for r in next_required_roles(vector, pipeline) if r in STAFF_ROLES]
        candidates: list[StaffAccount] = []
        for role in roles:
            candidates.extend(self._staff.list_active(role))
        if not candidates:
            logger.info(
                "auto_assign_no_candidate",
                extra={"form_id": str(form.id), "roles": [r.value for r in roles]},
            )
            return None

        load = self._repository.open_workload(c.id for c in candidates)
        chosen = min(candidates, key=lambda c: (load[c.id], c.name, str(c.id)))
        return self._write(form, chosen.id, None, REASON_AUTO)

    def release(
        self,
        form: FormModel,
        *,
        reason: str,
        released_by: UUID | None = None,
    ) -> AssignmentRecord | None:
        """Clear the current assignee; no-op when unassigned."""
        if form.assigned_to is None:
            return None
        return self._write(form, None, released_by, reason)

    def current_assignee(self, form_id: UUID) -> UUID | None:
        return self._repository.load_form(form_id).assigned_to

    def history(self, form_id: UUID) -> tuple[AssignmentRecord, ...]:
        stmt = (
            select(AssignmentHistoryModel)
            .where(AssignmentHistoryModel.form_id == form_id)
            .order_by(AssignmentHistoryModel.seq)
        )
        return tuple(m.to_dto() for m in self.session.execute(stmt).scalars())
