"""
deed_kernel.services.approval_store -- Per-form, per-role approval records.

Responsibility:
    Creates the pending records of a new form, records reviewer decisions
    behind the stage gate, and resets records when a form is resubmitted
    or unlocked.  The approval vector it returns is the single source of
    truth for "where is this form in the pipeline".

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/ and the pure
    deed_engines package.

Invariants enforced:
    - A record leaves ``pending`` at most once per review round; a second
      decision raises InvalidStateError.
    - A role decides only when all of its prerequisite roles approved
      (stage gate); otherwise OutOfOrderError names the missing roles.
    - A rejection carries non-empty notes.
    - Every state change appends exactly one ``approvals.<role>`` ledger
      entry.

Failure modes:
    - InvalidStateError, OutOfOrderError, MissingReasonError.  All are
      raised before anything is written.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from uuid import UUID

from deed_engines.access_control import missing_prerequisites
from deed_engines.ledger_replay import approval_field
from deed_kernel.domain.forms import Actor, ApprovalRecord, ApprovalVector
from deed_kernel.domain.workflow import ApprovalState, ChangeType, Pipeline, Role
from deed_kernel.exceptions import InvalidStateError, MissingReasonError, OutOfOrderError
from deed_kernel.logging_config import get_logger
from deed_kernel.models.form import FormModel
from deed_kernel.services.base import BaseService
from deed_kernel.services.change_ledger import ChangeLedger
from deed_kernel.services.form_repository import FormRepository

logger = get_logger("services.approval_store")

DecisionHook = Callable[[ApprovalRecord, ApprovalVector], None]


class ApprovalRecordStore(BaseService):
    """Reads and writes the approval vector of a form."""

    def __init__(
        self,
        session,
        repository: FormRepository,
        ledger: ChangeLedger,
        clock=None,
    ):
        super().__init__(session, clock)
        self._repository = repository
        self._ledger = ledger

    def initialize(self, form: FormModel, pipeline: Pipeline) -> ApprovalVector:
        """Create a pending record for every role of ``pipeline``."""
        records = tuple(
            ApprovalRecord(form_id=form.id, role=role) for role in pipeline.roles
        )
        for record in records:
            self._repository.upsert_approval_record(record)
        return ApprovalVector(form_id=form.id, records=records)

    def get_vector(self, form_id: UUID) -> ApprovalVector:
        return self._repository.load_approval_vector(form_id)

    def decide(
        self,
        form: FormModel,
        actor: Actor,
        *,
        approved: bool,
        notes: str,
        pipeline: Pipeline,
        on_decision: DecisionHook | None = None,
    ) -> ApprovalRecord:
        """Record ``actor.role``'s decision on ``form``.

        Preconditions:
            The caller holds the form row (loaded for update) and has
            already checked the lock flag and form status.

        Postconditions:
            The record is decided and flushed, one ledger entry is
            appended, ``last_activity_at`` is updated, and ``on_decision``
            has run with the post-decision vector.

        Raises:
            InvalidStateError: The role has no record or already decided.
            OutOfOrderError: Prerequisite roles have not all approved.
            MissingReasonError: Rejection with blank notes.
        """
        role = actor.role
        vector = self.get_vector(form.id)
        current = vector.get(role)

        if current is None:
            raise InvalidStateError(
                str(form.id), form.status, "decide",
                reason=f"{role.value} takes no part in this form's review",
            )
        if current.is_decided:
            raise InvalidStateError(
                str(form.id), form.status, "decide",
                reason=f"{role.value} has already {current.state.value} it",
            )

        missing = missing_prerequisites(role, vector, pipeline)
        if missing:
            raise OutOfOrderError(
                str(form.id), role.value, tuple(r.value for r in missing),
            )

        notes = (notes or "").strip()
        if not approved and not notes:
            raise MissingReasonError(str(form.id), role.value)

        now = self.clock.now()
        decided = replace(
            current,
            state=ApprovalState.APPROVED if approved else ApprovalState.REJECTED,
            reviewer_id=actor.user_id,
            notes=notes,
            decided_at=now,
        )
        self._repository.upsert_approval_record(decided)
        self._ledger.record(
            form,
            field=approval_field(role),
            old_value=current.state.value,
            new_value=decided.state.value,
            actor=actor,
            change_type=ChangeType.EDIT,
        )
        form.last_activity_at = now
        form.last_activity_by = actor.user_id
        # Record writes must reach the database before the form can lock.
        self.session.flush()

        logger.info(
            "decision_recorded",
            extra={
                "form_id": str(form.id),
                "role": role.value,
                "decision": decided.state.value,
                "reviewer_id": str(actor.user_id),
            },
        )

        if on_decision is not None:
            on_decision(decided, self.get_vector(form.id))
        return decided

    def reset(
        self,
        form: FormModel,
        role: Role,
        actor: Actor,
        *,
        change_type: ChangeType,
    ) -> ApprovalRecord | None:
        """Return ``role``'s record to pending; no-op if already pending."""
        current = self.get_vector(form.id).get(role)
        if current is None or not current.is_decided:
            return None

        cleared = replace(
            current,
            state=ApprovalState.PENDING,
            reviewer_id=None,
            notes="",
            decided_at=None,
        )
        self._repository.upsert_approval_record(cleared)
        self._ledger.record(
            form,
            field=approval_field(role),
            old_value=current.state.value,
            new_value=ApprovalState.PENDING.value,
            actor=actor,
            change_type=change_type,
        )

        logger.info(
            "approval_reset",
            extra={
                "form_id": str(form.id),
                "role": role.value,
                "previous_state": current.state.value,
                "change_type": change_type.value,
            },
        )
        return cleared
