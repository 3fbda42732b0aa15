"""
deed_kernel.services.workflow_service -- The Workflow State Machine.

Responsibility:
    The single entry point through which forms are created and mutated.
    Every operation runs as one atomic transition: the per-form lock is
    taken, a fresh session loads the form for update, the component
    services (form aggregate, approval store, change ledger, assignment
    registry) do their work, the form is saved against the version it was
    loaded at, and the transaction commits.  Status change listeners are
    notified only after the commit.

Architecture position:
    Kernel > Services -- orchestration.  Owns transaction boundaries (the
    component services only flush).  May import from domain/, models/,
    db/, services/, the pure deed_engines package and deed_config.

Invariants enforced:
    - Capability is evaluated against the approval vector read inside the
      same transaction (and under the same per-form lock) as the write.
    - A final-role approval sets the final approval record, status
      ``completed`` and ``locked = true`` in one commit.
    - ``locked = true`` implies status completed or rejected; once locked
      every edit and every decision fails with LockedError until an
      administrator unlocks the form.
    - A guard failure rolls the whole transition back.
    - ConflictError is retried exactly once against a fresh read; a second
      conflict surfaces as RetryExhaustedError.

Failure modes:
    - Every DeedWorkflowError raised by a component propagates unchanged
      (after rollback), except ConflictError as described above.
    - AccessDeniedError is logged at WARNING as a security event.

Audit relevance:
    Each committed transition logs ``workflow_transition_committed`` with
    the operation, form, actor, attempt number and resulting status.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from contextlib import contextmanager
from typing import Any, Iterator, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from deed_config import get_active_config
from deed_config.schema import WorkflowConfig
from deed_engines.access_control import next_required_roles
from deed_engines.ledger_replay import LOCKED_FIELD, STATUS_FIELD, ReplayResult, replay_ledger
from deed_engines.workflow_rules import evaluate_decision, validate_path
from deed_kernel.domain.clock import Clock, SystemClock
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
    REVIEWABLE_STATUSES,
    ApprovalState,
    Capability,
    ChangeType,
    FormStatus,
    FormType,
    Pipeline,
    Role,
)
from deed_kernel.exceptions import (
    AccessDeniedError,
    ConflictError,
    DeedWorkflowError,
    InvalidStateError,
    LockedError,
    MissingReasonError,
    RetryExhaustedError,
    ValidationError,
)
from deed_kernel.logging_config import LogContext, get_logger
from deed_kernel.models.form import FormModel
from deed_kernel.services.approval_store import ApprovalRecordStore
from deed_kernel.services.assignment_service import (
    REASON_FORM_CLOSED,
    REASON_STAGE_COMPLETED,
    AssignmentRegistry,
)
from deed_kernel.services.change_ledger import ChangeLedger
from deed_kernel.services.form_locks import FormLockRegistry
from deed_kernel.services.form_repository import FormRepository
from deed_kernel.services.form_service import FormService
from deed_kernel.services.notifications import StatusChangeListener
from deed_kernel.services.staff_service import StaffDirectory

logger = get_logger("services.workflow")

T = TypeVar("T")

# One initial attempt plus the single retry on ConflictError.
MAX_ATTEMPTS = 2


class UnitOfWork:
    """Component services bound to one session for one transition attempt."""

    def __init__(self, session: Session, config: WorkflowConfig, clock: Clock):
        self.session = session
        self.repository = FormRepository(session, clock)
        self.ledger = ChangeLedger(session, self.repository, clock)
        self.approvals = ApprovalRecordStore(session, self.repository, self.ledger, clock)
        self.staff = StaffDirectory(session, clock)
        self.assignments = AssignmentRegistry(session, self.repository, self.staff, clock)
        self.forms = FormService(
            session, config, self.repository, self.ledger,
            self.approvals, self.staff, clock,
        )
        self.status_changes: list[StatusChange] = []

    def transition(
        self,
        form: FormModel,
        target: FormStatus,
        actor: Actor | None,
        *,
        action: str,
        override: bool = False,
    ) -> StatusChange:
        change = self.forms.transition(form, target, actor, action=action, override=override)
        self.status_changes.append(change)
        return change


class WorkflowService:
    """Atomic, lock-protected operations on forms.

    Args:
        session_factory: Creates one session per transition attempt.
        config: Workflow configuration; defaults to ``get_active_config()``.
        clock: Time source; defaults to SystemClock.
        listeners: Status change listeners notified after commit.
        locks: Per-form lock registry; share one instance per process.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: WorkflowConfig | None = None,
        clock: Clock | None = None,
        listeners: Iterable[StatusChangeListener] = (),
        locks: FormLockRegistry | None = None,
    ):
        self._session_factory = session_factory
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._listeners: list[StatusChangeListener] = list(listeners)
        self._locks = locks or FormLockRegistry()

    @property
    def config(self) -> WorkflowConfig:
        return self._config

    def add_listener(self, listener: StatusChangeListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Transaction machinery
    # ------------------------------------------------------------------

    @contextmanager
    def _bound(
        self, operation: str, form_id: UUID | None, actor: Actor | None,
    ) -> Iterator[None]:
        with LogContext.bind(
            operation=operation,
            correlation_id=LogContext.get_all().get("correlation_id") or str(uuid4()),
            actor_id=str(actor.user_id) if actor else None,
            actor_role=actor.role.value if actor else None,
            form_id=str(form_id) if form_id else None,
        ):
            yield

    def _log_refusal(self, operation: str, exc: DeedWorkflowError) -> None:
        if isinstance(exc, AccessDeniedError):
            logger.warning(
                "access_denied",
                extra={
                    "operation": operation,
                    "denied_action": exc.action,
                    "capability": exc.capability,
                    "reason": exc.reason,
                },
            )
        else:
            logger.info(
                "operation_refused",
                extra={"operation": operation, "error_code": exc.code},
            )

    def _transact(
        self,
        operation: str,
        form_id: UUID,
        actor: Actor | None,
        work: Callable[[UnitOfWork, FormModel], T],
    ) -> T:
        """Run ``work`` as one atomic, lock-protected transition of a form.

        ``work`` receives a fresh UnitOfWork and the form loaded for update.
        A FormModel result is converted to its DTO after the save.
        """
        with self._bound(operation, form_id, actor), self._locks.hold(form_id):
            for attempt in range(1, MAX_ATTEMPTS + 1):
                session = self._session_factory()
                uow = UnitOfWork(session, self._config, self._clock)
                try:
                    form = uow.repository.load_form(form_id, for_update=True)
                    expected_version = form.version
                    result: Any = work(uow, form)
                    uow.repository.save_form(form, expected_version)
                    if isinstance(result, FormModel):
                        result = result.to_dto()
                    session.commit()
                    status = form.status
                except (ConflictError, StaleDataError) as exc:
                    session.rollback()
                    logger.info(
                        "transition_conflict",
                        extra={"operation": operation, "attempt": attempt},
                    )
                    if attempt == MAX_ATTEMPTS:
                        raise RetryExhaustedError(
                            str(form_id), operation, attempt,
                        ) from exc
                    continue
                except DeedWorkflowError as exc:
                    session.rollback()
                    self._log_refusal(operation, exc)
                    raise
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()

                logger.info(
                    "workflow_transition_committed",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "status": status,
                        "status_changes": len(uow.status_changes),
                    },
                )
                self._notify(uow.status_changes)
                return result

        raise AssertionError("unreachable")  # pragma: no cover

    def _run(
        self,
        operation: str,
        actor: Actor | None,
        work: Callable[[UnitOfWork], T],
        *,
        form_id: UUID | None = None,
        commit: bool = True,
    ) -> T:
        """Run ``work`` in one session without the per-form lock.

        Used for creation, staff administration and reads.
        """
        with self._bound(operation, form_id, actor):
            session = self._session_factory()
            uow = UnitOfWork(session, self._config, self._clock)
            try:
                result: Any = work(uow)
                if commit:
                    session.flush()
                    if isinstance(result, FormModel):
                        result = result.to_dto()
                    session.commit()
                else:
                    session.rollback()
                return result
            except DeedWorkflowError as exc:
                session.rollback()
                self._log_refusal(operation, exc)
                raise
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def _notify(self, changes: list[StatusChange]) -> None:
        for change in changes:
            for listener in self._listeners:
                listener.on_status_change(change.form_id, change.old_status, change.new_status)

    # ------------------------------------------------------------------
    # Form aggregate
    # ------------------------------------------------------------------

    def create(
        self,
        form_type: FormType | str,
        payload: dict[str, Any],
        created_by: UUID,
    ) -> Form:
        """Create a draft form; see FormService.create."""
        actor = Actor(user_id=created_by, role=Role.USER)
        return self._run(
            "create", actor,
            lambda uow: uow.forms.create(form_type, payload, created_by),
        )

    def submit(self, form_id: UUID, actor: Actor) -> Form:
        """draft -> submitted."""

        def work(uow: UnitOfWork, form: FormModel) -> FormModel:
            uow.status_changes.append(uow.forms.submit(form, actor))
            return form

        return self._transact("submit", form_id, actor, work)

    def resubmit(self, form_id: UUID, actor: Actor) -> Form:
        """rejected (unlocked) -> back into review, rejected records reset."""

        def work(uow: UnitOfWork, form: FormModel) -> FormModel:
            uow.status_changes.append(uow.forms.resubmit(form, actor))
            return form

        return self._transact("resubmit", form_id, actor, work)

    def apply_edit(
        self,
        form_id: UUID,
        actor: Actor,
        field: str,
        new_value: Any,
    ) -> ChangeLogEntry:
        """Write one payload field; capability is checked in the same transaction."""
        return self._transact(
            "apply_edit", form_id, actor,
            lambda uow, form: uow.forms.apply_edit(form, actor, field, new_value),
        )

    def read_view(self, form_id: UUID, actor: Actor) -> FormView:
        """Role-scoped projection of the payload."""
        return self._run(
            "read_view", actor,
            lambda uow: uow.forms.read_view(uow.repository.load_form(form_id), actor),
            form_id=form_id, commit=False,
        )

    def get_form(self, form_id: UUID) -> Form:
        return self._run(
            "get_form", None,
            lambda uow: uow.repository.load_form(form_id).to_dto(),
            form_id=form_id, commit=False,
        )

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def get_vector(self, form_id: UUID) -> ApprovalVector:
        return self._run(
            "get_vector", None,
            lambda uow: uow.approvals.get_vector(form_id),
            form_id=form_id, commit=False,
        )

    def next_required_roles(self, form_id: UUID) -> tuple[Role, ...]:
        """Roles that may act on the form right now."""

        def work(uow: UnitOfWork) -> tuple[Role, ...]:
            form = uow.repository.load_form(form_id)
            if form.locked or FormStatus(form.status) not in REVIEWABLE_STATUSES:
                return ()
            return next_required_roles(
                uow.approvals.get_vector(form_id), uow.forms.pipeline_of(form),
            )

        return self._run("next_required_roles", None, work, form_id=form_id, commit=False)

    def decide(
        self,
        form_id: UUID,
        actor: Actor,
        approved: bool,
        notes: str = "",
    ) -> ApprovalRecord:
        """Record ``actor.role``'s approval or rejection.

        Raises:
            LockedError: The form is locked.
            AccessDeniedError: The role takes no part in this form's
                pipeline, or the form is assigned to a same-role colleague.
            InvalidStateError: The form is not open for review, or the role
                already decided.
            OutOfOrderError: Prerequisite roles have not approved.
            MissingReasonError: Rejection without notes.
        """

        def work(uow: UnitOfWork, form: FormModel) -> ApprovalRecord:
            if form.locked:
                raise LockedError(str(form.id), form.status)
            pipeline = uow.forms.pipeline_of(form)
            if not actor.role.is_reviewer or not pipeline.includes(actor.role):
                raise AccessDeniedError(
                    str(form.id), actor.role.value, "decide", Capability.NONE.value,
                    reason=f"{actor.role.value} takes no part in {pipeline.name} review",
                )
            if FormStatus(form.status) not in REVIEWABLE_STATUSES:
                raise InvalidStateError(str(form.id), form.status, "decide")
            uow.forms.check_assignment(form, actor, "decide")

            return uow.approvals.decide(
                form,
                actor,
                approved=approved,
                notes=notes,
                pipeline=pipeline,
                on_decision=lambda record, vector: self._on_decision(
                    uow, form, actor, record, vector, pipeline,
                ),
            )

        return self._transact("decide", form_id, actor, work)

    def _on_decision(
        self,
        uow: UnitOfWork,
        form: FormModel,
        actor: Actor,
        record: ApprovalRecord,
        vector: ApprovalVector,
        pipeline: Pipeline,
    ) -> None:
        """Apply the status and lock consequences of a recorded decision."""
        approved = record.state is ApprovalState.APPROVED
        current = FormStatus(form.status)
        outcome = evaluate_decision(record.role, approved, vector, current, pipeline)

        illegal = validate_path(current, outcome.path)
        if illegal is not None:
            raise InvalidStateError(
                str(form.id), current.value, "decide",
                reason=f"{current.value} cannot move to {illegal.value}",
            )

        closes = outcome.lock or outcome.final_status is FormStatus.REJECTED
        if closes:
            uow.assignments.release(form, reason=REASON_FORM_CLOSED, released_by=actor.user_id)
        elif form.assigned_to == actor.user_id:
            uow.assignments.release(form, reason=REASON_STAGE_COMPLETED, released_by=actor.user_id)

        for step in outcome.path:
            uow.transition(form, step, actor, action="decide")

        if not approved:
            form.rejection_reason = record.notes
        if outcome.final_status is FormStatus.COMPLETED:
            form.completed_at = record.decided_at
        if outcome.lock:
            uow.ledger.record(
                form,
                field=LOCKED_FIELD,
                old_value=False,
                new_value=True,
                actor=actor,
                change_type=ChangeType.EDIT,
            )
            form.locked = True
            logger.info(
                "form_locked",
                extra={"form_id": str(form.id), "status": form.status, "by_role": actor.role.value},
            )

    # ------------------------------------------------------------------
    # Administrator actions
    # ------------------------------------------------------------------

    def _require_admin(self, form: FormModel, actor: Actor, action: str) -> None:
        if actor.role is not Role.ADMIN:
            raise AccessDeniedError(
                str(form.id), actor.role.value, action, "n/a",
                reason="administrator only",
            )

    def unlock(self, form_id: UUID, actor: Actor) -> Form:
        """Re-open a locked completed/rejected form as submitted.

        The lock flag change is ledgered as ``admin-override`` and the final
        roles' records return to pending.
        """

        def work(uow: UnitOfWork, form: FormModel) -> FormModel:
            self._require_admin(form, actor, "unlock")
            if not form.locked:
                raise InvalidStateError(
                    str(form.id), form.status, "unlock", reason="form is not locked",
                )

            uow.ledger.record(
                form,
                field=LOCKED_FIELD,
                old_value=True,
                new_value=False,
                actor=actor,
                change_type=ChangeType.ADMIN_OVERRIDE,
            )
            form.locked = False
            form.completed_at = None
            form.rejection_reason = None
            uow.transition(form, FormStatus.SUBMITTED, actor, action="unlock")
            # The unlock must reach the database before records may change.
            uow.session.flush()

            for role in uow.forms.pipeline_of(form).final_roles:
                uow.approvals.reset(form, role, actor, change_type=ChangeType.ADMIN_OVERRIDE)

            logger.info("form_unlocked", extra={"form_id": str(form.id)})
            return form

        return self._transact("unlock", form_id, actor, work)

    def override_status(
        self,
        form_id: UUID,
        actor: Actor,
        new_status: FormStatus | str,
        reason: str,
    ) -> Form:
        """Set status directly, bypassing the transition table. Admin only."""

        def work(uow: UnitOfWork, form: FormModel) -> FormModel:
            self._require_admin(form, actor, "override_status")
            if form.locked:
                raise LockedError(str(form.id), form.status)
            if not (reason or "").strip():
                raise MissingReasonError(str(form.id), actor.role.value)
            try:
                target = FormStatus(new_status)
            except ValueError as exc:
                raise ValidationError(
                    f"Unknown status: {new_status!r}", field="status",
                ) from exc
            if target.value == form.status:
                raise ValidationError(
                    f"Form {form.id} is already {target.value}", field="status",
                )

            uow.ledger.record(
                form,
                field=STATUS_FIELD,
                old_value=form.status,
                new_value=target.value,
                actor=actor,
                change_type=ChangeType.ADMIN_OVERRIDE,
            )
            uow.transition(form, target, actor, action="override_status", override=True)
            if target is FormStatus.REJECTED:
                form.rejection_reason = reason.strip()
            return form

        return self._transact("override_status", form_id, actor, work)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign(self, form_id: UUID, staff_id: UUID, actor: Actor) -> AssignmentRecord:
        """Hand the form to a staff member; submitted forms move to in-progress."""

        def work(uow: UnitOfWork, form: FormModel) -> AssignmentRecord:
            self._require_admin(form, actor, "assign")
            if form.locked:
                raise LockedError(str(form.id), form.status)
            status = FormStatus(form.status)
            if status not in REVIEWABLE_STATUSES:
                raise InvalidStateError(str(form.id), status.value, "assign")

            record = uow.assignments.assign(
                form, staff_id, actor,
                vector=uow.approvals.get_vector(form.id),
                pipeline=uow.forms.pipeline_of(form),
            )
            if status is FormStatus.SUBMITTED:
                uow.transition(form, FormStatus.IN_PROGRESS, actor, action="assign")
            return record

        return self._transact("assign", form_id, actor, work)

    def auto_assign(self, form_id: UUID) -> AssignmentRecord | None:
        """Assign the least-loaded eligible account when nobody holds the form."""

        def work(uow: UnitOfWork, form: FormModel) -> AssignmentRecord | None:
            status = FormStatus(form.status)
            if form.locked or status not in REVIEWABLE_STATUSES:
                return None
            record = uow.assignments.auto_assign(
                form,
                vector=uow.approvals.get_vector(form.id),
                pipeline=uow.forms.pipeline_of(form),
            )
            if record is not None and status is FormStatus.SUBMITTED:
                uow.transition(form, FormStatus.IN_PROGRESS, None, action="auto_assign")
            return record

        return self._transact("auto_assign", form_id, None, work)

    def auto_assign_sweep(self) -> list[AssignmentRecord]:
        """Auto-assign every unassigned submitted/in-progress form.

        Each form is handled under its own lock, so concurrent sweeps never
        assign a form twice.
        """
        form_ids = self._run(
            "auto_assign_sweep", None,
            lambda uow: uow.repository.forms_awaiting_assignment(),
            commit=False,
        )
        assigned: list[AssignmentRecord] = []
        for form_id in form_ids:
            record = self.auto_assign(form_id)
            if record is not None:
                assigned.append(record)

        logger.info(
            "auto_assign_sweep_completed",
            extra={"candidates": len(form_ids), "assigned": len(assigned)},
        )
        return assigned

    def current_assignee(self, form_id: UUID) -> UUID | None:
        return self._run(
            "current_assignee", None,
            lambda uow: uow.assignments.current_assignee(form_id),
            form_id=form_id, commit=False,
        )

    def assignment_history(self, form_id: UUID) -> tuple[AssignmentRecord, ...]:
        return self._run(
            "assignment_history", None,
            lambda uow: uow.assignments.history(form_id),
            form_id=form_id, commit=False,
        )

    # ------------------------------------------------------------------
    # Staff accounts
    # ------------------------------------------------------------------

    def register_staff(self, name: str, role: Role, staff_id: UUID | None = None) -> StaffAccount:
        return self._run(
            "register_staff", None,
            lambda uow: uow.staff.register(name, role, staff_id),
        )

    def deactivate_staff(self, staff_id: UUID) -> StaffAccount:
        return self._run(
            "deactivate_staff", None,
            lambda uow: uow.staff.deactivate(staff_id),
        )

    # ------------------------------------------------------------------
    # Change ledger
    # ------------------------------------------------------------------

    def change_log(self, form_id: UUID) -> tuple[ChangeLogEntry, ...]:
        return self._run(
            "change_log", None,
            lambda uow: uow.ledger.entries(form_id),
            form_id=form_id, commit=False,
        )

    def replay(self, form_id: UUID) -> ReplayResult:
        """Reconstruct payload, approval states and lock flag from the ledger."""

        def work(uow: UnitOfWork) -> ReplayResult:
            form = uow.repository.load_form(form_id)
            return replay_ledger(
                uow.ledger.entries(form_id),
                roles=uow.forms.pipeline_of(form).roles,
            )

        return self._run("replay", None, work, form_id=form_id, commit=False)

    def verify_ledger(self, form_id: UUID) -> bool:
        """True when replaying the ledger reproduces the stored form exactly."""

        def work(uow: UnitOfWork) -> bool:
            form = uow.repository.load_form(form_id)
            result = replay_ledger(
                uow.ledger.entries(form_id),
                roles=uow.forms.pipeline_of(form).roles,
            )
            vector = uow.approvals.get_vector(form_id)
            matches = (
                result.payload == (form.payload or {})
                and result.states == vector.as_states()
                and result.locked == bool(form.locked)
            )
            if not matches:
                logger.error("ledger_mismatch", extra={"form_id": str(form_id)})
            return matches

        return self._run("verify_ledger", None, work, form_id=form_id, commit=False)
