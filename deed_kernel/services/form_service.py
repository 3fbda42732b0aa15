"""
deed_kernel.services.form_service -- Form Aggregate operations.

Responsibility:
    Creates forms, moves them through submission and resubmission, applies
    field edits behind the access control gate, and builds role-scoped
    views.  Every status change of a form goes through ``transition()``.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/ and the pure
    deed_engines package.  Receives the WorkflowConfig by injection.

Invariants enforced:
    - ``created_by`` and ``form_type`` never change after creation.
    - Payload edits require WRITE capability evaluated against the vector
      read in the same transaction, plus the field on the acting staff
      role's allowlist.  The lock check comes first.
    - Every payload mutation appends exactly one ledger entry; a write that
      would not change the value is refused.
    - Status changes follow FORM_TRANSITIONS unless explicitly overridden.

Failure modes:
    - ValidationError, AccessDeniedError, LockedError, InvalidStateError.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any
from uuid import UUID, uuid4

from deed_config.schema import WorkflowConfig
from deed_engines.access_control import capability, field_allowed, project_fields
from deed_engines.ledger_replay import APPROVAL_FIELD_PREFIX, LOCKED_FIELD, STATUS_FIELD
from deed_engines.workflow_rules import derive_review_status, rejected_roles
from deed_kernel.domain.forms import (
    Actor,
    ApprovalVector,
    ChangeLogEntry,
    FormView,
    StatusChange,
)
from deed_kernel.domain.workflow import (
    STAFF_ROLES,
    Capability,
    ChangeType,
    FormStatus,
    FormType,
    Pipeline,
    Role,
    can_transition,
)
from deed_kernel.exceptions import (
    AccessDeniedError,
    InvalidStateError,
    LockedError,
    ValidationError,
)
from deed_kernel.logging_config import get_logger
from deed_kernel.models.form import FormModel
from deed_kernel.services.approval_store import ApprovalRecordStore
from deed_kernel.services.base import BaseService
from deed_kernel.services.change_ledger import ChangeLedger
from deed_kernel.services.form_repository import FormRepository
from deed_kernel.services.staff_service import StaffDirectory

logger = get_logger("services.form")

_RESERVED_FIELDS = frozenset({LOCKED_FIELD, STATUS_FIELD})


def _ensure_json(form_id: str, field: str, value: Any) -> None:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"Value of field '{field}' on form {form_id} is not JSON-serializable: {exc}",
            field=field,
        ) from exc


def _ensure_field_name(field: Any) -> None:
    if not isinstance(field, str) or not field.strip():
        raise ValidationError("Field names must be non-empty strings", field=str(field))
    if field in _RESERVED_FIELDS or field.startswith(APPROVAL_FIELD_PREFIX):
        raise ValidationError(f"Field name '{field}' is reserved", field=field)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, dict)) and not value:
        return True
    return False


class FormService(BaseService):
    """The form aggregate: lifecycle, edits and role-scoped views."""

    def __init__(
        self,
        session,
        config: WorkflowConfig,
        repository: FormRepository,
        ledger: ChangeLedger,
        approvals: ApprovalRecordStore,
        staff: StaffDirectory,
        clock=None,
    ):
        super().__init__(session, clock)
        self._config = config
        self._repository = repository
        self._ledger = ledger
        self._approvals = approvals
        self._staff = staff

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def pipeline_of(self, form: FormModel) -> Pipeline:
        return self._config.pipeline_for(form.form_type)

    def _parse_form_type(self, form_type: FormType | str) -> FormType:
        try:
            return FormType(form_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown form type: {form_type!r}", field="form_type",
            ) from exc

    def validate_required(self, form_type: FormType, payload: Mapping[str, Any], form_id: str = "") -> None:
        missing = [
            name for name in self._config.required_fields(form_type)
            if _is_blank(payload.get(name))
        ]
        if missing:
            raise ValidationError(
                f"Form {form_id or form_type.value} is missing required fields: "
                f"{', '.join(missing)}",
                field=missing[0],
            )

    def touch(self, form: FormModel, actor: Actor | None) -> None:
        form.last_activity_at = self.clock.now()
        if actor is not None:
            form.last_activity_by = actor.user_id

    def transition(
        self,
        form: FormModel,
        target: FormStatus,
        actor: Actor | None,
        *,
        action: str,
        override: bool = False,
    ) -> StatusChange:
        """Move ``form`` to ``target``, validating against FORM_TRANSITIONS.

        ``override`` skips the table (administrator status override).  A
        None ``actor`` marks a system transition such as auto-assignment.
        """
        current = FormStatus(form.status)
        if not override and not can_transition(current, target):
            raise InvalidStateError(
                str(form.id), current.value, action,
                reason=f"{current.value} cannot move to {target.value}",
            )
        form.status = target.value
        self.touch(form, actor)
        if target is FormStatus.SUBMITTED and form.submitted_at is None:
            form.submitted_at = form.last_activity_at

        logger.info(
            "form_status_changed",
            extra={
                "form_id": str(form.id),
                "from_status": current.value,
                "to_status": target.value,
                "action": action,
                "override": override,
            },
        )
        return StatusChange(form_id=form.id, old_status=current, new_status=target)

    def capability_of(
        self,
        form: FormModel,
        actor: Actor,
        vector: ApprovalVector,
    ) -> Capability:
        return capability(
            actor.role,
            vector,
            status=FormStatus(form.status),
            locked=bool(form.locked),
            pipeline=self.pipeline_of(form),
            is_owner=actor.user_id == form.created_by,
        )

    def check_assignment(self, form: FormModel, actor: Actor, action: str) -> None:
        """Refuse staff acting on a form assigned to a same-role colleague."""
        if form.assigned_to is None or actor.role not in STAFF_ROLES:
            return
        if form.assigned_to == actor.user_id:
            return
        assignee = self._staff.find(form.assigned_to)
        if assignee is not None and assignee.role is actor.role:
            raise AccessDeniedError(
                str(form.id), actor.role.value, action, "n/a",
                reason="form is assigned to another staff member",
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(
        self,
        form_type: FormType | str,
        payload: Mapping[str, Any],
        created_by: UUID,
    ) -> FormModel:
        """Create a draft form with pending approval records.

        Each initial payload field is ledgered as an ``edit`` from None.

        Raises:
            ValidationError: Unknown form type, bad payload, or missing
                required fields.
        """
        ftype = self._parse_form_type(form_type)
        if not isinstance(payload, Mapping):
            raise ValidationError("Payload must be a mapping", field="payload")
        for name, value in payload.items():
            _ensure_field_name(name)
            _ensure_json(ftype.value, name, value)
        self.validate_required(ftype, payload)

        now = self.clock.now()
        form = FormModel(
            id=uuid4(),
            form_type=ftype.value,
            payload={},
            status=FormStatus.DRAFT.value,
            locked=False,
            created_by=created_by,
            created_at=now,
            last_activity_at=now,
            last_activity_by=created_by,
            ledger_seq=0,
        )
        self._repository.add_form(form)

        submitter = Actor(user_id=created_by, role=Role.USER)
        for name in sorted(payload):
            self._ledger.record(
                form,
                field=name,
                old_value=None,
                new_value=payload[name],
                actor=submitter,
                change_type=ChangeType.EDIT,
            )
        form.payload = {name: payload[name] for name in sorted(payload)}
        self._approvals.initialize(form, self.pipeline_of(form))
        self.session.flush()

        logger.info(
            "form_created",
            extra={
                "form_id": str(form.id),
                "form_type": ftype.value,
                "created_by": str(created_by),
                "field_count": len(payload),
            },
        )
        return form

    def submit(self, form: FormModel, actor: Actor) -> StatusChange:
        """draft -> submitted, after re-running required-field validation."""
        if actor.user_id != form.created_by:
            raise AccessDeniedError(
                str(form.id), actor.role.value, "submit", "n/a",
                reason="only the submitter can submit a form",
            )
        if form.status != FormStatus.DRAFT.value:
            raise InvalidStateError(str(form.id), form.status, "submit")
        self.validate_required(FormType(form.form_type), form.payload, str(form.id))
        return self.transition(form, FormStatus.SUBMITTED, actor, action="submit")

    def resubmit(self, form: FormModel, actor: Actor) -> StatusChange:
        """Send a reviewer-rejected form back into review.

        Rejected records return to pending (ledgered as corrections); the
        new status is derived from the remaining approvals.
        """
        if actor.user_id != form.created_by:
            raise AccessDeniedError(
                str(form.id), actor.role.value, "resubmit", "n/a",
                reason="only the submitter can resubmit a form",
            )
        if form.locked:
            raise LockedError(str(form.id), form.status)
        if form.status != FormStatus.REJECTED.value:
            raise InvalidStateError(str(form.id), form.status, "resubmit")
        self.validate_required(FormType(form.form_type), form.payload, str(form.id))

        pipeline = self.pipeline_of(form)
        for role in rejected_roles(self._approvals.get_vector(form.id)):
            self._approvals.reset(form, role, actor, change_type=ChangeType.CORRECTION)
        form.rejection_reason = None

        target = derive_review_status(self._approvals.get_vector(form.id), pipeline)
        return self.transition(form, target, actor, action="resubmit")

    def apply_edit(
        self,
        form: FormModel,
        actor: Actor,
        field: str,
        new_value: Any,
    ) -> ChangeLogEntry:
        """Write one payload field and ledger it.

        Returns the ledger entry's DTO.

        Raises:
            LockedError: The form is locked (checked first).
            AccessDeniedError: Capability below WRITE, field outside the
                role's allowlist, or the form is assigned to a colleague.
            ValidationError: Bad field name or value, or no change.
        """
        if form.locked:
            raise LockedError(str(form.id), form.status)

        vector = self._approvals.get_vector(form.id)
        cap = self.capability_of(form, actor, vector)
        if not cap.allows(Capability.WRITE):
            raise AccessDeniedError(
                str(form.id), actor.role.value, "edit", cap.value,
            )
        if actor.role.is_reviewer:
            allowlist = self._config.visible_fields(form.form_type, actor.role)
            if not field_allowed(field, allowlist):
                raise AccessDeniedError(
                    str(form.id), actor.role.value, "edit", cap.value,
                    reason=f"field '{field}' is outside the {actor.role.value} allowlist",
                )
        self.check_assignment(form, actor, "edit")

        _ensure_field_name(field)
        _ensure_json(str(form.id), field, new_value)
        payload = dict(form.payload or {})
        old_value = payload.get(field)
        if field in payload and old_value == new_value:
            raise ValidationError(
                f"Field '{field}' of form {form.id} already holds that value",
                field=field,
            )

        change_type = ChangeType.EDIT
        if actor.role is Role.USER and form.status == FormStatus.REJECTED.value:
            change_type = ChangeType.CORRECTION

        entry = self._ledger.record(
            form,
            field=field,
            old_value=old_value,
            new_value=new_value,
            actor=actor,
            change_type=change_type,
        )
        payload[field] = new_value
        form.payload = payload
        self.touch(form, actor)

        logger.info(
            "form_field_edited",
            extra={
                "form_id": str(form.id),
                "field": field,
                "role": actor.role.value,
                "change_type": change_type.value,
            },
        )
        return entry

    def read_view(self, form: FormModel, actor: Actor) -> FormView:
        """Payload projected onto the acting role's allowlist.

        Raises:
            AccessDeniedError: The role's capability is NONE.
        """
        vector = self._approvals.get_vector(form.id)
        cap = self.capability_of(form, actor, vector)
        if cap is Capability.NONE:
            raise AccessDeniedError(str(form.id), actor.role.value, "view", cap.value)

        if actor.role is Role.USER:
            allowlist = None
        else:
            allowlist = self._config.visible_fields(form.form_type, actor.role)

        return FormView(
            form_id=form.id,
            form_type=FormType(form.form_type),
            role=actor.role,
            status=FormStatus(form.status),
            locked=bool(form.locked),
            capability=cap.value,
            fields=project_fields(form.payload or {}, allowlist),
        )
