"""
Tests for the Assignment Registry (WorkflowService.assign / auto_assign).

Covers:
- Manual assignment: admin only, target must be an active account holding
  a next required role, submitted forms move to in-progress
- Least-loaded auto-assignment with name tie-break, never to admins
- Release on stage completion and on lock
- Sweep over unassigned forms
- Append-only history
"""

from uuid import uuid4

import pytest

from deed_kernel.domain.workflow import FormStatus, FormType, Role
from deed_kernel.exceptions import (
    AccessDeniedError,
    InvalidStateError,
    InvalidTargetError,
    LockedError,
)


class TestManualAssign:

    def test_assign_moves_submitted_to_in_progress(self, workflow, make_form, staff, admin, notifications):
        form = make_form()
        record = workflow.assign(form.id, staff[Role.STAFF1].user_id, admin)

        assert record.staff_id == staff[Role.STAFF1].user_id
        assert record.previous_staff_id is None
        assert record.assigned_by == admin.user_id
        assert record.reason == "manual"
        assert workflow.current_assignee(form.id) == staff[Role.STAFF1].user_id
        assert workflow.get_form(form.id).status is FormStatus.IN_PROGRESS
        assert notifications.for_form(form.id)[-1] == (FormStatus.SUBMITTED, FormStatus.IN_PROGRESS)

    def test_reassign_records_previous(self, workflow, make_form, staff, admin):
        colleague = workflow.register_staff("Arjun (staff1)", Role.STAFF1)
        form = make_form()
        workflow.assign(form.id, staff[Role.STAFF1].user_id, admin)
        record = workflow.assign(form.id, colleague.id, admin)

        assert record.previous_staff_id == staff[Role.STAFF1].user_id
        history = workflow.assignment_history(form.id)
        assert [h.staff_id for h in history] == [staff[Role.STAFF1].user_id, colleague.id]

    def test_wrong_stage_role(self, workflow, make_form, staff, admin):
        form = make_form()
        with pytest.raises(InvalidTargetError, match="needs staff1"):
            workflow.assign(form.id, staff[Role.STAFF3].user_id, admin)
        assert workflow.current_assignee(form.id) is None

    def test_inactive_account(self, workflow, make_form, staff, admin):
        form = make_form()
        workflow.deactivate_staff(staff[Role.STAFF1].user_id)
        with pytest.raises(InvalidTargetError, match="inactive"):
            workflow.assign(form.id, staff[Role.STAFF1].user_id, admin)

    def test_unknown_account(self, workflow, make_form, admin):
        form = make_form()
        with pytest.raises(InvalidTargetError, match="no such"):
            workflow.assign(form.id, uuid4(), admin)

    def test_admin_only(self, workflow, make_form, staff):
        form = make_form()
        with pytest.raises(AccessDeniedError):
            workflow.assign(form.id, staff[Role.STAFF1].user_id, staff[Role.STAFF4])

    def test_draft_cannot_be_assigned(self, workflow, make_form, staff, admin):
        form = make_form(submit=False)
        with pytest.raises(InvalidStateError):
            workflow.assign(form.id, staff[Role.STAFF1].user_id, admin)

    def test_locked_form_cannot_be_assigned(self, workflow, make_form, staff, admin, approve_review):
        form = make_form()
        approve_review(form.id)
        workflow.decide(form.id, admin, approved=True)
        with pytest.raises(LockedError):
            workflow.assign(form.id, staff[Role.STAFF4].user_id, admin)


class TestRelease:

    def test_released_when_assignee_decides(self, workflow, make_form, staff, admin):
        form = make_form()
        workflow.assign(form.id, staff[Role.STAFF1].user_id, admin)
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)

        assert workflow.current_assignee(form.id) is None
        last = workflow.assignment_history(form.id)[-1]
        assert last.staff_id is None
        assert last.previous_staff_id == staff[Role.STAFF1].user_id
        assert last.reason == "stage_completed"

    def test_released_when_form_locks(self, workflow, make_form, staff, admin, approve_review):
        form = make_form()
        approve_review(form.id)
        workflow.assign(form.id, staff[Role.STAFF4].user_id, admin)
        workflow.decide(form.id, admin, approved=True)

        assert workflow.current_assignee(form.id) is None
        assert workflow.assignment_history(form.id)[-1].reason == "form_closed"

    def test_unassigned_decision_leaves_no_history(self, workflow, make_form, staff):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        assert workflow.assignment_history(form.id) == ()


class TestAutoAssign:

    def test_least_loaded_with_name_tie_break(self, workflow, make_form, staff):
        aaron = workflow.register_staff("Aaron (staff1)", Role.STAFF1)
        first = make_form()
        second = make_form()

        assert workflow.auto_assign(first.id).staff_id == aaron.id
        assert workflow.auto_assign(second.id).staff_id == staff[Role.STAFF1].user_id

        record = workflow.assignment_history(first.id)[0]
        assert record.reason == "auto_least_loaded"
        assert record.assigned_by is None
        assert workflow.get_form(first.id).status is FormStatus.IN_PROGRESS

    def test_already_assigned_is_left_alone(self, workflow, make_form, staff, admin):
        form = make_form()
        workflow.assign(form.id, staff[Role.STAFF1].user_id, admin)
        assert workflow.auto_assign(form.id) is None
        assert len(workflow.assignment_history(form.id)) == 1

    def test_next_stage_roles_only(self, workflow, make_form, staff):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        record = workflow.auto_assign(form.id)
        assert record.staff_id in {staff[Role.STAFF2].user_id, staff[Role.STAFF3].user_id}
        # Bilal sorts before Chitra.
        assert record.staff_id == staff[Role.STAFF2].user_id

    def test_admins_never_auto_assigned(self, workflow, make_form, staff, admin, approve_review):
        form = make_form()
        approve_review(form.id)
        workflow.deactivate_staff(staff[Role.STAFF4].user_id)
        assert workflow.auto_assign(form.id) is None

    def test_cross_verified_form_goes_to_staff5(self, workflow, make_form, staff, approve_review):
        form = make_form()
        approve_review(form.id, roles=(Role.STAFF1, Role.STAFF2, Role.STAFF3, Role.STAFF4))
        assert workflow.get_form(form.id).status is FormStatus.VERIFIED

        record = workflow.auto_assign(form.id)
        assert record.staff_id == staff[Role.STAFF5].user_id
        assert workflow.get_form(form.id).status is FormStatus.VERIFIED

    def test_no_candidate(self, workflow, make_form):
        form = make_form()
        assert workflow.auto_assign(form.id) is None

    def test_draft_and_locked_forms_skipped(self, workflow, make_form, staff, admin, approve_review):
        draft = make_form(submit=False)
        assert workflow.auto_assign(draft.id) is None

        locked = make_form()
        approve_review(locked.id)
        workflow.decide(locked.id, admin, approved=True)
        assert workflow.auto_assign(locked.id) is None


class TestSweep:

    def test_sweep_assigns_every_waiting_form(self, workflow, make_form, staff, captured_logs):
        forms = [make_form(), make_form(FormType.CONTACT_FORM), make_form(submit=False)]

        assigned = workflow.auto_assign_sweep()

        assert {r.form_id for r in assigned} == {forms[0].id, forms[1].id}
        assert all(r.staff_id == staff[Role.STAFF1].user_id for r in assigned)
        assert workflow.current_assignee(forms[2].id) is None

        summary = [r for r in captured_logs() if r["message"] == "auto_assign_sweep_completed"]
        assert summary[-1]["candidates"] == 2
        assert summary[-1]["assigned"] == 2

    def test_second_sweep_is_a_no_op(self, workflow, make_form, staff):
        make_form()
        workflow.auto_assign_sweep()
        assert workflow.auto_assign_sweep() == []

    def test_sweep_picks_up_released_forms(self, workflow, make_form, staff):
        form = make_form()
        workflow.auto_assign_sweep()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)

        assigned = workflow.auto_assign_sweep()
        assert [r.staff_id for r in assigned] == [staff[Role.STAFF2].user_id]
