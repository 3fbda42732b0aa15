"""
Tests for reviewer decisions (WorkflowService.decide, ApprovalRecordStore).

Covers:
- Stage gate: OutOfOrderError names the missing roles, nothing is written
- MissingReasonError on blank rejection notes, nothing is written
- Second decision by the same role -> InvalidStateError, one record, one entry
- Review-role rejection: rejected, unlocked, submitter may correct and resubmit
- Final-role rejection: rejected and locked
- Decisions refused on drafts, for the submitter role, and on locked forms
"""

import pytest

from deed_kernel.domain.workflow import (
    ApprovalState,
    ChangeType,
    FormStatus,
    Role,
)
from deed_kernel.exceptions import (
    AccessDeniedError,
    InvalidStateError,
    LockedError,
    MissingReasonError,
    OutOfOrderError,
)


def approval_entries(workflow, form_id, role):
    return [e for e in workflow.change_log(form_id) if e.field == f"approvals.{role.value}"]


class TestStageGate:

    def test_staff3_before_staff1(self, workflow, make_form, staff):
        form = make_form()
        before = workflow.change_log(form.id)

        with pytest.raises(OutOfOrderError) as exc_info:
            workflow.decide(form.id, staff[Role.STAFF3], approved=True)

        assert exc_info.value.missing_roles == ("staff1",)
        assert exc_info.value.user_message == "Waiting on staff1 approval."
        assert workflow.get_vector(form.id).state_of(Role.STAFF3) is ApprovalState.PENDING
        assert workflow.change_log(form.id) == before
        assert workflow.get_form(form.id).status is FormStatus.SUBMITTED

    def test_final_role_names_every_missing_role(self, workflow, make_form, staff, admin):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        workflow.decide(form.id, staff[Role.STAFF2], approved=True)
        with pytest.raises(OutOfOrderError) as exc_info:
            workflow.decide(form.id, admin, approved=True)
        assert exc_info.value.missing_roles == ("staff3",)

    def test_rejection_also_gated(self, workflow, make_form, staff):
        form = make_form()
        with pytest.raises(OutOfOrderError):
            workflow.decide(form.id, staff[Role.STAFF2], approved=False, notes="wrong buyer")


class TestMissingReason:

    @pytest.mark.parametrize("notes", ["", "   "])
    def test_rejection_needs_notes(self, workflow, make_form, staff, notes):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        version = workflow.get_form(form.id).version
        entries = len(workflow.change_log(form.id))

        with pytest.raises(MissingReasonError):
            workflow.decide(form.id, staff[Role.STAFF2], approved=False, notes=notes)

        form_after = workflow.get_form(form.id)
        assert form_after.status is FormStatus.IN_PROGRESS
        assert form_after.version == version
        assert len(workflow.change_log(form.id)) == entries
        assert workflow.get_vector(form.id).state_of(Role.STAFF2) is ApprovalState.PENDING

    def test_approval_needs_no_notes(self, workflow, make_form, staff):
        form = make_form()
        record = workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        assert record.notes == ""


class TestDoubleDecision:

    def test_second_decision_refused(self, workflow, make_form, staff):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)

        with pytest.raises(InvalidStateError):
            workflow.decide(form.id, staff[Role.STAFF1], approved=True)

        entries = approval_entries(workflow, form.id, Role.STAFF1)
        assert len(entries) == 1
        assert (entries[0].old_value, entries[0].new_value) == ("pending", "approved")

    def test_cannot_flip_a_decision(self, workflow, make_form, staff):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        with pytest.raises(InvalidStateError):
            workflow.decide(form.id, staff[Role.STAFF1], approved=False, notes="changed my mind")
        assert workflow.get_vector(form.id).is_approved(Role.STAFF1)


class TestReviewRejection:

    def test_rejection_reopens_for_submitter(self, workflow, make_form, staff, submitter):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        record = workflow.decide(
            form.id, staff[Role.STAFF3], approved=False, notes="  khasra number does not match  ",
        )

        assert record.state is ApprovalState.REJECTED
        assert record.notes == "khasra number does not match"
        rejected = workflow.get_form(form.id)
        assert rejected.status is FormStatus.REJECTED
        assert not rejected.locked
        assert rejected.rejection_reason == "khasra number does not match"

        view = workflow.read_view(form.id, submitter)
        assert view.capability == "write"

    def test_no_cascade_to_other_records(self, workflow, make_form, staff):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        workflow.decide(form.id, staff[Role.STAFF2], approved=True)
        workflow.decide(form.id, staff[Role.STAFF3], approved=False, notes="plot map missing")

        vector = workflow.get_vector(form.id)
        assert vector.is_approved(Role.STAFF1)
        assert vector.is_approved(Role.STAFF2)
        assert vector.state_of(Role.STAFF3) is ApprovalState.REJECTED

    def test_other_reviewers_blocked_while_rejected(self, workflow, make_form, staff):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        workflow.decide(form.id, staff[Role.STAFF2], approved=False, notes="seller ID expired")
        with pytest.raises(InvalidStateError):
            workflow.decide(form.id, staff[Role.STAFF3], approved=True)

    def test_correct_and_resubmit(self, workflow, make_form, staff, submitter, approve_review):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        workflow.decide(form.id, staff[Role.STAFF2], approved=True)
        workflow.decide(form.id, staff[Role.STAFF3], approved=False, notes="plot map missing")

        entry = workflow.apply_edit(
            form.id, submitter, "propertyMapUrl", "https://files.example.org/maps/new.png",
        )
        assert entry.change_type is ChangeType.CORRECTION

        resubmitted = workflow.resubmit(form.id, submitter)
        assert resubmitted.status is FormStatus.IN_PROGRESS
        assert resubmitted.rejection_reason is None

        reset = approval_entries(workflow, form.id, Role.STAFF3)[-1]
        assert (reset.old_value, reset.new_value) == ("rejected", "pending")
        assert reset.change_type is ChangeType.CORRECTION

        workflow.decide(form.id, staff[Role.STAFF3], approved=True)
        assert workflow.get_form(form.id).status is FormStatus.UNDER_REVIEW

    def test_resubmit_after_first_stage_rejection(self, workflow, make_form, staff, submitter):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=False, notes="stamp duty unpaid")
        assert workflow.resubmit(form.id, submitter).status is FormStatus.SUBMITTED

    def test_resubmit_requires_rejection(self, workflow, make_form, submitter):
        form = make_form()
        with pytest.raises(InvalidStateError):
            workflow.resubmit(form.id, submitter)

    def test_only_creator_resubmits(self, workflow, make_form, staff, other_user):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=False, notes="stamp duty unpaid")
        with pytest.raises(AccessDeniedError):
            workflow.resubmit(form.id, other_user)


class TestFinalRejection:

    def test_final_rejection_locks(self, workflow, make_form, staff, submitter, approve_review):
        form = make_form()
        approve_review(form.id, roles=(Role.STAFF1, Role.STAFF2, Role.STAFF3, Role.STAFF4))
        workflow.decide(form.id, staff[Role.STAFF5], approved=False, notes="forged signature")

        final = workflow.get_form(form.id)
        assert final.status is FormStatus.REJECTED
        assert final.locked
        assert final.rejection_reason == "forged signature"

        with pytest.raises(LockedError):
            workflow.resubmit(form.id, submitter)
        with pytest.raises(LockedError):
            workflow.apply_edit(form.id, submitter, "salePrice", 1)


class TestRefusals:

    def test_no_decisions_on_drafts(self, workflow, make_form, staff):
        form = make_form(submit=False)
        with pytest.raises(InvalidStateError):
            workflow.decide(form.id, staff[Role.STAFF1], approved=True)

    def test_submitter_cannot_decide(self, workflow, make_form, submitter):
        form = make_form()
        with pytest.raises(AccessDeniedError):
            workflow.decide(form.id, submitter, approved=True)

    def test_locked_form_refuses_everyone(self, workflow, make_form, staff, admin, approve_review):
        form = make_form()
        approve_review(form.id)
        workflow.decide(form.id, admin, approved=True)
        for actor in (staff[Role.STAFF1], staff[Role.STAFF4], staff[Role.STAFF5], admin):
            with pytest.raises(LockedError):
                workflow.decide(form.id, actor, approved=True)

    def test_access_denied_is_logged_as_warning(self, workflow, make_form, submitter, captured_logs):
        form = make_form()
        with pytest.raises(AccessDeniedError):
            workflow.decide(form.id, submitter, approved=True)
        denied = [r for r in captured_logs() if r["message"] == "access_denied"]
        assert len(denied) == 1
        assert denied[0]["level"] == "WARNING"
        assert denied[0]["form_id"] == str(form.id)
        assert denied[0]["actor_role"] == "user"
