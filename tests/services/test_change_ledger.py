"""
Tests for the change ledger as seen through the workflow.

Covers:
- Every mutation appends exactly one entry, seq gap-free from 1
- Replaying the ledger reproduces payload, approval vector and lock flag
  across a long history (edits, rejection, resubmit, cross-verification,
  lock, unlock)
- verify_ledger() detects state written around the ledger
"""

from sqlalchemy import text

from deed_kernel.domain.workflow import ApprovalState, ChangeType, FormType, Role


def run_long_history(workflow, make_form, staff, admin, submitter):
    form = make_form(FormType.SALE_DEED)
    workflow.apply_edit(form.id, staff[Role.STAFF1], "stampDuty", 180000)
    workflow.decide(form.id, staff[Role.STAFF1], approved=True)
    workflow.apply_edit(form.id, staff[Role.STAFF2], "witnesses", ["Kiran", "Lata"])
    workflow.decide(form.id, staff[Role.STAFF2], approved=True)
    workflow.decide(form.id, staff[Role.STAFF3], approved=False, notes="map is blurred")
    workflow.apply_edit(form.id, submitter, "propertyMapUrl", "https://files.example.org/maps/v2.png")
    workflow.resubmit(form.id, submitter)
    workflow.decide(form.id, staff[Role.STAFF3], approved=True)
    workflow.decide(form.id, staff[Role.STAFF4], approved=True)
    workflow.decide(form.id, staff[Role.STAFF5], approved=True)
    workflow.unlock(form.id, admin)
    workflow.apply_edit(form.id, admin, "stampDuty", 182500)
    return form


class TestLedgerCompleteness:

    def test_one_entry_per_mutation(self, workflow, make_form, staff):
        form = make_form()
        before = len(workflow.change_log(form.id))
        workflow.apply_edit(form.id, staff[Role.STAFF1], "stampDuty", 1)
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        assert len(workflow.change_log(form.id)) == before + 2

    def test_submit_is_not_a_field_change(self, workflow, submitter):
        form = workflow.create(FormType.SALE_DEED, {"salePrice": 1}, submitter.user_id)
        workflow.submit(form.id, submitter)
        assert len(workflow.change_log(form.id)) == 1

    def test_sequence_is_gap_free(self, workflow, make_form, staff, admin, submitter):
        form = run_long_history(workflow, make_form, staff, admin, submitter)
        seqs = [e.seq for e in workflow.change_log(form.id)]
        assert seqs == list(range(1, len(seqs) + 1))

    def test_entry_fields(self, workflow, make_form, staff, clock):
        form = make_form()
        clock.advance(60)
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        entry = workflow.change_log(form.id)[-1]
        assert entry.form_id == form.id
        assert entry.field == "approvals.staff1"
        assert entry.changed_by_role is Role.STAFF1
        assert entry.changed_by_user_id == staff[Role.STAFF1].user_id
        assert entry.timestamp == clock.now()
        assert entry.change_type is ChangeType.EDIT

    def test_values_are_snapshots(self, workflow, make_form, staff):
        form = make_form()
        workflow.decide(form.id, staff[Role.STAFF1], approved=True)
        workflow.apply_edit(form.id, staff[Role.STAFF2], "witnesses", ["Kiran"])
        workflow.apply_edit(form.id, staff[Role.STAFF2], "witnesses", ["Kiran", "Lata"])
        history = [e for e in workflow.change_log(form.id) if e.field == "witnesses"]
        assert history[0].new_value == ["Kiran"]
        assert history[1].old_value == ["Kiran"]


class TestReplay:

    def test_replay_reproduces_state(self, workflow, make_form, staff, admin, submitter):
        form = run_long_history(workflow, make_form, staff, admin, submitter)
        result = workflow.replay(form.id)
        stored = workflow.get_form(form.id)

        assert result.payload == stored.payload
        assert result.payload["stampDuty"] == 182500
        assert result.locked is False
        assert result.states == workflow.get_vector(form.id).as_states()
        assert result.states[Role.STAFF4] is ApprovalState.APPROVED
        assert result.states[Role.STAFF5] is ApprovalState.PENDING
        assert result.entry_count == len(workflow.change_log(form.id))

    def test_verify_ledger_after_history(self, workflow, make_form, staff, admin, submitter):
        form = run_long_history(workflow, make_form, staff, admin, submitter)
        assert workflow.verify_ledger(form.id)

    def test_verify_locked_form(self, workflow, make_form, admin, approve_review):
        form = make_form()
        approve_review(form.id)
        workflow.decide(form.id, admin, approved=True)
        assert workflow.replay(form.id).locked is True
        assert workflow.verify_ledger(form.id)

    def test_override_does_not_disturb_replay(self, workflow, make_form, admin):
        form = make_form()
        workflow.override_status(form.id, admin, "under-review", "paper file checked")
        assert workflow.verify_ledger(form.id)

    def test_write_around_the_ledger_detected(self, workflow, make_form, db_engine, captured_logs):
        form = make_form()
        with db_engine.begin() as conn:
            conn.execute(
                text(
                    "UPDATE approval_records SET state = 'approved' "
                    "WHERE form_id = :form_id AND role = 'staff1'"
                ),
                {"form_id": str(form.id)},
            )

        assert not workflow.verify_ledger(form.id)
        assert any(r["message"] == "ledger_mismatch" for r in captured_logs())
