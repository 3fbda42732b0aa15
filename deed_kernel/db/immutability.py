"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

A registered deed must be tamper-proof.  Once a form is locked its payload
and approval vector may only change after an administrator unlocks it, and
the change ledger that records every edit can never be rewritten.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check the invariants:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

If a check fails, ImmutabilityViolationError aborts the flush and the
transaction is rolled back.  Services enforce the same rules first with
friendlier errors (LockedError); these listeners catch what slips past them.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity            | When Immutable                      | Why
------------------|-------------------------------------|------------------------------
ChangeLogEntry    | ALWAYS (from creation)              | The audit trail is the record
AssignmentHistory | ALWAYS (from creation)              | Who-held-what audit
Form              | payload/status while locked         | Locked = registered document
ApprovalRecord    | While the parent form is locked     | Vector frozen with the form

===============================================================================
DESIGN DECISIONS
===============================================================================

1. WHY CHECK "WAS LOCKED" NOT "IS LOCKED"?
   The final approval itself sets locked=True in the same flush that may
   also touch status.  We look at attribute history so the locking write
   passes and every later write is blocked.  An unlock (True -> False) may
   change status but never the payload in the same flush.

2. WHY QUERY THE PARENT FORM FOR APPROVAL RECORDS?
   The record does not carry the lock flag.  The listener reads it through
   the flushing connection, so it sees the form row as written earlier in
   the same transaction.  Services therefore flush record changes before
   locking the form and flush the unlock before resetting records.

===============================================================================
USAGE
===============================================================================

    from deed_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, text
from sqlalchemy.orm.attributes import get_history

from deed_kernel.exceptions import ImmutabilityViolationError
from deed_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "statement": operation,
            "reason": reason,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_change_log_immutability(mapper, connection, target):
    """Change-ledger entries are append-only: block every UPDATE."""
    raise _blocked(
        "ChangeLogEntry", target.id, "UPDATE",
        "Change ledger entries are append-only",
    )


def _check_change_log_delete(mapper, connection, target):
    raise _blocked(
        "ChangeLogEntry", target.id, "DELETE",
        "Change ledger entries cannot be deleted",
    )


def _check_assignment_history_immutability(mapper, connection, target):
    raise _blocked(
        "AssignmentHistory", target.id, "UPDATE",
        "Assignment history is append-only",
    )


def _check_assignment_history_delete(mapper, connection, target):
    raise _blocked(
        "AssignmentHistory", target.id, "DELETE",
        "Assignment history cannot be deleted",
    )


def _was_locked(target) -> bool:
    history = get_history(target, "locked")
    if history.deleted:
        return bool(history.deleted[0])
    if history.unchanged:
        return bool(history.unchanged[0])
    return False


def _check_form_immutability(mapper, connection, target):
    """
    Block payload/status writes on a locked form.

    Logic:
        1. Form was not locked before this flush: allow (includes the
           locking write itself).
        2. Form was locked and is being unlocked: allow status and metadata
           changes, block payload changes.
        3. Form was locked and stays locked: block payload and status.
    """
    if not _was_locked(target):
        return

    payload_changed = get_history(target, "payload").has_changes()
    if payload_changed:
        raise _blocked(
            "Form", target.id, "UPDATE",
            "Payload of a locked form cannot change",
        )

    if target.locked and get_history(target, "status").has_changes():
        raise _blocked(
            "Form", target.id, "UPDATE",
            "Status of a locked form cannot change without an unlock",
        )


def _check_form_delete(mapper, connection, target):
    raise _blocked("Form", target.id, "DELETE", "Forms cannot be deleted")


def _form_is_locked(connection, form_id) -> bool:
    result = connection.execute(
        text("SELECT locked FROM forms WHERE id = :form_id"),
        {"form_id": str(form_id)},
    )
    value = result.scalar()
    return bool(value)


def _check_approval_record_immutability(mapper, connection, target):
    """Approval records of a locked form are frozen."""
    if _form_is_locked(connection, target.form_id):
        raise _blocked(
            "ApprovalRecord", target.id, "UPDATE",
            f"Approval record '{target.role}' belongs to a locked form",
        )


def _check_approval_record_delete(mapper, connection, target):
    raise _blocked(
        "ApprovalRecord", target.id, "DELETE",
        "Approval records cannot be deleted",
    )


def _listeners():
    from deed_kernel.models import (
        ApprovalRecordModel,
        AssignmentHistoryModel,
        ChangeLogEntryModel,
        FormModel,
    )

    return (
        (ChangeLogEntryModel, "before_update", _check_change_log_immutability),
        (ChangeLogEntryModel, "before_delete", _check_change_log_delete),
        (AssignmentHistoryModel, "before_update", _check_assignment_history_immutability),
        (AssignmentHistoryModel, "before_delete", _check_assignment_history_delete),
        (FormModel, "before_update", _check_form_immutability),
        (FormModel, "before_delete", _check_form_delete),
        (ApprovalRecordModel, "before_update", _check_approval_record_immutability),
        (ApprovalRecordModel, "before_delete", _check_approval_record_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: a listener that is already registered is not added twice.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Safely remove an event listener, ignoring if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
