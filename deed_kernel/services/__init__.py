"""Services for the deed workflow kernel (write side)."""

from deed_kernel.services.approval_store import ApprovalRecordStore
from deed_kernel.services.assignment_service import AssignmentRegistry
from deed_kernel.services.change_ledger import ChangeLedger
from deed_kernel.services.form_locks import FormLockRegistry
from deed_kernel.services.form_repository import FormRepository
from deed_kernel.services.form_service import FormService
from deed_kernel.services.notifications import LoggingNotifier, StatusChangeListener
from deed_kernel.services.staff_service import StaffDirectory
from deed_kernel.services.workflow_service import UnitOfWork, WorkflowService

__all__ = [
    "ApprovalRecordStore",
    "AssignmentRegistry",
    "ChangeLedger",
    "FormLockRegistry",
    "FormRepository",
    "FormService",
    "LoggingNotifier",
    "StaffDirectory",
    "StatusChangeListener",
    "UnitOfWork",
    "WorkflowService",
]
