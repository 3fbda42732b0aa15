"""ORM models for the deed workflow kernel.

Importing this package registers every table on ``Base.metadata``.
"""

from deed_kernel.models.approval import ApprovalRecordModel
from deed_kernel.models.assignment import AssignmentHistoryModel, StaffAccountModel
from deed_kernel.models.change_log import ChangeLogEntryModel
from deed_kernel.models.form import FormModel

__all__ = [
    "ApprovalRecordModel",
    "AssignmentHistoryModel",
    "ChangeLogEntryModel",
    "FormModel",
    "StaffAccountModel",
]
