"""
Status change notifications.

The workflow calls every registered ``StatusChangeListener`` after a
transition commits, once per status the form passed through (a final
approval of a form not yet cross-verified delivers verified and then
completed).  Rolled-back transitions never notify.  Delivery (email,
in-app) is the listener's business.

A listener that raises propagates to the caller of the workflow
operation.  The transition itself is already committed at that point.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable
from uuid import UUID

from deed_kernel.domain.workflow import FormStatus
from deed_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


@runtime_checkable
class StatusChangeListener(Protocol):
    """Receives committed status transitions."""

    def on_status_change(
        self,
        form_id: UUID,
        old_status: FormStatus,
        new_status: FormStatus,
    ) -> None: ...


class LoggingNotifier:
    """Listener that records each transition as a structured log line."""

    def on_status_change(
        self,
        form_id: UUID,
        old_status: FormStatus,
        new_status: FormStatus,
    ) -> None:
        logger.info(
            "status_change_notified",
            extra={
                "form_id": str(form_id),
                "old_status": old_status.value,
                "new_status": new_status.value,
            },
        )
