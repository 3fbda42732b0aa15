"""
ChangeLedger -- append-only, field-level audit trail of every form.

Responsibility:
    Records one ChangeLogEntry per field mutation: payload edits, approval
    decisions and resets (``approvals.<role>``), lock flag changes
    (``locked``) and administrator status overrides (``status``).

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Entries are never updated or deleted (ORM listeners in
      db/immutability.py back this up).
    - Sequence numbers are allocated from the form row's ``ledger_seq``
      counter, so they are gap-free and protected by the form's version
      check.
    - Stored values are deep copies: later payload mutations can never
      reach back into a ledger row.
"""

from __future__ import annotations

import copy
from typing import Any
from uuid import UUID, uuid4

from deed_kernel.domain.forms import Actor, ChangeLogEntry
from deed_kernel.domain.workflow import ChangeType
from deed_kernel.logging_config import get_logger
from deed_kernel.models.change_log import ChangeLogEntryModel
from deed_kernel.models.form import FormModel
from deed_kernel.services.base import BaseService
from deed_kernel.services.form_repository import FormRepository

logger = get_logger("services.change_ledger")


class ChangeLedger(BaseService):
    """Appends and reads change-ledger entries."""

    def __init__(self, session, repository: FormRepository, clock=None):
        super().__init__(session, clock)
        self._repository = repository

    def record(
        self,
        form: FormModel,
        *,
        field: str,
        old_value: Any,
        new_value: Any,
        actor: Actor,
        change_type: ChangeType,
    ) -> ChangeLogEntry:
        """Append one entry for ``field`` of ``form``."""
        entry = ChangeLogEntryModel(
            id=uuid4(),
            form_id=form.id,
            seq=form.next_ledger_seq(),
            field=field,
            old_value=copy.deepcopy(old_value),
            new_value=copy.deepcopy(new_value),
            changed_by_role=actor.role.value,
            changed_by_user_id=actor.user_id,
            timestamp=self.clock.now(),
            change_type=change_type.value,
        )
        self._repository.append_change_log(entry)

        logger.debug(
            "change_logged",
            extra={
                "form_id": str(form.id),
                "seq": entry.seq,
                "field": field,
                "change_type": change_type.value,
            },
        )
        return entry.to_dto()

    def entries(self, form_id: UUID) -> tuple[ChangeLogEntry, ...]:
        """All entries of a form in sequence order."""
        return self._repository.load_change_log(form_id)
