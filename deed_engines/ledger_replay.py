"""
deed_engines.ledger_replay -- Reconstruct form state from its change ledger.

Responsibility:
    Fold a form's change-ledger entries, in sequence order, into the payload,
    approval states and lock flag they describe.  Used to audit that the
    stored aggregate matches its own history.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import deed_kernel/domain/ types.

Ledger field conventions:
    ``approvals.<role>``  approval state of a reviewer role
    ``locked``            the form's lock flag
    ``status``            administrator status override (not replayed into
                          the payload)
    anything else         a payload field

Invariants enforced:
    - Sequence numbers start at 1 and are contiguous.
    - Every entry's ``old_value`` equals the value reconstructed so far;
      a mismatch means the ledger is incomplete.

Failure modes:
    - ``LedgerReplayError`` on a sequence gap or an old-value mismatch.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from deed_engines.tracer import traced_engine
from deed_kernel.domain.forms import ChangeLogEntry
from deed_kernel.domain.workflow import ApprovalState, Role

APPROVAL_FIELD_PREFIX = "approvals."
LOCKED_FIELD = "locked"
STATUS_FIELD = "status"


def approval_field(role: Role) -> str:
    return f"{APPROVAL_FIELD_PREFIX}{role.value}"


class LedgerReplayError(ValueError):
    """The ledger does not describe a consistent history."""

    def __init__(self, seq: int, message: str):
        self.seq = seq
        super().__init__(f"Ledger entry #{seq}: {message}")


@dataclass(frozen=True)
class ReplayResult:
    """State reconstructed from a ledger."""

    payload: dict[str, Any] = field(default_factory=dict)
    states: dict[Role, ApprovalState] = field(default_factory=dict)
    locked: bool = False
    entry_count: int = 0


@traced_engine("ledger_replay", "1.0", fingerprint_fields=("roles",))
def replay_ledger(
    entries: Sequence[ChangeLogEntry],
    roles: Iterable[Role] = (),
) -> ReplayResult:
    """Replay ``entries`` from form creation.

    Args:
        entries: The form's ledger, ordered by ``seq``.
        roles: Reviewer roles whose records start out pending.

    Raises:
        LedgerReplayError: On a sequence gap or an old-value mismatch.
    """
    payload: dict[str, Any] = {}
    states: dict[Role, ApprovalState] = {
        role: ApprovalState.PENDING for role in roles
    }
    locked = False
    expected_seq = 1

    for entry in entries:
        if entry.seq != expected_seq:
            raise LedgerReplayError(
                entry.seq, f"expected sequence number {expected_seq}",
            )
        expected_seq += 1

        if entry.field.startswith(APPROVAL_FIELD_PREFIX):
            role = Role(entry.field[len(APPROVAL_FIELD_PREFIX):])
            current = states.get(role, ApprovalState.PENDING)
            if entry.old_value != current.value:
                raise LedgerReplayError(
                    entry.seq,
                    f"{entry.field} was {current.value}, entry says {entry.old_value}",
                )
            states[role] = ApprovalState(entry.new_value)
        elif entry.field == LOCKED_FIELD:
            if bool(entry.old_value) != locked:
                raise LedgerReplayError(
                    entry.seq, f"locked was {locked}, entry says {entry.old_value}",
                )
            locked = bool(entry.new_value)
        elif entry.field == STATUS_FIELD:
            continue
        else:
            current = payload.get(entry.field)
            if entry.old_value != current:
                raise LedgerReplayError(
                    entry.seq,
                    f"field '{entry.field}' was {current!r}, entry says {entry.old_value!r}",
                )
            payload[entry.field] = entry.new_value

    return ReplayResult(
        payload=payload,
        states=states,
        locked=locked,
        entry_count=expected_seq - 1,
    )
