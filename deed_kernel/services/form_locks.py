"""
FormLockRegistry -- process-local, per-form exclusive locks.

Responsibility:
    Serializes every mutating operation on one form within this process so
    that reading the approval vector, evaluating capability and writing the
    result happen in one critical section.  Across processes the form
    row's version column (and SELECT ... FOR UPDATE on PostgreSQL) gives
    the same guarantee.

Invariants enforced:
    - At most one thread holds a given form's lock.
    - Locks for different forms never block each other.
    - Lock entries are dropped once no thread holds or waits on them.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class FormLockRegistry:
    """Hands out one re-entrant lock per form ID."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[UUID, _Entry] = {}

    @contextmanager
    def hold(self, form_id: UUID) -> Iterator[None]:
        """Hold ``form_id``'s lock for the duration of the block."""
        with self._guard:
            entry = self._entries.get(form_id)
            if entry is None:
                entry = self._entries[form_id] = _Entry()
            entry.users += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[form_id]

    def active_count(self) -> int:
        """Number of forms currently locked or awaited."""
        with self._guard:
            return len(self._entries)
