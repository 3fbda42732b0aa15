"""
Deed Workflow Kernel

The multi-stage verification engine behind citizen deed requests:
- Fixed reviewer pipeline with a parallel staff2/staff3 stage
- Role-gated access control evaluated against the approval vector
- Append-only, replayable field-level change ledger
- Per-form serialization with optimistic concurrency and a single retry
- Terminal locking with a logged administrator unlock
"""

__version__ = "0.1.0"
