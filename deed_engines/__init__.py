"""
Module: deed_engines
Responsibility:
    Package entrypoint re-exporting the pure workflow engines: the access
    control gate, status derivation rules and ledger replay.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import deed_kernel/domain/ (and sibling engine modules).
    MUST NOT import deed_kernel services, models or db.

Invariants enforced:
    - Purity: engines never read the clock or the database; the services
      pass in every input, including the current approval vector.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from deed_engines import capability, evaluate_decision, replay_ledger
"""

from deed_engines.access_control import (
    capability,
    field_allowed,
    has_rejection,
    is_cross_verified,
    is_review_complete,
    missing_prerequisites,
    next_required_roles,
    project_fields,
    stage_gate_satisfied,
)
from deed_engines.ledger_replay import (
    APPROVAL_FIELD_PREFIX,
    LOCKED_FIELD,
    STATUS_FIELD,
    LedgerReplayError,
    ReplayResult,
    approval_field,
    replay_ledger,
)
from deed_engines.workflow_rules import (
    DecisionOutcome,
    derive_review_status,
    evaluate_decision,
    rejected_roles,
    validate_path,
)

__all__ = [
    "APPROVAL_FIELD_PREFIX",
    "DecisionOutcome",
    "LOCKED_FIELD",
    "LedgerReplayError",
    "ReplayResult",
    "STATUS_FIELD",
    "approval_field",
    "capability",
    "derive_review_status",
    "evaluate_decision",
    "field_allowed",
    "has_rejection",
    "is_cross_verified",
    "is_review_complete",
    "missing_prerequisites",
    "next_required_roles",
    "project_fields",
    "rejected_roles",
    "replay_ledger",
    "stage_gate_satisfied",
    "validate_path",
]
