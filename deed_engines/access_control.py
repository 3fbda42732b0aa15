"""
deed_engines.access_control -- Pure access control gate.

Responsibility:
    Decide what an acting role may do with a form given the form's approval
    vector, status and pipeline: nothing, read, write, or approve.  Also
    answers the stage-gate questions the workflow needs (which prerequisite
    roles are still missing, which roles are next) and projects payloads
    onto a role's field allowlist.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import deed_kernel/domain/ types.

Invariants enforced:
    - Admin always holds APPROVE.
    - A reviewer role outside the pipeline, or whose prerequisites are not
      all approved, holds NONE: the form is invisible to its work queue.
    - Only a reviewer whose own record is pending, on an unlocked form that
      is open for review, holds APPROVE.
    - The submitter holds WRITE only on a draft or on an unlocked form that
      a reviewer rejected; non-owners of role ``user`` hold NONE.
    - Purity: the gate reads its arguments only; no clock, no database.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from deed_kernel.domain.forms import ApprovalVector
from deed_kernel.domain.workflow import (
    REVIEWABLE_STATUSES,
    ROLE_ORDER,
    ApprovalState,
    Capability,
    FormStatus,
    Pipeline,
    Role,
)


def missing_prerequisites(
    role: Role,
    vector: ApprovalVector,
    pipeline: Pipeline,
) -> tuple[Role, ...]:
    """Prerequisite roles of ``role`` not yet approved, in stage order."""
    prereqs = pipeline.prerequisites_for(role)
    return tuple(
        r for r in ROLE_ORDER
        if r in prereqs and not vector.is_approved(r)
    )


def stage_gate_satisfied(
    role: Role,
    vector: ApprovalVector,
    pipeline: Pipeline,
) -> bool:
    """True when every prerequisite role of ``role`` has approved."""
    return not missing_prerequisites(role, vector, pipeline)


def is_review_complete(vector: ApprovalVector, pipeline: Pipeline) -> bool:
    """True once every review role has approved."""
    return all(vector.is_approved(r) for r in pipeline.review_roles)


def is_cross_verified(vector: ApprovalVector, pipeline: Pipeline) -> bool:
    """True once review is complete and every verification role has approved.

    A pipeline without verification roles is never cross-verified; its
    forms go straight from under review to the final decision.
    """
    return (
        bool(pipeline.verification_roles)
        and is_review_complete(vector, pipeline)
        and all(vector.is_approved(r) for r in pipeline.verification_roles)
    )


def has_rejection(vector: ApprovalVector) -> bool:
    return any(r.state is ApprovalState.REJECTED for r in vector.records)


def next_required_roles(
    vector: ApprovalVector,
    pipeline: Pipeline,
) -> tuple[Role, ...]:
    """Roles that may act right now: pending and with their gate satisfied.

    Empty once the form is rejected or a final role has approved.
    """
    if has_rejection(vector):
        return ()
    if any(vector.is_approved(r) for r in pipeline.final_roles):
        return ()
    return tuple(
        role for role in pipeline.roles
        if vector.state_of(role) is ApprovalState.PENDING
        and stage_gate_satisfied(role, vector, pipeline)
    )


def capability(
    role: Role,
    vector: ApprovalVector,
    *,
    status: FormStatus,
    locked: bool,
    pipeline: Pipeline,
    is_owner: bool = True,
) -> Capability:
    """Capability of ``role`` on a form in the given state.

    Args:
        role: The acting role.
        vector: The form's current approval vector.
        status: The form's current status.
        locked: The form's lock flag.
        pipeline: The pipeline of the form's type.
        is_owner: For role ``user``, whether the actor created the form.

    Returns:
        The highest capability granted.
    """
    if role is Role.ADMIN:
        return Capability.APPROVE

    if role is Role.USER:
        if not is_owner:
            return Capability.NONE
        if status is FormStatus.DRAFT:
            return Capability.WRITE
        if status is FormStatus.REJECTED and not locked:
            return Capability.WRITE
        return Capability.READ

    if not pipeline.includes(role):
        return Capability.NONE
    if status is FormStatus.DRAFT:
        return Capability.NONE
    if not stage_gate_satisfied(role, vector, pipeline):
        return Capability.NONE

    if (
        not locked
        and status in REVIEWABLE_STATUSES
        and vector.state_of(role) is ApprovalState.PENDING
    ):
        return Capability.APPROVE
    return Capability.READ


def project_fields(
    payload: Mapping[str, Any],
    allowlist: frozenset[str] | None,
) -> dict[str, Any]:
    """Restrict ``payload`` to ``allowlist``; None means every field."""
    if allowlist is None:
        return dict(payload)
    return {k: v for k, v in payload.items() if k in allowlist}


def field_allowed(field: str, allowlist: frozenset[str] | None) -> bool:
    return allowlist is None or field in allowlist
