"""
deed_engines.workflow_rules -- Pure status derivation for the verification workflow.

Responsibility:
    Given an approval vector and the decision just recorded, compute where
    the form goes next: its new status, the intermediate statuses it passes
    through, and whether it becomes locked.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import deed_kernel/domain/ types.

Invariants enforced:
    - A final-role approval always ends in completed with ``lock=True``,
      passing through verified when the form is not yet cross-verified;
      the caller applies the whole path in one transaction.
    - A final-role rejection yields rejected with ``lock=True``.
    - A review- or verification-role rejection yields rejected with
      ``lock=False`` and re-opens the submitter's edit rights.
    - Any other approval re-derives the status from the vector: verified
      once cross-verified, under-review once every review role has
      approved, otherwise in-progress.
    - Every step of a returned path is a legal ``FORM_TRANSITIONS`` edge
      from the previous status (checked by ``validate_path``).
"""

from __future__ import annotations

from dataclasses import dataclass

from deed_engines.access_control import is_cross_verified, is_review_complete
from deed_kernel.domain.forms import ApprovalVector
from deed_kernel.domain.workflow import (
    ApprovalState,
    FormStatus,
    Pipeline,
    Role,
    can_transition,
)


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of evaluating one recorded decision."""

    path: tuple[FormStatus, ...]
    lock: bool = False
    reopen_for_submitter: bool = False

    @property
    def final_status(self) -> FormStatus | None:
        return self.path[-1] if self.path else None


def derive_review_status(vector: ApprovalVector, pipeline: Pipeline) -> FormStatus:
    """Status implied by the non-final records of an open form.

    Used after a review or verification approval and when a rejected form
    is resubmitted.
    """
    if is_cross_verified(vector, pipeline):
        return FormStatus.VERIFIED
    if is_review_complete(vector, pipeline):
        return FormStatus.UNDER_REVIEW
    if any(vector.is_approved(r) for r in pipeline.review_roles):
        return FormStatus.IN_PROGRESS
    return FormStatus.SUBMITTED


def evaluate_decision(
    role: Role,
    approved: bool,
    vector_after: ApprovalVector,
    current_status: FormStatus,
    pipeline: Pipeline,
) -> DecisionOutcome:
    """Compute the status path triggered by ``role``'s decision.

    ``vector_after`` already contains the decision.  An empty path means
    the status does not change.
    """
    if pipeline.is_final(role):
        if approved:
            if current_status is FormStatus.VERIFIED:
                return DecisionOutcome(path=(FormStatus.COMPLETED,), lock=True)
            return DecisionOutcome(
                path=(FormStatus.VERIFIED, FormStatus.COMPLETED),
                lock=True,
            )
        return DecisionOutcome(path=(FormStatus.REJECTED,), lock=True)

    if not approved:
        return DecisionOutcome(
            path=(FormStatus.REJECTED,),
            reopen_for_submitter=True,
        )

    target = derive_review_status(vector_after, pipeline)
    if target is current_status:
        return DecisionOutcome(path=())
    return DecisionOutcome(path=(target,))


def validate_path(current: FormStatus, path: tuple[FormStatus, ...]) -> FormStatus | None:
    """Return the first illegal step of ``path`` from ``current``, or None."""
    status = current
    for step in path:
        if not can_transition(status, step):
            return step
        status = step
    return None


def rejected_roles(vector: ApprovalVector) -> tuple[Role, ...]:
    return tuple(r.role for r in vector.records if r.state is ApprovalState.REJECTED)
