"""Feature status state machine.

Pure validator over ``Feature.status``: it knows which edges exist and
refuses everything else. Writing the accompanying pipeline log entry is the
caller's job.

Usage:
    from featureflow.state_machine import apply, FeatureStatus

    feature = apply(feature, FeatureStatus.QA_REVIEW)
"""

from __future__ import annotations

from typing import Final

from featureflow.models import Feature, FeatureStatus

S = FeatureStatus

TRANSITIONS: Final[dict[FeatureStatus, frozenset[FeatureStatus]]] = {
    S.PLANNING: frozenset({S.DESIGN_REVIEW, S.CANCELLED}),
    S.DESIGN_REVIEW: frozenset({S.PLANNING, S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.QA_REVIEW, S.DESIGN_REVIEW, S.CANCELLED}),
    S.QA_REVIEW: frozenset({S.IN_PROGRESS, S.REVIEW, S.CANCELLED}),
    S.REVIEW: frozenset({S.QA_REVIEW, S.APPROVED, S.CANCELLED}),
    S.APPROVED: frozenset({S.PR_SUBMITTED, S.REVIEW, S.CANCELLED}),
    S.PR_SUBMITTED: frozenset({S.DONE, S.APPROVED, S.CANCELLED}),
    S.DONE: frozenset(),
    S.CANCELLED: frozenset({S.PLANNING}),
}

_missing = set(FeatureStatus) - set(TRANSITIONS)
if _missing:  # pragma: no cover - guards edits to FeatureStatus
    msg = f"Transition table has no entry for: {sorted(_missing)}"
    raise RuntimeError(msg)

TERMINAL_STATUSES: Final[frozenset[FeatureStatus]] = frozenset(
    {S.DONE, S.CANCELLED}
)

# No automated step runs in these statuses. Scoped to running detection only;
# approved and pr_submitted can still be moved backwards by a human.
RUNNING_TERMINAL_STATUSES: Final[frozenset[FeatureStatus]] = frozenset(
    {S.DONE, S.CANCELLED, S.APPROVED, S.PR_SUBMITTED}
)


class InvalidTransition(Exception):
    """Raised when the requested status is not reachable from the current one."""

    def __init__(
        self,
        from_status: FeatureStatus,
        to_status: FeatureStatus,
        feature_id: str = "",
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.feature_id = feature_id
        super().__init__(
            f"Invalid transition: {from_status.value} -> {to_status.value}"
            + (f" (feature: {feature_id})" if feature_id else "")
        )


def parse_status(value: str | None) -> FeatureStatus | None:
    """Parse a status string. Returns None if it is not a known status."""
    if value is None:
        return None
    try:
        return FeatureStatus(value)
    except ValueError:
        return None


def allowed_transitions(status: FeatureStatus) -> frozenset[FeatureStatus]:
    return TRANSITIONS[status]


def can_transition(status: FeatureStatus, target: FeatureStatus) -> bool:
    return target in TRANSITIONS[status]


def is_terminal(status: FeatureStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_running_terminal(status: FeatureStatus) -> bool:
    return status in RUNNING_TERMINAL_STATUSES


def apply(feature: Feature, target: FeatureStatus) -> Feature:
    """Return a copy of *feature* moved to *target*.

    Raises InvalidTransition if the edge does not exist. The input is never
    mutated.
    """
    if not can_transition(feature.status, target):
        raise InvalidTransition(feature.status, target, feature.id)
    return feature.model_copy(update={"status": target}, deep=True)
