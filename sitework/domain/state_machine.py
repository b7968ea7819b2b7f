from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum


class UpdateStatus(StrEnum):
    SUBMITTED = "SUBMITTED"
    UNDER_CONTRACTOR_ADMIN_REVIEW = "UNDER_CONTRACTOR_ADMIN_REVIEW"
    CONTRACTOR_ADMIN_REJECTED = "CONTRACTOR_ADMIN_REJECTED"
    UNDER_SUPERVISOR_REVIEW = "UNDER_SUPERVISOR_REVIEW"
    SUPERVISOR_APPROVED = "SUPERVISOR_APPROVED"
    SUPERVISOR_REJECTED = "SUPERVISOR_REJECTED"
    UNDER_ADMIN_REVIEW = "UNDER_ADMIN_REVIEW"
    ADMIN_APPROVED = "ADMIN_APPROVED"
    ADMIN_REJECTED = "ADMIN_REJECTED"


class TaskStatus(StrEnum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"


class ReviewTier(StrEnum):
    CONTRACTOR_ADMIN = "CONTRACTOR_ADMIN"
    SUPERVISOR = "SUPERVISOR"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class ReviewChain:
    """Which review tiers have a configured reviewer for one update's task."""

    has_contractor_admin: bool = False
    has_supervisor: bool = False
    has_admin: bool = False


ChainCondition = Callable[[ReviewChain], bool]


def _always(_chain: ReviewChain) -> bool:
    return True


def _has_contractor_admin(chain: ReviewChain) -> bool:
    return chain.has_contractor_admin


def _has_supervisor(chain: ReviewChain) -> bool:
    return chain.has_supervisor


def _has_admin(chain: ReviewChain) -> bool:
    return chain.has_admin


def _no_supervisor(chain: ReviewChain) -> bool:
    return not chain.has_supervisor


def _no_admin(chain: ReviewChain) -> bool:
    return not chain.has_admin


def _supervisor_without_contractor(chain: ReviewChain) -> bool:
    return chain.has_supervisor and not chain.has_contractor_admin


def _admin_only(chain: ReviewChain) -> bool:
    return not chain.has_contractor_admin and not chain.has_supervisor


@dataclass(frozen=True)
class RoutingRule:
    source: UpdateStatus
    target: UpdateStatus
    when: ChainCondition = _always


@dataclass(frozen=True)
class ReviewRule:
    tier: ReviewTier
    source: UpdateStatus
    approved: bool
    target: UpdateStatus
    when: ChainCondition = _always


# First matching rule wins; conditions within one source are mutually exclusive.
SUBMISSION_ROUTING: tuple[RoutingRule, ...] = (
    RoutingRule(UpdateStatus.SUBMITTED, UpdateStatus.UNDER_CONTRACTOR_ADMIN_REVIEW, _has_contractor_admin),
    RoutingRule(UpdateStatus.SUBMITTED, UpdateStatus.UNDER_SUPERVISOR_REVIEW, _supervisor_without_contractor),
    RoutingRule(UpdateStatus.SUBMITTED, UpdateStatus.UNDER_ADMIN_REVIEW, _admin_only),
)

REVIEW_RULES: tuple[ReviewRule, ...] = (
    ReviewRule(
        ReviewTier.CONTRACTOR_ADMIN,
        UpdateStatus.UNDER_CONTRACTOR_ADMIN_REVIEW,
        True,
        UpdateStatus.UNDER_SUPERVISOR_REVIEW,
        _has_supervisor,
    ),
    ReviewRule(
        ReviewTier.CONTRACTOR_ADMIN,
        UpdateStatus.UNDER_CONTRACTOR_ADMIN_REVIEW,
        True,
        UpdateStatus.UNDER_ADMIN_REVIEW,
        _no_supervisor,
    ),
    ReviewRule(
        ReviewTier.CONTRACTOR_ADMIN,
        UpdateStatus.UNDER_CONTRACTOR_ADMIN_REVIEW,
        False,
        UpdateStatus.CONTRACTOR_ADMIN_REJECTED,
    ),
    ReviewRule(ReviewTier.SUPERVISOR, UpdateStatus.SUBMITTED, True, UpdateStatus.UNDER_ADMIN_REVIEW, _has_admin),
    ReviewRule(ReviewTier.SUPERVISOR, UpdateStatus.SUBMITTED, True, UpdateStatus.SUPERVISOR_APPROVED, _no_admin),
    ReviewRule(ReviewTier.SUPERVISOR, UpdateStatus.SUBMITTED, False, UpdateStatus.SUPERVISOR_REJECTED),
    ReviewRule(
        ReviewTier.SUPERVISOR,
        UpdateStatus.UNDER_SUPERVISOR_REVIEW,
        True,
        UpdateStatus.UNDER_ADMIN_REVIEW,
        _has_admin,
    ),
    ReviewRule(
        ReviewTier.SUPERVISOR,
        UpdateStatus.UNDER_SUPERVISOR_REVIEW,
        True,
        UpdateStatus.SUPERVISOR_APPROVED,
        _no_admin,
    ),
    ReviewRule(
        ReviewTier.SUPERVISOR,
        UpdateStatus.UNDER_SUPERVISOR_REVIEW,
        False,
        UpdateStatus.SUPERVISOR_REJECTED,
    ),
    ReviewRule(ReviewTier.ADMIN, UpdateStatus.UNDER_ADMIN_REVIEW, True, UpdateStatus.ADMIN_APPROVED),
    ReviewRule(ReviewTier.ADMIN, UpdateStatus.UNDER_ADMIN_REVIEW, False, UpdateStatus.ADMIN_REJECTED),
    # Admin may pick up a supervisor-tier approval only when the department has no supervisor.
    ReviewRule(
        ReviewTier.ADMIN,
        UpdateStatus.SUPERVISOR_APPROVED,
        True,
        UpdateStatus.ADMIN_APPROVED,
        _no_supervisor,
    ),
    ReviewRule(
        ReviewTier.ADMIN,
        UpdateStatus.SUPERVISOR_APPROVED,
        False,
        UpdateStatus.ADMIN_REJECTED,
        _no_supervisor,
    ),
)


def _build_allowed_transitions() -> dict[UpdateStatus, set[UpdateStatus]]:
    allowed: dict[UpdateStatus, set[UpdateStatus]] = {status: set() for status in UpdateStatus}
    for routing in SUBMISSION_ROUTING:
        allowed[routing.source].add(routing.target)
    for rule in REVIEW_RULES:
        allowed[rule.source].add(rule.target)
    return allowed


UPDATE_ALLOWED_TRANSITIONS: dict[UpdateStatus, set[UpdateStatus]] = _build_allowed_transitions()

TERMINAL_APPROVED_STATUSES: frozenset[UpdateStatus] = frozenset(
    {UpdateStatus.ADMIN_APPROVED, UpdateStatus.SUPERVISOR_APPROVED}
)

PENDING_STATUS_BY_TIER: dict[ReviewTier, UpdateStatus] = {
    ReviewTier.CONTRACTOR_ADMIN: UpdateStatus.UNDER_CONTRACTOR_ADMIN_REVIEW,
    ReviewTier.SUPERVISOR: UpdateStatus.UNDER_SUPERVISOR_REVIEW,
    ReviewTier.ADMIN: UpdateStatus.UNDER_ADMIN_REVIEW,
}


def can_update_transition(source: UpdateStatus, target: UpdateStatus) -> bool:
    return target in UPDATE_ALLOWED_TRANSITIONS.get(source, set())


def is_terminal(status: UpdateStatus, chain: ReviewChain) -> bool:
    """True when no tier can move ``status`` any further for this chain."""
    if status == UpdateStatus.SUBMITTED:
        return False
    return not any(rule.source == status and rule.when(chain) for rule in REVIEW_RULES)


def route_submission(chain: ReviewChain) -> UpdateStatus:
    for routing in SUBMISSION_ROUTING:
        if routing.when(chain):
            return routing.target
    return UpdateStatus.UNDER_ADMIN_REVIEW


def next_status(
    current: UpdateStatus,
    tier: ReviewTier,
    approved: bool,
    chain: ReviewChain,
) -> UpdateStatus | None:
    """Return the status a ``tier`` decision moves ``current`` to.

    ``None`` means the tier cannot act on an update in ``current`` for this
    chain (wrong tier, terminal status, or a conditional edge whose chain flag
    does not hold).
    """
    for rule in REVIEW_RULES:
        if rule.tier != tier or rule.source != current or rule.approved != approved:
            continue
        if rule.when(chain):
            return rule.target
    return None
