from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum

from sitework.domain.permissions import has_platform_override
from sitework.domain.state_machine import ReviewTier


class Capability(IntEnum):
    """Relationship of a user to a task, ordered by precedence."""

    ASSIGNEE = 10
    CONTRACTOR_ADMIN = 20
    SUPERVISOR = 30
    PROJECT_ADMIN = 40
    PLATFORM_OVERRIDE = 50


@dataclass(frozen=True)
class AuthorizationContext:
    """Everything needed to authorize one user against one task, pre-loaded."""

    user_id: str
    roles: frozenset[str] = frozenset()
    assignee_ids: frozenset[str] = frozenset()
    contractor_admin_id: str | None = None
    supervisor_id: str | None = None
    project_admin_id: str | None = None
    project_owner_id: str | None = None


CapabilityPredicate = Callable[[AuthorizationContext], bool]


def _is_assignee(ctx: AuthorizationContext) -> bool:
    return ctx.user_id in ctx.assignee_ids


def _is_contractor_admin(ctx: AuthorizationContext) -> bool:
    return ctx.contractor_admin_id is not None and ctx.contractor_admin_id == ctx.user_id


def _is_supervisor(ctx: AuthorizationContext) -> bool:
    return ctx.supervisor_id is not None and ctx.supervisor_id == ctx.user_id


def _is_project_admin_or_owner(ctx: AuthorizationContext) -> bool:
    return ctx.user_id in {item for item in (ctx.project_admin_id, ctx.project_owner_id) if item}


def _is_platform_override(ctx: AuthorizationContext) -> bool:
    return has_platform_override(ctx.roles)


CAPABILITY_PREDICATES: tuple[tuple[Capability, CapabilityPredicate], ...] = (
    (Capability.ASSIGNEE, _is_assignee),
    (Capability.CONTRACTOR_ADMIN, _is_contractor_admin),
    (Capability.SUPERVISOR, _is_supervisor),
    (Capability.PROJECT_ADMIN, _is_project_admin_or_owner),
    (Capability.PLATFORM_OVERRIDE, _is_platform_override),
)

REVIEW_AUTHORITY: dict[ReviewTier, frozenset[Capability]] = {
    ReviewTier.CONTRACTOR_ADMIN: frozenset(
        {Capability.CONTRACTOR_ADMIN, Capability.PROJECT_ADMIN, Capability.PLATFORM_OVERRIDE}
    ),
    ReviewTier.SUPERVISOR: frozenset({Capability.SUPERVISOR, Capability.PROJECT_ADMIN, Capability.PLATFORM_OVERRIDE}),
    ReviewTier.ADMIN: frozenset({Capability.PROJECT_ADMIN, Capability.PLATFORM_OVERRIDE}),
}

COMPLETION_AUTHORITY: frozenset[Capability] = frozenset(
    {Capability.ASSIGNEE, Capability.SUPERVISOR, Capability.PROJECT_ADMIN, Capability.PLATFORM_OVERRIDE}
)


@dataclass(frozen=True)
class CapabilityRecord:
    granted: frozenset[Capability] = field(default_factory=frozenset)

    @property
    def is_assignee(self) -> bool:
        return Capability.ASSIGNEE in self.granted

    @property
    def is_contractor_admin(self) -> bool:
        return Capability.CONTRACTOR_ADMIN in self.granted

    @property
    def is_supervisor(self) -> bool:
        return Capability.SUPERVISOR in self.granted

    @property
    def is_project_admin_or_owner(self) -> bool:
        return Capability.PROJECT_ADMIN in self.granted

    @property
    def is_platform_override(self) -> bool:
        return Capability.PLATFORM_OVERRIDE in self.granted

    @property
    def highest(self) -> Capability | None:
        return max(self.granted) if self.granted else None

    def acting_as(self, allowed: frozenset[Capability]) -> Capability | None:
        """Highest granted capability within ``allowed``, or None."""
        matching = self.granted & allowed
        return max(matching) if matching else None

    def can_review(self, tier: ReviewTier) -> bool:
        return self.acting_as(REVIEW_AUTHORITY[tier]) is not None

    def can_complete(self) -> bool:
        return self.acting_as(COMPLETION_AUTHORITY) is not None


def resolve_capabilities(ctx: AuthorizationContext) -> CapabilityRecord:
    granted = frozenset(capability for capability, predicate in CAPABILITY_PREDICATES if predicate(ctx))
    return CapabilityRecord(granted=granted)
