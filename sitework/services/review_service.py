from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from sitework.domain.authorization import REVIEW_AUTHORITY, resolve_capabilities
from sitework.domain.models import EventEnvelope, NotificationCategory, TaskUpdate
from sitework.domain.progress import ProgressProjection, project_progress
from sitework.domain.state_machine import (
    TERMINAL_APPROVED_STATUSES,
    ReviewTier,
    TaskStatus,
    UpdateStatus,
    next_status,
)
from sitework.infra.clock import Clock, SystemClock
from sitework.infra.db import get_engine
from sitework.infra.events import event_bus
from sitework.infra.store import UpdateContext, WorkflowStore
from sitework.services.errors import (
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
)
from sitework.services.notification_service import NotificationService, NotifyRequest, dedupe_recipients

logger = logging.getLogger(__name__)

TIER_FIELD_PREFIX: dict[ReviewTier, str] = {
    ReviewTier.CONTRACTOR_ADMIN: "contractor_admin",
    ReviewTier.SUPERVISOR: "supervisor",
    ReviewTier.ADMIN: "admin",
}

TIER_LABEL: dict[ReviewTier, str] = {
    ReviewTier.CONTRACTOR_ADMIN: "contractor admin",
    ReviewTier.SUPERVISOR: "supervisor",
    ReviewTier.ADMIN: "admin",
}

REJECTION_TITLE: dict[ReviewTier, str] = {
    ReviewTier.CONTRACTOR_ADMIN: "Task Update Rejected by Contractor Admin",
    ReviewTier.SUPERVISOR: "Task Update Needs Revision",
    ReviewTier.ADMIN: "Task Update Rejected by Admin",
}


def update_action_link(task_id: str, update_id: str) -> str:
    return f"/tasks/{task_id}/updates/{update_id}"


@dataclass(frozen=True)
class ReviewResult:
    update_id: str
    status: UpdateStatus
    message: str


def review_message(tier: ReviewTier, approved: bool, target: UpdateStatus) -> str:
    label = TIER_LABEL[tier]
    if not approved:
        return f"Task update rejected by {label}. Feedback has been sent to the submitter."
    if target == UpdateStatus.UNDER_SUPERVISOR_REVIEW:
        return f"Task update approved by {label}. Awaiting supervisor review."
    if target == UpdateStatus.UNDER_ADMIN_REVIEW:
        return f"Task update approved by {label}. Awaiting admin review."
    return f"Task update approved by {label}."


class ReviewService:
    def __init__(
        self,
        store: WorkflowStore | None = None,
        notifications: NotificationService | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store or WorkflowStore()
        self._notifications = notifications or NotificationService()
        self._clock = clock or SystemClock()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def review_by_contractor_admin(
        self,
        update_id: str,
        *,
        approved: bool,
        feedback: str | None,
        reviewer_id: str,
        roles: frozenset[str] = frozenset(),
    ) -> ReviewResult:
        return self._review(ReviewTier.CONTRACTOR_ADMIN, update_id, approved, feedback, reviewer_id, roles)

    def review_by_supervisor(
        self,
        update_id: str,
        *,
        approved: bool,
        feedback: str | None,
        reviewer_id: str,
        roles: frozenset[str] = frozenset(),
    ) -> ReviewResult:
        return self._review(ReviewTier.SUPERVISOR, update_id, approved, feedback, reviewer_id, roles)

    def review_by_admin(
        self,
        update_id: str,
        *,
        approved: bool,
        feedback: str | None,
        reviewer_id: str,
        roles: frozenset[str] = frozenset(),
    ) -> ReviewResult:
        return self._review(ReviewTier.ADMIN, update_id, approved, feedback, reviewer_id, roles)

    def _review(
        self,
        tier: ReviewTier,
        update_id: str,
        approved: bool,
        feedback: str | None,
        reviewer_id: str,
        roles: frozenset[str],
    ) -> ReviewResult:
        now = self._clock.now()
        events: list[EventEnvelope] = []
        with self._session() as session:
            context = self._store.get_update_with_context(session, update_id)
            if context is None:
                raise NotFoundError("task update not found")
            update = context.update
            task_context = context.task_context

            capabilities = resolve_capabilities(task_context.authorization_for(reviewer_id, roles))
            acting_as = capabilities.acting_as(REVIEW_AUTHORITY[tier])
            if acting_as is None:
                raise PermissionDeniedError(f"not authorized to review at {TIER_LABEL[tier]} tier")

            observed = UpdateStatus(update.status)
            target = next_status(observed, tier, approved, task_context.review_chain())
            if target is None:
                raise InvalidTransitionError(f"illegal transition: {observed} cannot be reviewed at {tier} tier")

            prefix = TIER_FIELD_PREFIX[tier]
            values: dict[str, Any] = {
                "status": target,
                f"{prefix}_reviewer_id": reviewer_id,
                f"{prefix}_approved": approved,
                f"{prefix}_feedback": feedback,
                f"{prefix}_reviewed_at": now,
                "updated_at": now,
            }
            if not self._store.transition_update(session, update.id, observed=observed, values=values):
                session.rollback()
                raise ConcurrentModificationError("task update was reviewed concurrently; reload and retry")

            events.append(
                EventEnvelope(
                    event_type="task_update.reviewed",
                    organization_id=task_context.organization_id,
                    actor_id=reviewer_id,
                    ts=now,
                    payload={
                        "update_id": update.id,
                        "task_id": update.task_id,
                        "tier": tier.value,
                        "approved": approved,
                        "acting_as": acting_as.name,
                        "from_status": observed.value,
                        "to_status": target.value,
                    },
                )
            )

            projection: ProgressProjection | None = None
            if target in TERMINAL_APPROVED_STATUSES:
                projection = self._apply_progress(session, context, now)
                if projection.progress_raised or projection.ready_for_completion:
                    events.append(
                        EventEnvelope(
                            event_type="task.progress_raised",
                            organization_id=task_context.organization_id,
                            actor_id=reviewer_id,
                            ts=now,
                            payload={
                                "task_id": update.task_id,
                                "update_id": update.id,
                                "progress": projection.progress,
                                "status": projection.status.value,
                            },
                        )
                    )

            for event in events:
                event_bus.record(session, event)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("task update review conflicts with existing data") from exc

        logger.info(
            "task update %s reviewed at %s tier by %s: %s -> %s",
            update.id,
            tier.value,
            reviewer_id,
            observed.value,
            target.value,
        )
        for event in events:
            event_bus.dispatch(event)
        self._notifications.dispatch(self._notifications_for(tier, approved, feedback, target, context))
        return ReviewResult(update_id=update.id, status=target, message=review_message(tier, approved, target))

    def _apply_progress(self, session: Session, context: UpdateContext, now: datetime) -> ProgressProjection:
        task = context.task
        observed_status = TaskStatus(task.status)
        projection = project_progress(task.progress, observed_status, context.update.progress_percentage)
        if projection.progress_raised:
            self._store.raise_task_progress(session, task.id, projection.progress, now)
        if projection.ready_for_completion:
            moved = self._store.transition_task(
                session,
                task.id,
                observed=observed_status,
                values={"status": TaskStatus.APPROVED, "updated_at": now},
            )
            if not moved:
                session.rollback()
                raise ConcurrentModificationError("task status changed concurrently; reload and retry")
        return projection

    def _notifications_for(
        self,
        tier: ReviewTier,
        approved: bool,
        feedback: str | None,
        target: UpdateStatus,
        context: UpdateContext,
    ) -> list[NotifyRequest]:
        update: TaskUpdate = context.update
        task_context = context.task_context
        task = context.task
        label = TIER_LABEL[tier]
        link = update_action_link(task.id, update.id)

        def _request(user_id: str, title: str, body: str, category: NotificationCategory) -> NotifyRequest:
            return NotifyRequest(
                user_id=user_id,
                title=title,
                body=body,
                category=category,
                related_entity_id=update.id,
                related_entity_type="TaskUpdate",
                action_link=link,
            )

        if not approved:
            body = (
                f"Your update for task '{task.title}' was rejected by the {label}. "
                f"{label.capitalize()} feedback: {feedback or 'No feedback provided'}"
            )
            return [
                _request(
                    update.submitted_by_user_id,
                    REJECTION_TITLE[tier],
                    body,
                    NotificationCategory.TASK_UPDATE_REJECTED,
                )
            ]

        requests: list[NotifyRequest] = []
        if target == UpdateStatus.UNDER_SUPERVISOR_REVIEW and task_context.department.supervisor_id:
            requests.append(
                _request(
                    task_context.department.supervisor_id,
                    "Task Update Awaiting Supervisor Review",
                    f"An update for task '{task.title}' was approved by the {label} and needs your review.",
                    NotificationCategory.TASK_UPDATE_SUBMITTED,
                )
            )
        elif target == UpdateStatus.UNDER_ADMIN_REVIEW:
            for admin_id in (task_context.project.admin_id, task_context.project.owner_id):
                if admin_id:
                    requests.append(
                        _request(
                            admin_id,
                            "Task Update Awaiting Admin Review",
                            f"An update for task '{task.title}' was approved by the {label} and needs your review.",
                            NotificationCategory.TASK_UPDATE_SUBMITTED,
                        )
                    )

        if target in TERMINAL_APPROVED_STATUSES:
            title = "Daily Report Approved"
            body = f"Your update for task '{task.title}' was approved by the {label}."
        else:
            title = f"Task Update Approved by {label.title()}"
            body = f"Your update for task '{task.title}' was approved by the {label} and moved to the next review."
        if feedback:
            body = f"{body} Feedback: {feedback}"
        requests.append(_request(update.submitted_by_user_id, title, body, NotificationCategory.TASK_UPDATE_APPROVED))
        return dedupe_recipients(requests)
