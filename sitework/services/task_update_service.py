from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from sitework.domain.authorization import resolve_capabilities
from sitework.domain.models import (
    EventEnvelope,
    NotificationCategory,
    TaskUpdate,
    TaskUpdateSubmitRequest,
)
from sitework.domain.permissions import has_platform_override
from sitework.domain.progress import submission_task_status
from sitework.domain.state_machine import TaskStatus, UpdateStatus, route_submission
from sitework.infra.clock import Clock, SystemClock
from sitework.infra.db import get_engine
from sitework.infra.events import event_bus
from sitework.infra.store import TaskContext, WorkflowStore
from sitework.services.errors import (
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    WorkflowValidationError,
)
from sitework.services.notification_service import NotificationService, NotifyRequest, dedupe_recipients
from sitework.services.review_service import update_action_link

logger = logging.getLogger(__name__)

DAILY_LIMIT_MESSAGE = "an update for this task has already been submitted today"


@dataclass(frozen=True)
class SubmissionResult:
    update_id: str
    task_id: str
    status: UpdateStatus
    message: str


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class TaskUpdateService:
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

    def submit(
        self,
        task_id: str,
        payload: TaskUpdateSubmitRequest,
        *,
        submitter_id: str,
        roles: frozenset[str] = frozenset(),
    ) -> SubmissionResult:
        now = _ensure_utc(self._clock.now())
        with self._session() as session:
            task_context = self._store.get_task_context(session, task_id)
            if task_context is None:
                raise NotFoundError("task not found")
            task = task_context.task

            capabilities = resolve_capabilities(task_context.authorization_for(submitter_id, roles))
            if not capabilities.is_assignee:
                raise PermissionDeniedError("only an assignee of the task may submit updates")
            task_status = TaskStatus(task.status)
            if task_status == TaskStatus.COMPLETED:
                raise WorkflowValidationError("cannot submit an update for a completed task")
            if self._store.find_update_for_day(session, task.id, submitter_id, now.date()) is not None:
                raise WorkflowValidationError(DAILY_LIMIT_MESSAGE)

            update = TaskUpdate(
                task_id=task.id,
                submitted_by_user_id=submitter_id,
                description=payload.description,
                summary=payload.summary,
                progress_percentage=payload.progress_percentage,
                media_urls=list(payload.media_urls),
                media_types=[item.value for item in payload.media_types],
                status=UpdateStatus.SUBMITTED,
                submitted_at=now,
                submitted_on=now.date(),
                updated_at=now,
            )
            try:
                self._store.save(session, update)
            except IntegrityError as exc:
                session.rollback()
                raise WorkflowValidationError(DAILY_LIMIT_MESSAGE) from exc

            routed = route_submission(task_context.review_chain())
            if not self._store.transition_update(
                session,
                update.id,
                observed=UpdateStatus.SUBMITTED,
                values={"status": routed, "updated_at": now},
            ):
                session.rollback()
                raise ConcurrentModificationError("task update was modified concurrently")

            next_task_status = submission_task_status(task_status, payload.progress_percentage)
            if next_task_status != task_status and not self._store.transition_task(
                session,
                task.id,
                observed=task_status,
                values={"status": next_task_status, "updated_at": now},
            ):
                session.rollback()
                raise ConcurrentModificationError("task status changed concurrently; reload and retry")

            event = EventEnvelope(
                event_type="task_update.submitted",
                organization_id=task_context.organization_id,
                actor_id=submitter_id,
                ts=now,
                payload={
                    "update_id": update.id,
                    "task_id": task.id,
                    "status": routed.value,
                    "progress_percentage": payload.progress_percentage,
                },
            )
            event_bus.record(session, event)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("an update for this task was already submitted today") from exc

        logger.info(
            "task update %s submitted for task %s by %s, routed to %s",
            update.id,
            task.id,
            submitter_id,
            routed.value,
        )
        event_bus.dispatch(event)
        self._notifications.dispatch(self._reviewer_notifications(routed, update, task_context))
        return SubmissionResult(
            update_id=update.id,
            task_id=task.id,
            status=routed,
            message="Task update submitted successfully",
        )

    def _reviewer_notifications(
        self,
        routed: UpdateStatus,
        update: TaskUpdate,
        task_context: TaskContext,
    ) -> list[NotifyRequest]:
        if routed == UpdateStatus.UNDER_CONTRACTOR_ADMIN_REVIEW:
            reviewer_ids = [task_context.contractor_admin_id]
        elif routed == UpdateStatus.UNDER_SUPERVISOR_REVIEW:
            reviewer_ids = [task_context.department.supervisor_id]
        else:
            reviewer_ids = [task_context.project.admin_id, task_context.project.owner_id]

        task = task_context.task
        return dedupe_recipients(
            NotifyRequest(
                user_id=reviewer_id,
                title="New Daily Report Submitted",
                body=(
                    f"A new update for task '{task.title}' reports "
                    f"{update.progress_percentage:g}% progress and awaits your review."
                ),
                category=NotificationCategory.TASK_UPDATE_SUBMITTED,
                related_entity_id=update.id,
                related_entity_type="TaskUpdate",
                action_link=update_action_link(task.id, update.id),
            )
            for reviewer_id in reviewer_ids
            if reviewer_id
        )

    def list_updates_for_task(
        self,
        task_id: str,
        *,
        organization_id: str,
        roles: frozenset[str] = frozenset(),
    ) -> list[TaskUpdate]:
        with self._session() as session:
            task_context = self._store.get_task_context(session, task_id)
            if task_context is None:
                raise NotFoundError("task not found")
            if task_context.organization_id != organization_id and not has_platform_override(roles):
                raise NotFoundError("task not found")
            return self._store.get_updates_for_task(session, task_id)
