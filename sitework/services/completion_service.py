from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from sitework.domain.authorization import COMPLETION_AUTHORITY, resolve_capabilities
from sitework.domain.models import EventEnvelope, NotificationCategory
from sitework.domain.progress import FULL_PROGRESS
from sitework.domain.state_machine import TaskStatus
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

logger = logging.getLogger(__name__)

COMPLETED_MESSAGE = "Task marked as complete successfully"


@dataclass(frozen=True)
class CompletionResult:
    task_id: str
    message: str


class CompletionService:
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

    def _check_preconditions(self, session: Session, task_context: TaskContext) -> None:
        task = task_context.task
        if task.status == TaskStatus.COMPLETED:
            raise WorkflowValidationError("Task is already marked as completed")
        if task.progress < FULL_PROGRESS and not self._store.has_terminal_approved_update(session, task.id):
            raise WorkflowValidationError(
                "Task must have at least one approved update or reach 100% progress before it can be marked as complete"
            )
        open_subtasks = self._store.count_incomplete_subtasks(session, task.id)
        if open_subtasks > 0:
            raise WorkflowValidationError(
                f"Cannot mark task as complete. {open_subtasks} subtask(s) are not yet completed."
            )

    def mark_complete(
        self,
        task_id: str,
        *,
        requester_id: str,
        roles: frozenset[str] = frozenset(),
    ) -> CompletionResult:
        now = self._clock.now()
        with self._session() as session:
            task_context = self._store.get_task_context(session, task_id)
            if task_context is None:
                raise NotFoundError("task not found")
            task = task_context.task

            capabilities = resolve_capabilities(task_context.authorization_for(requester_id, roles))
            acting_as = capabilities.acting_as(COMPLETION_AUTHORITY)
            if acting_as is None:
                raise PermissionDeniedError("not authorized to complete this task")
            self._check_preconditions(session, task_context)

            observed = TaskStatus(task.status)
            if not self._store.transition_task(
                session,
                task.id,
                observed=observed,
                values={
                    "status": TaskStatus.COMPLETED,
                    "progress": FULL_PROGRESS,
                    "completed_at": now,
                    "updated_at": now,
                },
            ):
                session.rollback()
                raise ConcurrentModificationError("task status changed concurrently; reload and retry")

            event = EventEnvelope(
                event_type="task.completed",
                organization_id=task_context.organization_id,
                actor_id=requester_id,
                ts=now,
                payload={
                    "task_id": task.id,
                    "from_status": observed.value,
                    "acting_as": acting_as.name,
                },
            )
            event_bus.record(session, event)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("task completion conflicts with existing data") from exc

        logger.info("task %s completed by %s acting as %s", task.id, requester_id, acting_as.name)
        event_bus.dispatch(event)
        self._notifications.dispatch(self._completion_notifications(task_context, requester_id))
        return CompletionResult(task_id=task.id, message=COMPLETED_MESSAGE)

    def _completion_notifications(self, task_context: TaskContext, requester_id: str) -> list[NotifyRequest]:
        task = task_context.task
        link = f"/tasks/{task.id}"

        def _request(user_id: str, title: str, body: str) -> NotifyRequest:
            return NotifyRequest(
                user_id=user_id,
                title=title,
                body=body,
                category=NotificationCategory.TASK_COMPLETED,
                related_entity_id=task.id,
                related_entity_type="Task",
                action_link=link,
            )

        requests: list[NotifyRequest] = []
        for manager_id in (
            task_context.project.admin_id,
            task_context.project.owner_id,
            task_context.department.supervisor_id,
        ):
            if manager_id:
                requests.append(
                    _request(manager_id, "Task Completed", f"Task '{task.title}' has been marked as complete.")
                )
        for assignee_id in sorted(task_context.assignee_ids - {requester_id}):
            requests.append(
                _request(
                    assignee_id,
                    "Task Marked Complete",
                    f"Your task '{task.title}' has been marked as complete.",
                )
            )
        return dedupe_recipients(requests)
