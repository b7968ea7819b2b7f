from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import sqlalchemy as sa
from sqlmodel import Session, col, select

from sitework.domain.authorization import AuthorizationContext
from sitework.domain.models import (
    Contractor,
    Department,
    PendingOrder,
    Project,
    Task,
    TaskAssignee,
    TaskUpdate,
)
from sitework.domain.state_machine import (
    PENDING_STATUS_BY_TIER,
    TERMINAL_APPROVED_STATUSES,
    ReviewChain,
    ReviewTier,
    TaskStatus,
    UpdateStatus,
)


@dataclass(frozen=True)
class TaskContext:
    task: Task
    department: Department
    project: Project
    contractor: Contractor | None
    assignee_ids: frozenset[str]

    @property
    def organization_id(self) -> str:
        return self.project.organization_id

    @property
    def contractor_admin_id(self) -> str | None:
        return self.contractor.contractor_admin_id if self.contractor is not None else None

    @property
    def admin_recipient_id(self) -> str | None:
        return self.project.admin_id or self.project.owner_id

    def authorization_for(self, user_id: str, roles: frozenset[str]) -> AuthorizationContext:
        return AuthorizationContext(
            user_id=user_id,
            roles=roles,
            assignee_ids=self.assignee_ids,
            contractor_admin_id=self.contractor_admin_id,
            supervisor_id=self.department.supervisor_id,
            project_admin_id=self.project.admin_id,
            project_owner_id=self.project.owner_id,
        )

    def review_chain(self) -> ReviewChain:
        return ReviewChain(
            has_contractor_admin=self.contractor_admin_id is not None,
            has_supervisor=self.department.supervisor_id is not None,
            has_admin=self.admin_recipient_id is not None,
        )


@dataclass(frozen=True)
class UpdateContext:
    update: TaskUpdate
    task_context: TaskContext

    @property
    def task(self) -> Task:
        return self.task_context.task


@dataclass(frozen=True)
class PendingScope:
    organization_id: str
    user_id: str
    platform_override: bool = False
    project_id: str | None = None
    department_id: str | None = None
    status: UpdateStatus | None = None
    search: str | None = None
    order: PendingOrder = PendingOrder.ASC


@dataclass(frozen=True)
class PendingRow:
    update: TaskUpdate
    task: Task
    department: Department
    project: Project


class WorkflowStore:
    """Reads and conditional writes over tasks and task updates.

    Every method works inside the caller's session; none of them commit.
    """

    def _assignee_ids(self, session: Session, task: Task) -> frozenset[str]:
        rows = session.exec(
            select(TaskAssignee.user_id)
            .where(TaskAssignee.task_id == task.id)
            .where(col(TaskAssignee.is_active).is_(True))
        ).all()
        ids = {str(item) for item in rows}
        if task.assigned_to_user_id:
            ids.add(task.assigned_to_user_id)
        return frozenset(ids)

    def get_task_context(self, session: Session, task_id: str) -> TaskContext | None:
        row = session.exec(
            select(Task, Department, Project)
            .join(Department, col(Department.id) == col(Task.department_id))
            .join(Project, col(Project.id) == col(Department.project_id))
            .where(Task.id == task_id)
            .where(col(Task.is_deleted).is_(False))
            .where(col(Department.is_deleted).is_(False))
            .where(col(Project.is_deleted).is_(False))
        ).first()
        if row is None:
            return None
        task, department, project = row
        contractor = None
        if task.contractor_id is not None:
            contractor = session.get(Contractor, task.contractor_id)
            if contractor is not None and contractor.is_deleted:
                contractor = None
        return TaskContext(
            task=task,
            department=department,
            project=project,
            contractor=contractor,
            assignee_ids=self._assignee_ids(session, task),
        )

    def get_update_with_context(self, session: Session, update_id: str) -> UpdateContext | None:
        update = session.get(TaskUpdate, update_id)
        if update is None or update.is_deleted:
            return None
        task_context = self.get_task_context(session, update.task_id)
        if task_context is None:
            return None
        return UpdateContext(update=update, task_context=task_context)

    def get_updates_for_task(self, session: Session, task_id: str) -> list[TaskUpdate]:
        return list(
            session.exec(
                select(TaskUpdate)
                .where(TaskUpdate.task_id == task_id)
                .where(col(TaskUpdate.is_deleted).is_(False))
                .order_by(col(TaskUpdate.submitted_at).desc())
            ).all()
        )

    def find_update_for_day(self, session: Session, task_id: str, user_id: str, day: date) -> TaskUpdate | None:
        return session.exec(
            select(TaskUpdate)
            .where(TaskUpdate.task_id == task_id)
            .where(TaskUpdate.submitted_by_user_id == user_id)
            .where(TaskUpdate.submitted_on == day)
        ).first()

    def has_terminal_approved_update(self, session: Session, task_id: str) -> bool:
        found = session.exec(
            select(TaskUpdate.id)
            .where(TaskUpdate.task_id == task_id)
            .where(col(TaskUpdate.status).in_(list(TERMINAL_APPROVED_STATUSES)))
            .where(col(TaskUpdate.is_deleted).is_(False))
        ).first()
        return found is not None

    def count_incomplete_subtasks(self, session: Session, task_id: str) -> int:
        statement = (
            sa.select(sa.func.count())
            .select_from(Task)
            .where(col(Task.parent_task_id) == task_id)
            .where(col(Task.is_deleted).is_(False))
            .where(col(Task.status) != TaskStatus.COMPLETED)
        )
        return int(session.execute(statement).scalar_one())

    def save(self, session: Session, update: TaskUpdate) -> None:
        session.add(update)
        session.flush()

    def transition_update(
        self,
        session: Session,
        update_id: str,
        *,
        observed: UpdateStatus,
        values: dict[str, Any],
    ) -> bool:
        """Write ``values`` only while the stored status is still ``observed``."""
        result = session.execute(
            sa.update(TaskUpdate)
            .where(col(TaskUpdate.id) == update_id)
            .where(col(TaskUpdate.status) == observed)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return int(getattr(result, "rowcount", 0) or 0) == 1

    def raise_task_progress(self, session: Session, task_id: str, progress: float, now: datetime) -> bool:
        result = session.execute(
            sa.update(Task)
            .where(col(Task.id) == task_id)
            .where(col(Task.progress) < progress)
            .values(progress=progress, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(getattr(result, "rowcount", 0) or 0) == 1

    def transition_task(
        self,
        session: Session,
        task_id: str,
        *,
        observed: TaskStatus,
        values: dict[str, Any],
    ) -> bool:
        result = session.execute(
            sa.update(Task)
            .where(col(Task.id) == task_id)
            .where(col(Task.status) == observed)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return int(getattr(result, "rowcount", 0) or 0) == 1

    def _pending_clause(self, scope: PendingScope) -> Any:
        if scope.platform_override:
            return col(TaskUpdate.status).in_(list(PENDING_STATUS_BY_TIER.values()))
        return sa.or_(
            sa.and_(
                col(TaskUpdate.status) == PENDING_STATUS_BY_TIER[ReviewTier.CONTRACTOR_ADMIN],
                col(Contractor.contractor_admin_id) == scope.user_id,
                col(Contractor.is_deleted).is_(False),
            ),
            sa.and_(
                col(TaskUpdate.status) == PENDING_STATUS_BY_TIER[ReviewTier.SUPERVISOR],
                col(Department.supervisor_id) == scope.user_id,
            ),
            sa.and_(
                col(TaskUpdate.status) == PENDING_STATUS_BY_TIER[ReviewTier.ADMIN],
                sa.or_(col(Project.admin_id) == scope.user_id, col(Project.owner_id) == scope.user_id),
            ),
        )

    def get_pending_for_review(
        self,
        session: Session,
        scope: PendingScope,
        *,
        offset: int,
        limit: int,
    ) -> tuple[list[PendingRow], int]:
        conditions = [
            col(TaskUpdate.is_deleted).is_(False),
            col(Task.is_deleted).is_(False),
            col(Department.is_deleted).is_(False),
            col(Project.is_deleted).is_(False),
            col(Project.organization_id) == scope.organization_id,
            self._pending_clause(scope),
        ]
        if scope.project_id is not None:
            conditions.append(col(Project.id) == scope.project_id)
        if scope.department_id is not None:
            conditions.append(col(Department.id) == scope.department_id)
        if scope.status is not None:
            conditions.append(col(TaskUpdate.status) == scope.status)
        if scope.search:
            pattern = f"%{scope.search.strip()}%"
            conditions.append(
                sa.or_(
                    col(Task.title).ilike(pattern),
                    col(Task.code).ilike(pattern),
                    col(TaskUpdate.description).ilike(pattern),
                )
            )

        def _joined(statement: Any) -> Any:
            return (
                statement.join(Task, col(Task.id) == col(TaskUpdate.task_id))
                .join(Department, col(Department.id) == col(Task.department_id))
                .join(Project, col(Project.id) == col(Department.project_id))
                .outerjoin(Contractor, col(Contractor.id) == col(Task.contractor_id))
                .where(*conditions)
            )

        count_statement = _joined(sa.select(sa.func.count()).select_from(TaskUpdate))
        total = int(session.execute(count_statement).scalar_one())

        submitted_at = col(TaskUpdate.submitted_at)
        ordering = submitted_at.desc() if scope.order == PendingOrder.DESC else submitted_at.asc()
        rows = session.exec(
            _joined(select(TaskUpdate, Task, Department, Project))
            .order_by(ordering, col(TaskUpdate.id))
            .offset(offset)
            .limit(limit)
        ).all()
        items = [
            PendingRow(update=update, task=task, department=department, project=project)
            for update, task, department, project in rows
        ]
        return items, total
