from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from sitework.domain.models import (
    Contractor,
    Department,
    Organization,
    Project,
    Task,
    TaskAssignee,
    TaskUpdate,
)
from sitework.domain.state_machine import TaskStatus, UpdateStatus
from sitework.infra import audit, db, notifier

WORKER_ID = "worker-1"
SUPERVISOR_ID = "supervisor-1"
ADMIN_ID = "admin-1"
OWNER_ID = "owner-1"
CONTRACTOR_ADMIN_ID = "contractor-admin-1"


@dataclass(frozen=True)
class Site:
    organization_id: str
    project_id: str
    department_id: str
    task_id: str
    contractor_id: str | None


SiteFactory = Callable[..., Site]
UpdateFactory = Callable[..., str]


@pytest.fixture()
def workflow_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Engine:
    db_path = tmp_path / "sitework_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(notifier, "engine", test_engine)
    monkeypatch.setattr(notifier, "NOTIFICATION_PUSH_ENABLED", False)
    return test_engine


@pytest.fixture()
def seed_site(workflow_engine: Engine) -> SiteFactory:
    counter = {"value": 0}

    def _seed(
        *,
        organization_id: str | None = None,
        supervisor_id: str | None = SUPERVISOR_ID,
        admin_id: str | None = ADMIN_ID,
        owner_id: str | None = None,
        contractor_admin_id: str | None = None,
        assignee_id: str | None = WORKER_ID,
        extra_assignees: tuple[str, ...] = (),
        progress: float = 0.0,
        status: TaskStatus = TaskStatus.IN_PROGRESS,
        parent_task_id: str | None = None,
    ) -> Site:
        counter["value"] += 1
        suffix = counter["value"]
        with Session(workflow_engine) as session:
            if organization_id is None or session.get(Organization, organization_id) is None:
                org = Organization(name=f"org-{suffix}-{organization_id or 'auto'}")
                if organization_id is not None:
                    org.id = organization_id
                session.add(org)
                session.flush()
                organization_id = org.id
            project = Project(
                organization_id=organization_id,
                name=f"Tower {suffix}",
                code=f"PRJ-{suffix}",
                admin_id=admin_id,
                owner_id=owner_id,
            )
            session.add(project)
            session.flush()
            department = Department(project_id=project.id, name=f"Structural {suffix}", supervisor_id=supervisor_id)
            session.add(department)
            contractor_id = None
            if contractor_admin_id is not None:
                contractor = Contractor(
                    project_id=project.id,
                    company_name=f"Concrete Co {suffix}",
                    contractor_admin_id=contractor_admin_id,
                )
                session.add(contractor)
                session.flush()
                contractor_id = contractor.id
            session.flush()
            task = Task(
                department_id=department.id,
                parent_task_id=parent_task_id,
                contractor_id=contractor_id,
                title=f"Pour slab {suffix}",
                code=f"TSK-{suffix}",
                status=status,
                progress=progress,
                assigned_to_user_id=assignee_id,
            )
            session.add(task)
            session.flush()
            for user_id in extra_assignees:
                session.add(TaskAssignee(task_id=task.id, user_id=user_id))
            session.commit()
            return Site(
                organization_id=organization_id,
                project_id=project.id,
                department_id=department.id,
                task_id=task.id,
                contractor_id=contractor_id,
            )

    return _seed


@pytest.fixture()
def seed_update(workflow_engine: Engine) -> UpdateFactory:
    def _seed(
        task_id: str,
        *,
        status: UpdateStatus,
        progress: float = 50.0,
        submitted_by: str = WORKER_ID,
        submitted_at: datetime | None = None,
    ) -> str:
        ts = submitted_at or datetime.now(UTC)
        with Session(workflow_engine) as session:
            update = TaskUpdate(
                task_id=task_id,
                submitted_by_user_id=submitted_by,
                description="Formwork finished on level 3",
                progress_percentage=progress,
                status=status,
                submitted_at=ts,
                submitted_on=date(ts.year, ts.month, ts.day),
            )
            session.add(update)
            session.commit()
            return update.id

    return _seed


SoftDelete = Callable[[type[SQLModel], str], None]


@pytest.fixture()
def soft_delete(workflow_engine: Engine) -> SoftDelete:
    def _mark(model: type[SQLModel], row_id: str) -> None:
        with Session(workflow_engine) as session:
            row = session.get(model, row_id)
            assert row is not None
            row.is_deleted = True  # type: ignore[attr-defined]
            session.add(row)
            session.commit()

    return _mark
