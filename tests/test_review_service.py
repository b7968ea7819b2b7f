from __future__ import annotations

import logging
from typing import Any

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from sitework.domain.models import Department, EventRecord, Notification, Project, Task, TaskUpdate
from sitework.domain.state_machine import TaskStatus, UpdateStatus
from sitework.infra.notifier import NotificationDispatcher
from sitework.infra.store import UpdateContext, WorkflowStore
from sitework.services.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
)
from sitework.services.notification_service import NotificationService
from sitework.services.review_service import ReviewService

from conftest import (
    ADMIN_ID,
    CONTRACTOR_ADMIN_ID,
    OWNER_ID,
    SUPERVISOR_ID,
    WORKER_ID,
    SiteFactory,
    SoftDelete,
    UpdateFactory,
)


def _task(engine: Engine, task_id: str) -> Task:
    with Session(engine) as session:
        task = session.get(Task, task_id)
        assert task is not None
        return task


def _update(engine: Engine, update_id: str) -> TaskUpdate:
    with Session(engine) as session:
        update = session.get(TaskUpdate, update_id)
        assert update is not None
        return update


def _notifications_for(engine: Engine, user_id: str) -> list[Notification]:
    with Session(engine) as session:
        return list(session.exec(select(Notification).where(Notification.recipient_id == user_id)).all())


def test_admin_reviews_directly_when_department_has_no_supervisor(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site(supervisor_id=None, progress=10.0)
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_ADMIN_REVIEW, progress=65.0)

    result = ReviewService().review_by_admin(update_id, approved=True, feedback=None, reviewer_id=ADMIN_ID)

    assert result.status == UpdateStatus.ADMIN_APPROVED
    assert result.message == "Task update approved by admin."
    stored = _update(workflow_engine, update_id)
    assert stored.status == UpdateStatus.ADMIN_APPROVED
    assert stored.admin_reviewer_id == ADMIN_ID
    assert stored.admin_approved is True
    assert stored.admin_reviewed_at is not None
    assert stored.supervisor_reviewer_id is None
    assert _task(workflow_engine, site.task_id).progress == 65.0
    assert [item.title for item in _notifications_for(workflow_engine, WORKER_ID)] == ["Daily Report Approved"]


def test_supervisor_rejection_notifies_submitter_with_feedback(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site(progress=20.0)
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_SUPERVISOR_REVIEW, progress=80.0)

    result = ReviewService().review_by_supervisor(
        update_id,
        approved=False,
        feedback="needs more detail",
        reviewer_id=SUPERVISOR_ID,
    )

    assert result.status == UpdateStatus.SUPERVISOR_REJECTED
    stored = _update(workflow_engine, update_id)
    assert stored.supervisor_approved is False
    assert stored.supervisor_feedback == "needs more detail"
    task = _task(workflow_engine, site.task_id)
    assert task.progress == 20.0
    assert task.status == TaskStatus.IN_PROGRESS
    notes = _notifications_for(workflow_engine, WORKER_ID)
    assert len(notes) == 1
    assert notes[0].title == "Task Update Needs Revision"
    assert "needs more detail" in notes[0].body
    assert notes[0].action_link == f"/tasks/{site.task_id}/updates/{update_id}"


def test_supervisor_approval_forwards_to_admin_and_owner(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site(owner_id=OWNER_ID, progress=5.0)
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_SUPERVISOR_REVIEW, progress=40.0)

    result = ReviewService().review_by_supervisor(update_id, approved=True, feedback=None, reviewer_id=SUPERVISOR_ID)

    assert result.status == UpdateStatus.UNDER_ADMIN_REVIEW
    assert result.message == "Task update approved by supervisor. Awaiting admin review."
    assert _task(workflow_engine, site.task_id).progress == 5.0
    assert len(_notifications_for(workflow_engine, ADMIN_ID)) == 1
    assert len(_notifications_for(workflow_engine, OWNER_ID)) == 1
    assert [item.title for item in _notifications_for(workflow_engine, WORKER_ID)] == [
        "Task Update Approved by Supervisor"
    ]


def test_supervisor_approval_is_terminal_without_project_admin(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site(admin_id=None, owner_id=None)
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_SUPERVISOR_REVIEW, progress=100.0)

    result = ReviewService().review_by_supervisor(update_id, approved=True, feedback="ok", reviewer_id=SUPERVISOR_ID)

    assert result.status == UpdateStatus.SUPERVISOR_APPROVED
    task = _task(workflow_engine, site.task_id)
    assert task.progress == 100.0
    assert task.status == TaskStatus.APPROVED


def test_supervisor_of_other_department_is_forbidden(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    seed_site(supervisor_id="supervisor-x")
    other = seed_site(supervisor_id="supervisor-y")
    update_id = seed_update(other.task_id, status=UpdateStatus.UNDER_SUPERVISOR_REVIEW)

    with pytest.raises(PermissionDeniedError):
        ReviewService().review_by_supervisor(update_id, approved=True, feedback=None, reviewer_id="supervisor-x")

    assert _update(workflow_engine, update_id).status == UpdateStatus.UNDER_SUPERVISOR_REVIEW


def test_second_admin_review_on_terminal_update_is_rejected(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site()
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_ADMIN_REVIEW)
    service = ReviewService()
    service.review_by_admin(update_id, approved=True, feedback=None, reviewer_id=ADMIN_ID)

    with pytest.raises(InvalidTransitionError):
        service.review_by_admin(update_id, approved=True, feedback=None, reviewer_id=ADMIN_ID)

    assert _update(workflow_engine, update_id).status == UpdateStatus.ADMIN_APPROVED


def test_admin_cannot_act_on_update_still_under_supervisor_review(
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site()
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_SUPERVISOR_REVIEW)

    with pytest.raises(InvalidTransitionError):
        ReviewService().review_by_admin(update_id, approved=True, feedback=None, reviewer_id=ADMIN_ID)


def test_missing_or_deleted_update_is_not_found(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site()
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_ADMIN_REVIEW)
    with Session(workflow_engine) as session:
        row = session.get(TaskUpdate, update_id)
        assert row is not None
        row.is_deleted = True
        session.add(row)
        session.commit()

    service = ReviewService()
    with pytest.raises(NotFoundError):
        service.review_by_admin(update_id, approved=True, feedback=None, reviewer_id=ADMIN_ID)
    with pytest.raises(NotFoundError):
        service.review_by_admin("missing", approved=True, feedback=None, reviewer_id=ADMIN_ID)


def test_platform_override_may_review_any_tier(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site()
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_SUPERVISOR_REVIEW)

    result = ReviewService().review_by_supervisor(
        update_id,
        approved=True,
        feedback=None,
        reviewer_id="ops-1",
        roles=frozenset({"PlatformAdmin"}),
    )

    assert result.status == UpdateStatus.UNDER_ADMIN_REVIEW
    assert _update(workflow_engine, update_id).supervisor_reviewer_id == "ops-1"


def test_contractor_admin_approval_routes_to_supervisor(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site(contractor_admin_id=CONTRACTOR_ADMIN_ID)
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_CONTRACTOR_ADMIN_REVIEW)

    result = ReviewService().review_by_contractor_admin(
        update_id,
        approved=True,
        feedback=None,
        reviewer_id=CONTRACTOR_ADMIN_ID,
    )

    assert result.status == UpdateStatus.UNDER_SUPERVISOR_REVIEW
    stored = _update(workflow_engine, update_id)
    assert stored.contractor_admin_reviewer_id == CONTRACTOR_ADMIN_ID
    assert stored.contractor_admin_approved is True
    assert [item.title for item in _notifications_for(workflow_engine, SUPERVISOR_ID)] == [
        "Task Update Awaiting Supervisor Review"
    ]


def test_contractor_admin_approval_skips_to_admin_without_supervisor(
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site(contractor_admin_id=CONTRACTOR_ADMIN_ID, supervisor_id=None)
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_CONTRACTOR_ADMIN_REVIEW)

    result = ReviewService().review_by_contractor_admin(
        update_id,
        approved=True,
        feedback=None,
        reviewer_id=CONTRACTOR_ADMIN_ID,
    )

    assert result.status == UpdateStatus.UNDER_ADMIN_REVIEW


def test_contractor_admin_rejection_is_terminal(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site(contractor_admin_id=CONTRACTOR_ADMIN_ID)
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_CONTRACTOR_ADMIN_REVIEW)
    service = ReviewService()

    result = service.review_by_contractor_admin(
        update_id,
        approved=False,
        feedback="photos are blurry",
        reviewer_id=CONTRACTOR_ADMIN_ID,
    )

    assert result.status == UpdateStatus.CONTRACTOR_ADMIN_REJECTED
    with pytest.raises(InvalidTransitionError):
        service.review_by_supervisor(update_id, approved=True, feedback=None, reviewer_id=SUPERVISOR_ID)
    notes = _notifications_for(workflow_engine, WORKER_ID)
    assert notes[0].title == "Task Update Rejected by Contractor Admin"
    assert "photos are blurry" in notes[0].body


def test_progress_never_decreases_across_approvals(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site(supervisor_id=None)
    high = seed_update(site.task_id, status=UpdateStatus.UNDER_ADMIN_REVIEW, progress=70.0, submitted_by="a")
    low = seed_update(site.task_id, status=UpdateStatus.UNDER_ADMIN_REVIEW, progress=30.0, submitted_by="b")
    service = ReviewService()

    service.review_by_admin(high, approved=True, feedback=None, reviewer_id=ADMIN_ID)
    service.review_by_admin(low, approved=True, feedback=None, reviewer_id=ADMIN_ID)

    assert _task(workflow_engine, site.task_id).progress == 70.0


def test_review_commits_transition_and_event_together(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site()
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_ADMIN_REVIEW, progress=100.0)

    ReviewService().review_by_admin(update_id, approved=True, feedback=None, reviewer_id=ADMIN_ID)

    with Session(workflow_engine) as session:
        events = session.exec(select(EventRecord).order_by(EventRecord.event_type)).all()
    assert [item.event_type for item in events] == ["task.progress_raised", "task_update.reviewed"]
    reviewed = events[1].payload
    assert reviewed["from_status"] == UpdateStatus.UNDER_ADMIN_REVIEW.value
    assert reviewed["to_status"] == UpdateStatus.ADMIN_APPROVED.value
    assert reviewed["acting_as"] == "PROJECT_ADMIN"
    assert events[0].organization_id == site.organization_id


class _RacingStore(WorkflowStore):
    """Lets a competing reviewer commit between our read and our write."""

    def __init__(self, competitor: Any) -> None:
        self._competitor = competitor
        self._raced = False

    def get_update_with_context(self, session: Session, update_id: str) -> UpdateContext | None:
        context = super().get_update_with_context(session, update_id)
        if not self._raced:
            self._raced = True
            self._competitor(update_id)
        return context


def test_concurrent_admin_reviews_only_one_wins(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
) -> None:
    site = seed_site(supervisor_id=None, owner_id=OWNER_ID)
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_ADMIN_REVIEW, progress=60.0)
    winner = ReviewService()

    def _compete(target_id: str) -> None:
        winner.review_by_admin(target_id, approved=False, feedback="first decision", reviewer_id=ADMIN_ID)

    loser = ReviewService(store=_RacingStore(_compete))
    with pytest.raises(ConcurrentModificationError):
        loser.review_by_admin(update_id, approved=True, feedback=None, reviewer_id=OWNER_ID)

    stored = _update(workflow_engine, update_id)
    assert stored.status == UpdateStatus.ADMIN_REJECTED
    assert stored.admin_feedback == "first decision"
    assert _task(workflow_engine, site.task_id).progress == 0.0


class _FailingDispatcher(NotificationDispatcher):
    def notify(self, **kwargs: Any) -> Any:
        raise RuntimeError("smtp relay down")


def test_notification_failure_does_not_undo_review(
    workflow_engine: Engine,
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
    caplog: pytest.LogCaptureFixture,
) -> None:
    site = seed_site()
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_SUPERVISOR_REVIEW)
    service = ReviewService(notifications=NotificationService(notifier=_FailingDispatcher()))

    with caplog.at_level(logging.ERROR, logger="sitework.services.notification_service"):
        result = service.review_by_supervisor(update_id, approved=False, feedback="redo", reviewer_id=SUPERVISOR_ID)

    assert result.status == UpdateStatus.SUPERVISOR_REJECTED
    assert _update(workflow_engine, update_id).status == UpdateStatus.SUPERVISOR_REJECTED
    assert "notification dispatch failed" in caplog.text
    assert _notifications_for(workflow_engine, WORKER_ID) == []


@pytest.mark.parametrize("deleted", ["project", "department"])
def test_review_under_deleted_project_or_department_is_not_found(
    seed_site: SiteFactory,
    seed_update: UpdateFactory,
    soft_delete: SoftDelete,
    deleted: str,
) -> None:
    site = seed_site(supervisor_id=None)
    update_id = seed_update(site.task_id, status=UpdateStatus.UNDER_ADMIN_REVIEW)
    if deleted == "project":
        soft_delete(Project, site.project_id)
    else:
        soft_delete(Department, site.department_id)

    with pytest.raises(NotFoundError):
        ReviewService().review_by_admin(update_id, approved=True, feedback=None, reviewer_id=ADMIN_ID)
