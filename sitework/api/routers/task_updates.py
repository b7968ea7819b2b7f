from __future__ import annotations

import os
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from sitework.api.deps import CurrentUser, get_current_user
from sitework.api.errors import handle_workflow_error
from sitework.domain.models import (
    PendingOrder,
    PendingReviewItemRead,
    PendingReviewPageRead,
    ReviewDecisionRequest,
    ReviewResultRead,
    TaskCompletionRead,
    TaskUpdateListRead,
    TaskUpdateRead,
    TaskUpdateSubmitRequest,
    TaskUpdateSubmitResponse,
)
from sitework.domain.state_machine import UpdateStatus
from sitework.infra.audit import set_audit_context
from sitework.infra.store import PendingRow
from sitework.services.completion_service import CompletionService
from sitework.services.errors import WorkflowError
from sitework.services.pending_review_service import PendingReviewService
from sitework.services.review_service import ReviewResult, ReviewService
from sitework.services.task_update_service import TaskUpdateService

PENDING_REVIEW_MAX_PAGE_SIZE = int(os.getenv("PENDING_REVIEW_MAX_PAGE_SIZE", "100"))

router = APIRouter()


def get_task_update_service() -> TaskUpdateService:
    return TaskUpdateService()


def get_review_service() -> ReviewService:
    return ReviewService()


def get_completion_service() -> CompletionService:
    return CompletionService()


def get_pending_review_service() -> PendingReviewService:
    return PendingReviewService()


User = Annotated[CurrentUser, Depends(get_current_user)]
UpdateService = Annotated[TaskUpdateService, Depends(get_task_update_service)]
Reviews = Annotated[ReviewService, Depends(get_review_service)]
Completion = Annotated[CompletionService, Depends(get_completion_service)]
Pending = Annotated[PendingReviewService, Depends(get_pending_review_service)]


def _review_read(result: ReviewResult) -> ReviewResultRead:
    return ReviewResultRead(update_id=result.update_id, status=result.status, message=result.message)


def _pending_item_read(row: PendingRow) -> PendingReviewItemRead:
    payload = TaskUpdateRead.model_validate(row.update).model_dump()
    payload.update(
        task_title=row.task.title,
        task_code=row.task.code,
        department_id=row.department.id,
        department_name=row.department.name,
        project_id=row.project.id,
        project_name=row.project.name,
        contractor_id=row.task.contractor_id,
    )
    return PendingReviewItemRead.model_validate(payload)


def _audit_review(request: Request, tier: str, update_id: str, payload: ReviewDecisionRequest) -> None:
    set_audit_context(
        request,
        action=f"task_update.review.{tier}",
        resource=f"task_update:{update_id}",
        detail={"what": {"update_id": update_id, "approved": payload.approved}},
    )


@router.post(
    "/{task_id}/updates",
    response_model=TaskUpdateSubmitResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_task_update(
    task_id: str,
    payload: TaskUpdateSubmitRequest,
    request: Request,
    user: User,
    service: UpdateService,
) -> TaskUpdateSubmitResponse:
    set_audit_context(
        request,
        action="task_update.submit",
        resource=f"task:{task_id}",
        detail={"what": {"task_id": task_id, "progress_percentage": payload.progress_percentage}},
    )
    try:
        result = service.submit(task_id, payload, submitter_id=user.user_id, roles=user.roles)
    except WorkflowError as exc:
        handle_workflow_error(exc)
    set_audit_context(request, detail={"what": {"update_id": result.update_id, "status": result.status.value}})
    return TaskUpdateSubmitResponse(
        update_id=result.update_id,
        task_id=result.task_id,
        status=result.status,
        message=result.message,
    )


@router.get("/updates/pending", response_model=PendingReviewPageRead)
def list_pending_reviews(
    user: User,
    service: Pending,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=PENDING_REVIEW_MAX_PAGE_SIZE)] = 20,
    project_id: str | None = None,
    department_id: str | None = None,
    status_filter: Annotated[UpdateStatus | None, Query(alias="status")] = None,
    search: Annotated[str | None, Query(max_length=200)] = None,
    order: PendingOrder = PendingOrder.ASC,
    organization_id: str | None = None,
) -> PendingReviewPageRead:
    scope_org = organization_id or user.organization_id
    if scope_org != user.organization_id and not user.is_platform_override:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"kind": "forbidden", "message": "cross-organization listing requires a platform role"},
        )
    try:
        result = service.list_pending(
            scope_org,
            user_id=user.user_id,
            roles=user.roles,
            page=page,
            page_size=page_size,
            project_id=project_id,
            department_id=department_id,
            status=status_filter,
            search=search,
            order=order,
        )
    except WorkflowError as exc:
        handle_workflow_error(exc)
    return PendingReviewPageRead(
        items=[_pending_item_read(item) for item in result.items],
        total_count=result.total_count,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/{task_id}/updates", response_model=TaskUpdateListRead)
def list_task_updates(
    task_id: str,
    user: User,
    service: UpdateService,
) -> TaskUpdateListRead:
    try:
        rows = service.list_updates_for_task(task_id, organization_id=user.organization_id, roles=user.roles)
    except WorkflowError as exc:
        handle_workflow_error(exc)
    return TaskUpdateListRead(
        items=[TaskUpdateRead.model_validate(item) for item in rows],
        total_count=len(rows),
    )


@router.post("/updates/{update_id}/approve-contractor-admin", response_model=ReviewResultRead)
def review_by_contractor_admin(
    update_id: str,
    payload: ReviewDecisionRequest,
    request: Request,
    user: User,
    service: Reviews,
) -> ReviewResultRead:
    _audit_review(request, "contractor_admin", update_id, payload)
    try:
        result = service.review_by_contractor_admin(
            update_id,
            approved=payload.approved,
            feedback=payload.feedback,
            reviewer_id=user.user_id,
            roles=user.roles,
        )
    except WorkflowError as exc:
        handle_workflow_error(exc)
    return _review_read(result)


@router.post("/updates/{update_id}/approve-supervisor", response_model=ReviewResultRead)
def review_by_supervisor(
    update_id: str,
    payload: ReviewDecisionRequest,
    request: Request,
    user: User,
    service: Reviews,
) -> ReviewResultRead:
    _audit_review(request, "supervisor", update_id, payload)
    try:
        result = service.review_by_supervisor(
            update_id,
            approved=payload.approved,
            feedback=payload.feedback,
            reviewer_id=user.user_id,
            roles=user.roles,
        )
    except WorkflowError as exc:
        handle_workflow_error(exc)
    return _review_read(result)


@router.post("/updates/{update_id}/approve-admin", response_model=ReviewResultRead)
def review_by_admin(
    update_id: str,
    payload: ReviewDecisionRequest,
    request: Request,
    user: User,
    service: Reviews,
) -> ReviewResultRead:
    _audit_review(request, "admin", update_id, payload)
    try:
        result = service.review_by_admin(
            update_id,
            approved=payload.approved,
            feedback=payload.feedback,
            reviewer_id=user.user_id,
            roles=user.roles,
        )
    except WorkflowError as exc:
        handle_workflow_error(exc)
    return _review_read(result)


@router.post("/{task_id}/complete", response_model=TaskCompletionRead)
def mark_task_complete(
    task_id: str,
    request: Request,
    user: User,
    service: Completion,
) -> TaskCompletionRead:
    set_audit_context(
        request,
        action="task.complete",
        resource=f"task:{task_id}",
        detail={"what": {"task_id": task_id}},
    )
    try:
        result = service.mark_complete(task_id, requester_id=user.user_id, roles=user.roles)
    except WorkflowError as exc:
        handle_workflow_error(exc)
    return TaskCompletionRead(task_id=result.task_id, message=result.message)
