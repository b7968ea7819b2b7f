from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from sitework.api.deps import CurrentUser, get_current_user
from sitework.api.errors import handle_workflow_error
from sitework.domain.models import NotificationPageRead, NotificationRead
from sitework.infra.audit import set_audit_context
from sitework.services.errors import WorkflowError
from sitework.services.notification_service import NotificationService

router = APIRouter()


def get_notification_service() -> NotificationService:
    return NotificationService()


User = Annotated[CurrentUser, Depends(get_current_user)]
Service = Annotated[NotificationService, Depends(get_notification_service)]


@router.get("", response_model=NotificationPageRead)
def list_my_notifications(
    user: User,
    service: Service,
    unread_only: bool = False,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> NotificationPageRead:
    rows, total = service.list_my_notifications(
        user.user_id,
        unread_only=unread_only,
        page=page,
        page_size=page_size,
    )
    return NotificationPageRead(
        items=[NotificationRead.model_validate(item) for item in rows],
        total_count=total,
        page=page,
        page_size=page_size,
    )


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: str,
    request: Request,
    user: User,
    service: Service,
) -> NotificationRead:
    set_audit_context(
        request,
        action="notification.read",
        resource=f"notification:{notification_id}",
    )
    try:
        row = service.mark_read(user.user_id, notification_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
    return NotificationRead.model_validate(row)
