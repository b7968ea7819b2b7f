from __future__ import annotations

from dataclasses import dataclass

from sqlmodel import Session

from sitework.domain.models import PendingOrder
from sitework.domain.permissions import has_platform_override
from sitework.domain.state_machine import UpdateStatus
from sitework.infra.db import get_engine
from sitework.infra.store import PendingRow, PendingScope, WorkflowStore
from sitework.services.errors import WorkflowValidationError


@dataclass(frozen=True)
class PendingPage:
    items: list[PendingRow]
    total_count: int
    page: int
    page_size: int


class PendingReviewService:
    """Updates waiting on the caller's own review tier(s)."""

    def __init__(self, store: WorkflowStore | None = None) -> None:
        self._store = store or WorkflowStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def list_pending(
        self,
        organization_id: str,
        *,
        user_id: str,
        roles: frozenset[str] = frozenset(),
        page: int = 1,
        page_size: int = 20,
        project_id: str | None = None,
        department_id: str | None = None,
        status: UpdateStatus | None = None,
        search: str | None = None,
        order: PendingOrder = PendingOrder.ASC,
    ) -> PendingPage:
        if page < 1 or page_size < 1:
            raise WorkflowValidationError("page and page_size must be positive")
        scope = PendingScope(
            organization_id=organization_id,
            user_id=user_id,
            platform_override=has_platform_override(roles),
            project_id=project_id,
            department_id=department_id,
            status=status,
            search=(search or "").strip() or None,
            order=order,
        )
        with self._session() as session:
            items, total = self._store.get_pending_for_review(
                session,
                scope,
                offset=(page - 1) * page_size,
                limit=page_size,
            )
        return PendingPage(items=items, total_count=total, page=page, page_size=page_size)
