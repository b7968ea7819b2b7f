from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

import sqlalchemy as sa
from sqlmodel import Session, col, select

from sitework.domain.models import (
    Notification,
    NotificationCategory,
    NotificationChannel,
    now_utc,
)
from sitework.infra.db import get_engine
from sitework.infra.notifier import NotificationDispatcher, get_notifier
from sitework.services.errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotifyRequest:
    user_id: str
    title: str
    body: str
    category: NotificationCategory
    related_entity_id: str | None = None
    related_entity_type: str | None = None
    channel: NotificationChannel = NotificationChannel.ALL
    action_link: str | None = None


def dedupe_recipients(requests: Iterable[NotifyRequest]) -> list[NotifyRequest]:
    seen: set[str] = set()
    unique: list[NotifyRequest] = []
    for item in requests:
        if not item.user_id or item.user_id in seen:
            continue
        seen.add(item.user_id)
        unique.append(item)
    return unique


class NotificationService:
    def __init__(self, notifier: NotificationDispatcher | None = None) -> None:
        self._notifier = notifier

    @property
    def notifier(self) -> NotificationDispatcher:
        return self._notifier if self._notifier is not None else get_notifier()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def dispatch(self, requests: Iterable[NotifyRequest]) -> int:
        """Deliver each request, logging and skipping failures. Returns the delivered count."""
        delivered = 0
        for item in requests:
            try:
                self.notifier.notify(
                    user_id=item.user_id,
                    title=item.title,
                    body=item.body,
                    category=item.category,
                    related_entity_id=item.related_entity_id,
                    related_entity_type=item.related_entity_type,
                    channel=item.channel,
                    action_link=item.action_link,
                )
            except Exception:
                logger.exception(
                    "notification dispatch failed: recipient=%s category=%s entity=%s",
                    item.user_id,
                    item.category,
                    item.related_entity_id,
                )
                continue
            delivered += 1
        return delivered

    def list_my_notifications(
        self,
        user_id: str,
        *,
        unread_only: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Notification], int]:
        conditions = [col(Notification.recipient_id) == user_id]
        if unread_only:
            conditions.append(col(Notification.is_read).is_(False))
        with self._session() as session:
            total = int(
                session.execute(sa.select(sa.func.count()).select_from(Notification).where(*conditions)).scalar_one()
            )
            rows = session.exec(
                select(Notification)
                .where(*conditions)
                .order_by(col(Notification.created_at).desc(), col(Notification.id))
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            return list(rows), total

    def mark_read(self, user_id: str, notification_id: str) -> Notification:
        with self._session() as session:
            row = session.get(Notification, notification_id)
            if row is None or row.recipient_id != user_id:
                raise NotFoundError("notification not found")
            if not row.is_read:
                row.is_read = True
                row.read_at = now_utc()
                session.add(row)
                session.commit()
                session.refresh(row)
            return row
