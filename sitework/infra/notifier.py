from __future__ import annotations

import json
import logging
import os
from functools import lru_cache

from redis.exceptions import RedisError
from sqlmodel import Session

from sitework.domain.models import Notification, NotificationCategory, NotificationChannel
from sitework.infra.db import engine
from sitework.infra.redis_state import get_redis

logger = logging.getLogger(__name__)

NOTIFICATION_PUSH_ENABLED = os.getenv("NOTIFICATION_PUSH_ENABLED", "true").lower() in {"1", "true", "yes"}
PUSH_CHANNEL_PREFIX = "notifications"


def push_channel(user_id: str) -> str:
    return f"{PUSH_CHANNEL_PREFIX}:{user_id}"


class NotificationDispatcher:
    """Stores an in-app notification and pushes it to the recipient's channel."""

    def notify(
        self,
        *,
        user_id: str,
        title: str,
        body: str,
        category: NotificationCategory,
        related_entity_id: str | None = None,
        related_entity_type: str | None = None,
        channel: NotificationChannel = NotificationChannel.ALL,
        action_link: str | None = None,
    ) -> Notification:
        row = Notification(
            recipient_id=user_id,
            title=title,
            body=body,
            category=category,
            channel=channel,
            related_entity_id=related_entity_id,
            related_entity_type=related_entity_type,
            action_link=action_link,
        )
        with Session(engine, expire_on_commit=False) as session:
            session.add(row)
            session.commit()

        if NOTIFICATION_PUSH_ENABLED and channel in {NotificationChannel.PUSH, NotificationChannel.ALL}:
            self._push(row)
        return row

    def _push(self, row: Notification) -> None:
        message = json.dumps(
            {
                "id": row.id,
                "title": row.title,
                "body": row.body,
                "category": row.category.value,
                "related_entity_id": row.related_entity_id,
                "related_entity_type": row.related_entity_type,
                "action_link": row.action_link,
                "created_at": row.created_at.isoformat(),
            }
        )
        try:
            get_redis().publish(push_channel(row.recipient_id), message)
        except RedisError:
            logger.warning("push delivery failed for notification %s", row.id, exc_info=True)


@lru_cache(maxsize=1)
def get_notifier() -> NotificationDispatcher:
    return NotificationDispatcher()
