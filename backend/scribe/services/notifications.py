from __future__ import annotations

import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session

from scribe.models.notification import Notification, NotificationScope, NotificationType

logger = logging.getLogger(__name__)


class NotificationService:
    """Persist user-visible notifications emitted by background jobs."""

    __slots__ = ("_engine",)

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def notify(
        self,
        title: str,
        content: str,
        type: NotificationType = NotificationType.SYSTEM,
        scope: NotificationScope = NotificationScope.ADMIN,
    ) -> str | None:
        """Store a notification. Returns its ID, or None if it could not be saved."""
        notification = Notification(
            type=type.value,
            title=title,
            content=content,
            scope=scope.value,
        )
        notification_id = notification.id
        try:
            with Session(self._engine) as session:
                session.add(notification)
                session.commit()
        except Exception:
            logger.warning("Failed to store notification %s", title, exc_info=True)
            return None
        logger.info("Notification (%s): %s: %s", scope.value, title, content)
        return notification_id
