from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlmodel import Field, SQLModel


class NotificationType(str, Enum):
    SYSTEM = "system"


class NotificationScope(str, Enum):
    ADMIN = "admin"
    ALL = "all"


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    type: str = Field(default=NotificationType.SYSTEM.value)
    title: str
    content: str
    scope: str = Field(default=NotificationScope.ADMIN.value)
    is_read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
