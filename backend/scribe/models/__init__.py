from __future__ import annotations

from scribe.models.cache import CacheEntry  # noqa: F401
from scribe.models.note import Attachment, Follow, Note  # noqa: F401
from scribe.models.notification import Notification  # noqa: F401
from scribe.models.queue import QueueDefinition, QueueJob, QueueSchedule  # noqa: F401
