"""Fetch public notes from followed sites into the recommendation cache.

Each followed site is asked for its first page of public notes. Requests run
concurrently in small batches with a short pause in between so remote hosts
are not flooded. The fetched items are grouped by the follower's account id
and stored under the ``recommand_list`` cache key; a site that fails is
logged and left out of this round.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from scribe.config import Settings
from scribe.jobs.base import BaseTask
from scribe.services.notes import FollowRecord, NoteStore
from scribe.services.progress import ProgressStore
from scribe.services.queue import DurableQueue, JobRecord

logger = logging.getLogger(__name__)

RECOMMEND_TASK_NAME = "recommendFetch"
RECOMMEND_CACHE_KEY = "recommand_list"
PUBLIC_LIST_PATH = "/api/v1/note/public-list"
DEFAULT_ACCOUNT_KEY = "0"

T = TypeVar("T")
R = TypeVar("R")


class RecommendAttachment(BaseModel):
    model_config = ConfigDict(extra="allow")

    path: str = ""


class RecommendItem(BaseModel):
    """A public note from a remote site. Unknown fields are kept as-is."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: int | None = None
    content: str = ""
    attachments: list[RecommendAttachment] | None = None
    origin_url: str | None = Field(default=None, alias="originURL")


_ITEMS = TypeAdapter(list[RecommendItem])


def site_origin(site_url: str) -> str:
    """Return ``scheme://host[:port]`` of a site URL."""
    parts = urlsplit(site_url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Invalid site URL: {site_url!r}")
    return f"{parts.scheme}://{parts.netloc}"


async def batch_process(
    items: Sequence[T],
    process: Callable[[T], Awaitable[R]],
    batch_size: int,
    pause_seconds: float,
) -> list[R]:
    """Run *process* over *items*, at most *batch_size* at a time."""
    results: list[R] = []
    batch_size = max(1, batch_size)
    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        results.extend(await asyncio.gather(*(process(item) for item in batch)))
        if start + batch_size < len(items) and pause_seconds > 0:
            await asyncio.sleep(pause_seconds)
    return results


class RecommendTask(BaseTask):
    task_name = RECOMMEND_TASK_NAME
    default_schedule = "0 */6 * * *"

    def __init__(
        self,
        queue: DurableQueue,
        settings: Settings,
        note_store: NoteStore,
        progress_store: ProgressStore,
    ) -> None:
        super().__init__(queue, settings)
        self._notes = note_store
        self._cache = progress_store

    def initialize_task(self) -> bool:
        """Register the worker and queue a first fetch, only if anything is followed."""
        if self._notes.count_following() == 0:
            logger.info("[%s] No followed sites, not initializing", self.task_name)
            return False
        self.initialize()
        self.trigger_now()
        return True

    async def run_task(self, job: JobRecord | None = None) -> dict[str, Any]:
        follows = self._notes.list_following()
        if not follows:
            self._cache.delete(RECOMMEND_CACHE_KEY)
            return {"message": "No follows", "follow_count": 0}

        grouped: dict[str, list[dict[str, Any]]] = {}
        async with httpx.AsyncClient(
            timeout=self._settings.recommend_request_timeout_seconds
        ) as client:
            fetched = await batch_process(
                follows,
                lambda follow: self._fetch_site(client, follow),
                self._settings.recommend_concurrency,
                self._settings.recommend_batch_pause_seconds,
            )

        for follow, items in zip(follows, fetched):
            account_key = follow.account_id or DEFAULT_ACCOUNT_KEY
            grouped.setdefault(account_key, []).extend(items)

        result = self._cache.save(RECOMMEND_CACHE_KEY, grouped)
        if not result.ok:
            logger.warning("[%s] Recommendation list not saved: %s", self.task_name, result.error)

        total_items = sum(len(items) for items in grouped.values())
        logger.info(
            "[%s] Fetched %d item(s) from %d followed site(s)",
            self.task_name,
            total_items,
            len(follows),
        )
        return {"follow_count": len(follows), "total_items": total_items}

    async def _fetch_site(
        self, client: httpx.AsyncClient, follow: FollowRecord
    ) -> list[dict[str, Any]]:
        try:
            origin = site_origin(follow.site_url)
            response = await client.post(
                f"{origin}{PUBLIC_LIST_PATH}",
                json={"page": 1, "size": self._settings.recommend_page_size},
            )
            response.raise_for_status()
            items = _ITEMS.validate_python(response.json())
        except (httpx.HTTPError, ValueError) as exc:  # ValueError covers bad JSON and validation
            logger.error("[%s] Error fetching %s: %s", self.task_name, follow.site_url, exc)
            return []

        processed = []
        for item in items:
            item.origin_url = origin
            if item.attachments:
                for attachment in item.attachments:
                    attachment.path = f"{origin}{attachment.path}"
            processed.append(item.model_dump(mode="json", by_alias=True))
        return processed
