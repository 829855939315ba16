# posters.py
"""
Poster backfill for entries that have no artwork.

Catalog responses are never mutated after they are returned. Instead a
generated poster is published on `CatalogUpdates` as a versioned change that
clients poll (`changes_since`) or subscribe to.
"""
import asyncio
import logging
from collections import deque
from typing import Deque, List, Optional, Set

from httpx import AsyncBaseTransport, AsyncClient, HTTPStatusError, RequestError, Timeout

from .config import Settings
from .models import CatalogEntry, PosterUpdate

logger = logging.getLogger(__name__)

PLACEHOLDER_MARKERS = ("placeholder", "No Image")
MAX_RETAINED_UPDATES = 1000


class CatalogUpdates:
    """Versioned change feed for entries updated after their catalog was returned."""

    def __init__(self, max_retained: int = MAX_RETAINED_UPDATES):
        self._version = 0
        self._changes: Deque[PosterUpdate] = deque(maxlen=max_retained)
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def version(self) -> int:
        return self._version

    def publish(self, entry_id: str, image_url: str) -> PosterUpdate:
        self._version += 1
        update = PosterUpdate(version=self._version, entry_id=entry_id, image_url=image_url)
        self._changes.append(update)
        for queue in self._subscribers:
            queue.put_nowait(update)
        return update

    def changes_since(self, version: int) -> List[PosterUpdate]:
        return [update for update in self._changes if update.version > version]

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)


def needs_poster(entry: CatalogEntry) -> bool:
    if not entry.image_url:
        return True
    return any(marker in entry.image_url for marker in PLACEHOLDER_MARKERS)


class PosterBackfill:
    """Generates missing posters through the OpenAI images endpoint."""

    def __init__(self, settings: Settings, updates: CatalogUpdates,
                 transport: Optional[AsyncBaseTransport] = None):
        self._settings = settings
        self._updates = updates
        self._transport = transport
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._settings.poster_backfill and bool(self._settings.openai_api_key)

    def dispatch(self, entries: List[CatalogEntry]) -> List[asyncio.Task]:
        """Start one background task per entry lacking a poster; never awaits them."""
        if not self.enabled:
            return []
        started = []
        for entry in entries:
            if not needs_poster(entry):
                continue
            task = asyncio.create_task(self._backfill(entry.id, entry.title))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        if started:
            logger.info(f"Dispatched poster generation for {len(started)} entries")
        return started

    async def _backfill(self, entry_id: str, title: str) -> Optional[PosterUpdate]:
        image_url = await self.generate(title)
        if not image_url:
            return None
        return self._updates.publish(entry_id, image_url)

    async def generate(self, title: str) -> Optional[str]:
        payload = {
            "model": self._settings.openai_image_model,
            "prompt": f'Movie poster for "{title}", cinematic, professional, high quality, 16:9 aspect ratio',
            "n": 1,
            "size": "1024x1024",
        }
        try:
            async with AsyncClient(
                base_url=self._settings.openai_api_url,
                transport=self._transport,
                timeout=Timeout(60.0, connect=10.0),
            ) as client:
                response = await client.post(
                    "/images/generations",
                    json=payload,
                    headers={"Authorization": f"Bearer {self._settings.openai_api_key}"},
                )
                response.raise_for_status()
                data = response.json().get("data") or []
        except (HTTPStatusError, RequestError, ValueError) as e:
            logger.warning(f"Poster generation failed for {title!r}: {e}")
            return None
        if not data or not isinstance(data[0], dict):
            return None
        return data[0].get("url")

    async def drain(self) -> None:
        """Wait for in-flight generations; used on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
