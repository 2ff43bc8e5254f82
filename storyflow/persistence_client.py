"""
Persistence contract consumed by the editor autosave coordinator.

    create_version(chapter_id, content, word_count, tag) -> VersionRecord

Two implementations: StoragePersistence talks to the SQLAlchemy store in the
same process, HttpPersistenceClient talks to a running StoryFlow server.
Both bound every call by a fixed timeout; a timeout is a failure.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import httpx

from storyflow.app_config import SAVE_TIMEOUT
from storyflow.storage import Storage

logger = logging.getLogger("storyflow")


class PersistenceError(Exception):
    pass


@dataclass(frozen=True)
class VersionRecord:
    id: int
    chapter_id: int
    content: str
    word_count: int
    type: str
    created_at: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionRecord":
        raw_ts = data.get("createdAt")
        if isinstance(raw_ts, datetime):
            created_at = raw_ts
        elif raw_ts:
            created_at = datetime.fromisoformat(str(raw_ts).replace("Z", "+00:00"))
        else:
            created_at = datetime.now(timezone.utc)
        return cls(
            id=int(data["id"]),
            chapter_id=int(data["chapterId"]),
            content=data.get("content") or "",
            word_count=int(data.get("wordCount") or 0),
            type=str(data["type"]),
            created_at=created_at,
        )


class PersistenceService(Protocol):
    async def create_version(self, chapter_id: int, content: str, word_count: int, tag: str) -> VersionRecord:
        ...


class StoragePersistence:
    """
    In-process adapter: the blocking SQLAlchemy write runs in a worker thread
    so the event loop (and pending debounce timers) keep running.

    With sync_chapter=True the chapter row is updated to the saved content as
    well, so chapter listings show what the last version holds.
    """

    def __init__(self, storage: Storage, timeout: float = SAVE_TIMEOUT, sync_chapter: bool = False):
        self.storage = storage
        self.timeout = timeout
        self.sync_chapter = sync_chapter

    def _write(self, chapter_id: int, content: str, word_count: int, tag: str) -> Dict[str, Any]:
        return self.storage.create_version(chapter_id, content, word_count, tag, sync_chapter=self.sync_chapter)

    async def create_version(self, chapter_id: int, content: str, word_count: int, tag: str) -> VersionRecord:
        row = await asyncio.wait_for(
            asyncio.to_thread(self._write, chapter_id, content, word_count, tag),
            timeout=self.timeout,
        )
        return VersionRecord.from_dict(row)


class HttpPersistenceClient:
    """Client for the server's `POST /api/versions` endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = SAVE_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _build_url(self, endpoint: str) -> str:
        return f"{self.base_url}/api/{endpoint.lstrip('/')}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def create_version(self, chapter_id: int, content: str, word_count: int, tag: str) -> VersionRecord:
        client = await self._get_client()
        try:
            response = await client.post(
                self._build_url("versions"),
                json={
                    "chapterId": chapter_id,
                    "content": content,
                    "wordCount": word_count,
                    "type": tag,
                },
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise asyncio.TimeoutError(f"createVersion timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise PersistenceError(f"createVersion request failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            raise PersistenceError(f"createVersion failed with HTTP {response.status_code}: {detail}")

        return VersionRecord.from_dict(response.json())

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
