import asyncio
import json

import httpx
import pytest

from storyflow.persistence_client import HttpPersistenceClient, PersistenceError, StoragePersistence


def test_storage_persistence_writes_version_and_chapter(storage, chapter):
    persistence = StoragePersistence(storage, sync_chapter=True)
    record = asyncio.run(persistence.create_version(chapter["id"], "<p>New text</p>", 2, "manual"))

    assert record.type == "manual"
    assert record.chapter_id == chapter["id"]
    assert storage.get_chapter(chapter["id"])["content"] == "<p>New text</p>"
    assert storage.get_versions(chapter["id"])[0]["id"] == record.id


def test_storage_persistence_leaves_chapter_alone_by_default(storage, chapter):
    persistence = StoragePersistence(storage)
    asyncio.run(persistence.create_version(chapter["id"], "<p>Other</p>", 1, "auto"))
    assert storage.get_chapter(chapter["id"])["content"] == chapter["content"]


def test_http_client_posts_version():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={
            "id": 42,
            "chapterId": 3,
            "content": "Hello",
            "wordCount": 1,
            "type": "auto",
            "createdAt": "2026-01-02T03:04:05Z",
        })

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            persistence = HttpPersistenceClient("http://storyflow.local/", client=client)
            return await persistence.create_version(3, "Hello", 1, "auto")

    record = asyncio.run(scenario())
    assert seen["url"] == "http://storyflow.local/api/versions"
    assert seen["body"] == {"chapterId": 3, "content": "Hello", "wordCount": 1, "type": "auto"}
    assert record.id == 42
    assert record.created_at.year == 2026


def test_http_client_raises_on_error_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"detail": "Chapter not found: 3"})

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            persistence = HttpPersistenceClient("http://storyflow.local", client=client)
            await persistence.create_version(3, "Hello", 1, "auto")

    with pytest.raises(PersistenceError, match="Chapter not found"):
        asyncio.run(scenario())
