import time

import pytest
from fastapi.testclient import TestClient

from server import create_app
from storyflow.ai_gateway import CHARACTER_RESPONSE_FALLBACK, AIGateway
from storyflow.backend import Backend

from conftest import FakeLlm, FakePersistence, llm_factory_for

SESSION_OPTIONS = {"interval_bounds": (0.01, 60), "auto_save_interval": 0.05}
SETTLE = 0.5


@pytest.fixture
def llm():
    return FakeLlm()


@pytest.fixture
def backend(storage, history, llm):
    ai = AIGateway(history=history, llm_factory=llm_factory_for(llm), retries=1)
    return Backend(storage, ai, session_options=SESSION_OPTIONS)


@pytest.fixture
def client(backend):
    with TestClient(create_app(backend)) as test_client:
        yield test_client


def open_session(client, chapter_id, **body):
    response = client.post("/api/editor/sessions", json={"chapterId": chapter_id, **body})
    assert response.status_code == 201
    return response.json()


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "healthy"
    assert body["editorSessions"] == 0


def test_story_and_chapter_routes(client):
    story = client.post("/api/stories", json={"title": "Harbor Lights", "genre": "Mystery"})
    assert story.status_code == 201
    story_id = story.json()["id"]

    chapter = client.post("/api/chapters", json={"storyId": story_id, "title": "Fog", "content": "<p>Grey morning</p>"})
    assert chapter.status_code == 201
    assert chapter.json()["wordCount"] == 2

    assert [c["title"] for c in client.get(f"/api/stories/{story_id}/chapters").json()] == ["Fog"]
    assert client.get("/api/stories").json()[0]["title"] == "Harbor Lights"

    assert client.post("/api/stories", json={}).status_code == 400
    assert client.get("/api/chapters/999").status_code == 404
    assert client.delete("/api/stories/999").status_code == 404
    assert client.delete(f"/api/stories/{story_id}").status_code == 204


def test_manual_save_of_unchanged_content_creates_manual_version(client, chapter):
    session = open_session(client, chapter["id"], autoSaveEnabled=False)
    assert session["state"] == "clean"

    response = client.post(f"/api/editor/sessions/{session['sessionId']}/save")
    assert response.status_code == 200
    version = response.json()["version"]
    assert version["type"] == "manual"
    assert version["content"] == "<p>Once upon a time</p>"
    assert version["wordCount"] == 4

    versions = client.get(f"/api/chapters/{chapter['id']}/versions").json()
    assert [v["type"] for v in versions] == ["manual"]


def test_manual_save_with_body_content(client, chapter):
    session = open_session(client, chapter["id"], autoSaveEnabled=False)
    response = client.post(f"/api/editor/sessions/{session['sessionId']}/save", json={"content": "<p>Rewritten</p>"})
    assert response.json()["session"]["content"] == "<p>Rewritten</p>"
    assert client.get(f"/api/chapters/{chapter['id']}").json()["content"] == "<p>Rewritten</p>"


def test_content_update_autosaves(client, chapter):
    session = open_session(client, chapter["id"])
    sid = session["sessionId"]

    view = client.put(f"/api/editor/sessions/{sid}/content", json={"content": "<p>Once upon a time, a ship</p>"}).json()
    assert view["state"] == "dirty-waiting"
    assert view["hasPendingSave"] is True

    time.sleep(SETTLE)

    versions = client.get(f"/api/chapters/{chapter['id']}/versions").json()
    assert [v["type"] for v in versions] == ["auto"]
    assert client.get(f"/api/chapters/{chapter['id']}").json()["wordCount"] == 6
    assert client.get(f"/api/editor/sessions/{sid}").json()["state"] == "clean"


def test_editor_settings(client, chapter):
    sid = open_session(client, chapter["id"])["sessionId"]

    view = client.patch(f"/api/editor/sessions/{sid}/settings", json={"autoSaveEnabled": False, "autoSaveInterval": 10})
    assert view.status_code == 200
    assert view.json()["autoSaveEnabled"] is False
    assert view.json()["autoSaveInterval"] == 10

    bad = client.patch(f"/api/editor/sessions/{sid}/settings", json={"autoSaveInterval": 500})
    assert bad.status_code == 400


def test_editor_session_lifecycle(client, chapter):
    assert client.post("/api/editor/sessions", json={"chapterId": 999}).status_code == 404

    sid = open_session(client, chapter["id"])["sessionId"]
    assert client.get("/api/health").json()["editorSessions"] == 1
    assert client.delete(f"/api/editor/sessions/{sid}").status_code == 204
    assert client.get(f"/api/editor/sessions/{sid}").status_code == 404
    assert client.delete(f"/api/editor/sessions/{sid}").status_code == 404


def test_restore_updates_open_editor(client, chapter):
    sid = open_session(client, chapter["id"])["sessionId"]
    version = client.post(
        "/api/versions",
        json={"chapterId": chapter["id"], "content": "<p>An older draft</p>", "wordCount": 3, "type": "manual"},
    ).json()

    restored = client.post(f"/api/versions/{version['id']}/restore")
    assert restored.status_code == 200
    assert restored.json()["content"] == "<p>An older draft</p>"
    assert client.get(f"/api/editor/sessions/{sid}").json()["content"] == "<p>An older draft</p>"

    time.sleep(SETTLE)

    versions = client.get(f"/api/chapters/{chapter['id']}/versions").json()
    assert [v["type"] for v in versions] == ["auto", "manual"]

    assert client.post("/api/versions/999/restore").status_code == 404


def test_failed_manual_save_reports_bad_gateway(storage, history, chapter):
    ai = AIGateway(history=history, llm_factory=llm_factory_for(FakeLlm()))
    backend = Backend(storage, ai, persistence=FakePersistence(fail=True), session_options=SESSION_OPTIONS)
    with TestClient(create_app(backend)) as client:
        sid = open_session(client, chapter["id"], autoSaveEnabled=False)["sessionId"]
        response = client.post(f"/api/editor/sessions/{sid}/save")
        assert response.status_code == 502
        view = client.get(f"/api/editor/sessions/{sid}").json()
        assert view["state"] == "error"
        assert view["lastError"] == "database unavailable"


def test_version_type_is_validated(client, chapter):
    response = client.post("/api/versions", json={"chapterId": chapter["id"], "content": "x", "type": "draft"})
    assert response.status_code == 400


def test_foundation_routes(client):
    foundation = client.post("/api/foundations", json={"name": "Ash Wastes"}).json()
    fid = foundation["id"]

    created = client.post(f"/api/foundations/{fid}/messages", json={"role": "user", "content": "Volcanoes"})
    assert created.status_code == 201
    assert client.post(f"/api/foundations/{fid}/messages", json={"role": "narrator", "content": "x"}).status_code == 400
    assert len(client.get(f"/api/foundations/{fid}/messages").json()) == 1

    story = client.post("/api/stories", json={"title": "Embers", "foundationId": fid}).json()
    assert client.delete(f"/api/foundations/{fid}?force=true").status_code == 204
    assert client.get(f"/api/stories/{story['id']}").status_code == 404
    assert client.delete(f"/api/foundations/{fid}").status_code == 404


def test_foundation_characters_and_genre_routes(client):
    fid = client.post("/api/foundations", json={"name": "Ash Wastes"}).json()["id"]
    assert client.get(f"/api/foundations/{fid}/genre").json() is None

    story = client.post("/api/stories", json={"title": "Embers", "foundationId": fid}).json()
    other = client.post("/api/stories", json={"title": "Elsewhere"}).json()
    client.post("/api/characters", json={"storyId": story["id"], "name": "Kade"})
    client.post("/api/characters", json={"storyId": other["id"], "name": "Lior"})

    assert [c["name"] for c in client.get(f"/api/foundations/{fid}/characters").json()] == ["Kade"]
    assert client.get("/api/foundations/999/characters").status_code == 404
    assert client.get("/api/foundations/999/genre").status_code == 404


def test_foundation_assistant_moves_stages_forward(client, llm):
    fid = client.post("/api/foundations", json={"name": "Ash Wastes"}).json()["id"]
    url = f"/api/foundations/{fid}/dynamic-assistant"
    llm.responses = [
        '{"status": "question", "message": "Hopeful or grim?"}',
        '{"status": "complete", "details": {"name": "Dying Earth", "themes": ["decay"]}}',
        '{"status": "complete", "details": {"name": "Ash Plains", "description": "Grey dunes"}}',
    ]

    first = client.post(url, json={"message": "A burnt-out world"}).json()
    assert first["contextType"] == "genre"
    assert first["conversationInProgress"] is True
    assert client.get(f"/api/foundations/{fid}").json()["threadId"] == first["threadId"]

    second = client.post(url, json={"message": "Grim"}).json()
    assert second["conversationInProgress"] is False
    assert second["nextStage"] == "environment"
    foundation = client.get(f"/api/foundations/{fid}").json()
    assert foundation["genreCompleted"] is True
    assert foundation["genre"] == "Dying Earth"
    assert foundation["threadId"] is None
    assert client.get(f"/api/foundations/{fid}/genre").json()["name"] == "Dying Earth"

    # a completed genre stage is never reopened
    third = client.post(url, json={"message": "Deserts of ash", "currentAssistantType": "genre"}).json()
    assert third["contextType"] == "environment"
    assert third["nextStage"] == "world"
    foundation = client.get(f"/api/foundations/{fid}").json()
    assert foundation["environmentCompleted"] is True
    assert foundation["worldDetails"]["name"] == "Ash Plains"

    messages = client.get(f"/api/foundations/{fid}/messages").json()
    assert [m["role"] for m in messages] == ["user", "assistant"] * 3
    assert client.post("/api/foundations/999/dynamic-assistant", json={"message": "x"}).status_code == 404
    assert client.post(url, json={"message": ""}).status_code == 400


def test_ai_character_response_fallback(client, llm):
    llm.responses = [RuntimeError("provider down")]
    response = client.post("/api/ai/character-response", json={"characterDescription": "A guard", "situation": "A thief"})
    assert response.status_code == 200
    assert response.json() == {"response": CHARACTER_RESPONSE_FALLBACK}


def test_ai_genre_conversation(client, llm):
    llm.responses = [
        '{"status": "question", "message": "Which era?"}',
        '{"status": "complete", "details": {"name": "Gaslamp Fantasy", "tropes": ["secret societies"]}}',
    ]
    first = client.post("/api/ai/genre-details", json={"userInterests": "Victorian magic"}).json()
    assert first["conversationInProgress"] is True
    assert first["message"] == "Which era?"

    second = client.post("/api/ai/genre-details", json={"threadId": first["threadId"], "userInterests": "1880s"}).json()
    assert second["conversationInProgress"] is False
    assert second["name"] == "Gaslamp Fantasy"
    assert second["threadId"] == first["threadId"]


def test_ai_world_failure_is_server_error(client, llm):
    llm.responses = [RuntimeError("provider down")]
    assert client.post("/api/ai/world-details", json={"setting": "A canyon city"}).status_code == 500


def test_ai_chat_suggestions(client, llm):
    llm.responses = ['{"options": ["Yes", "No"], "additional_option": "Tell me more"}']
    response = client.post("/api/ai/chat-suggestions", json={"userMessage": "Is it magic?", "assistantReply": "Should magic exist?"})
    assert response.json() == {"suggestions": ["Yes", "No", "Tell me more"]}


def test_unknown_ai_request_type(backend):
    with pytest.raises(ValueError):
        backend.process_ai_request("poem", {})
