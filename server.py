import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from storyflow.ai_gateway import AIGatewayError
from storyflow.ai_models import CharacterCreationInput, GenreCreationInput, WorldCreationInput
from storyflow.backend import Backend
from storyflow.editor_session import SaveInProgressError, VersionSaveError
from storyflow.storage import DEMO_USER_ID, NotFoundError

logger = logging.getLogger("storyflow")


# -----------------------
# Request bodies
# -----------------------

class VersionCreate(BaseModel):
    chapterId: int
    content: str
    wordCount: int = 0
    type: str = "manual"


class FoundationMessageCreate(BaseModel):
    role: str
    content: str


class FoundationAssistantRequest(BaseModel):
    message: str
    currentAssistantType: Optional[str] = None
    threadId: Optional[str] = None


class EditorSessionOpen(BaseModel):
    chapterId: int
    autoSaveEnabled: bool = True
    autoSaveInterval: Optional[float] = None


class EditorContentUpdate(BaseModel):
    content: str


class EditorSettingsUpdate(BaseModel):
    autoSaveEnabled: Optional[bool] = None
    autoSaveInterval: Optional[float] = None


class EditorSaveRequest(BaseModel):
    content: Optional[str] = None


class SuggestionsRequest(BaseModel):
    storyContext: str = ""
    chapterContent: str = ""
    characters: List[Dict[str, Any]] = []


class CharacterResponseRequest(BaseModel):
    characterDescription: str = ""
    traits: List[str] = []
    situation: str


class ContinueStoryRequest(BaseModel):
    storyContext: str = ""
    previousContent: str = ""
    characters: List[Dict[str, Any]] = []
    continuationPrompt: str = ""


class AnalyzeTextRequest(BaseModel):
    text: str


class InteractiveStoryRequest(BaseModel):
    worldContext: str = ""
    characters: List[Dict[str, Any]] = []
    messageHistory: List[Dict[str, Any]] = []
    userInput: str
    threadId: Optional[str] = None


class ChatSuggestionsRequest(BaseModel):
    userMessage: Optional[str] = None
    assistantReply: str


# -----------------------
# App
# -----------------------

def get_backend(request: Request) -> Backend:
    return request.app.state.backend


def _not_found(label: str, entity_id) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{label} not found: {entity_id}")


router = APIRouter(prefix="/api")


@router.get("/health")
async def health(backend: Backend = Depends(get_backend)):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0",
        "editorSessions": len(backend.editor_sessions),
    }


# --- Stories ---

@router.get("/stories")
def list_stories(userId: int = DEMO_USER_ID, backend: Backend = Depends(get_backend)):
    return backend.storage.get_stories(userId)


@router.post("/stories", status_code=201)
def create_story(data: Dict[str, Any] = Body(...), backend: Backend = Depends(get_backend)):
    return backend.storage.create_story(data)


@router.get("/stories/{story_id}")
def get_story(story_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_story(story_id)


@router.put("/stories/{story_id}")
def update_story(story_id: int, data: Dict[str, Any] = Body(...), backend: Backend = Depends(get_backend)):
    return backend.storage.update_story(story_id, data)


@router.delete("/stories/{story_id}", status_code=204)
def delete_story(story_id: int, backend: Backend = Depends(get_backend)):
    if not backend.storage.delete_story(story_id):
        raise _not_found("Story", story_id)
    return Response(status_code=204)


# --- Chapters ---

@router.get("/stories/{story_id}/chapters")
def list_chapters(story_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_chapters(story_id)


@router.post("/chapters", status_code=201)
def create_chapter(data: Dict[str, Any] = Body(...), backend: Backend = Depends(get_backend)):
    return backend.storage.create_chapter(data)


@router.get("/chapters/{chapter_id}")
def get_chapter(chapter_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_chapter(chapter_id)


@router.put("/chapters/{chapter_id}")
def update_chapter(chapter_id: int, data: Dict[str, Any] = Body(...), backend: Backend = Depends(get_backend)):
    return backend.storage.update_chapter(chapter_id, data)


@router.delete("/chapters/{chapter_id}", status_code=204)
def delete_chapter(chapter_id: int, backend: Backend = Depends(get_backend)):
    if not backend.storage.delete_chapter(chapter_id):
        raise _not_found("Chapter", chapter_id)
    return Response(status_code=204)


# --- Characters ---

@router.get("/stories/{story_id}/characters")
def list_characters(story_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_characters(story_id)


@router.post("/characters", status_code=201)
def create_character(data: Dict[str, Any] = Body(...), backend: Backend = Depends(get_backend)):
    return backend.storage.create_character(data)


@router.get("/characters/{character_id}")
def get_character(character_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_character(character_id)


@router.put("/characters/{character_id}")
def update_character(character_id: int, data: Dict[str, Any] = Body(...), backend: Backend = Depends(get_backend)):
    return backend.storage.update_character(character_id, data)


@router.delete("/characters/{character_id}", status_code=204)
def delete_character(character_id: int, backend: Backend = Depends(get_backend)):
    if not backend.storage.delete_character(character_id):
        raise _not_found("Character", character_id)
    return Response(status_code=204)


# --- Versions ---

@router.get("/chapters/{chapter_id}/versions")
def list_versions(chapter_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_versions(chapter_id)


@router.post("/versions", status_code=201)
def create_version(body: VersionCreate, backend: Backend = Depends(get_backend)):
    return backend.storage.create_version(body.chapterId, body.content, body.wordCount, body.type)


@router.get("/versions/{version_id}")
def get_version(version_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_version(version_id)


@router.post("/versions/{version_id}/restore")
async def restore_version(version_id: int, backend: Backend = Depends(get_backend)):
    return await backend.restore_version(version_id)


# --- Suggestions ---

@router.get("/chapters/{chapter_id}/suggestions")
def list_suggestions(chapter_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_suggestions(chapter_id)


@router.post("/suggestions", status_code=201)
def create_suggestion(data: Dict[str, Any] = Body(...), backend: Backend = Depends(get_backend)):
    return backend.storage.create_suggestion(data)


@router.put("/suggestions/{suggestion_id}")
def update_suggestion(suggestion_id: int, data: Dict[str, Any] = Body(...), backend: Backend = Depends(get_backend)):
    return backend.storage.update_suggestion(suggestion_id, data)


@router.delete("/suggestions/{suggestion_id}", status_code=204)
def delete_suggestion(suggestion_id: int, backend: Backend = Depends(get_backend)):
    if not backend.storage.delete_suggestion(suggestion_id):
        raise _not_found("Suggestion", suggestion_id)
    return Response(status_code=204)


# --- Foundations ---

@router.get("/foundations")
def list_foundations(userId: int = DEMO_USER_ID, backend: Backend = Depends(get_backend)):
    return backend.storage.get_foundations(userId)


@router.post("/foundations", status_code=201)
def create_foundation(data: Dict[str, Any] = Body(default={}), backend: Backend = Depends(get_backend)):
    return backend.storage.create_foundation(data)


@router.get("/foundations/{foundation_id}")
def get_foundation(foundation_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_foundation(foundation_id)


@router.delete("/foundations/{foundation_id}", status_code=204)
def delete_foundation(foundation_id: int, force: bool = False, backend: Backend = Depends(get_backend)):
    if not backend.storage.delete_foundation(foundation_id, force=force):
        raise HTTPException(status_code=500, detail="Failed to delete foundation")
    return Response(status_code=204)


@router.get("/foundations/{foundation_id}/messages")
def list_foundation_messages(foundation_id: int, backend: Backend = Depends(get_backend)):
    backend.storage.get_foundation(foundation_id)
    return backend.storage.get_foundation_messages(foundation_id)


@router.post("/foundations/{foundation_id}/messages", status_code=201)
def create_foundation_message(
    foundation_id: int,
    body: FoundationMessageCreate,
    backend: Backend = Depends(get_backend),
):
    return backend.storage.create_foundation_message(foundation_id, body.role, body.content)


@router.get("/foundations/{foundation_id}/characters")
def list_foundation_characters(foundation_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_characters_by_foundation(foundation_id)


@router.get("/foundations/{foundation_id}/genre")
def get_foundation_genre(foundation_id: int, backend: Backend = Depends(get_backend)):
    return backend.storage.get_genre_details_by_foundation(foundation_id)


@router.post("/foundations/{foundation_id}/dynamic-assistant")
def foundation_assistant(
    foundation_id: int,
    body: FoundationAssistantRequest,
    backend: Backend = Depends(get_backend),
):
    return backend.foundation_assistant(
        foundation_id,
        body.message,
        current_stage=body.currentAssistantType,
        thread_id=body.threadId,
    )


# --- AI ---

@router.post("/ai/suggestions")
def ai_suggestions(body: SuggestionsRequest, backend: Backend = Depends(get_backend)):
    return backend.process_ai_request("suggestions", body.model_dump())


@router.post("/ai/character-response")
def ai_character_response(body: CharacterResponseRequest, backend: Backend = Depends(get_backend)):
    return backend.process_ai_request("character_response", body.model_dump())


@router.post("/ai/continue-story")
def ai_continue_story(body: ContinueStoryRequest, backend: Backend = Depends(get_backend)):
    return backend.process_ai_request("continue_story", body.model_dump())


@router.post("/ai/analyze-text")
def ai_analyze_text(body: AnalyzeTextRequest, backend: Backend = Depends(get_backend)):
    return backend.process_ai_request("analyze_text", body.model_dump())


@router.post("/ai/interactive-story")
def ai_interactive_story(body: InteractiveStoryRequest, backend: Backend = Depends(get_backend)):
    return backend.process_ai_request("interactive_story", body.model_dump())


@router.post("/ai/detailed-character")
def ai_detailed_character(body: CharacterCreationInput, backend: Backend = Depends(get_backend)):
    return backend.process_ai_request("detailed_character", body.model_dump())


@router.post("/ai/genre-details")
def ai_genre_details(body: GenreCreationInput, backend: Backend = Depends(get_backend)):
    return backend.process_ai_request("genre_details", body.model_dump())


@router.post("/ai/world-details")
def ai_world_details(body: WorldCreationInput, backend: Backend = Depends(get_backend)):
    return backend.process_ai_request("world_details", body.model_dump())


@router.post("/ai/chat-suggestions")
def ai_chat_suggestions(body: ChatSuggestionsRequest, backend: Backend = Depends(get_backend)):
    return backend.process_ai_request("chat_suggestions", body.model_dump())


# --- Editor sessions ---

@router.post("/editor/sessions", status_code=201)
async def open_editor_session(body: EditorSessionOpen, backend: Backend = Depends(get_backend)):
    return await backend.open_editor_session(
        body.chapterId,
        auto_save_enabled=body.autoSaveEnabled,
        auto_save_interval=body.autoSaveInterval,
    )


@router.get("/editor/sessions/{session_id}")
async def get_editor_session(session_id: str, backend: Backend = Depends(get_backend)):
    return backend.editor_session_view(session_id)


@router.put("/editor/sessions/{session_id}/content")
async def update_editor_content(session_id: str, body: EditorContentUpdate, backend: Backend = Depends(get_backend)):
    return backend.update_editor_content(session_id, body.content)


@router.patch("/editor/sessions/{session_id}/settings")
async def update_editor_settings(session_id: str, body: EditorSettingsUpdate, backend: Backend = Depends(get_backend)):
    return backend.update_editor_settings(
        session_id,
        auto_save_enabled=body.autoSaveEnabled,
        auto_save_interval=body.autoSaveInterval,
    )


@router.post("/editor/sessions/{session_id}/save")
async def save_editor_session(
    session_id: str,
    body: Optional[EditorSaveRequest] = None,
    backend: Backend = Depends(get_backend),
):
    try:
        return await backend.save_editor_session(session_id, content=body.content if body else None)
    except SaveInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except VersionSaveError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.delete("/editor/sessions/{session_id}", status_code=204)
async def close_editor_session(session_id: str, backend: Backend = Depends(get_backend)):
    if not backend.close_editor_session(session_id):
        raise _not_found("Editor session", session_id)
    return Response(status_code=204)


def create_app(backend: Optional[Backend] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "backend", None) is None:
            app.state.backend = await asyncio.to_thread(Backend)
        logger.info("StoryFlow backend ready")
        yield
        app.state.backend.shutdown()

    app = FastAPI(title="StoryFlow", lifespan=lifespan)
    app.state.backend = backend

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def _not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def _bad_request_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(AIGatewayError)
    async def _ai_error_handler(request: Request, exc: AIGatewayError):
        logger.warning(f"AI request failed: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
