# storyflow/backend.py

import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from storyflow.ai_gateway import AIGateway, ConversationInProgressError
from storyflow.app_config import SPEECH_LANGUAGE
from storyflow.db_helpers import build_db_session_factory, get_db_engine
from storyflow.editor_session import EditorSession
from storyflow.persistence_client import PersistenceService, StoragePersistence, VersionRecord
from storyflow.speech_session import (
    RecognitionEngine,
    SpeechSession,
    SynthesisEngine,
    SynthesisSession,
    TranscriptResult,
)
from storyflow.storage import NotFoundError, Storage
from storyflow.text_utils import append_dictated_text, strip_html

logger = logging.getLogger("storyflow")


def version_record_to_dict(record: VersionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "chapterId": record.chapter_id,
        "content": record.content,
        "wordCount": record.word_count,
        "type": record.type,
        "createdAt": record.created_at.isoformat(),
    }


FOUNDATION_STAGES = ("genre", "environment", "world", "character")


def foundation_stage(foundation: Dict[str, Any]) -> str:
    """
    The stage a foundation is in, read from its completion flags only.
    A completed stage is never offered again.
    """
    if not foundation.get("genreCompleted"):
        return "genre"
    if not foundation.get("environmentCompleted"):
        return "environment"
    if not foundation.get("worldCompleted"):
        return "world"
    return "character"


class Backend:
    """
    Owns the store, the AI gateway and the open editor sessions.

    Editor-session methods must run on the server's event loop: the sessions
    arm their autosave timers on it.
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        ai: Optional[AIGateway] = None,
        persistence: Optional[PersistenceService] = None,
        session_options: Optional[Dict[str, Any]] = None,
    ):
        if storage is None:
            engine = get_db_engine()
            storage = Storage(build_db_session_factory(engine), engine)
        self.storage = storage
        self.ai = ai if ai is not None else AIGateway()
        self.persistence = persistence or StoragePersistence(storage, sync_chapter=True)
        # extra EditorSession keyword arguments (interval bounds, save timeout)
        self.session_options = dict(session_options or {})
        self.editor_sessions: Dict[str, EditorSession] = {}
        # speech sessions bound to an editor session, by editor session id
        self.dictations: Dict[str, SpeechSession] = {}
        self.narrations: Dict[str, SynthesisSession] = {}

    # -----------------------
    # AI requests
    # -----------------------

    def process_ai_request(self, request_type: str, payload: Optional[dict]) -> dict:
        """
        Dispatch one AI request. Blocking; the HTTP layer runs it in a worker
        thread. Unknown request types raise ValueError.
        """
        payload = payload or {}
        try:
            preview = json.dumps(payload, indent=2)
        except (TypeError, ValueError):
            preview = str(payload)
        logger.debug(f"process_ai_request {request_type} {preview[:1000]}")

        if request_type == "suggestions":
            response_data = self.ai.get_suggestions(
                payload.get("storyContext") or "",
                payload.get("chapterContent") or "",
                payload.get("characters") or [],
            ).model_dump()

        elif request_type == "character_response":
            response_data = {
                "response": self.ai.generate_character_response(
                    payload.get("characterDescription") or "",
                    payload.get("traits") or [],
                    payload.get("situation") or "",
                )
            }

        elif request_type == "continue_story":
            response_data = {
                "continuation": self.ai.continue_story(
                    payload.get("storyContext") or "",
                    payload.get("previousContent") or "",
                    payload.get("characters") or [],
                    payload.get("continuationPrompt") or "",
                )
            }

        elif request_type == "analyze_text":
            response_data = self.ai.analyze_text(payload.get("text") or "").model_dump()

        elif request_type == "interactive_story":
            response_data = self.ai.generate_interactive_story(
                payload.get("worldContext") or "",
                payload.get("characters") or [],
                payload.get("messageHistory") or [],
                payload.get("userInput") or "",
                thread_id=payload.get("threadId"),
            ).model_dump()

        elif request_type == "detailed_character":
            response_data = self.ai.generate_detailed_character(payload).model_dump()

        elif request_type == "genre_details":
            response_data = self._builder_response(lambda: self.ai.generate_genre_details(payload))

        elif request_type == "world_details":
            response_data = self._builder_response(lambda: self.ai.generate_world_details(payload))

        elif request_type == "chat_suggestions":
            response_data = {
                "suggestions": self.ai.generate_chat_suggestions(
                    payload.get("userMessage") or "",
                    payload.get("assistantReply") or "",
                )
            }

        else:
            raise ValueError(f"Unknown AI request type: {request_type}")

        try:
            preview = json.dumps(response_data, indent=2)
        except (TypeError, ValueError):
            preview = str(response_data)
        logger.debug(f"process_ai_request response {preview[:1000]}")
        return response_data

    def _builder_response(self, build) -> dict:
        try:
            details = build()
        except ConversationInProgressError as e:
            return {"conversationInProgress": True, "message": e.message, "threadId": e.thread_id}
        data = details.model_dump()
        data["conversationInProgress"] = False
        return data

    # -----------------------
    # Foundation builder
    # -----------------------

    def foundation_assistant(
        self,
        foundation_id: int,
        message: str,
        current_stage: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> dict:
        """
        One builder turn on a foundation. The stage comes from the foundation's
        flags (genre -> environment -> world -> character); a completed builder
        sets the flag and moves the foundation on. Blocking.
        """
        if not (message or "").strip():
            raise ValueError("Message is required")
        if current_stage and current_stage not in FOUNDATION_STAGES:
            raise ValueError(f"Unknown foundation stage: {current_stage}")
        foundation = self.storage.get_foundation(foundation_id)
        stage = foundation_stage(foundation)
        if current_stage and current_stage != stage:
            logger.info(f"Foundation {foundation_id}: client asked for {current_stage} stage, using {stage}")
        thread_id = thread_id or foundation.get("threadId")
        genre_context = foundation.get("genre") or ""

        self.storage.create_foundation_message(foundation_id, "user", message)
        update: Dict[str, Any] = {}
        try:
            if stage == "genre":
                details = self.ai.generate_genre_details({"userInterests": message, "threadId": thread_id})
                update = {"genre": details.name, "genreDetails": details.model_dump(), "genreCompleted": True}
            elif stage in ("environment", "world"):
                details = self.ai.generate_world_details({
                    "genreContext": genre_context,
                    "additionalInfo": message,
                    "threadId": thread_id,
                })
                update = {"worldDetails": details.model_dump(), f"{stage}Completed": True}
            else:
                details = self.ai.generate_detailed_character({"genre": genre_context, "additionalInfo": message})
                update = {"characterCompleted": True}
        except ConversationInProgressError as e:
            if e.message:
                self.storage.create_foundation_message(foundation_id, "assistant", e.message)
            self.storage.update_foundation(foundation_id, {"currentStage": stage, "threadId": e.thread_id})
            return {
                "foundationId": foundation_id,
                "contextType": stage,
                "conversationInProgress": True,
                "message": e.message,
                "threadId": e.thread_id,
            }

        next_stage = foundation_stage({**foundation, **update})
        # the next stage starts a fresh conversation
        update.update({"currentStage": next_stage, "threadId": None})
        self.storage.update_foundation(foundation_id, update)

        summary = f"{stage.capitalize()} stage complete: {details.name}"
        self.storage.create_foundation_message(foundation_id, "assistant", summary)
        logger.info(f"Foundation {foundation_id}: {stage} stage complete, next {next_stage}")
        return {
            "foundationId": foundation_id,
            "contextType": stage,
            "conversationInProgress": False,
            "message": summary,
            "details": details.model_dump(),
            "nextStage": next_stage,
            "threadId": None,
        }

    # -----------------------
    # Versions
    # -----------------------

    async def restore_version(self, version_id: int) -> Dict[str, Any]:
        """
        Copy the version back onto its chapter and into any open editor on
        that chapter, which then records the restore as a new version.
        """
        chapter = await asyncio.to_thread(self.storage.restore_version, version_id)
        for session in self.editor_sessions.values():
            if session.chapter_id == chapter["id"]:
                session.set_content(chapter["content"] or "")
        logger.info(f"Version {version_id} restored onto chapter {chapter['id']}")
        return chapter

    # -----------------------
    # Editor sessions
    # -----------------------

    async def open_editor_session(
        self,
        chapter_id: int,
        auto_save_enabled: bool = True,
        auto_save_interval: Optional[float] = None,
    ) -> Dict[str, Any]:
        chapter = await asyncio.to_thread(self.storage.get_chapter, chapter_id)

        kwargs = dict(self.session_options)
        if auto_save_interval is not None:
            kwargs["auto_save_interval"] = auto_save_interval
        session = EditorSession(
            self.persistence,
            chapter["id"],
            initial_content=chapter["content"] or "",
            auto_save_enabled=auto_save_enabled,
            **kwargs,
        )

        session_id = uuid.uuid4().hex
        self.editor_sessions[session_id] = session
        logger.info(f"Editor session {session_id} opened on chapter {chapter['id']}")
        return self.editor_session_view(session_id)

    def get_editor_session(self, session_id: str) -> EditorSession:
        session = self.editor_sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Editor session not found: {session_id}")
        return session

    def editor_session_view(self, session_id: str) -> Dict[str, Any]:
        session = self.get_editor_session(session_id)
        view = session.snapshot()
        view["sessionId"] = session_id
        view["content"] = session.content
        return view

    def update_editor_content(self, session_id: str, content: str) -> Dict[str, Any]:
        self.get_editor_session(session_id).set_content(content)
        return self.editor_session_view(session_id)

    def update_editor_settings(
        self,
        session_id: str,
        auto_save_enabled: Optional[bool] = None,
        auto_save_interval: Optional[float] = None,
    ) -> Dict[str, Any]:
        session = self.get_editor_session(session_id)
        if auto_save_interval is not None:
            session.set_auto_save_interval(auto_save_interval)
        if auto_save_enabled is not None:
            session.set_auto_save_enabled(auto_save_enabled)
        return self.editor_session_view(session_id)

    async def save_editor_session(self, session_id: str, content: Optional[str] = None) -> Dict[str, Any]:
        """
        Manual save. Raises SaveInProgressError or VersionSaveError from the
        session; the caller maps them to HTTP statuses.
        """
        session = self.get_editor_session(session_id)
        record = await session.manual_save(content=content)
        return {
            "version": version_record_to_dict(record) if record else None,
            "session": self.editor_session_view(session_id),
        }

    # -----------------------
    # Speech
    # -----------------------

    def attach_dictation(
        self,
        session_id: str,
        engine: Optional[RecognitionEngine],
        *,
        continuous: bool = True,
        language: str = SPEECH_LANGUAGE,
        on_result: Optional[Callable[[TranscriptResult], None]] = None,
    ) -> SpeechSession:
        """
        Bind a speech session to an open editor session. Final transcripts are
        appended to the editor content and go through the usual dirty/autosave
        path; interim text only reaches `on_result`. Must run on the event loop.
        """
        editor = self.get_editor_session(session_id)
        loop = asyncio.get_running_loop()

        def append(text: str) -> None:
            if not editor.closed:
                editor.set_content(append_dictated_text(editor.content, text))

        def dispatch(result: TranscriptResult) -> None:
            if on_result is not None:
                on_result(result)
            if result.is_final:
                # engines may call back from their own thread
                loop.call_soon_threadsafe(append, result.text)

        self.detach_dictation(session_id)
        speech = SpeechSession(engine, continuous=continuous, language=language, on_result=dispatch)
        self.dictations[session_id] = speech
        logger.info(f"Dictation attached to editor session {session_id}")
        return speech

    def detach_dictation(self, session_id: str) -> bool:
        speech = self.dictations.pop(session_id, None)
        if speech is None:
            return False
        speech.close()
        return True

    def read_aloud(
        self,
        session_id: str,
        engine: Optional[SynthesisEngine],
        rate: float = 1.0,
        pitch: float = 1.0,
    ) -> SynthesisSession:
        """Speak the editor's current text, as plain text."""
        editor = self.get_editor_session(session_id)
        narration = self.narrations.get(session_id)
        if narration is None or narration.engine is not engine:
            if narration is not None:
                narration.cancel()
            narration = SynthesisSession(engine)
            self.narrations[session_id] = narration
        narration.speak(" ".join(strip_html(editor.content).split()), rate=rate, pitch=pitch)
        return narration

    def close_editor_session(self, session_id: str) -> bool:
        session = self.editor_sessions.pop(session_id, None)
        if session is None:
            return False
        self.detach_dictation(session_id)
        narration = self.narrations.pop(session_id, None)
        if narration is not None:
            narration.cancel()
        session.close()
        logger.info(f"Editor session {session_id} closed")
        return True

    def shutdown(self) -> None:
        for session_id in list(self.editor_sessions):
            self.close_editor_session(session_id)
