# storyflow/ai_gateway.py

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import ValidationError

from storyflow.ai_models import (
    CharacterBrief,
    CharacterCreationInput,
    DetailedCharacter,
    GenreCreationInput,
    GenreDetails,
    StoryCharacter,
    StoryMessage,
    StoryResponse,
    SuggestionSet,
    TextAnalysis,
    WorldCreationInput,
    WorldDetails,
)
from storyflow.ai_prompts import (
    ANALYZE_TEXT_PROMPT,
    CHARACTER_RESPONSE_PROMPT,
    CHAT_SUGGESTIONS_PROMPT,
    CONTINUE_STORY_PROMPT,
    DETAILED_CHARACTER_PROMPT,
    FINALIZE_NUDGE,
    GENRE_CREATOR_PROMPT,
    GENRE_OPENING_MESSAGE,
    INTERACTIVE_STORY_PROMPT,
    SUGGESTIONS_PROMPT,
    WORLD_BUILDER_PROMPT,
    WORLD_OPENING_MESSAGE,
)
from storyflow.app_config import AI_RETRIES, model_for_feature
from storyflow.base_utils import BaseUtils
from storyflow.history_cache import HistoryCache, build_history_cache

logger = logging.getLogger("storyflow")

CHARACTER_RESPONSE_FALLBACK = "I'm unable to respond at the moment."
CONTINUATION_FALLBACK = "Unable to generate story continuation at this time."

# after this many messages a builder conversation is nudged to wrap up
LATE_STAGE_MESSAGES = 6

WELCOME_MARKERS = (
    "Welcome to Foundation Builder",
    "What type of genre would you like to explore",
)

LlmFactory = Callable[[str], Tuple[Any, Any]]


class AIGatewayError(Exception):
    pass


class ConversationInProgressError(AIGatewayError):
    """
    The builder assistant needs more input before it can produce a profile.
    `message` is its reply to the user; `thread_id` continues the conversation.
    """

    def __init__(self, message: str, thread_id: str):
        super().__init__(message)
        self.message = message
        self.thread_id = thread_id


class AIGateway(BaseUtils):
    """
    Best-effort request/response wrapper around the LLM clients.

    Every editor-facing call returns a usable value: model failures, malformed
    output and validation errors resolve to the documented fallbacks. Genre and
    world building are conversations and report failures with AIGatewayError.

    Methods are blocking; async callers run them through asyncio.to_thread.
    """

    def __init__(
        self,
        history: Optional[HistoryCache] = None,
        llm_factory: Optional[LlmFactory] = None,
        retries: int = AI_RETRIES,
    ):
        self.history = history if history is not None else build_history_cache()
        self._llm_factory = llm_factory or self._build_llms_for_model
        self.retries = retries

    # -----------------------
    # LLM plumbing
    # -----------------------

    def _llms(self, feature: str):
        model_name = model_for_feature(feature)
        llm, chat_llm = self._llm_factory(model_name)
        if llm is None or chat_llm is None:
            raise AIGatewayError(f"No LLM available for {feature} (model {model_name})")
        return llm, chat_llm

    def _complete(self, feature: str, prompt: str, *, json_mode: bool = False, max_tokens: int | None = None) -> str:
        llm, _ = self._llms(feature)
        logger.debug(f"[AI] {feature} prompt: {prompt[:200]}...")
        raw = llm.invoke(prompt, json_mode=json_mode, max_tokens=max_tokens, retries=self.retries)
        self._log_usage(feature, llm)
        logger.debug(f"[AI] {feature} response: {(raw or '')[:200]}...")
        return raw or ""

    def _complete_json(self, feature: str, prompt: str, *, max_tokens: int | None = None) -> Dict[str, Any]:
        raw = self._complete(feature, prompt, json_mode=True, max_tokens=max_tokens)
        return self.load_fault_tolerant_json(raw)

    def _chat(self, feature: str, messages: List[BaseMessage]) -> str:
        _, chat_llm = self._llms(feature)
        raw = chat_llm.invoke(messages, json_mode=True, retries=self.retries)
        self._log_usage(feature, chat_llm)
        logger.debug(f"[AI] {feature} chat response: {(raw or '')[:200]}...")
        return raw or ""

    def _log_usage(self, feature: str, llm) -> None:
        usage = llm.get_accrued_usage()
        if usage:
            logger.debug(f"[AI] {feature} token usage: {usage}")

    def _characters_text(self, characters: Sequence[Any]) -> str:
        briefs = [c if isinstance(c, CharacterBrief) else CharacterBrief.model_validate(c) for c in characters or []]
        return "\n".join(b.as_prompt_line() for b in briefs)

    # -----------------------
    # Editor assistance
    # -----------------------

    def get_suggestions(self, story_context: str, chapter_content: str, characters: Sequence[Any]) -> SuggestionSet:
        try:
            prompt = self.unsafe_string_format(
                SUGGESTIONS_PROMPT,
                story_context=story_context or "",
                characters_text=self._characters_text(characters),
                chapter_content=chapter_content or "",
            )
            data = self._complete_json("suggestions", prompt)
            return SuggestionSet.model_validate(data)
        except Exception as e:
            logger.warning(f"[AI] Error getting AI suggestions: {e}")
            return SuggestionSet.empty()

    def generate_character_response(self, character_description: str, traits: Sequence[str], situation: str) -> str:
        try:
            prompt = self.unsafe_string_format(
                CHARACTER_RESPONSE_PROMPT,
                character_description=character_description or "",
                traits_text=", ".join(traits or []),
                situation=situation or "",
            )
            return self._complete("character_response", prompt, max_tokens=250) or "No response generated"
        except Exception as e:
            logger.warning(f"[AI] Error generating character response: {e}")
            return CHARACTER_RESPONSE_FALLBACK

    def continue_story(
        self,
        story_context: str,
        previous_content: str,
        characters: Sequence[Any],
        continuation_prompt: str = "",
    ) -> str:
        try:
            direction_block = f"\nADDITIONAL DIRECTION: {continuation_prompt}\n" if continuation_prompt else ""
            prompt = self.unsafe_string_format(
                CONTINUE_STORY_PROMPT,
                story_context=story_context or "",
                characters_text=self._characters_text(characters),
                previous_content=previous_content or "",
                direction_block=direction_block,
            )
            return self._complete("continue_story", prompt, max_tokens=500) or "No continuation generated"
        except Exception as e:
            logger.warning(f"[AI] Error continuing story: {e}")
            return CONTINUATION_FALLBACK

    def analyze_text(self, text: str) -> TextAnalysis:
        try:
            prompt = self.unsafe_string_format(ANALYZE_TEXT_PROMPT, text=text or "")
            data = self._complete_json("analyze_text", prompt)
            return TextAnalysis.model_validate(data)
        except Exception as e:
            logger.warning(f"[AI] Error analyzing text: {e}")
            return TextAnalysis.unavailable()

    # -----------------------
    # Interactive story
    # -----------------------

    def generate_interactive_story(
        self,
        world_context: str,
        characters: Sequence[Any],
        message_history: Sequence[Any],
        user_input: str,
        thread_id: Optional[str] = None,
    ) -> StoryResponse:
        """
        One storyteller turn. The caller may hold the history itself or hand
        back the thread id of an earlier turn and let the cache remember it.
        """
        thread_id = thread_id or self.history.new_thread_id()
        try:
            story_characters = [
                c if isinstance(c, StoryCharacter) else StoryCharacter.model_validate(c) for c in characters or []
            ]
            characters_text = "\n".join(
                f"{c.name} ({c.role}): {', '.join(c.personality)}" for c in story_characters
            )

            if message_history:
                messages = [m if isinstance(m, StoryMessage) else StoryMessage.model_validate(m) for m in message_history]
                conversation_history = "\n".join(f"{m.sender}: {m.content}" for m in messages)
            else:
                conversation_history = "\n".join(
                    f"{'storyteller' if m.type == 'ai' else 'user'}: {m.content}"
                    for m in self.history.snapshot(thread_id)
                )

            prompt = self.unsafe_string_format(
                INTERACTIVE_STORY_PROMPT,
                world_context=world_context or "",
                characters_text=characters_text,
                conversation_history=conversation_history,
                user_input=user_input or "",
            )
            data = self._complete_json("interactive_story", prompt, max_tokens=700)
            data = {k: v for k, v in data.items() if v}
            data["threadId"] = thread_id
            response = StoryResponse.model_validate(data)
        except Exception as e:
            logger.warning(f"[AI] Error generating interactive story response: {e}")
            return StoryResponse.paused(thread_id)

        self.history.append_turn(thread_id, user_input or "", response.content)
        return response

    # -----------------------
    # World building
    # -----------------------

    def generate_detailed_character(self, character_input: CharacterCreationInput | Dict[str, Any]) -> DetailedCharacter:
        if not isinstance(character_input, CharacterCreationInput):
            character_input = CharacterCreationInput.model_validate(character_input or {})
        try:
            labels = (
                ("Character Name", character_input.name),
                ("Role in Story", character_input.role),
                ("Genre", character_input.genre),
                ("Setting", character_input.setting),
                ("Story Context", character_input.story),
                ("Additional Information", character_input.additionalInfo),
            )
            spec_lines = "\n".join(f"{label}: {value}" for label, value in labels if value)
            prompt = self.unsafe_string_format(DETAILED_CHARACTER_PROMPT, spec_lines=spec_lines)
            data = self._complete_json("detailed_character", prompt)
            data["name"] = data.get("name") or character_input.name or "Unnamed Character"
            data["role"] = data.get("role") or character_input.role or "Protagonist"
            return DetailedCharacter.model_validate(data)
        except Exception as e:
            logger.warning(f"[AI] Error creating detailed character: {e}")
            return DetailedCharacter.fallback(character_input)

    def _resolve_thread(self, thread_id: Optional[str], previous_messages: Sequence[Any]) -> Tuple[str, bool]:
        """
        Returns (thread_id, is_new). A thread this process forgot is rebuilt
        from the client's copy of the conversation when one is sent.
        """
        if thread_id and self.history.has(thread_id):
            return thread_id, False
        if thread_id and previous_messages:
            self.history.seed(thread_id, [m if isinstance(m, dict) else m.model_dump() for m in previous_messages])
            logger.info(f"[AI] Rebuilt thread {thread_id} from {len(previous_messages)} client messages")
            return thread_id, False
        if thread_id:
            logger.info(f"[AI] Thread {thread_id} unknown, starting a new one")
        return self.history.new_thread_id(), True

    def _builder_turn(self, feature: str, system_prompt: str, thread_id: str, user_text: str) -> Dict[str, Any]:
        prior = self.history.snapshot(thread_id)
        messages: List[BaseMessage] = [SystemMessage(content=system_prompt), *prior]
        if len(prior) >= LATE_STAGE_MESSAGES:
            messages.append(SystemMessage(content=FINALIZE_NUDGE))
        messages.append(HumanMessage(content=user_text))

        try:
            raw = self._chat(feature, messages)
            data = self.load_fault_tolerant_json(raw)
            status = str(data.get("status") or "").lower()
            reply = str(data.get("message") or "")
        except Exception as e:
            logger.warning(f"[AI] {feature} failed on thread {thread_id}: {e}")
            raise AIGatewayError(f"Failed to generate {feature.replace('_', ' ')}: {e}") from e

        self.history.append_turn(thread_id, user_text, reply or raw)

        if status == "question" or (not data.get("details") and reply):
            raise ConversationInProgressError(reply, thread_id)
        return data.get("details") or data

    def generate_genre_details(self, genre_input: GenreCreationInput | Dict[str, Any]) -> GenreDetails:
        if not isinstance(genre_input, GenreCreationInput):
            genre_input = GenreCreationInput.model_validate(genre_input or {})
        thread_id, is_new = self._resolve_thread(genre_input.threadId, genre_input.previousMessages)

        if is_new:
            lines = [
                ("User's Interests", genre_input.userInterests),
                ("Themes", ", ".join(genre_input.themes)),
                ("Mood/Tone", genre_input.mood),
                ("Target Audience", genre_input.targetAudience),
                ("Inspirations", ", ".join(genre_input.inspirations)),
                ("Additional Information", genre_input.additionalInfo),
            ]
            user_text = GENRE_OPENING_MESSAGE + "\n".join(f"{k}: {v}" for k, v in lines if v)
        else:
            user_text = genre_input.userInterests or "Tell me more about this genre."

        details = self._builder_turn("genre_details", GENRE_CREATOR_PROMPT, thread_id, user_text)
        details["threadId"] = thread_id
        try:
            return GenreDetails.model_validate(details)
        except ValidationError as e:
            raise AIGatewayError(f"Genre profile is incomplete: {e}") from e

    def generate_world_details(self, world_input: WorldCreationInput | Dict[str, Any]) -> WorldDetails:
        if not isinstance(world_input, WorldCreationInput):
            world_input = WorldCreationInput.model_validate(world_input or {})
        thread_id, is_new = self._resolve_thread(world_input.threadId, world_input.previousMessages)

        if is_new:
            lines = [
                ("Genre Context", world_input.genreContext),
                ("Basic Setting", world_input.setting),
                ("Timeframe/Era", world_input.timeframe),
                ("Environment", world_input.environmentType),
                ("Culture", world_input.culture),
                ("Technology Level", world_input.technology),
                ("Major Conflicts", world_input.conflicts),
                ("Additional Information", world_input.additionalInfo),
            ]
            user_text = WORLD_OPENING_MESSAGE + "\n".join(f"{k}: {v}" for k, v in lines if v)
        else:
            user_text = world_input.additionalInfo or "Tell me more about this world."

        details = self._builder_turn("world_details", WORLD_BUILDER_PROMPT, thread_id, user_text)
        details["threadId"] = thread_id
        if not details.get("name"):
            # same default the builder UI shows before a name is chosen
            details["name"] = " ".join((world_input.setting or "").split()[:2]) or "Custom World"
        try:
            return WorldDetails.model_validate(details)
        except ValidationError as e:
            raise AIGatewayError(f"World profile is incomplete: {e}") from e

    def generate_chat_suggestions(self, user_message: str, assistant_reply: str) -> List[str]:
        is_welcome = any(marker in (assistant_reply or "") for marker in WELCOME_MARKERS)
        if not (assistant_reply or "").strip() or (not is_welcome and not (user_message or "").strip()):
            logger.debug("[AI] Missing inputs for chat suggestions")
            return []

        try:
            conversation_json = json.dumps({"user": user_message or "", "chat assistant": assistant_reply}, indent=2)
            prompt = self.unsafe_string_format(CHAT_SUGGESTIONS_PROMPT, conversation_json=conversation_json)
            data = self._complete_json("chat_suggestions", prompt)
        except Exception as e:
            logger.warning(f"[AI] Error generating chat suggestions: {e}")
            return []

        options = data.get("options")
        if not isinstance(options, list):
            return []
        suggestions = [o for o in options if isinstance(o, str)]
        extra = data.get("additional_option")
        if isinstance(extra, str) and extra:
            suggestions.append(extra)
        return suggestions
