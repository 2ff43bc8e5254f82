import asyncio
from datetime import datetime, timezone

import pytest

from storyflow.db_helpers import build_db_session_factory, get_db_engine
from storyflow.history_cache import HistoryCache
from storyflow.persistence_client import VersionRecord
from storyflow.speech_session import TranscriptResult, Voice
from storyflow.storage import Storage


class FakePersistence:
    """Records create_version calls; optionally slow or failing."""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.calls = []
        self._next_id = 1

    async def create_version(self, chapter_id, content, word_count, tag):
        self.calls.append((chapter_id, content, word_count, tag))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("database unavailable")
        record = VersionRecord(
            id=self._next_id,
            chapter_id=chapter_id,
            content=content,
            word_count=word_count,
            type=tag,
            created_at=datetime.now(timezone.utc),
        )
        self._next_id += 1
        return record


class FakeRecognitionEngine:
    def __init__(self, fail_start: bool = False):
        self.continuous = False
        self.interim_results = False
        self.lang = ""
        self.on_result = None
        self.on_error = None
        self.on_end = None
        self.fail_start = fail_start
        self.start_calls = 0
        self.stop_calls = 0

    def start(self):
        if self.fail_start:
            raise RuntimeError("microphone busy")
        self.start_calls += 1

    def stop(self):
        self.stop_calls += 1

    # drive the handlers the session installed
    def emit_result(self, *segments):
        self.on_result([TranscriptResult(text, is_final) for text, is_final in segments])

    def emit_error(self, error):
        self.on_error(error)

    def emit_end(self):
        self.on_end()


class FakeSynthesisEngine:
    def __init__(self, voices=None):
        self.on_end = None
        self.on_error = None
        self.calls = []
        self._voices = voices if voices is not None else [Voice("Amelie", "fr-FR"), Voice("Samantha", "en-US")]

    def get_voices(self):
        return list(self._voices)

    def speak(self, text, *, voice, rate, pitch):
        self.calls.append(("speak", text, voice, rate, pitch))

    def cancel(self):
        self.calls.append(("cancel",))

    def pause(self):
        self.calls.append(("pause",))

    def resume(self):
        self.calls.append(("resume",))


class FakeLlm:
    """
    Stands in for LlmClient / ChatLlmClient. `responses` are returned in
    order; an Exception instance is raised instead of returned.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.usage = {}

    def invoke(self, prompt_or_messages, *, json_mode=False, max_tokens=None, retries=3):
        self.calls.append({"input": prompt_or_messages, "json_mode": json_mode, "max_tokens": max_tokens})
        if not self.responses:
            raise RuntimeError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get_accrued_usage(self):
        return dict(self.usage)


def llm_factory_for(llm: FakeLlm):
    return lambda model_name: (llm, llm)


@pytest.fixture
def storage():
    engine = get_db_engine("sqlite://")
    return Storage(build_db_session_factory(engine), engine)


@pytest.fixture
def history():
    return HistoryCache(ttl_seconds=3600, max_tokens=8000)


@pytest.fixture
def chapter(storage):
    story = storage.create_story({"title": "The Lighthouse"})
    return storage.create_chapter({"storyId": story["id"], "title": "Arrival", "content": "<p>Once upon a time</p>"})
