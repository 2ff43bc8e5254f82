# storyflow/speech_session.py
"""
Speech session manager (dictation) and a thin text-to-speech wrapper.

The recognition/synthesis engines are pluggable objects modelled on the
browser primitives: the session configures them, installs its own handlers
and keeps the listening state, transcripts and errors.

Recognition
-----------
    idle --start()--> listening --stop()/engine end/error--> idle
    continuous mode: unexpected engine end (not via stop(), no error)
    schedules start() again after `restart_delay` seconds.

Final text is dispatched as soon as the engine reports it and appended to
`transcript`; interim text only updates `interim_transcript`.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence

from storyflow.app_config import SPEECH_LANGUAGE, SPEECH_RESTART_DELAY

logger = logging.getLogger("storyflow")

UNSUPPORTED_MESSAGE = "Speech recognition is not supported in this environment."


class SpeechState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"


@dataclass(frozen=True)
class TranscriptResult:
    text: str
    is_final: bool


class RecognitionEngine(Protocol):
    continuous: bool
    interim_results: bool
    lang: str
    # handler slots, installed by SpeechSession
    on_result: Optional[Callable[[Sequence[TranscriptResult]], None]]
    on_error: Optional[Callable[[str], None]]
    on_end: Optional[Callable[[], None]]

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


class SpeechSession:
    def __init__(
        self,
        engine: Optional[RecognitionEngine],
        *,
        continuous: bool = False,
        language: str = SPEECH_LANGUAGE,
        on_result: Optional[Callable[[TranscriptResult], None]] = None,
        on_end: Optional[Callable[[], None]] = None,
        restart_delay: float = SPEECH_RESTART_DELAY,
    ):
        self.engine = engine
        self.continuous = continuous
        self.language = language
        self.on_result = on_result
        self.on_end = on_end
        self.restart_delay = restart_delay

        self.state = SpeechState.IDLE
        self.transcript = ""
        self.interim_transcript = ""
        self.error: Optional[str] = None
        self.supported = engine is not None

        self._stop_requested = False
        self._restart_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        if engine is None:
            self.error = UNSUPPORTED_MESSAGE
            logger.warning("Speech recognition: no engine available")
            return

        engine.continuous = continuous
        engine.interim_results = True
        engine.lang = language
        engine.on_result = self._handle_result
        engine.on_error = self._handle_error
        engine.on_end = self._handle_end
        logger.debug(f"Speech recognition configured (continuous={continuous}, language={language})")

    @property
    def is_listening(self) -> bool:
        return self.state is SpeechState.LISTENING

    @property
    def has_pending_restart(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    def start(self) -> bool:
        """Returns True when the engine was started."""
        if not self.supported:
            return False
        if self.state is SpeechState.LISTENING:
            self.error = "Speech recognition is already active."
            return False

        self._cancel_restart()
        self.error = None
        self._stop_requested = False
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        try:
            self.engine.start()
        except Exception as e:
            logger.warning(f"Speech recognition failed to start: {e}")
            self.error = "Failed to start speech recognition."
            self.state = SpeechState.IDLE
            return False

        self.state = SpeechState.LISTENING
        logger.info("Speech recognition started")
        return True

    def stop(self) -> None:
        if not self.supported:
            return
        self._stop_requested = True
        self._cancel_restart()
        if self.state is SpeechState.IDLE:
            return
        try:
            self.engine.stop()
        except Exception as e:
            logger.warning(f"Speech recognition failed to stop: {e}")
            self.error = "Failed to stop speech recognition."
        self.state = SpeechState.IDLE
        logger.info("Speech recognition stopped")

    def clear(self) -> None:
        self.transcript = ""
        self.interim_transcript = ""

    def close(self) -> None:
        self.stop()
        if self.engine is not None:
            self.engine.on_result = None
            self.engine.on_error = None
            self.engine.on_end = None

    # -----------------------
    # Engine handlers
    # -----------------------

    def _handle_result(self, results: Sequence[TranscriptResult]) -> None:
        final_text = "".join(r.text for r in results if r.is_final).strip()
        interim_text = "".join(r.text for r in results if not r.is_final)

        if final_text:
            self.transcript = f"{self.transcript} {final_text}".strip()
            self.interim_transcript = ""
            self._dispatch(TranscriptResult(final_text, True))
        elif interim_text:
            self.interim_transcript = interim_text
            self._dispatch(TranscriptResult(interim_text, False))

    def _handle_error(self, error: str) -> None:
        logger.warning(f"Speech recognition error: {error}")
        self.error = str(error)
        # errors end the session for good; the user restarts explicitly
        self._stop_requested = True
        self._cancel_restart()
        if self.state is SpeechState.LISTENING:
            try:
                self.engine.stop()
            except Exception as e:
                logger.debug(f"Speech recognition stop after error failed: {e}")
        self.state = SpeechState.IDLE

    def _handle_end(self) -> None:
        self.state = SpeechState.IDLE
        self.interim_transcript = ""
        if self.on_end is not None:
            try:
                self.on_end()
            except Exception:
                logger.exception("Speech recognition on_end callback failed")

        # stop() and engine errors both set _stop_requested
        if self.continuous and not self._stop_requested:
            if self._loop is None or self._loop.is_closed():
                logger.warning("Speech recognition ended with no event loop to restart on")
                return
            self._loop.call_soon_threadsafe(self._arm_restart)

    def _dispatch(self, result: TranscriptResult) -> None:
        if self.on_result is None:
            return
        try:
            self.on_result(result)
        except Exception:
            logger.exception("Speech recognition on_result callback failed")

    # -----------------------
    # Auto-restart
    # -----------------------

    def _arm_restart(self) -> None:
        if self._stop_requested or self.has_pending_restart or self.state is SpeechState.LISTENING:
            return
        self._restart_task = asyncio.get_running_loop().create_task(self._restart_after(self.restart_delay))

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._restart_task = None
        if self._stop_requested or self.state is SpeechState.LISTENING:
            return
        logger.info("Auto-restarting speech recognition")
        self.start()

    def _cancel_restart(self) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            self._restart_task.cancel()
        self._restart_task = None


# -----------------------
# Synthesis
# -----------------------

@dataclass(frozen=True)
class Voice:
    name: str
    lang: str


class SynthesisEngine(Protocol):
    on_end: Optional[Callable[[], None]]
    on_error: Optional[Callable[[str], None]]

    def get_voices(self) -> List[Voice]:
        ...

    def speak(self, text: str, *, voice: Optional[Voice], rate: float, pitch: float) -> None:
        ...

    def cancel(self) -> None:
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...


class SynthesisSession:
    def __init__(
        self,
        engine: Optional[SynthesisEngine],
        *,
        on_end: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.engine = engine
        self.on_end = on_end
        self.on_error = on_error
        self.supported = engine is not None
        self.speaking = False
        self.is_paused = False
        self.voices: List[Voice] = []
        self.current_voice: Optional[Voice] = None

        if engine is not None:
            engine.on_end = self._handle_end
            engine.on_error = self._handle_error
            self.load_voices()

    def load_voices(self) -> None:
        if not self.supported:
            return
        self.voices = list(self.engine.get_voices() or [])
        if self.voices and self.current_voice is None:
            self.current_voice = next((v for v in self.voices if "en-" in v.lang), self.voices[0])

    def change_voice(self, voice: Voice) -> None:
        self.current_voice = voice

    def speak(self, text: str, rate: float = 1.0, pitch: float = 1.0) -> None:
        if not self.supported or not text:
            return
        self.engine.cancel()
        self.speaking = True
        self.is_paused = False
        self.engine.speak(text, voice=self.current_voice, rate=rate, pitch=pitch)

    def pause(self) -> None:
        if not self.supported or not self.speaking:
            return
        self.engine.pause()
        self.is_paused = True

    def resume(self) -> None:
        if not self.supported or not self.is_paused:
            return
        self.engine.resume()
        self.is_paused = False

    def cancel(self) -> None:
        if not self.supported:
            return
        self.engine.cancel()
        self.speaking = False
        self.is_paused = False

    def _handle_end(self) -> None:
        self.speaking = False
        self.is_paused = False
        if self.on_end is not None:
            self.on_end()

    def _handle_error(self, error: str) -> None:
        logger.warning(f"Speech synthesis error: {error}")
        self.speaking = False
        self.is_paused = False
        if self.on_error is not None:
            self.on_error(error)
