# storyflow/editor_session.py
"""
Editor autosave / versioning coordinator

One EditorSession exists per open chapter (per editor tab). It owns the
in-memory draft and decides when to persist it as a Version.

States
------
    clean          content equals the last saved snapshot (or is blank)
    dirty-waiting  content differs, debounce timer armed (if auto-save is on)
    saving         a createVersion call is in flight
    error          the last save failed; content is still dirty

Transitions
-----------
    clean         --edit-----------> dirty-waiting
    dirty-waiting --timer fires----> saving
    dirty-waiting --manual save----> saving          (pending timer cancelled)
    saving        --success--------> clean           (or dirty-waiting if edits arrived meanwhile)
    saving        --failure--------> error
    error         --edit-----------> dirty-waiting

Rules
-----
- dirty == (content != last_saved_content) and content.strip() != ""
- Every change of content, auto-save enablement or interval clears the pending
  timer and arms a new one only if the session is dirty (trailing-edge debounce).
- At most one save in flight. A save request arriving while one is in flight is
  dropped, never queued. The in-flight save is never cancelled; when it
  succeeds the dirty flag is recomputed against the *current* content.
- Non-manual saves of unchanged or blank content are skipped. Manual saves
  always write, acting as an explicit checkpoint.
- Failed auto saves are logged and kept in `last_error`. Failed manual saves
  raise VersionSaveError so the caller can show them. There is no retry loop:
  the next edit re-arms the timer.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from storyflow.app_config import (
    DEFAULT_AUTOSAVE_INTERVAL,
    MAX_AUTOSAVE_INTERVAL,
    MIN_AUTOSAVE_INTERVAL,
    SAVE_TIMEOUT,
)
from storyflow.persistence_client import PersistenceService, VersionRecord
from storyflow.text_utils import count_words

logger = logging.getLogger("storyflow")


class VersionTag(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    AI_ASSISTED = "ai-assisted"


class SaveState(str, Enum):
    CLEAN = "clean"
    DIRTY_WAITING = "dirty-waiting"
    SAVING = "saving"
    ERROR = "error"


class VersionSaveError(Exception):
    """A manual save reached the persistence service and failed."""


class SaveInProgressError(Exception):
    """A manual save was dropped because another save is in flight."""


class EditorSession:
    def __init__(
        self,
        persistence: PersistenceService,
        chapter_id: Optional[int],
        *,
        initial_content: str = "",
        auto_save_enabled: bool = True,
        auto_save_interval: float = DEFAULT_AUTOSAVE_INTERVAL,
        interval_bounds: Tuple[float, float] = (MIN_AUTOSAVE_INTERVAL, MAX_AUTOSAVE_INTERVAL),
        save_timeout: float = SAVE_TIMEOUT,
    ):
        self.persistence = persistence
        self.chapter_id = chapter_id
        self.interval_bounds = interval_bounds
        self.save_timeout = save_timeout

        self._auto_save_interval = self._validate_interval(auto_save_interval)
        self._auto_save_enabled = bool(auto_save_enabled)

        # the chapter as loaded is the last durable snapshot
        self._content = initial_content or ""
        self._last_saved_content = self._content
        self._last_saved_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

        self._saving = False
        self._timer: Optional[asyncio.Task] = None
        self._closed = False

    # -----------------------
    # Read-only state
    # -----------------------

    @property
    def content(self) -> str:
        return self._content

    @property
    def last_saved_content(self) -> str:
        return self._last_saved_content

    @property
    def last_saved_at(self) -> Optional[datetime]:
        return self._last_saved_at

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def is_dirty(self) -> bool:
        return self._content != self._last_saved_content and self._content.strip() != ""

    @property
    def is_saving(self) -> bool:
        return self._saving

    @property
    def auto_save_enabled(self) -> bool:
        return self._auto_save_enabled

    @property
    def auto_save_interval(self) -> float:
        return self._auto_save_interval

    @property
    def has_pending_save(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state(self) -> SaveState:
        if self._saving:
            return SaveState.SAVING
        if self._last_error is not None:
            return SaveState.ERROR
        if self.is_dirty:
            return SaveState.DIRTY_WAITING
        return SaveState.CLEAN

    def snapshot(self) -> Dict[str, Any]:
        return {
            "chapterId": self.chapter_id,
            "state": self.state.value,
            "isDirty": self.is_dirty,
            "isSaving": self._saving,
            "hasPendingSave": self.has_pending_save,
            "lastSavedAt": self._last_saved_at.isoformat() if self._last_saved_at else None,
            "lastError": self._last_error,
            "autoSaveEnabled": self._auto_save_enabled,
            "autoSaveInterval": self._auto_save_interval,
            "wordCount": count_words(self._content),
        }

    # -----------------------
    # Mutations
    # -----------------------

    def set_content(self, text: str) -> None:
        self._content = text or ""
        self._last_error = None
        self.schedule_auto_save()

    def set_auto_save_enabled(self, enabled: bool) -> None:
        self._auto_save_enabled = bool(enabled)
        self.schedule_auto_save()

    def set_auto_save_interval(self, seconds: float) -> None:
        self._auto_save_interval = self._validate_interval(seconds)
        self.schedule_auto_save()

    def _validate_interval(self, seconds: float) -> float:
        low, high = self.interval_bounds
        try:
            value = float(seconds)
        except (TypeError, ValueError):
            raise ValueError(f"Auto-save interval must be a number of seconds, got {seconds!r}")
        if not (low <= value <= high):
            raise ValueError(f"Auto-save interval must be between {low:g} and {high:g} seconds, got {value:g}")
        return value

    # -----------------------
    # Scheduling
    # -----------------------

    def schedule_auto_save(self) -> None:
        """
        Clear any pending timer and arm a new one if auto-save is on and the
        content is dirty. Must be called from inside the running event loop.
        """
        self._cancel_timer()
        if self._closed or not self._auto_save_enabled or not self.is_dirty:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.create_task(self._debounce(self._auto_save_interval))

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _debounce(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # detach first: a timer that already fired is never cancelled mid-save
        self._timer = None
        await self._auto_save()

    async def _auto_save(self) -> Optional[VersionRecord]:
        if not self._auto_save_enabled or not self.is_dirty:
            return None
        content = self._content
        return await self.save_version(self.chapter_id, content, count_words(content), VersionTag.AUTO)

    # -----------------------
    # Saving
    # -----------------------

    async def manual_save(
        self,
        chapter_id: Optional[int] = None,
        content: Optional[str] = None,
        word_count: Optional[int] = None,
    ) -> Optional[VersionRecord]:
        """
        Save now, tagged `manual`, even if nothing changed since the last save.
        Raises VersionSaveError on failure and SaveInProgressError when another
        save is still running.
        """
        self._cancel_timer()
        if chapter_id is None:
            chapter_id = self.chapter_id
        if content is None:
            content = self._content
        elif content != self._content:
            self._content = content
        if word_count is None:
            word_count = count_words(content)
        return await self.save_version(chapter_id, content, word_count, VersionTag.MANUAL)

    async def save_version(
        self,
        chapter_id: Optional[int],
        content: str,
        word_count: int,
        tag: VersionTag | str,
    ) -> Optional[VersionRecord]:
        """
        The single persistence path. Returns the created record, or None when
        the request was skipped or dropped (and, for non-manual tags, failed).
        """
        tag = VersionTag(tag)
        content = content or ""

        if chapter_id is None:
            logger.debug("save_version skipped: no active chapter")
            return None

        if tag is not VersionTag.MANUAL:
            if content == self._last_saved_content or not content.strip():
                logger.debug(f"save_version skipped for chapter {chapter_id}: content unchanged or blank ({tag.value})")
                return None

        if self._saving:
            logger.info(f"save_version dropped for chapter {chapter_id}: a save is already in flight ({tag.value})")
            if tag is VersionTag.MANUAL:
                raise SaveInProgressError("A save is already in progress for this chapter.")
            return None

        self._saving = True
        try:
            record = await asyncio.wait_for(
                self.persistence.create_version(chapter_id, content, int(word_count or 0), tag.value),
                timeout=self.save_timeout,
            )
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                error = f"Save timed out after {self.save_timeout:g}s"
            else:
                error = str(e) or e.__class__.__name__
            if self._content != content:
                # edited while the request was in flight: back to dirty-waiting
                self._last_error = None
                if not self.has_pending_save:
                    self.schedule_auto_save()
            else:
                self._last_error = error
            if tag is VersionTag.MANUAL:
                logger.warning(f"Manual save failed for chapter {chapter_id}: {error}")
                raise VersionSaveError(f"Failed to save version: {error}") from e
            logger.warning(f"Auto-save ({tag.value}) failed for chapter {chapter_id}: {error}")
            return None
        finally:
            self._saving = False

        self._last_saved_content = content
        self._last_saved_at = record.created_at
        self._last_error = None
        logger.info(f"Version {record.id} saved for chapter {chapter_id} ({tag.value}, {record.word_count} words)")

        # edits that arrived while the request was in flight keep the session dirty
        if self.is_dirty and not self.has_pending_save:
            self.schedule_auto_save()
        return record

    # -----------------------
    # Lifecycle
    # -----------------------

    def close(self) -> None:
        """
        Tear the session down: pending timer cancelled, nothing new scheduled.
        An in-flight save is left to finish.
        """
        self._closed = True
        self._cancel_timer()

    async def __aenter__(self) -> "EditorSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
