import asyncio

import pytest

from storyflow.editor_session import (
    EditorSession,
    SaveInProgressError,
    SaveState,
    VersionSaveError,
    VersionTag,
)

from conftest import FakePersistence

CHAPTER_ID = 7
INTERVAL = 0.05


def make_session(persistence, **kwargs):
    kwargs.setdefault("auto_save_interval", INTERVAL)
    kwargs.setdefault("interval_bounds", (0.01, 5.0))
    return EditorSession(persistence, CHAPTER_ID, **kwargs)


def test_unchanged_content_creates_no_auto_version():
    async def scenario():
        persistence = FakePersistence()
        session = make_session(persistence, initial_content="Hello there")

        session.set_content("Hello there")
        assert not session.is_dirty
        assert not session.has_pending_save
        await asyncio.sleep(INTERVAL * 3)

        # direct call on the auto path with the last saved content
        result = await session.save_version(CHAPTER_ID, "Hello there", 2, VersionTag.AUTO)
        assert result is None
        return persistence

    persistence = asyncio.run(scenario())
    assert persistence.calls == []


def test_edits_inside_interval_coalesce_into_one_auto_save():
    async def scenario():
        persistence = FakePersistence()
        session = make_session(persistence)

        session.set_content("It")
        await asyncio.sleep(INTERVAL / 3)
        session.set_content("It was")
        await asyncio.sleep(INTERVAL / 3)
        session.set_content("It was dark")
        await asyncio.sleep(INTERVAL * 4)
        return persistence, session

    persistence, session = asyncio.run(scenario())
    assert persistence.calls == [(CHAPTER_ID, "It was dark", 3, "auto")]
    assert not session.is_dirty
    assert session.state is SaveState.CLEAN
    assert session.last_saved_at is not None


def test_schedule_twice_saves_once():
    async def scenario():
        persistence = FakePersistence()
        session = make_session(persistence)
        session.set_content("draft")
        session.schedule_auto_save()
        session.schedule_auto_save()
        await asyncio.sleep(INTERVAL * 4)
        return persistence

    assert len(asyncio.run(scenario()).calls) == 1


def test_manual_save_always_writes_and_cancels_timer():
    async def scenario():
        persistence = FakePersistence()
        session = make_session(persistence, initial_content="Saved text")

        # unchanged content still produces a manual version
        first = await session.manual_save()

        session.set_content("Saved text, edited")
        assert session.has_pending_save
        second = await session.manual_save()
        assert not session.has_pending_save

        await asyncio.sleep(INTERVAL * 3)
        return persistence, first, second

    persistence, first, second = asyncio.run(scenario())
    assert [c[3] for c in persistence.calls] == ["manual", "manual"]
    assert first.type == "manual"
    assert second.content == "Saved text, edited"


def test_manual_save_with_explicit_content_adopts_it():
    async def scenario():
        persistence = FakePersistence()
        session = make_session(persistence, initial_content="old")
        record = await session.manual_save(CHAPTER_ID, "<p>new words here</p>", 3)
        return session, record

    session, record = asyncio.run(scenario())
    assert record.word_count == 3
    assert session.content == "<p>new words here</p>"
    assert not session.is_dirty


def test_blank_content_is_never_dirty():
    async def scenario():
        persistence = FakePersistence()
        session = make_session(persistence, initial_content="something")
        session.set_content("   \n  ")
        assert not session.is_dirty
        assert not session.has_pending_save
        await asyncio.sleep(INTERVAL * 3)
        return persistence

    assert asyncio.run(scenario()).calls == []


def test_disabled_auto_save_keeps_session_dirty_until_reenabled():
    async def scenario():
        persistence = FakePersistence()
        session = make_session(persistence, auto_save_enabled=False)

        session.set_content("typed while offline")
        await asyncio.sleep(INTERVAL * 3)
        assert persistence.calls == []
        assert session.is_dirty
        assert session.state is SaveState.DIRTY_WAITING

        session.set_auto_save_enabled(True)
        assert session.has_pending_save
        await asyncio.sleep(INTERVAL * 4)
        return persistence, session

    persistence, session = asyncio.run(scenario())
    assert len(persistence.calls) == 1
    assert not session.is_dirty


def test_interval_change_rearms_timer():
    async def scenario():
        persistence = FakePersistence()
        session = make_session(persistence)
        session.set_content("draft")
        session.set_auto_save_interval(0.3)
        await asyncio.sleep(0.1)
        early = len(persistence.calls)
        await asyncio.sleep(0.4)
        return early, len(persistence.calls)

    early, late = asyncio.run(scenario())
    assert early == 0
    assert late == 1


def test_interval_outside_bounds_is_rejected():
    session = EditorSession(FakePersistence(), CHAPTER_ID, interval_bounds=(5, 120), auto_save_interval=30)
    with pytest.raises(ValueError):
        session.set_auto_save_interval(2)
    with pytest.raises(ValueError):
        session.set_auto_save_interval(500)
    assert session.auto_save_interval == 30

    with pytest.raises(ValueError):
        EditorSession(FakePersistence(), CHAPTER_ID, interval_bounds=(5, 120), auto_save_interval=1)


def test_edits_during_inflight_save_keep_session_dirty():
    async def scenario():
        persistence = FakePersistence(delay=0.1)
        session = make_session(persistence, initial_content="draft")

        save = asyncio.create_task(session.manual_save())
        await asyncio.sleep(0.02)
        assert session.state is SaveState.SAVING
        session.set_content("draft with more")

        await save
        assert session.is_dirty
        assert session.has_pending_save

        await asyncio.sleep(0.3)
        return persistence, session

    persistence, session = asyncio.run(scenario())
    assert persistence.calls[0][1:] == ("draft", 1, "manual")
    assert persistence.calls[-1][1:] == ("draft with more", 3, "auto")
    assert len(persistence.calls) == 2
    assert not session.is_dirty


def test_save_requested_while_saving_is_dropped():
    async def scenario():
        persistence = FakePersistence(delay=0.1)
        session = make_session(persistence)

        first = asyncio.create_task(session.save_version(CHAPTER_ID, "first", 1, "auto"))
        await asyncio.sleep(0.01)
        dropped = await session.save_version(CHAPTER_ID, "second", 1, "ai-assisted")
        with pytest.raises(SaveInProgressError):
            await session.manual_save()
        await first
        return persistence, dropped

    persistence, dropped = asyncio.run(scenario())
    assert dropped is None
    assert len(persistence.calls) == 1


def test_manual_save_failure_raises_and_leaves_error_state():
    async def scenario():
        persistence = FakePersistence(fail=True)
        session = make_session(persistence, auto_save_enabled=False)
        session.set_content("unsaved words")

        with pytest.raises(VersionSaveError) as exc_info:
            await session.manual_save()
        assert "database unavailable" in str(exc_info.value)
        assert session.is_dirty
        assert session.state is SaveState.ERROR
        assert session.last_error == "database unavailable"

        session.set_content("unsaved words, more")
        assert session.state is SaveState.DIRTY_WAITING
        assert session.last_error is None

    asyncio.run(scenario())


def test_auto_save_failure_is_recorded_without_raising():
    async def scenario():
        persistence = FakePersistence(fail=True)
        session = make_session(persistence)
        session.set_content("will fail")
        await asyncio.sleep(INTERVAL * 4)
        return persistence, session

    persistence, session = asyncio.run(scenario())
    # no retry loop
    assert len(persistence.calls) == 1
    assert session.state is SaveState.ERROR
    assert session.is_dirty


def test_edit_during_failed_save_is_saved_later():
    async def scenario():
        persistence = FakePersistence(delay=0.2, fail=True)
        session = make_session(persistence)
        session.set_content("first draft")
        await asyncio.sleep(INTERVAL + 0.03)
        assert session.is_saving
        session.set_content("first draft, revised")
        await asyncio.sleep(0.6)
        return persistence, session

    persistence, session = asyncio.run(scenario())
    assert [call[1] for call in persistence.calls] == ["first draft", "first draft, revised"]
    # the second attempt failed on unchanged content, so the error sticks
    assert session.state is SaveState.ERROR
    assert not session.has_pending_save


def test_slow_persistence_counts_as_failure():
    async def scenario():
        persistence = FakePersistence(delay=0.5)
        session = make_session(persistence, save_timeout=0.05)
        session.set_content("slow network")
        await asyncio.sleep(INTERVAL + 0.2)
        return session

    session = asyncio.run(scenario())
    assert session.state is SaveState.ERROR
    assert "timed out" in session.last_error
    assert session.is_dirty


def test_save_without_chapter_is_a_noop():
    async def scenario():
        persistence = FakePersistence()
        session = EditorSession(persistence, None, auto_save_interval=INTERVAL, interval_bounds=(0.01, 5.0))
        session.set_content("orphan text")
        await asyncio.sleep(INTERVAL * 3)
        manual = await session.manual_save()
        return persistence, manual

    persistence, manual = asyncio.run(scenario())
    assert manual is None
    assert persistence.calls == []


def test_close_cancels_pending_save():
    async def scenario():
        persistence = FakePersistence()
        async with make_session(persistence) as session:
            session.set_content("closing soon")
            assert session.has_pending_save
        assert session.closed
        assert not session.has_pending_save
        session.set_content("after close")
        await asyncio.sleep(INTERVAL * 3)
        return persistence

    assert asyncio.run(scenario()).calls == []


def test_snapshot_reports_state():
    async def scenario():
        session = make_session(FakePersistence(), initial_content="one")
        session.set_content("<p>one two</p>")
        snap = session.snapshot()
        session.close()
        return snap

    snap = asyncio.run(scenario())
    assert snap["chapterId"] == CHAPTER_ID
    assert snap["state"] == "dirty-waiting"
    assert snap["isDirty"] is True
    assert snap["hasPendingSave"] is True
    assert snap["wordCount"] == 2
    assert snap["lastSavedAt"] is None
