# storyflow/storage.py

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy.orm import Session

from storyflow.entities import (
    MESSAGE_ROLES,
    SUGGESTION_TYPES,
    VERSION_TYPES,
    Base,
    Chapter,
    Character,
    Foundation,
    FoundationMessage,
    Story,
    Suggestion,
    User,
    Version,
)
from storyflow.text_utils import count_words

logger = logging.getLogger("storyflow")

DEMO_USER_ID = 1


class NotFoundError(LookupError):
    pass


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# -----------------------
# Row -> JSON-ready dicts (camelCase, the shape the web client reads)
# -----------------------

def user_to_dict(u: User) -> Dict[str, Any]:
    return {
        "id": u.id,
        "username": u.username,
        "displayName": u.display_name,
        "email": u.email,
        "createdAt": _iso(u.created_at),
    }


def story_to_dict(s: Story) -> Dict[str, Any]:
    return {
        "id": s.id,
        "userId": s.user_id,
        "foundationId": s.foundation_id,
        "title": s.title,
        "genre": s.genre,
        "theme": s.theme,
        "setting": s.setting,
        "createdAt": _iso(s.created_at),
        "updatedAt": _iso(s.updated_at),
    }


def chapter_to_dict(c: Chapter) -> Dict[str, Any]:
    return {
        "id": c.id,
        "storyId": c.story_id,
        "title": c.title,
        "content": c.content,
        "order": c.order,
        "wordCount": c.word_count,
        "createdAt": _iso(c.created_at),
        "updatedAt": _iso(c.updated_at),
    }


def character_to_dict(c: Character) -> Dict[str, Any]:
    return {
        "id": c.id,
        "storyId": c.story_id,
        "name": c.name,
        "role": c.role,
        "description": c.description,
        "traits": list(c.traits or []),
        "secrets": c.secrets,
        "color": c.color,
        "createdAt": _iso(c.created_at),
    }


def version_to_dict(v: Version) -> Dict[str, Any]:
    return {
        "id": v.id,
        "chapterId": v.chapter_id,
        "content": v.content,
        "wordCount": v.word_count,
        "type": v.type,
        "createdAt": _iso(v.created_at),
    }


def suggestion_to_dict(s: Suggestion) -> Dict[str, Any]:
    return {
        "id": s.id,
        "chapterId": s.chapter_id,
        "type": s.type,
        "content": s.content,
        "used": s.used,
        "createdAt": _iso(s.created_at),
    }


def foundation_to_dict(f: Foundation) -> Dict[str, Any]:
    return {
        "id": f.id,
        "userId": f.user_id,
        "name": f.name,
        "description": f.description,
        "genre": f.genre,
        "currentStage": f.current_stage,
        "genreCompleted": f.genre_completed,
        "environmentCompleted": f.environment_completed,
        "worldCompleted": f.world_completed,
        "characterCompleted": f.character_completed,
        "genreDetails": f.genre_details,
        "worldDetails": f.world_details,
        "threadId": f.thread_id,
        "createdAt": _iso(f.created_at),
        "updatedAt": _iso(f.updated_at),
    }


def foundation_message_to_dict(m: FoundationMessage) -> Dict[str, Any]:
    return {
        "id": m.id,
        "foundationId": m.foundation_id,
        "role": m.role,
        "content": m.content,
        "createdAt": _iso(m.created_at),
    }


# camelCase request keys -> column names, per entity
_STORY_FIELDS = {"userId": "user_id", "foundationId": "foundation_id", "title": "title",
                 "genre": "genre", "theme": "theme", "setting": "setting"}
_CHAPTER_FIELDS = {"storyId": "story_id", "title": "title", "content": "content",
                   "order": "order", "wordCount": "word_count"}
_CHARACTER_FIELDS = {"storyId": "story_id", "name": "name", "role": "role", "description": "description",
                     "traits": "traits", "secrets": "secrets", "color": "color"}
_SUGGESTION_FIELDS = {"chapterId": "chapter_id", "type": "type", "content": "content", "used": "used"}
_FOUNDATION_FIELDS = {"userId": "user_id", "name": "name", "description": "description", "genre": "genre",
                      "currentStage": "current_stage", "genreCompleted": "genre_completed",
                      "environmentCompleted": "environment_completed", "worldCompleted": "world_completed",
                      "characterCompleted": "character_completed", "threadId": "thread_id",
                      "genreDetails": "genre_details", "worldDetails": "world_details"}


def _apply_fields(row, data: Dict[str, Any], mapping: Dict[str, str]) -> None:
    for key, value in (data or {}).items():
        column = mapping.get(key)
        if column is None:
            # tolerate snake_case callers
            if key in mapping.values():
                column = key
            else:
                continue
        setattr(row, column, value)


class Storage:
    """
    Persistence service over SQLAlchemy. Every method opens its own session
    and returns plain dicts, so callers never hold ORM state.
    """

    def __init__(self, session_factory: Callable[[], Session], engine=None):
        self.SessionFactory = session_factory
        if engine is not None:
            Base.metadata.create_all(engine)
        self._seed_demo_user()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.SessionFactory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _get_or_404(self, session: Session, model, entity_id: int, label: str):
        if entity_id is None:
            raise ValueError(f"{label} id is required")
        row = session.get(model, int(entity_id))
        if row is None:
            raise NotFoundError(f"{label} not found: {entity_id}")
        return row

    def _seed_demo_user(self) -> None:
        with self._session() as session:
            if session.get(User, DEMO_USER_ID) is None:
                session.add(User(
                    id=DEMO_USER_ID,
                    username="demo",
                    display_name="Demo User",
                    email="demo@storyflow.com",
                ))
                logger.info("[DB] Seeded demo user")

    # -----------------------
    # Users
    # -----------------------

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            u = session.get(User, int(user_id))
            return user_to_dict(u) if u else None

    def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            u = session.query(User).filter(User.username == username).one_or_none()
            return user_to_dict(u) if u else None

    def create_user(self, username: str, display_name: str | None = None, email: str | None = None) -> Dict[str, Any]:
        if not (username or "").strip():
            raise ValueError("username is required")
        with self._session() as session:
            u = User(username=username.strip(), display_name=display_name, email=email)
            session.add(u)
            session.flush()
            return user_to_dict(u)

    # -----------------------
    # Stories
    # -----------------------

    def get_stories(self, user_id: int) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = session.query(Story).filter(Story.user_id == int(user_id)).order_by(Story.id.asc()).all()
            return [story_to_dict(s) for s in rows]

    def get_stories_by_foundation(self, foundation_id: int) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = session.query(Story).filter(Story.foundation_id == int(foundation_id)).all()
            return [story_to_dict(s) for s in rows]

    def get_story(self, story_id: int) -> Dict[str, Any]:
        with self._session() as session:
            return story_to_dict(self._get_or_404(session, Story, story_id, "Story"))

    def create_story(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not (data.get("title") or "").strip():
            raise ValueError("Story title is required")
        with self._session() as session:
            s = Story(user_id=DEMO_USER_ID)
            _apply_fields(s, data, _STORY_FIELDS)
            session.add(s)
            session.flush()
            return story_to_dict(s)

    def update_story(self, story_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._session() as session:
            s = self._get_or_404(session, Story, story_id, "Story")
            _apply_fields(s, data, _STORY_FIELDS)
            session.flush()
            return story_to_dict(s)

    def delete_story(self, story_id: int) -> bool:
        with self._session() as session:
            s = session.get(Story, int(story_id))
            if s is None:
                return False
            chapter_ids = [cid for (cid,) in session.query(Chapter.id).filter(Chapter.story_id == s.id).all()]
            if chapter_ids:
                session.query(Version).filter(Version.chapter_id.in_(chapter_ids)).delete(synchronize_session=False)
                session.query(Suggestion).filter(Suggestion.chapter_id.in_(chapter_ids)).delete(synchronize_session=False)
                session.query(Chapter).filter(Chapter.id.in_(chapter_ids)).delete(synchronize_session=False)
            session.query(Character).filter(Character.story_id == s.id).delete(synchronize_session=False)
            session.delete(s)
            return True

    # -----------------------
    # Chapters
    # -----------------------

    def get_chapters(self, story_id: int) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = (
                session.query(Chapter)
                .filter(Chapter.story_id == int(story_id))
                .order_by(Chapter.order.asc(), Chapter.id.asc())
                .all()
            )
            return [chapter_to_dict(c) for c in rows]

    def get_chapter(self, chapter_id: int) -> Dict[str, Any]:
        with self._session() as session:
            return chapter_to_dict(self._get_or_404(session, Chapter, chapter_id, "Chapter"))

    def create_chapter(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not (data.get("title") or "").strip():
            raise ValueError("Chapter title is required")
        with self._session() as session:
            story_id = data.get("storyId", data.get("story_id"))
            self._get_or_404(session, Story, story_id, "Story")
            c = Chapter()
            _apply_fields(c, data, _CHAPTER_FIELDS)
            if c.order is None:
                existing = session.query(Chapter).filter(Chapter.story_id == int(story_id)).count()
                c.order = existing + 1
            if c.word_count is None:
                c.word_count = count_words(c.content or "")
            session.add(c)
            session.flush()
            return chapter_to_dict(c)

    def update_chapter(self, chapter_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._session() as session:
            c = self._get_or_404(session, Chapter, chapter_id, "Chapter")
            _apply_fields(c, data, _CHAPTER_FIELDS)
            if "content" in (data or {}) and "wordCount" not in data and "word_count" not in data:
                c.word_count = count_words(c.content or "")
            session.flush()
            return chapter_to_dict(c)

    def delete_chapter(self, chapter_id: int) -> bool:
        with self._session() as session:
            c = session.get(Chapter, int(chapter_id))
            if c is None:
                return False
            session.query(Version).filter(Version.chapter_id == c.id).delete(synchronize_session=False)
            session.query(Suggestion).filter(Suggestion.chapter_id == c.id).delete(synchronize_session=False)
            session.delete(c)
            return True

    # -----------------------
    # Characters
    # -----------------------

    def get_characters(self, story_id: int) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = session.query(Character).filter(Character.story_id == int(story_id)).order_by(Character.id).all()
            return [character_to_dict(c) for c in rows]

    def get_character(self, character_id: int) -> Dict[str, Any]:
        with self._session() as session:
            return character_to_dict(self._get_or_404(session, Character, character_id, "Character"))

    def create_character(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not (data.get("name") or "").strip():
            raise ValueError("Character name is required")
        with self._session() as session:
            self._get_or_404(session, Story, data.get("storyId", data.get("story_id")), "Story")
            c = Character(traits=[])
            _apply_fields(c, data, _CHARACTER_FIELDS)
            c.traits = list(c.traits or [])
            session.add(c)
            session.flush()
            return character_to_dict(c)

    def update_character(self, character_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._session() as session:
            c = self._get_or_404(session, Character, character_id, "Character")
            _apply_fields(c, data, _CHARACTER_FIELDS)
            c.traits = list(c.traits or [])
            session.flush()
            return character_to_dict(c)

    def delete_character(self, character_id: int) -> bool:
        with self._session() as session:
            c = session.get(Character, int(character_id))
            if c is None:
                return False
            session.delete(c)
            return True

    # -----------------------
    # Versions (append-only)
    # -----------------------

    def get_versions(self, chapter_id: int) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = (
                session.query(Version)
                .filter(Version.chapter_id == int(chapter_id))
                .order_by(Version.created_at.desc(), Version.id.desc())
                .all()
            )
            return [version_to_dict(v) for v in rows]

    def get_version(self, version_id: int) -> Dict[str, Any]:
        with self._session() as session:
            return version_to_dict(self._get_or_404(session, Version, version_id, "Version"))

    def create_version(
        self,
        chapter_id: int,
        content: str,
        word_count: int,
        version_type: str,
        sync_chapter: bool = False,
    ) -> Dict[str, Any]:
        """
        Append a version. With sync_chapter=True the chapter row takes the same
        content in the same transaction.
        """
        if version_type not in VERSION_TYPES:
            raise ValueError(f"Unknown version type: {version_type}")
        if content is None:
            raise ValueError("Version content is required")
        with self._session() as session:
            c = self._get_or_404(session, Chapter, chapter_id, "Chapter")
            v = Version(
                chapter_id=int(chapter_id),
                content=content,
                word_count=int(word_count or 0),
                type=version_type,
            )
            session.add(v)
            if sync_chapter:
                c.content = content
                c.word_count = int(word_count or 0)
            session.flush()
            logger.debug(f"[DB] Version {v.id} ({version_type}) created for chapter {chapter_id}")
            return version_to_dict(v)

    def restore_version(self, version_id: int) -> Dict[str, Any]:
        """
        Copy a version's content back onto its chapter. The history itself is
        left untouched; the editor records the restore as a new version on its
        next save.
        """
        with self._session() as session:
            v = self._get_or_404(session, Version, version_id, "Version")
            c = self._get_or_404(session, Chapter, v.chapter_id, "Chapter")
            c.content = v.content
            c.word_count = v.word_count
            session.flush()
            return chapter_to_dict(c)

    # -----------------------
    # Suggestions
    # -----------------------

    def get_suggestions(self, chapter_id: int) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = session.query(Suggestion).filter(Suggestion.chapter_id == int(chapter_id)).order_by(Suggestion.id).all()
            return [suggestion_to_dict(s) for s in rows]

    def get_suggestion(self, suggestion_id: int) -> Dict[str, Any]:
        with self._session() as session:
            return suggestion_to_dict(self._get_or_404(session, Suggestion, suggestion_id, "Suggestion"))

    def create_suggestion(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("type") not in SUGGESTION_TYPES:
            raise ValueError(f"Suggestion type must be one of {SUGGESTION_TYPES}")
        with self._session() as session:
            self._get_or_404(session, Chapter, data.get("chapterId", data.get("chapter_id")), "Chapter")
            s = Suggestion(used=False)
            _apply_fields(s, data, _SUGGESTION_FIELDS)
            session.add(s)
            session.flush()
            return suggestion_to_dict(s)

    def update_suggestion(self, suggestion_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._session() as session:
            s = self._get_or_404(session, Suggestion, suggestion_id, "Suggestion")
            _apply_fields(s, data, _SUGGESTION_FIELDS)
            session.flush()
            return suggestion_to_dict(s)

    def delete_suggestion(self, suggestion_id: int) -> bool:
        with self._session() as session:
            s = session.get(Suggestion, int(suggestion_id))
            if s is None:
                return False
            session.delete(s)
            return True

    # -----------------------
    # Foundations
    # -----------------------

    def get_foundations(self, user_id: int) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = session.query(Foundation).filter(Foundation.user_id == int(user_id)).order_by(Foundation.id).all()
            return [foundation_to_dict(f) for f in rows]

    def get_foundation(self, foundation_id: int) -> Dict[str, Any]:
        with self._session() as session:
            return foundation_to_dict(self._get_or_404(session, Foundation, foundation_id, "Foundation"))

    def get_characters_by_foundation(self, foundation_id: int) -> List[Dict[str, Any]]:
        """Characters of every story built on the foundation."""
        with self._session() as session:
            self._get_or_404(session, Foundation, foundation_id, "Foundation")
            rows = (
                session.query(Character)
                .join(Story, Character.story_id == Story.id)
                .filter(Story.foundation_id == int(foundation_id))
                .order_by(Character.id)
                .all()
            )
            return [character_to_dict(c) for c in rows]

    def get_genre_details_by_foundation(self, foundation_id: int) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            f = self._get_or_404(session, Foundation, foundation_id, "Foundation")
            return f.genre_details

    def create_foundation(self, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._session() as session:
            f = Foundation(
                user_id=DEMO_USER_ID,
                name="New Foundation",
                description="",
                genre="",
                current_stage="genre",
            )
            _apply_fields(f, data, _FOUNDATION_FIELDS)
            if not (f.name or "").strip():
                f.name = "New Foundation"
            session.add(f)
            session.flush()
            return foundation_to_dict(f)

    def update_foundation(self, foundation_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        with self._session() as session:
            f = self._get_or_404(session, Foundation, foundation_id, "Foundation")
            _apply_fields(f, data, _FOUNDATION_FIELDS)
            session.flush()
            return foundation_to_dict(f)

    def delete_foundation(self, foundation_id: int, force: bool = False) -> bool:
        """
        With force=True the stories built on this foundation go too; otherwise
        they are kept and detached.
        """
        self.get_foundation(foundation_id)
        if force:
            for story in self.get_stories_by_foundation(foundation_id):
                self.delete_story(story["id"])
        with self._session() as session:
            f = session.get(Foundation, int(foundation_id))
            if f is None:
                return False
            session.query(Story).filter(Story.foundation_id == f.id).update(
                {Story.foundation_id: None}, synchronize_session=False
            )
            session.query(FoundationMessage).filter(FoundationMessage.foundation_id == f.id).delete(
                synchronize_session=False
            )
            session.delete(f)
            return True

    def get_foundation_messages(self, foundation_id: int) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = (
                session.query(FoundationMessage)
                .filter(FoundationMessage.foundation_id == int(foundation_id))
                .order_by(FoundationMessage.created_at.asc(), FoundationMessage.id.asc())
                .all()
            )
            return [foundation_message_to_dict(m) for m in rows]

    def create_foundation_message(self, foundation_id: int, role: str, content: str) -> Dict[str, Any]:
        if not role or not content:
            raise ValueError("Role and content are required")
        if role not in MESSAGE_ROLES:
            raise ValueError("Role must be 'user' or 'assistant'")
        with self._session() as session:
            self._get_or_404(session, Foundation, foundation_id, "Foundation")
            m = FoundationMessage(foundation_id=int(foundation_id), role=role, content=content)
            session.add(m)
            session.flush()
            return foundation_message_to_dict(m)
