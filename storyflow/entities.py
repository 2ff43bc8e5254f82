# storyflow/entities.py
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Index,
    JSON,
    text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

Base = declarative_base()

VERSION_TYPES = ("auto", "manual", "ai-assisted")
SUGGESTION_TYPES = ("plot", "character", "style")
MESSAGE_ROLES = ("user", "assistant")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Story(Base, TimestampMixin):
    __tablename__ = "stories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    # stories created out of a world-building foundation keep a link to it
    foundation_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("foundations.id", ondelete="SET NULL"),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    genre: Mapped[str | None] = mapped_column(String)
    theme: Mapped[str | None] = mapped_column(String)
    setting: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_stories_user_id", "user_id"),
    )


class Chapter(Base, TimestampMixin):
    __tablename__ = "chapters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_id: Mapped[int] = mapped_column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    # rich-text markup as produced by the editor
    content: Mapped[str | None] = mapped_column(Text)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    __table_args__ = (
        Index("ix_chapters_story_id", "story_id"),
    )


class Character(Base):
    __tablename__ = "characters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_id: Mapped[int] = mapped_column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str | None] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text)
    traits: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    secrets: Mapped[str | None] = mapped_column(Text)
    color: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Version(Base):
    """
    Immutable snapshot of a chapter. Rows are only ever inserted.
    """
    __tablename__ = "versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chapter_id: Mapped[int] = mapped_column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    # 'auto', 'manual', 'ai-assisted'
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_versions_chapter_id", "chapter_id"),
    )


class Suggestion(Base):
    __tablename__ = "suggestions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chapter_id: Mapped[int] = mapped_column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False)
    # 'plot', 'character', 'style'
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Foundation(Base, TimestampMixin):
    """
    World-building workspace. Stage flags drive the guided creation flow:
    genre -> environment -> world -> characters.
    """
    __tablename__ = "foundations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    genre: Mapped[str] = mapped_column(String, nullable=False, default="")
    current_stage: Mapped[str] = mapped_column(String, nullable=False, default="genre")
    genre_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    environment_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    world_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    character_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # profiles produced by the builder stages
    genre_details: Mapped[dict | None] = mapped_column(JSON)
    world_details: Mapped[dict | None] = mapped_column(JSON)
    # assistant conversation thread, see history_cache.HistoryCache
    thread_id: Mapped[str | None] = mapped_column(String)


class FoundationMessage(Base):
    __tablename__ = "foundation_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    foundation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("foundations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_foundation_messages_foundation_id", "foundation_id"),
    )
