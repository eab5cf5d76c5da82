from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import Uuid

from app.db.base import Base


class Hero(Base):
    __tablename__ = "heroes"

    hero_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    western_zodiac: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    chinese_zodiac: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    backstory: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    storybook: Mapped[StoryBook | None] = relationship(back_populates="hero", uselist=False)


class StoryBook(Base):
    __tablename__ = "storybooks"

    storybook_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    hero_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("heroes.hero_id"), nullable=False, unique=True)
    is_premium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    chapters_total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    chapters_unlocked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    initial_chapter_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    has_provider_quota_error: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    hero: Mapped[Hero] = relationship(back_populates="storybook")
    chapters: Mapped[list[Chapter]] = relationship(
        back_populates="storybook",
        cascade="all, delete-orphan",
        order_by="Chapter.chapter_number",
    )


class Chapter(Base):
    __tablename__ = "chapters"
    __table_args__ = (UniqueConstraint("storybook_id", "chapter_number", name="uq_chapters_storybook_number"),)

    chapter_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    storybook_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("storybooks.storybook_id"), nullable=False)
    chapter_number: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    prompt_used: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    storybook: Mapped[StoryBook] = relationship(back_populates="chapters")
