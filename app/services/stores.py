"""Persistence seams for the storybook engine.

The engine depends only on the protocols below. ``Sql*`` classes implement
them over a SQLAlchemy session; every write commits on its own, so each
record update is atomic but multi-record changes are not transactional.
Business rules (monotonic counters, unlock policy) live in the engine, not
here.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import DuplicateEntityError
from app.db.models import Chapter, Hero, StoryBook


class HeroProvider(Protocol):
    def find_hero_by_id(self, hero_id: uuid.UUID) -> Hero | None: ...


class StoryBookStore(Protocol):
    def create(self, storybook: StoryBook) -> StoryBook: ...

    def find_by_id(self, storybook_id: uuid.UUID) -> StoryBook | None: ...

    def find_by_hero_id(self, hero_id: uuid.UUID) -> StoryBook | None: ...

    def update(self, storybook_id: uuid.UUID, **fields: Any) -> StoryBook: ...

    def find_premium_with_locked_chapters(self) -> list[StoryBook]: ...


class ChapterStore(Protocol):
    def create(self, chapter: Chapter) -> Chapter: ...

    def find_all_by_storybook(self, storybook_id: uuid.UUID) -> list[Chapter]: ...

    def find_one(self, storybook_id: uuid.UUID, chapter_number: int) -> Chapter | None: ...

    def update(self, chapter_id: uuid.UUID, **fields: Any) -> Chapter: ...

    def mark_unlocked(self, storybook_id: uuid.UUID, chapter_numbers: Iterable[int]) -> None: ...


class SqlHeroProvider:
    def __init__(self, db: Session) -> None:
        self._db = db

    def find_hero_by_id(self, hero_id: uuid.UUID) -> Hero | None:
        return self._db.get(Hero, hero_id)


class SqlStoryBookStore:
    def __init__(self, db: Session) -> None:
        self._db = db

    def create(self, storybook: StoryBook) -> StoryBook:
        self._db.add(storybook)
        try:
            self._db.commit()
        except IntegrityError as exc:
            # hero_id is unique; another writer created this hero's storybook first.
            self._db.rollback()
            raise DuplicateEntityError("StoryBook", f"hero={storybook.hero_id}") from exc
        return storybook

    def find_by_id(self, storybook_id: uuid.UUID) -> StoryBook | None:
        return self._db.get(StoryBook, storybook_id, populate_existing=True)

    def find_by_hero_id(self, hero_id: uuid.UUID) -> StoryBook | None:
        stmt = select(StoryBook).where(StoryBook.hero_id == hero_id)
        return self._db.execute(stmt).scalars().first()

    def update(self, storybook_id: uuid.UUID, **fields: Any) -> StoryBook:
        storybook = self._db.get(StoryBook, storybook_id)
        if storybook is None:
            raise KeyError(f"storybook {storybook_id} does not exist")
        for key, value in fields.items():
            setattr(storybook, key, value)
        self._db.commit()
        return storybook

    def find_premium_with_locked_chapters(self) -> list[StoryBook]:
        stmt = (
            select(StoryBook)
            .where(StoryBook.is_premium.is_(True))
            .where(StoryBook.chapters_unlocked_count < StoryBook.chapters_total_count)
            .order_by(StoryBook.created_at)
        )
        return list(self._db.execute(stmt).scalars().all())


class SqlChapterStore:
    def __init__(self, db: Session) -> None:
        self._db = db

    def create(self, chapter: Chapter) -> Chapter:
        self._db.add(chapter)
        self._db.commit()
        return chapter

    def find_all_by_storybook(self, storybook_id: uuid.UUID) -> list[Chapter]:
        stmt = (
            select(Chapter)
            .where(Chapter.storybook_id == storybook_id)
            .order_by(Chapter.chapter_number)
        )
        return list(self._db.execute(stmt).scalars().all())

    def find_one(self, storybook_id: uuid.UUID, chapter_number: int) -> Chapter | None:
        stmt = select(Chapter).where(
            Chapter.storybook_id == storybook_id,
            Chapter.chapter_number == chapter_number,
        )
        return self._db.execute(stmt).scalars().first()

    def update(self, chapter_id: uuid.UUID, **fields: Any) -> Chapter:
        chapter = self._db.get(Chapter, chapter_id)
        if chapter is None:
            raise KeyError(f"chapter {chapter_id} does not exist")
        for key, value in fields.items():
            setattr(chapter, key, value)
        self._db.commit()
        return chapter

    def mark_unlocked(self, storybook_id: uuid.UUID, chapter_numbers: Iterable[int]) -> None:
        numbers = list(chapter_numbers)
        if not numbers:
            return
        self._db.execute(
            update(Chapter)
            .where(Chapter.storybook_id == storybook_id)
            .where(Chapter.chapter_number.in_(numbers))
            .values(is_unlocked=True)
        )
        self._db.commit()
