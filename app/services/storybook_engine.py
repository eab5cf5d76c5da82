"""Storybook chapter unlock state machine.

Per chapter number the lifecycle is::

    absent -> placeholder (locked) -> generated (unlocked)
                                   -> quota placeholder (unlocked)

A generated chapter never goes back to being a placeholder; regenerating
it overwrites it in place. ``StoryBook.chapters_unlocked_count`` and
``chapters_total_count`` only ever grow, and unlocked <= total holds after
every operation, including ones that end in a quota failure.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from app.core.exceptions import (
    ConfigurationError,
    DuplicateEntityError,
    EntityNotFoundError,
    GenerationError,
    InvalidArgumentError,
    QuotaExceededError,
)
from app.core.metrics import record_chapters_unlocked, record_generation_outcome
from app.core.request_context import log_context
from app.db.models import Chapter, Hero, StoryBook
from app.services.chapter_generator import ChapterGenerator, HeroContext
from app.services.quota_breaker import QuotaBreaker, is_quota_error
from app.services.stores import ChapterStore, HeroProvider, StoryBookStore

logger = logging.getLogger(__name__)

PREMIUM_CHAPTERS_TOTAL = 10
UNLOCK_BUNDLE_SIZE = 10

QUOTA_ERROR_TYPE = "quota_exceeded"
QUOTA_PLACEHOLDER_CONTENT = (
    "## The Cosmic Energies Are Depleted\n\n"
    "The stars have dimmed for a moment and the storytellers of the cosmos must rest. "
    "This chapter of your hero's saga could not be written right now.\n\n"
    "Please return a little later, when the cosmic energies have been restored, "
    "and the tale will continue."
)
AUTO_GENERATED_PROMPT = "Auto-generated chapter"

_ONE_DAY = timedelta(days=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UnlockStatus(str, Enum):
    OK = "ok"
    QUOTA_DEGRADED = "quota_degraded"
    FAILED = "failed"


@dataclass
class UnlockOutcome:
    """Result of generating a range of chapters, decided before anything is persisted.

    Every non-OK outcome carries the error that the caller re-raises once
    the partial result is saved.
    """

    status: UnlockStatus
    new_unlocked_count: int
    attempted: list[int] = field(default_factory=list)
    error: BaseException | None = None

    def __post_init__(self) -> None:
        if self.status is not UnlockStatus.OK and self.error is None:
            raise ValueError(f"{self.status.value} unlock outcome requires an error")


@dataclass(frozen=True)
class ChapterView:
    chapter_id: uuid.UUID
    storybook_id: uuid.UUID
    chapter_number: int
    content: str
    summary: str
    is_unlocked: bool
    generated_at: datetime | None
    error_type: str | None

    @classmethod
    def from_chapter(cls, chapter: Chapter, redact: bool) -> ChapterView:
        return cls(
            chapter_id=chapter.chapter_id,
            storybook_id=chapter.storybook_id,
            chapter_number=chapter.chapter_number,
            content="" if redact else chapter.content,
            summary="" if redact else chapter.summary,
            is_unlocked=chapter.is_unlocked,
            generated_at=chapter.generated_at,
            error_type=chapter.error_type,
        )


@dataclass
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class StoryBookLocks:
    """In-process mutex per key, serialising work on the same storybook or hero.

    Entries live only while some thread holds or waits for them, so the
    registry does not grow with the number of storybooks ever touched.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[uuid.UUID, _LockEntry] = {}

    @contextmanager
    def hold(self, key: uuid.UUID) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]



class StoryBookEngine:
    def __init__(
        self,
        storybooks: StoryBookStore,
        chapters: ChapterStore,
        heroes: HeroProvider,
        generator: ChapterGenerator,
        breaker: QuotaBreaker,
        *,
        premium_chapters_total: int = PREMIUM_CHAPTERS_TOTAL,
        unlock_bundle_size: int = UNLOCK_BUNDLE_SIZE,
        locks: StoryBookLocks | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storybooks = storybooks
        self._chapters = chapters
        self._heroes = heroes
        self._generator = generator
        self._breaker = breaker
        self._premium_chapters_total = premium_chapters_total
        self._unlock_bundle_size = unlock_bundle_size
        self._locks = locks if locks is not None else StoryBookLocks()
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_storybook(self, hero_id: uuid.UUID, is_premium: bool = False, user_prompt: str = "") -> StoryBook:
        """Create a storybook, generate chapter 1 and reserve premium slots.

        The storybook survives a failed chapter 1: a quota failure leaves an
        explanatory placeholder, a generic failure leaves no chapter at all.
        Either way the error propagates after the premium placeholders exist.
        """
        hero = self._require_hero(hero_id)
        now = self._clock()
        storybook = self._storybooks.create(
            StoryBook(
                storybook_id=uuid.uuid4(),
                hero_id=hero_id,
                is_premium=is_premium,
                chapters_total_count=self._premium_chapters_total if is_premium else 1,
                chapters_unlocked_count=1,
                initial_chapter_generated_at=None,
                has_provider_quota_error=False,
                created_at=now,
                updated_at=now,
            )
        )
        storybook_id = storybook.storybook_id
        logger.info("storybook_created", extra={"hero_id": str(hero_id), "is_premium": is_premium})

        degraded = False
        try:
            chapter = self.generate_and_save_chapter(storybook_id, hero, user_prompt, 1)
            degraded = chapter.error_type == QUOTA_ERROR_TYPE
            self._stamp_initial_generation(storybook_id)
        except QuotaExceededError:
            degraded = True
            self._stamp_initial_generation(storybook_id)
            raise
        finally:
            if degraded:
                self._storybooks.update(storybook_id, has_provider_quota_error=True, updated_at=self._clock())
            if is_premium:
                self._ensure_placeholders(storybook_id, range(2, self._premium_chapters_total + 1))

        record_chapters_unlocked("create", 1)
        return self._require_storybook(storybook_id)

    def get_or_create_storybook(
        self, hero_id: uuid.UUID, is_premium: bool = False, user_prompt: str = ""
    ) -> StoryBook:
        """Return the hero's storybook, creating it on first use.

        An existing storybook is returned untouched; ``is_premium`` and
        ``user_prompt`` only apply to creation. Concurrent first calls for
        one hero create a single storybook: in-process callers queue on the
        hero, and a row written by another process is picked up after the
        unique-key collision.
        """
        with self._locks.hold(hero_id):
            existing = self._storybooks.find_by_hero_id(hero_id)
            if existing is not None:
                return existing
            try:
                return self.create_storybook(hero_id, is_premium, user_prompt)
            except DuplicateEntityError:
                existing = self._storybooks.find_by_hero_id(hero_id)
                if existing is None:
                    raise
                logger.info("storybook_created_concurrently", extra={"hero_id": str(hero_id)})
                return existing

    def upgrade_to_premium(self, storybook_id: uuid.UUID) -> StoryBook:
        with self._locks.hold(storybook_id):
            storybook = self._require_storybook(storybook_id)
            total = max(storybook.chapters_total_count, self._premium_chapters_total)
            storybook = self._storybooks.update(
                storybook_id,
                is_premium=True,
                chapters_total_count=total,
                updated_at=self._clock(),
            )
            self._ensure_placeholders(storybook_id, range(1, total + 1))
            logger.info("storybook_upgraded", extra={"chapters_total_count": total})
            return storybook

    # ------------------------------------------------------------------
    # Chapter production
    # ------------------------------------------------------------------

    def generate_and_save_chapter(
        self,
        storybook_id: uuid.UUID,
        hero: Hero,
        user_prompt: str,
        chapter_number: int,
    ) -> Chapter:
        """Generate one chapter and write it over any placeholder.

        While the quota breaker is open the provider is not called and the
        chapter becomes a visible quota placeholder instead. A quota failure
        from the provider trips the breaker, writes the same placeholder and
        raises ``QuotaExceededError``. Any other failure propagates and
        leaves the stored chapter untouched.
        """
        with log_context(storybook_id=storybook_id, chapter_number=chapter_number):
            if self._breaker.is_exceeded():
                record_generation_outcome("quota")
                logger.info("chapter_quota_placeholder")
                return self._write_quota_placeholder(storybook_id, chapter_number, user_prompt)

            previous_summary = None
            if chapter_number > 1:
                previous = self._chapters.find_one(storybook_id, chapter_number - 1)
                if previous is not None and previous.summary:
                    previous_summary = previous.summary

            try:
                generated = self._generator.generate_chapter(
                    HeroContext.from_hero(hero),
                    chapter_number,
                    previous_summary,
                    user_prompt,
                )
            except Exception as exc:
                if not is_quota_error(exc):
                    record_generation_outcome("error")
                    logger.warning("chapter_generation_failed", extra={"error": repr(exc)})
                    raise
                self._breaker.set_exceeded(True)
                record_generation_outcome("quota")
                self._write_quota_placeholder(storybook_id, chapter_number, user_prompt)
                raise QuotaExceededError(
                    f"Quota exceeded while generating chapter {chapter_number}",
                    retry_after=self._breaker.retry_after(),
                ) from exc

            record_generation_outcome("success")
            chapter = self._upsert_chapter(
                storybook_id,
                chapter_number,
                content=generated.content,
                summary=generated.summary,
                is_unlocked=True,
                generated_at=self._clock(),
                error_type=None,
                prompt_used=user_prompt or AUTO_GENERATED_PROMPT,
            )
            logger.info("chapter_generated")
            return chapter

    def regenerate_chapter(self, storybook_id: uuid.UUID, chapter_number: int, user_prompt: str = "") -> Chapter:
        """Repair an unlocked chapter, typically a quota placeholder."""
        with self._locks.hold(storybook_id):
            storybook = self._require_storybook(storybook_id)
            if chapter_number < 1 or chapter_number > storybook.chapters_unlocked_count:
                raise InvalidArgumentError(
                    f"chapter {chapter_number} is not unlocked",
                    detail="Only unlocked chapters can be regenerated",
                )
            hero = self._require_hero(storybook.hero_id)
            chapter = self.generate_and_save_chapter(storybook_id, hero, user_prompt, chapter_number)
            if chapter_number == 1:
                self._stamp_initial_generation(storybook_id)
            return chapter

    # ------------------------------------------------------------------
    # Unlocking
    # ------------------------------------------------------------------

    def unlock_chapters(self, storybook_id: uuid.UUID, chapters_to_unlock: int | None = None) -> StoryBook:
        return self._unlock(storybook_id, chapters_to_unlock, trigger="unlock")

    def check_and_unlock_daily_chapters(self, storybook_id: uuid.UUID) -> StoryBook | None:
        """Unlock whatever the one-chapter-per-day schedule allows by now.

        Returns the updated storybook, or None when nothing became eligible.
        The eligibility check and the unlock run under the storybook lock,
        so concurrent checks never unlock past the schedule.
        """
        with self._locks.hold(storybook_id):
            storybook = self._require_storybook(storybook_id)
            if not storybook.is_premium:
                return None
            if storybook.chapters_unlocked_count >= storybook.chapters_total_count:
                return None
            if storybook.initial_chapter_generated_at is None:
                return None

            elapsed = self._clock() - _as_utc(storybook.initial_chapter_generated_at)
            days_since_start = max(elapsed // _ONE_DAY, 0)
            expected_unlocked = min(days_since_start + 1, storybook.chapters_total_count)

            if expected_unlocked > storybook.chapters_unlocked_count:
                return self._unlock(
                    storybook_id,
                    expected_unlocked - storybook.chapters_unlocked_count,
                    trigger="daily",
                )
            return None

    def _unlock(self, storybook_id: uuid.UUID, chapters_to_unlock: int | None, trigger: str) -> StoryBook:
        count = self._unlock_bundle_size if chapters_to_unlock is None else chapters_to_unlock
        if count <= 0:
            raise InvalidArgumentError(
                f"chapters_to_unlock must be positive, got {count}",
                detail="Number of chapters to unlock must be positive",
            )

        with self._locks.hold(storybook_id), log_context(storybook_id=storybook_id):
            storybook = self._require_storybook(storybook_id)
            if self._breaker.is_exceeded():
                raise QuotaExceededError(
                    "Chapter unlock rejected while provider quota is exhausted",
                    retry_after=self._breaker.retry_after(),
                )

            current_unlocked = storybook.chapters_unlocked_count
            new_unlocked = current_unlocked + count
            if new_unlocked <= current_unlocked:
                return storybook

            hero = self._require_hero(storybook.hero_id)
            outcome = self._generate_range(storybook_id, hero, current_unlocked + 1, new_unlocked)
            return self._apply_outcome(storybook, outcome, trigger)

    def _generate_range(self, storybook_id: uuid.UUID, hero: Hero, first: int, last: int) -> UnlockOutcome:
        """Generate chapters ``first..last`` in order.

        After a quota failure the remaining numbers get quota placeholders
        without calling the provider, so every number in the range ends up
        with a visible row. A generic failure stops the loop.
        """
        attempted: list[int] = []
        quota_error: QuotaExceededError | None = None
        for chapter_number in range(first, last + 1):
            attempted.append(chapter_number)
            if quota_error is not None:
                self._write_quota_placeholder(storybook_id, chapter_number, "")
                continue
            try:
                self.generate_and_save_chapter(storybook_id, hero, "", chapter_number)
            except QuotaExceededError as exc:
                quota_error = exc
            except Exception as exc:
                return UnlockOutcome(UnlockStatus.FAILED, first - 1, attempted, exc)

        if quota_error is not None:
            return UnlockOutcome(UnlockStatus.QUOTA_DEGRADED, last, attempted, quota_error)
        return UnlockOutcome(UnlockStatus.OK, last, attempted)

    def _apply_outcome(self, storybook: StoryBook, outcome: UnlockOutcome, trigger: str) -> StoryBook:
        storybook_id = storybook.storybook_id
        previous_total = storybook.chapters_total_count
        previous_unlocked = storybook.chapters_unlocked_count

        if outcome.status is UnlockStatus.FAILED:
            logger.warning(
                "chapter_unlock_failed",
                extra={"attempted": outcome.attempted, "trigger": trigger},
            )
            raise outcome.error

        self._chapters.mark_unlocked(storybook_id, outcome.attempted)

        if outcome.status is UnlockStatus.OK:
            next_number = outcome.new_unlocked_count + 1
            if next_number <= previous_total:
                self._ensure_placeholders(storybook_id, [next_number])

        fields: dict[str, Any] = {
            "chapters_unlocked_count": outcome.new_unlocked_count,
            "chapters_total_count": max(previous_total, outcome.new_unlocked_count),
            "updated_at": self._clock(),
        }
        if storybook.initial_chapter_generated_at is None:
            fields["initial_chapter_generated_at"] = self._clock()
        if outcome.status is UnlockStatus.QUOTA_DEGRADED:
            fields["has_provider_quota_error"] = True

        updated = self._storybooks.update(storybook_id, **fields)
        record_chapters_unlocked(trigger, outcome.new_unlocked_count - previous_unlocked)
        logger.info(
            "chapters_unlocked",
            extra={
                "trigger": trigger,
                "status": outcome.status.value,
                "previous_count": previous_unlocked,
                "new_count": outcome.new_unlocked_count,
            },
        )

        if outcome.status is UnlockStatus.QUOTA_DEGRADED:
            raise outcome.error
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_storybook(self, storybook_id: uuid.UUID) -> StoryBook:
        """Fetch a storybook, first applying any daily unlock that is due."""
        try:
            updated = self.check_and_unlock_daily_chapters(storybook_id)
        except (QuotaExceededError, GenerationError, ConfigurationError) as exc:
            logger.warning(
                "daily_unlock_on_read_failed",
                extra={"storybook_id": str(storybook_id), "error": repr(exc)},
            )
            return self._require_storybook(storybook_id)
        return updated or self._require_storybook(storybook_id)

    def get_storybook_for_hero(self, hero_id: uuid.UUID) -> StoryBook:
        storybook = self._storybooks.find_by_hero_id(hero_id)
        if storybook is None:
            raise EntityNotFoundError("StoryBook", f"hero={hero_id}")
        return self.get_storybook(storybook.storybook_id)

    def get_chapters(self, storybook_id: uuid.UUID, include_locked_content: bool = False) -> list[ChapterView]:
        self._require_storybook(storybook_id)
        return [
            ChapterView.from_chapter(chapter, redact=not chapter.is_unlocked and not include_locked_content)
            for chapter in self._chapters.find_all_by_storybook(storybook_id)
        ]

    def next_unlock_at(self, storybook: StoryBook) -> datetime | None:
        if not storybook.is_premium or storybook.initial_chapter_generated_at is None:
            return None
        if storybook.chapters_unlocked_count >= storybook.chapters_total_count:
            return None
        return _as_utc(storybook.initial_chapter_generated_at) + storybook.chapters_unlocked_count * _ONE_DAY

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_storybook(self, storybook_id: uuid.UUID) -> StoryBook:
        storybook = self._storybooks.find_by_id(storybook_id)
        if storybook is None:
            raise EntityNotFoundError("StoryBook", storybook_id)
        return storybook

    def _require_hero(self, hero_id: uuid.UUID) -> Hero:
        hero = self._heroes.find_hero_by_id(hero_id)
        if hero is None:
            raise EntityNotFoundError("Hero", hero_id)
        return hero

    def _stamp_initial_generation(self, storybook_id: uuid.UUID) -> None:
        storybook = self._require_storybook(storybook_id)
        if storybook.initial_chapter_generated_at is None:
            self._storybooks.update(
                storybook_id,
                initial_chapter_generated_at=self._clock(),
                updated_at=self._clock(),
            )

    def _write_quota_placeholder(self, storybook_id: uuid.UUID, chapter_number: int, user_prompt: str) -> Chapter:
        return self._upsert_chapter(
            storybook_id,
            chapter_number,
            content=QUOTA_PLACEHOLDER_CONTENT,
            summary="",
            is_unlocked=True,
            generated_at=self._clock(),
            error_type=QUOTA_ERROR_TYPE,
            prompt_used=user_prompt or AUTO_GENERATED_PROMPT,
        )

    def _upsert_chapter(self, storybook_id: uuid.UUID, chapter_number: int, **fields: Any) -> Chapter:
        now = self._clock()
        existing = self._chapters.find_one(storybook_id, chapter_number)
        if existing is not None:
            return self._chapters.update(existing.chapter_id, updated_at=now, **fields)
        return self._chapters.create(
            Chapter(
                chapter_id=uuid.uuid4(),
                storybook_id=storybook_id,
                chapter_number=chapter_number,
                created_at=now,
                updated_at=now,
                **fields,
            )
        )

    def _ensure_placeholders(self, storybook_id: uuid.UUID, chapter_numbers) -> None:
        now = self._clock()
        existing = {c.chapter_number for c in self._chapters.find_all_by_storybook(storybook_id)}
        for chapter_number in chapter_numbers:
            if chapter_number in existing:
                continue
            self._chapters.create(
                Chapter(
                    chapter_id=uuid.uuid4(),
                    storybook_id=storybook_id,
                    chapter_number=chapter_number,
                    content="",
                    summary="",
                    is_unlocked=False,
                    generated_at=None,
                    error_type=None,
                    prompt_used="",
                    created_at=now,
                    updated_at=now,
                )
            )
