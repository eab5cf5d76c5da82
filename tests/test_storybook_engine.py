"""Behaviour of the storybook unlock state machine against in-memory stores."""

import threading
import uuid
from datetime import timedelta

import pytest
from hypothesis import given, settings, strategies as st

from app.core.exceptions import (
    ChapterProviderError,
    EntityNotFoundError,
    InvalidArgumentError,
    QuotaExceededError,
)
from app.core.openai_factory import OpenAINotConfiguredError
from app.services.quota_breaker import QuotaBreaker
from app.services.storybook_engine import (
    AUTO_GENERATED_PROMPT,
    QUOTA_ERROR_TYPE,
    QUOTA_PLACEHOLDER_CONTENT,
    StoryBookEngine,
    StoryBookLocks,
    UnlockOutcome,
    UnlockStatus,
)
from tests.fakes import (
    START,
    FakeClock,
    GatedGenerator,
    InMemoryChapterStore,
    InMemoryHeroProvider,
    InMemoryStoryBookStore,
    ScriptedGenerator,
    quota_error,
)


class TestCreateStoryBook:
    def test_free_storybook_has_one_generated_chapter(self, engine, heroes, chapters, generator):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)

        assert storybook.is_premium is False
        assert storybook.chapters_total_count == 1
        assert storybook.chapters_unlocked_count == 1
        assert storybook.initial_chapter_generated_at == START
        assert storybook.has_provider_quota_error is False

        assert chapters.numbers(storybook.storybook_id) == [1]
        chapter = chapters.find_one(storybook.storybook_id, 1)
        assert chapter.is_unlocked
        assert chapter.content == "Chapter 1 of Astra"
        assert chapter.summary == "summary of chapter 1"
        assert chapter.error_type is None
        assert chapter.prompt_used == AUTO_GENERATED_PROMPT
        assert generator.calls == [(1, None, "")]

    def test_premium_storybook_reserves_locked_placeholders(self, engine, heroes, chapters):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True, user_prompt="a tale of the sea")

        assert storybook.chapters_total_count == 10
        assert storybook.chapters_unlocked_count == 1
        assert chapters.numbers(storybook.storybook_id) == list(range(1, 11))

        first = chapters.find_one(storybook.storybook_id, 1)
        assert first.is_unlocked
        assert first.prompt_used == "a tale of the sea"
        for number in range(2, 11):
            placeholder = chapters.find_one(storybook.storybook_id, number)
            assert not placeholder.is_unlocked
            assert placeholder.content == ""
            assert placeholder.generated_at is None

    def test_user_prompt_reaches_generator(self, engine, heroes, generator):
        hero = heroes.add()
        engine.create_storybook(hero.hero_id, user_prompt="dragons, please")
        assert generator.calls[0][2] == "dragons, please"

    def test_unknown_hero(self, engine, storybooks):
        with pytest.raises(EntityNotFoundError):
            engine.create_storybook(uuid.uuid4())
        assert storybooks.rows == {}

    def test_breaker_open_writes_quota_placeholder(self, engine, heroes, chapters, breaker, generator):
        hero = heroes.add()
        breaker.set_exceeded(True)

        storybook = engine.create_storybook(hero.hero_id)

        assert generator.calls == []
        assert storybook.has_provider_quota_error is True
        assert storybook.initial_chapter_generated_at == START
        chapter = chapters.find_one(storybook.storybook_id, 1)
        assert chapter.error_type == QUOTA_ERROR_TYPE
        assert chapter.content == QUOTA_PLACEHOLDER_CONTENT
        assert chapter.is_unlocked

    def test_quota_failure_keeps_storybook_and_placeholders(self, heroes, storybooks, chapters, breaker, clock):
        generator = ScriptedGenerator(failures={1: quota_error()})
        engine = StoryBookEngine(storybooks, chapters, heroes, generator, breaker, clock=clock)
        hero = heroes.add()

        with pytest.raises(QuotaExceededError) as exc_info:
            engine.create_storybook(hero.hero_id, is_premium=True)

        assert isinstance(exc_info.value.__cause__, ChapterProviderError)
        assert breaker.is_exceeded()
        storybook = storybooks.find_by_hero_id(hero.hero_id)
        assert storybook.has_provider_quota_error is True
        assert storybook.initial_chapter_generated_at == START
        assert chapters.numbers(storybook.storybook_id) == list(range(1, 11))
        assert chapters.find_one(storybook.storybook_id, 1).error_type == QUOTA_ERROR_TYPE

    def test_generic_failure_leaves_no_chapter_one(self, heroes, storybooks, chapters, breaker, clock):
        generator = ScriptedGenerator(failures={1: ChapterProviderError("boom", status_code=500)})
        engine = StoryBookEngine(storybooks, chapters, heroes, generator, breaker, clock=clock)
        hero = heroes.add()

        with pytest.raises(ChapterProviderError):
            engine.create_storybook(hero.hero_id)

        storybook = storybooks.find_by_hero_id(hero.hero_id)
        assert storybook is not None
        assert storybook.initial_chapter_generated_at is None
        assert chapters.numbers(storybook.storybook_id) == []
        assert not breaker.is_exceeded()


class TestGetOrCreate:
    def test_is_idempotent(self, engine, heroes, chapters, generator):
        hero = heroes.add()
        first = engine.get_or_create_storybook(hero.hero_id)
        second = engine.get_or_create_storybook(hero.hero_id, is_premium=True)

        assert first.storybook_id == second.storybook_id
        assert second.is_premium is False
        assert generator.chapter_numbers == [1]
        assert chapters.numbers(first.storybook_id) == [1]

    def test_returns_row_written_by_another_process(self, engine, heroes, storybooks, generator):
        hero = heroes.add()
        original = engine.create_storybook(hero.hero_id)
        storybooks.stale_hero_reads = 1

        found = engine.get_or_create_storybook(hero.hero_id, is_premium=True)

        assert found.storybook_id == original.storybook_id
        assert len(storybooks.rows) == 1
        assert generator.chapter_numbers == [1]

    def test_concurrent_first_calls_share_one_storybook(self, heroes, storybooks, chapters, breaker, clock):
        generator = GatedGenerator()
        engine = StoryBookEngine(storybooks, chapters, heroes, generator, breaker, clock=clock)
        hero = heroes.add()
        generator.hold_next_call()
        results = []

        def get_or_create():
            results.append(engine.get_or_create_storybook(hero.hero_id))

        first = threading.Thread(target=get_or_create)
        second = threading.Thread(target=get_or_create)
        first.start()
        assert generator.entered.wait(timeout=5)
        second.start()
        second.join(timeout=0.1)
        assert second.is_alive()
        generator.release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert len(results) == 2
        assert results[0].storybook_id == results[1].storybook_id
        assert len(storybooks.rows) == 1
        assert chapters.numbers(results[0].storybook_id) == [1]
        assert generator.chapter_numbers == [1]


class TestUnlockChapters:
    def test_free_storybook_end_to_end(self, engine, heroes, chapters, generator):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)

        updated = engine.unlock_chapters(storybook.storybook_id, 10)

        assert updated.chapters_total_count == 11
        assert updated.chapters_unlocked_count == 11
        assert chapters.numbers(storybook.storybook_id) == list(range(1, 12))
        assert all(c.is_unlocked for c in chapters.find_all_by_storybook(storybook.storybook_id))
        assert generator.chapter_numbers == list(range(1, 12))
        for chapter_number, previous_summary, _ in generator.calls[1:]:
            assert previous_summary == f"summary of chapter {chapter_number - 1}"

    def test_default_bundle_size(self, engine, heroes):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)
        updated = engine.unlock_chapters(storybook.storybook_id)
        assert updated.chapters_unlocked_count == 11

    def test_premium_unlock_beyond_total_grows_total(self, engine, heroes, chapters):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)

        updated = engine.unlock_chapters(storybook.storybook_id, 12)

        assert updated.chapters_unlocked_count == 13
        assert updated.chapters_total_count == 13
        assert chapters.numbers(storybook.storybook_id) == list(range(1, 14))

    def test_premium_unlock_keeps_next_placeholder(self, engine, heroes, chapters):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)

        updated = engine.unlock_chapters(storybook.storybook_id, 2)

        assert updated.chapters_unlocked_count == 3
        assert updated.chapters_total_count == 10
        assert not chapters.find_one(storybook.storybook_id, 4).is_unlocked

    @pytest.mark.parametrize("count", [0, -1, -10])
    def test_non_positive_count_rejected(self, engine, heroes, generator, count):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)

        with pytest.raises(InvalidArgumentError):
            engine.unlock_chapters(storybook.storybook_id, count)
        assert generator.chapter_numbers == [1]

    def test_unknown_storybook(self, engine):
        with pytest.raises(EntityNotFoundError):
            engine.unlock_chapters(uuid.uuid4(), 1)

    def test_rejected_while_breaker_open(self, engine, heroes, generator, breaker):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)
        breaker.set_exceeded(True)

        with pytest.raises(QuotaExceededError) as exc_info:
            engine.unlock_chapters(storybook.storybook_id, 3)

        assert exc_info.value.retry_after == START + timedelta(minutes=15)
        assert storybook.chapters_unlocked_count == 1
        assert generator.chapter_numbers == [1]

    def test_quota_failure_mid_unlock_still_advances(self, heroes, storybooks, chapters, breaker, clock):
        # Call 1 is chapter 1 at creation; call 3 is the second of the three unlocked chapters.
        generator = ScriptedGenerator(failures={3: quota_error()})
        engine = StoryBookEngine(storybooks, chapters, heroes, generator, breaker, clock=clock)
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)

        with pytest.raises(QuotaExceededError) as exc_info:
            engine.unlock_chapters(storybook.storybook_id, 3)

        assert isinstance(exc_info.value.__cause__, ChapterProviderError)
        assert generator.chapter_numbers == [1, 2, 3]
        assert breaker.is_exceeded()

        refreshed = storybooks.find_by_id(storybook.storybook_id)
        assert refreshed.chapters_unlocked_count == 4
        assert refreshed.chapters_total_count == 4
        assert refreshed.has_provider_quota_error is True

        assert chapters.numbers(storybook.storybook_id) == [1, 2, 3, 4]
        assert chapters.find_one(storybook.storybook_id, 2).error_type is None
        for number in (3, 4):
            chapter = chapters.find_one(storybook.storybook_id, number)
            assert chapter.is_unlocked
            assert chapter.error_type == QUOTA_ERROR_TYPE
            assert chapter.content == QUOTA_PLACEHOLDER_CONTENT

    def test_generic_failure_does_not_advance(self, heroes, storybooks, chapters, breaker, clock):
        generator = ScriptedGenerator(failures={3: ChapterProviderError("upstream 500", status_code=500)})
        engine = StoryBookEngine(storybooks, chapters, heroes, generator, breaker, clock=clock)
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)

        with pytest.raises(ChapterProviderError):
            engine.unlock_chapters(storybook.storybook_id, 3)

        refreshed = storybooks.find_by_id(storybook.storybook_id)
        assert refreshed.chapters_unlocked_count == 1
        assert refreshed.chapters_total_count == 1
        assert refreshed.has_provider_quota_error is False
        assert not breaker.is_exceeded()
        # Chapter 2 was written before the failure and is reused on retry.
        assert chapters.numbers(storybook.storybook_id) == [1, 2]

        updated = engine.unlock_chapters(storybook.storybook_id, 3)
        assert updated.chapters_unlocked_count == 4
        assert chapters.numbers(storybook.storybook_id) == [1, 2, 3, 4]

    def test_summary_chaining_uses_stored_summary(self, engine, heroes, chapters, generator):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)
        chapter_one = chapters.find_one(storybook.storybook_id, 1)
        chapters.update(chapter_one.chapter_id, summary="The hero crossed the burning bridge.")

        engine.unlock_chapters(storybook.storybook_id, 1)

        assert generator.calls[1] == (2, "The hero crossed the burning bridge.", "")

    def test_quota_placeholder_summary_is_not_chained(self, heroes, storybooks, chapters, breaker, clock):
        generator = ScriptedGenerator(failures={1: quota_error()})
        engine = StoryBookEngine(storybooks, chapters, heroes, generator, breaker, clock=clock)
        hero = heroes.add()
        with pytest.raises(QuotaExceededError):
            engine.create_storybook(hero.hero_id)
        storybook = storybooks.find_by_hero_id(hero.hero_id)

        clock.advance(minutes=15)
        engine.unlock_chapters(storybook.storybook_id, 1)

        assert generator.calls[1] == (2, None, "")


class TestDailyUnlocks:
    def test_daily_ceiling(self, engine, heroes, clock):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)
        storybook_id = storybook.storybook_id

        assert engine.check_and_unlock_daily_chapters(storybook_id) is None

        clock.advance(days=1)
        updated = engine.check_and_unlock_daily_chapters(storybook_id)
        assert updated.chapters_unlocked_count == 2

        clock.advance(hours=23)
        assert engine.check_and_unlock_daily_chapters(storybook_id) is None

        clock.advance(days=8)
        updated = engine.check_and_unlock_daily_chapters(storybook_id)
        assert updated.chapters_unlocked_count == 10
        assert updated.chapters_total_count == 10

        clock.advance(days=30)
        assert engine.check_and_unlock_daily_chapters(storybook_id) is None

    def test_concurrent_checks_unlock_each_day_once(self, heroes, storybooks, chapters, breaker, clock):
        generator = GatedGenerator()
        engine = StoryBookEngine(storybooks, chapters, heroes, generator, breaker, clock=clock)
        storybook = engine.create_storybook(heroes.add().hero_id, is_premium=True)
        storybook_id = storybook.storybook_id
        clock.advance(days=1, hours=1)
        generator.hold_next_call()
        results = {}

        def check(name):
            results[name] = engine.check_and_unlock_daily_chapters(storybook_id)

        first = threading.Thread(target=check, args=("first",))
        second = threading.Thread(target=check, args=("second",))
        first.start()
        assert generator.entered.wait(timeout=5)
        second.start()
        # The second check waits on the storybook until the first one finishes.
        second.join(timeout=0.1)
        assert second.is_alive()
        generator.release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert results["first"].chapters_unlocked_count == 2
        assert results["second"] is None
        assert storybooks.find_by_id(storybook_id).chapters_unlocked_count == 2
        assert generator.chapter_numbers == [1, 2]

    def test_long_absence_caps_at_total(self, engine, heroes, clock, generator):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)

        clock.advance(days=45)
        updated = engine.check_and_unlock_daily_chapters(storybook.storybook_id)

        assert updated.chapters_unlocked_count == 10
        assert generator.chapter_numbers == list(range(1, 11))

    def test_free_storybook_never_unlocks(self, engine, heroes, clock):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)

        for _ in range(5):
            clock.advance(days=20)
            assert engine.check_and_unlock_daily_chapters(storybook.storybook_id) is None
        assert storybook.chapters_unlocked_count == 1

    def test_no_initial_generation_time(self, engine, heroes, storybooks, clock):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)
        storybooks.update(storybook.storybook_id, initial_chapter_generated_at=None)

        clock.advance(days=3)
        assert engine.check_and_unlock_daily_chapters(storybook.storybook_id) is None

    def test_naive_timestamp_is_treated_as_utc(self, engine, heroes, storybooks, clock):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)
        storybooks.update(storybook.storybook_id, initial_chapter_generated_at=START.replace(tzinfo=None))

        clock.advance(days=2)
        updated = engine.check_and_unlock_daily_chapters(storybook.storybook_id)
        assert updated.chapters_unlocked_count == 3

    def test_next_unlock_at(self, engine, heroes, clock):
        hero = heroes.add()
        free = engine.create_storybook(hero.hero_id)
        assert engine.next_unlock_at(free) is None

        premium_hero = heroes.add(name="Orion")
        premium = engine.create_storybook(premium_hero.hero_id, is_premium=True)
        assert engine.next_unlock_at(premium) == START + timedelta(days=1)

        clock.advance(days=9)
        premium = engine.check_and_unlock_daily_chapters(premium.storybook_id)
        assert engine.next_unlock_at(premium) is None


class TestReads:
    def test_get_storybook_applies_due_unlocks(self, engine, heroes, clock):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)

        clock.advance(days=2, minutes=1)
        fetched = engine.get_storybook(storybook.storybook_id)
        assert fetched.chapters_unlocked_count == 3

    def test_get_storybook_survives_quota_outage(self, engine, heroes, clock, breaker):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)
        clock.advance(days=1)
        breaker.set_exceeded(True)

        fetched = engine.get_storybook(storybook.storybook_id)
        assert fetched.chapters_unlocked_count == 1

    def test_get_storybook_survives_missing_provider_configuration(self, engine, heroes, clock, generator):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)
        clock.advance(days=1)
        generator.failures[2] = OpenAINotConfiguredError()

        fetched = engine.get_storybook(storybook.storybook_id)
        assert fetched.chapters_unlocked_count == 1

    def test_get_storybook_for_unknown_hero(self, engine):
        with pytest.raises(EntityNotFoundError):
            engine.get_storybook_for_hero(uuid.uuid4())

    def test_locked_content_is_redacted(self, engine, heroes, chapters):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)
        locked = chapters.find_one(storybook.storybook_id, 2)
        chapters.update(locked.chapter_id, content="spoiler", summary="spoiler summary")

        views = engine.get_chapters(storybook.storybook_id)
        assert [v.chapter_number for v in views] == list(range(1, 11))
        assert views[0].content == "Chapter 1 of Astra"
        assert views[1].content == ""
        assert views[1].summary == ""

        full = engine.get_chapters(storybook.storybook_id, include_locked_content=True)
        assert full[1].content == "spoiler"


class TestUpgradeAndRegenerate:
    def test_upgrade_reserves_premium_slots(self, engine, heroes, chapters):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)

        upgraded = engine.upgrade_to_premium(storybook.storybook_id)

        assert upgraded.is_premium
        assert upgraded.chapters_total_count == 10
        assert upgraded.chapters_unlocked_count == 1
        assert chapters.numbers(storybook.storybook_id) == list(range(1, 11))
        assert chapters.find_one(storybook.storybook_id, 1).content == "Chapter 1 of Astra"

    def test_upgrade_never_shrinks_total(self, engine, heroes):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)
        engine.unlock_chapters(storybook.storybook_id, 11)

        upgraded = engine.upgrade_to_premium(storybook.storybook_id)
        assert upgraded.chapters_total_count == 12

    def test_regenerate_repairs_quota_placeholder(self, heroes, storybooks, chapters, breaker, clock):
        generator = ScriptedGenerator(failures={2: quota_error()})
        engine = StoryBookEngine(storybooks, chapters, heroes, generator, breaker, clock=clock)
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id)
        with pytest.raises(QuotaExceededError):
            engine.unlock_chapters(storybook.storybook_id, 1)

        clock.advance(minutes=15)
        chapter = engine.regenerate_chapter(storybook.storybook_id, 2, "more thunder")

        assert chapter.error_type is None
        assert chapter.content == "Chapter 2 of Astra"
        assert chapter.prompt_used == "more thunder"
        assert chapters.numbers(storybook.storybook_id) == [1, 2]

    def test_regenerate_locked_chapter_rejected(self, engine, heroes):
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=True)
        with pytest.raises(InvalidArgumentError):
            engine.regenerate_chapter(storybook.storybook_id, 5)


class TestStoryBookLocks:
    def test_entry_dropped_once_released(self):
        locks = StoryBookLocks()
        key = uuid.uuid4()

        with locks.hold(key):
            with locks.hold(key):
                assert list(locks._locks) == [key]
            assert list(locks._locks) == [key]
        assert locks._locks == {}

    def test_entry_dropped_after_error(self):
        locks = StoryBookLocks()
        with pytest.raises(RuntimeError):
            with locks.hold(uuid.uuid4()):
                raise RuntimeError("boom")
        assert locks._locks == {}

    def test_engine_leaves_no_entries_behind(self, heroes, storybooks, chapters, generator, breaker, clock):
        locks = StoryBookLocks()
        engine = StoryBookEngine(storybooks, chapters, heroes, generator, breaker, locks=locks, clock=clock)
        for name in ("Astra", "Lyra", "Vega"):
            storybook = engine.get_or_create_storybook(heroes.add(name=name).hero_id, is_premium=True)
            engine.unlock_chapters(storybook.storybook_id, 1)
            clock.advance(days=2)
            engine.get_storybook(storybook.storybook_id)

        assert locks._locks == {}


class TestUnlockOutcome:
    @pytest.mark.parametrize("status", [UnlockStatus.FAILED, UnlockStatus.QUOTA_DEGRADED])
    def test_failed_outcomes_require_an_error(self, status):
        with pytest.raises(ValueError):
            UnlockOutcome(status, 1, [2])

    def test_ok_outcome_has_no_error(self):
        outcome = UnlockOutcome(UnlockStatus.OK, 2, [2])
        assert outcome.error is None


OPERATIONS = st.sampled_from(
    ["unlock_one", "unlock_three", "daily", "advance_day", "trip_breaker", "cool_down", "quota_next", "upgrade"]
)


@pytest.mark.property
class TestMonotonicity:
    @given(is_premium=st.booleans(), operations=st.lists(OPERATIONS, max_size=12))
    @settings(max_examples=60, deadline=None)
    def test_counts_never_decrease(self, is_premium, operations):
        clock = FakeClock()
        heroes = InMemoryHeroProvider()
        storybooks = InMemoryStoryBookStore()
        generator = ScriptedGenerator()
        breaker = QuotaBreaker(clock=clock)
        engine = StoryBookEngine(
            storybooks, InMemoryChapterStore(), heroes, generator, breaker, clock=clock
        )
        hero = heroes.add()
        storybook = engine.create_storybook(hero.hero_id, is_premium=is_premium)
        storybook_id = storybook.storybook_id
        unlocked, total = storybook.chapters_unlocked_count, storybook.chapters_total_count

        for operation in operations:
            try:
                if operation == "unlock_one":
                    engine.unlock_chapters(storybook_id, 1)
                elif operation == "unlock_three":
                    engine.unlock_chapters(storybook_id, 3)
                elif operation == "daily":
                    engine.check_and_unlock_daily_chapters(storybook_id)
                elif operation == "advance_day":
                    clock.advance(days=1)
                elif operation == "trip_breaker":
                    breaker.set_exceeded(True)
                elif operation == "cool_down":
                    clock.advance(minutes=15)
                elif operation == "quota_next":
                    generator.failures[len(generator.calls) + 1] = quota_error()
                elif operation == "upgrade":
                    engine.upgrade_to_premium(storybook_id)
            except QuotaExceededError:
                pass

            current = storybooks.find_by_id(storybook_id)
            assert current.chapters_unlocked_count >= unlocked
            assert current.chapters_total_count >= total
            assert current.chapters_unlocked_count <= current.chapters_total_count
            unlocked, total = current.chapters_unlocked_count, current.chapters_total_count
