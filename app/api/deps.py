from collections.abc import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.core.openai_factory import LazyChapterGenerator
from app.core.settings import settings
from app.db.session import get_db
from app.services.chapter_generator import ChapterGenerator
from app.services.quota_breaker import QuotaBreaker
from app.services.storybook_engine import StoryBookEngine, StoryBookLocks
from app.services.stores import SqlChapterStore, SqlHeroProvider, SqlStoryBookStore


def db_session() -> Generator[Session, None, None]:
    yield from get_db()


def get_quota_breaker(request: Request) -> QuotaBreaker:
    return request.app.state.quota_breaker


def get_storybook_locks(request: Request) -> StoryBookLocks:
    return request.app.state.storybook_locks


def get_chapter_generator() -> ChapterGenerator:
    return LazyChapterGenerator()


def build_storybook_engine(
    db: Session,
    generator: ChapterGenerator,
    breaker: QuotaBreaker,
    locks: StoryBookLocks,
) -> StoryBookEngine:
    return StoryBookEngine(
        storybooks=SqlStoryBookStore(db),
        chapters=SqlChapterStore(db),
        heroes=SqlHeroProvider(db),
        generator=generator,
        breaker=breaker,
        premium_chapters_total=settings.premium_chapters_total,
        unlock_bundle_size=settings.unlock_bundle_size,
        locks=locks,
    )


def storybook_engine(
    db: Session = Depends(db_session),
    generator: ChapterGenerator = Depends(get_chapter_generator),
    breaker: QuotaBreaker = Depends(get_quota_breaker),
    locks: StoryBookLocks = Depends(get_storybook_locks),
) -> StoryBookEngine:
    return build_storybook_engine(db, generator, breaker, locks)


DbSessionDep = Depends(db_session)
QuotaBreakerDep = Depends(get_quota_breaker)
EngineDep = Depends(storybook_engine)
