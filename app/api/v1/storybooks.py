import uuid

from fastapi import APIRouter, Depends, Header, HTTPException

from app.api.deps import (
    EngineDep,
    QuotaBreakerDep,
    build_storybook_engine,
    get_chapter_generator,
    get_storybook_locks,
)
from app.api.v1.jobs import job_status_read
from app.api.v1.schemas import (
    ChapterRead,
    JobStatusRead,
    RegenerateChapterRequest,
    StoryBookCreate,
    StoryBookDetail,
    StoryBookRead,
    UnlockRequest,
)
from app.core.request_context import get_request_id
from app.core.settings import settings
from app.db.models import StoryBook
from app.db.session import get_sessionmaker
from app.services import job_queue
from app.services.daily_unlocks import process_daily_chapter_unlocks
from app.services.storybook_engine import StoryBookEngine
from app.services.stores import SqlStoryBookStore


router = APIRouter(tags=["storybooks"])


def storybook_detail(engine: StoryBookEngine, storybook: StoryBook) -> StoryBookDetail:
    read = StoryBookRead.model_validate(storybook).model_copy(
        update={"next_unlock_at": engine.next_unlock_at(storybook)}
    )
    chapters = engine.get_chapters(storybook.storybook_id)
    return StoryBookDetail(
        storybook=read,
        chapters=[ChapterRead.model_validate(chapter) for chapter in chapters],
    )


@router.post("/heroes/{hero_id}/storybook", response_model=StoryBookDetail)
def get_or_create_storybook(hero_id: uuid.UUID, payload: StoryBookCreate, engine=EngineDep):
    storybook = engine.get_or_create_storybook(hero_id, payload.is_premium, payload.user_prompt)
    return storybook_detail(engine, storybook)


@router.get("/heroes/{hero_id}/storybook", response_model=StoryBookDetail)
def get_hero_storybook(hero_id: uuid.UUID, engine=EngineDep):
    storybook = engine.get_storybook_for_hero(hero_id)
    return storybook_detail(engine, storybook)


@router.get("/storybooks/{storybook_id}", response_model=StoryBookDetail)
def get_storybook(storybook_id: uuid.UUID, engine=EngineDep):
    storybook = engine.get_storybook(storybook_id)
    return storybook_detail(engine, storybook)


@router.post("/storybooks/{storybook_id}/unlock", response_model=StoryBookDetail)
def unlock_chapters(storybook_id: uuid.UUID, payload: UnlockRequest, engine=EngineDep):
    storybook = engine.unlock_chapters(storybook_id, payload.count)
    return storybook_detail(engine, storybook)


@router.post("/storybooks/{storybook_id}/chapters/{chapter_number}/regenerate", response_model=ChapterRead)
def regenerate_chapter(
    storybook_id: uuid.UUID,
    chapter_number: int,
    payload: RegenerateChapterRequest,
    engine=EngineDep,
):
    return engine.regenerate_chapter(storybook_id, chapter_number, payload.user_prompt)


@router.post("/storybooks/daily-unlocks", response_model=JobStatusRead, status_code=202)
def trigger_daily_unlocks(
    generator=Depends(get_chapter_generator),
    breaker=QuotaBreakerDep,
    locks=Depends(get_storybook_locks),
    x_daily_unlock_token: str | None = Header(default=None),
):
    if settings.daily_unlock_token and x_daily_unlock_token != settings.daily_unlock_token:
        raise HTTPException(status_code=403, detail="invalid daily unlock token")

    def _handler(job: job_queue.JobRecord) -> dict:
        SessionLocal = get_sessionmaker()
        with SessionLocal() as db:
            engine = build_storybook_engine(db, generator, breaker, locks)
            report = process_daily_chapter_unlocks(engine, SqlStoryBookStore(db))
        return report.to_dict()

    job = job_queue.enqueue_job("daily_chapter_unlocks", {}, _handler, request_id=get_request_id())
    return job_status_read(job)
