import pytest
import httpx

from app.api.deps import get_chapter_generator
from app.core import settings as settings_module
from app.db.base import Base
from app.db.session import get_engine, init_engine
from app.main import app
from app.services.quota_breaker import QuotaBreaker
from app.services.storybook_engine import StoryBookEngine
from tests.fakes import (
    FakeClock,
    InMemoryChapterStore,
    InMemoryHeroProvider,
    InMemoryStoryBookStore,
    ScriptedGenerator,
)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _use_test_db(tmp_path, monkeypatch):
    db_path = tmp_path / "test.db"
    database_url = f"sqlite+pysqlite:///{db_path}"

    monkeypatch.setattr(settings_module.settings, "database_url", database_url)
    monkeypatch.setattr(settings_module.settings, "db_auto_create", True)
    monkeypatch.setattr(settings_module.settings, "log_file", None)

    init_engine(database_url)
    Base.metadata.create_all(bind=get_engine())

    yield


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def generator():
    return ScriptedGenerator()


@pytest.fixture()
def breaker(clock):
    return QuotaBreaker(clock=clock)


@pytest.fixture()
def heroes():
    return InMemoryHeroProvider()


@pytest.fixture()
def storybooks():
    return InMemoryStoryBookStore()


@pytest.fixture()
def chapters():
    return InMemoryChapterStore()


@pytest.fixture()
def engine(storybooks, chapters, heroes, generator, breaker, clock):
    return StoryBookEngine(storybooks, chapters, heroes, generator, breaker, clock=clock)


@pytest.fixture()
async def client(generator):
    app.dependency_overrides[get_chapter_generator] = lambda: generator
    try:
        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                yield client
    finally:
        app.dependency_overrides.pop(get_chapter_generator, None)


@pytest.fixture()
async def unconfigured_client(monkeypatch):
    """Client wired to the real generator factory with no OpenAI key set."""
    monkeypatch.setattr(settings_module.settings, "openai_api_key", None)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
