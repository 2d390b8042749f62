import pytest

from httpx import ASGITransport, AsyncClient

from issuecache.config import Settings
from issuecache.core.cache_store import CacheStore
from issuecache.database import create_engine, create_session_maker, init_db
from issuecache.main import create_app
from tests.sync_helpers import FakeSource, factory_for


@pytest.fixture()
def settings(tmp_path) -> Settings:
    db_file = tmp_path / "cache" / "test.db"
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{db_file}",
        github_token="ghp_test_token_1234567890",
        github_api_url="https://api.github.test",
        log_level="INFO",
    )


@pytest.fixture()
async def engine(settings):
    eng = create_engine(settings)
    await init_db(eng)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture()
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture()
def store(session_maker) -> CacheStore:
    return CacheStore(session_maker)


@pytest.fixture()
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture()
async def app(settings, engine, fake_source):
    """
    FastAPI app with:
    - the per-test SQLite engine (tables already created)
    - sync passes reading from the in-memory fake source
    """
    fastapi_app = create_app(settings, engine=engine, source_factory=factory_for(fake_source))
    try:
        yield fastapi_app
    finally:
        await fastapi_app.state.sync_manager.shutdown(timeout=5.0)


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
