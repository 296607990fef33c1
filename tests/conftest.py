import os

# settings are read at import time
os.environ.setdefault("ENV", "test")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("INTERNAL_ADMIN_KEY", "test-internal")
os.environ.setdefault("API_KEY_PEPPER", "test-pepper")
os.environ.setdefault("CREDENTIALS_ENCRYPTION_KEY", "I9bqraCt-AlbcBkaCnrwSuHfTwpuh4-df_oFNKvkMeA=")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./propai-unused.db")

import httpx
import pytest

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base + all models so metadata is complete
from propai.models import Base
from propai.main import app
from propai.core.db import get_db
from propai.services.line_bot import get_chat_completer, get_reply_sender
from propai.services.openai_batch import get_batch_client

from tests.fakes import FakeBatchClient, FakeChatCompleter, FakeReplySender
from tests.fixtures_seed import *  # noqa: F401,F403


def _test_db_url(tmp_path) -> str:
    url = os.getenv("DATABASE_URL_TEST")
    if url:
        return url
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
async def async_engine(tmp_path):
    url = _test_db_url(tmp_path)
    kwargs = {"connect_args": {"timeout": 30}} if url.startswith("sqlite") else {"pool_pre_ping": True}
    engine = create_async_engine(url, **kwargs)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def batch_client():
    return FakeBatchClient()


@pytest.fixture
def chat_completer():
    return FakeChatCompleter()


@pytest.fixture
def reply_sender():
    return FakeReplySender()


@pytest.fixture
async def client(session_factory, batch_client, chat_completer, reply_sender):
    """
    HTTP client against the app. Every request gets its own session, like production.
    """
    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_batch_client] = lambda: batch_client
    app.dependency_overrides[get_chat_completer] = lambda: chat_completer
    app.dependency_overrides[get_reply_sender] = lambda: reply_sender

    # unhandled errors come back as the 500 envelope instead of propagating
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
