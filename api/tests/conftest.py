"""
Shared fixtures.

SQLite stands in for PostgreSQL: an in-memory database for service tests and
a file database (shared by the sync and aiosqlite engines) for API tests.
"""
import os

# Settings are read once and cached, so point them at SQLite before any
# ecoticker module is imported.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DATABASE_URL_SYNC"] = "sqlite://"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["ENVIRONMENT"] = "test"
os.environ["REDIS_URL"] = "memory://"

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from ecoticker.database import Base
from ecoticker.models import Article, Topic


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================
# DATABASE
# ============================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================
# DATA FACTORIES
# ============================================================

@pytest.fixture
def make_topic():
    def _make(session, name, current=0, previous=0, slug=None, **fields):
        topic = Topic(
            name=name,
            slug=slug or name.lower().replace(" ", "-"),
            current_score=current,
            previous_score=previous,
            urgency=fields.pop("urgency", "informational"),
            **fields,
        )
        session.add(topic)
        session.flush()
        return topic
    return _make


@pytest.fixture
def make_article():
    def _make(session, topic, url, title=None, scored=False, **fields):
        article = Article(
            topic_id=topic.id,
            title=title or f"Article at {url}",
            url=url,
            source=fields.pop("source", "Test Wire"),
            summary=fields.pop("summary", "Something happened to the environment."),
            source_type=fields.pop("source_type", "rss"),
            scored_at=datetime(2026, 1, 1, tzinfo=timezone.utc) if scored else None,
            **fields,
        )
        session.add(article)
        topic.article_count = (topic.article_count or 0) + 1
        session.flush()
        return article
    return _make


# ============================================================
# API
# ============================================================

@pytest.fixture
def api_session_factory(tmp_path):
    db_path = tmp_path / "api.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    yield sessionmaker(bind=sync_engine, expire_on_commit=False), f"sqlite+aiosqlite:///{db_path}"
    sync_engine.dispose()


@pytest.fixture
def client(api_session_factory):
    from fastapi.testclient import TestClient

    from ecoticker.config import get_settings
    from ecoticker.database import get_db
    from ecoticker.main import app
    from ecoticker.services.rate_limit import RateLimiters

    _, async_url = api_session_factory
    async_engine = create_async_engine(async_url, poolclass=NullPool)
    local = async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with local() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.rate_limiters = RateLimiters.from_settings(get_settings())
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def db(api_session_factory):
    """Sync session onto the API test database, for seeding and assertions."""
    factory, _ = api_session_factory
    session = factory()
    yield session
    session.close()
