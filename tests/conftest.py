"""Shared test fixtures.

Every test gets a throwaway SQLite database (aiosqlite) with the ORM
metadata created, and no Redis: notifications are persisted only.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.config import get_settings
from dojo.database import close_db, get_engine, get_session, init_db
from dojo.db import models  # noqa: F401  (registers tables on Base.metadata)
from dojo.db.base import Base
from dojo.db.models import Student


@pytest.fixture(autouse=True)
def _test_settings(tmp_path, monkeypatch):
    """Point settings at a per-test SQLite file and disable retry backoff."""
    monkeypatch.setenv("DOJO_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'dojo_test.db'}")
    monkeypatch.setenv("DOJO_RECOMPUTE_RETRY_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("DOJO_SWEEP_SECRET", "")
    monkeypatch.setenv("DOJO_LOG_FORMAT", "console")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """A session on a freshly created schema."""
    await init_db(get_settings().database_url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    sessions = get_session()
    session = await sessions.__anext__()
    try:
        yield session
    finally:
        await sessions.aclose()
        await close_db()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over the ASGI app, sharing the test database."""
    from dojo.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_student(db_session: AsyncSession) -> Callable[..., Awaitable[Student]]:
    """Factory: insert a student and return it."""

    async def _make(name: str, **fields) -> Student:
        student = Student(name=name, **fields)
        db_session.add(student)
        await db_session.commit()
        return student

    return _make
