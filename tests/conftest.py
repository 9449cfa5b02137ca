import os

# Tests never touch the production database
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["OPENAQ_API_KEY"] = ""

import httpx
import numpy as np
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.database import build_engine, get_session, init_db


@pytest_asyncio.fixture
async def db_engine():
    engine = build_engine("sqlite+aiosqlite://")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def add_measurements(session):
    """Persist Measurement objects and return them with ids assigned"""
    async def _add(*records):
        session.add_all(records)
        await session.commit()
        return list(records)
    return _add


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest_asyncio.fixture
async def client(session_maker):
    from backend.api import get_rng
    from backend.main import app

    async def override_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_rng] = lambda: np.random.default_rng(42)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
