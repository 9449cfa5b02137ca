"""SQLAlchemy async database setup for the measurement store"""
import logging
from typing import AsyncGenerator, Optional
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str) -> AsyncEngine:
    """Async engine for PostgreSQL (asyncpg) or SQLite (aiosqlite).

    In-memory SQLite keeps one shared connection so every session sees the
    same database; pool sizing applies only to server databases.
    """
    if url.startswith("sqlite"):
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            return create_async_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_async_engine(url)

    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


engine = build_engine(settings.DATABASE_URL)

# Сессии без expire: ответы сериализуются после commit
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Base для моделей измерений и метрик
Base = declarative_base()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency: сессия на запрос, откат при ошибке обработчика"""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Session error: {e}")
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(bind: Optional[AsyncEngine] = None):
    """Создание таблиц pm25_measurements и model_metrics (без Alembic)"""
    import db.models  # noqa: F401  регистрация таблиц в Base.metadata

    target = bind if bind is not None else engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Measurement store initialized ({target.url.get_backend_name()})")
