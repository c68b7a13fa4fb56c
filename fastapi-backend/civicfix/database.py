from typing import AsyncGenerator
import logging

from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from .config import get_settings

logger = logging.getLogger("civicfix.database")

DATABASE_URL = get_settings().database_url

# Ensure we use the async driver for postgres
if DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
elif DATABASE_URL.startswith("postgresql+psycopg2://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql+psycopg2://", "postgresql+asyncpg://")
elif DATABASE_URL.startswith("sqlite:///"):
    DATABASE_URL = DATABASE_URL.replace("sqlite:///", "sqlite+aiosqlite:///")

engine_kwargs = {"echo": False, "future": True}
if DATABASE_URL.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}

    if (
        ":memory:" in DATABASE_URL
        or "mode=memory" in DATABASE_URL
        or DATABASE_URL == "sqlite+aiosqlite://"
    ):
        # In-memory DBs must share one connection or every session sees an empty database.
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["poolclass"] = NullPool
elif "asyncpg" in DATABASE_URL:
    # QueuePool can deadlock asyncpg connections under uvicorn's loop handling.
    engine_kwargs["poolclass"] = NullPool

engine = create_async_engine(DATABASE_URL, **engine_kwargs)

async_session_factory = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        yield session


async def init_db() -> None:
    from . import models  # noqa: F401  registers tables on SQLModel.metadata

    # Postgres schemas are owned by Alembic (`alembic upgrade head`); running
    # create_all there would race the migrations. SQLite dev/test DBs are
    # created directly.
    dialect = engine.dialect.name
    if "postgres" in dialect:
        logger.info("Skipping create_all on %s; schema is managed by Alembic", dialect)
        return
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
