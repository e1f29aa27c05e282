from __future__ import annotations
from typing import AsyncGenerator
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
import structlog

from .core.config import get_settings
from .core.errors import StoreUnavailable
from .models import Base

settings = get_settings()
logger = structlog.get_logger()

# one pool per process
engine = create_async_engine(settings.database_url, pool_pre_ping=True)
session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_db() -> None:
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except (OperationalError, InterfaceError) as e:
        logger.error("entry_store_init_failed", error=str(e))
        raise StoreUnavailable("Entry store unavailable") from e

async def dispose_db() -> None:
    await engine.dispose()

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
