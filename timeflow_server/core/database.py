from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import MetaData, event
import logging

from .settings import settings

logger = logging.getLogger(__name__)

_engine_kwargs = {"echo": settings.DEBUG}
if not settings.IS_SQLITE:
    _engine_kwargs.update(pool_pre_ping=True, pool_recycle=300)

# Create async engine
engine = create_async_engine(settings.SQLALCHEMY_DATABASE_URL, **_engine_kwargs)

# Create async session maker
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

class Base(DeclarativeBase):
    """Base class for SQLAlchemy models"""
    metadata = MetaData()

def enable_sqlite_foreign_keys(async_engine) -> None:
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection."""
    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

if settings.IS_SQLITE:
    enable_sqlite_foreign_keys(engine)

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

async def init_db():
    """Initialize database"""
    # Import models so that their tables are registered on Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        # Alembic is not wired up yet; create whatever tables are missing.
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Database connection established")
