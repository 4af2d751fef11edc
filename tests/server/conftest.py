import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from timeflow_server.auth import create_access_token, get_password_hash
from timeflow_server.core import models
from timeflow_server.core.database import Base, enable_sqlite_foreign_keys, get_db
from timeflow_server.main import app

API = "/api/v1"


@pytest.fixture
def session_factory(tmp_path):
    """A throwaway SQLite database with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'timeflow_test.sqlite'}", poolclass=NullPool)
    enable_sqlite_foreign_keys(engine)

    async def create_tables():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_tables())
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def run_db(session_factory):
    """Run `fn(db)` against the test database and return its result."""
    def runner(fn):
        async def wrapped():
            async with session_factory() as db:
                return await fn(db)
        return asyncio.run(wrapped())
    return runner


@pytest.fixture
def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(run_db):
    """Insert a user with a default activity plus any extra activities; returns ids."""
    def factory(email="user@example.com", activities=("Work", "Exercise")):
        async def create(db):
            user = models.User(email=email, hashed_password=get_password_hash("password123"))
            db.add(user)
            await db.flush()
            db.add(models.Activity(user_id=user.id, name="Idle", is_default=True))
            for name in activities:
                db.add(models.Activity(user_id=user.id, name=name))
            await db.commit()
            rows = (await db.execute(
                select(models.Activity).where(models.Activity.user_id == user.id).order_by(models.Activity.id)
            )).scalars().all()
            return user.id, {row.name: row.id for row in rows}
        return run_db(create)
    return factory


@pytest.fixture
def auth_headers():
    def headers_for(user_id: int):
        token = create_access_token({"sub": str(user_id)})
        return {"Authorization": f"Bearer {token}"}
    return headers_for
