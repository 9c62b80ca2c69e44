import os
import tempfile

# must be set before the app modules read config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ALERT_STREAM_ENABLED"] = "false"
os.environ["RUN_ALERT_WORKER"] = "false"
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="detention-logs-"))

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import crud


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as s:
        yield s

@pytest_asyncio.fixture
async def driver(db):
    return await crud.create_driver(db, "John Smith", "T-101", "Dean")

class NotifyRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, alert, driver_name=None):
        self.calls.append((alert, driver_name))

@pytest.fixture
def recorder():
    return NotifyRecorder()
