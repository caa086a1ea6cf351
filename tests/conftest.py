import os

# Point the module-level engines at throwaway SQLite URLs before any
# citypulse module is imported.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SYNC_DATABASE_URL"] = "sqlite://"
os.environ["LLM_PROVIDER"] = ""

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from citypulse.database import Base  # noqa: E402
from citypulse.llm_service import Suggestion  # noqa: E402
from citypulse.schemas import IssueCategory, IssuePriority  # noqa: E402
from citypulse.services.notifications import AdminDirectory, LiveHub, NotificationDispatcher  # noqa: E402
from citypulse.services.workflow import WorkflowOrchestrator  # noqa: E402
from tests.factories import seed_users  # noqa: E402


class RecordingOutbound:
    """Stands in for OutboundQueue; keeps every side effect it is handed."""

    def __init__(self):
        self.effects = []

    def enqueue(self, effects):
        self.effects.extend(effects)

    def tasks(self):
        return [effect.task for effect in self.effects]


class StaticSuggestions:
    def __init__(self, suggestion=None):
        self.suggestion = suggestion or Suggestion(
            category=IssueCategory.WATER,
            priority=IssuePriority.HIGH,
            title="Burst water main",
        )
        self.calls = []

    async def suggest(self, description):
        self.calls.append(description)
        return self.suggestion


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'citypulse.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def users(session_factory):
    return await seed_users(session_factory)


@pytest.fixture
def outbound():
    return RecordingOutbound()


@pytest.fixture
def suggestions():
    return StaticSuggestions()


@pytest.fixture
async def workflow(session_factory, users, outbound, suggestions):
    admins = AdminDirectory()
    async with session_factory() as session:
        await admins.load(session)
    dispatcher = NotificationDispatcher(LiveHub(), admins, session_factory)
    return WorkflowOrchestrator(session_factory, dispatcher, outbound, suggestions)
