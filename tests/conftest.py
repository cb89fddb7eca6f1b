"""
Pytest configuration and fixtures
"""

import os

# Background services stay off under test; set before settings are imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./pipeline_test.db")
os.environ["WORKER_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("ALERT_CRON_SECRET", None)
os.environ.pop("RESEND_API_KEY", None)

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from typing import AsyncGenerator

from models import Base, Pipeline
from models.base import PipelineMode
from schemas.connector import QueryResult


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Fresh SQLite database file per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pipelines.db'}",
        echo=False,
        poolclass=NullPool,  # Every session gets its own connection
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


class FakeConnector:
    """
    Stand-in connector: returns canned rows or raises queued errors.

    ``outcomes`` is consumed one per query; each item is a row list or an
    exception instance. The last outcome repeats.
    """

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.queries = []
        self.opened = 0
        self.closed = 0

    async def __aenter__(self):
        self.opened += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed += 1

    async def execute_query(self, sql, max_rows=None):
        self.queries.append(sql)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        columns = list(outcome[0]) if outcome else []
        rows = outcome if max_rows is None else outcome[:max_rows]
        truncated = max_rows is not None and len(outcome) > max_rows
        return QueryResult(columns=columns, rows=rows, row_count=len(rows), truncated=truncated)


@pytest.fixture
def fake_connector():
    """Factory for FakeConnector plus a connector_factory callable bound to it"""

    def build(*outcomes):
        connector = FakeConnector(outcomes)
        configs = []

        def factory(config, **options):
            configs.append(config)
            return connector

        factory.connector = connector
        factory.configs = configs
        return factory

    return build


@pytest.fixture
def people_rows():
    """100 rows with padded names; ages 11..20 for the first ten, 21+ after"""
    rows = []
    for i in range(100):
        rows.append({
            "id": i + 1,
            "name": f"  Person {i + 1}  ",
            "age": 11 + i if i < 10 else 21 + (i % 40),
            "email": f"person{i + 1}@example.com",
        })
    return rows


@pytest_asyncio.fixture
async def make_pipeline(db_session):
    """Insert a pipeline; keyword overrides go straight to the model"""

    async def build(**overrides) -> Pipeline:
        values = dict(
            name="People",
            workspace_id="default",
            source_type="postgres",
            source_config={"table": "people", "connection": {"type": "postgres"}},
            mode=PipelineMode.ETL,
            transformation_steps=[],
            quality_rules=[],
            is_active=True,
        )
        values.update(overrides)
        pipeline = Pipeline(**values)
        db_session.add(pipeline)
        await db_session.commit()
        return pipeline

    return build
