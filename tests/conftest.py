"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import build_engine, build_session_maker
from models import Base
from dataflow.jobs import JobOrchestrator
from dataflow.storage import ParquetStorage
from dataflow.registry import DatasetRegistry
from dataflow.pipelines import PipelineService
import pandas as pd
from typing import AsyncGenerator


@pytest.fixture
def test_database_url(tmp_path):
    """One SQLite file per test; every session gets its own connection"""
    return f"sqlite+aiosqlite:///{tmp_path / 'dataflow_test.db'}"


@pytest_asyncio.fixture(scope="function")
async def test_engine(test_database_url):
    """Create test database engine"""
    engine = build_engine(test_database_url)

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def storage(tmp_path):
    """Parquet storage rooted in a temporary directory"""
    return ParquetStorage(str(tmp_path / "datasets"))


@pytest.fixture
def orchestrator(session_maker):
    return JobOrchestrator(session_maker=session_maker, max_subscribers=2)


@pytest.fixture
def sales_frame():
    """Small source table used by pipeline tests"""
    return pd.DataFrame({
        "id": [1, 2, 3, 4],
        "region": ["north", "south", "north", "east"],
        "amount": [120.0, 80.5, 42.0, 300.0],
    })


@pytest.fixture
def make_source_dataset(session_maker, storage):
    """Materialize a frame and register it as a SOURCE dataset"""

    async def _make(name, frame):
        key = storage.write(frame)
        description = storage.describe(key)
        async with session_maker() as session:
            return await DatasetRegistry(session).create_source(
                name=name,
                schema=description["schema"],
                storage_key=key,
                row_count=description["row_count"],
            )

    return _make


@pytest.fixture
def make_pipeline(session_maker):
    """Create a pipeline from step dicts"""

    async def _make(name, steps, is_active=True):
        async with session_maker() as session:
            return await PipelineService(session).create(name=name, steps=steps, is_active=is_active)

    return _make


@pytest.fixture
def mock_csv_bytes():
    """100-row CSV with an id, amount, flag and day column"""
    lines = ["id,amount,active,day"]
    for i in range(1, 101):
        lines.append(f"{i},{i * 1.5},{'yes' if i % 2 else 'no'},2024-01-{(i % 28) + 1:02d}")
    return ("\n".join(lines) + "\n").encode("utf-8")
