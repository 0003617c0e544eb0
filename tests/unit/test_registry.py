import pytest

from core.exceptions import NotFound
from dataflow.lineage import LineageTracker
from dataflow.registry import DatasetRegistry
from models.base import DatasetKind
from models.execution import PipelineExecution

SCHEMA = [{"name": "id", "type": "INTEGER", "nullable": True}]


async def make_execution(session, pipeline_id):
    execution = PipelineExecution(pipeline_id=pipeline_id)
    session.add(execution)
    await session.commit()
    return execution


@pytest.mark.asyncio
async def test_source_versions_increment(db_session):
    registry = DatasetRegistry(db_session)

    first = await registry.create_source("sales", SCHEMA, "a.parquet", 10)
    second = await registry.create_source("sales", SCHEMA, "b.parquet", 12)
    other = await registry.create_source("regions", SCHEMA, "c.parquet", 3)

    assert (first.version, second.version, other.version) == (1, 2, 1)
    assert first.kind == DatasetKind.SOURCE
    assert second.column_count == 1
    assert (await registry.latest_by_name("sales")).id == second.id


@pytest.mark.asyncio
async def test_resolve(db_session):
    registry = DatasetRegistry(db_session)
    dataset = await registry.create_source("sales", SCHEMA, "a.parquet", 10)

    assert (await registry.resolve(dataset.id)).id == dataset.id
    assert (await registry.resolve("sales")).id == dataset.id

    with pytest.raises(NotFound):
        await registry.resolve("unknown")
    with pytest.raises(NotFound):
        await registry.get(12345)


@pytest.mark.asyncio
async def test_numeric_string_is_a_name(db_session):
    registry = DatasetRegistry(db_session)
    orders = await registry.create_source("orders", SCHEMA, "a.parquet", 10)
    named_one = await registry.create_source(str(orders.id), SCHEMA, "b.parquet", 4)

    assert (await registry.resolve(str(orders.id))).id == named_one.id
    assert (await registry.resolve(orders.id)).id == orders.id

    with pytest.raises(NotFound):
        await registry.resolve(str(named_one.id))


@pytest.mark.asyncio
async def test_list_and_count(db_session, make_pipeline):
    registry = DatasetRegistry(db_session)
    source = await registry.create_source("sales", SCHEMA, "a.parquet", 10)
    pipeline = await make_pipeline("p", [])
    execution = await make_execution(db_session, pipeline.id)
    await registry.create_derived("clean", SCHEMA, "b.parquet", 9, [source.id], execution.id, 0)

    assert await registry.count() == 2
    assert await registry.count(DatasetKind.DERIVED) == 1
    assert [d.name for d in await registry.list(kind=DatasetKind.SOURCE)] == ["sales"]
    assert len(await registry.list(limit=1)) == 1
    assert [d.name for d in await registry.list(name="clean")] == ["clean"]


@pytest.mark.asyncio
async def test_derived_records_lineage(db_session, make_pipeline):
    registry = DatasetRegistry(db_session)
    sales = await registry.create_source("sales", SCHEMA, "a.parquet", 10)
    regions = await registry.create_source("regions", SCHEMA, "b.parquet", 3)
    pipeline = await make_pipeline("p", [])
    execution = await make_execution(db_session, pipeline.id)

    derived = await registry.create_derived(
        "joined", SCHEMA, "c.parquet", 10, [sales.id, regions.id, sales.id], execution.id, 1
    )

    edges = await LineageTracker(db_session).parents_of(derived.id)
    assert derived.kind == DatasetKind.DERIVED
    # duplicate sources collapse into one edge
    assert [e.source_dataset_id for e in edges] == [sales.id, regions.id]
    assert all(e.execution_id == execution.id and e.step_index == 1 for e in edges)


@pytest.mark.asyncio
async def test_derived_requires_sources(db_session):
    with pytest.raises(ValueError):
        await DatasetRegistry(db_session).create_derived("x", SCHEMA, "a.parquet", 1, [], 1, 0)


@pytest.mark.asyncio
async def test_ancestors(db_session, make_pipeline):
    registry = DatasetRegistry(db_session)
    pipeline = await make_pipeline("p", [])
    execution = await make_execution(db_session, pipeline.id)

    raw = await registry.create_source("raw", SCHEMA, "raw.parquet", 5)
    lookup = await registry.create_source("lookup", SCHEMA, "lookup.parquet", 5)
    clean = await registry.create_derived("clean", SCHEMA, "c.parquet", 5, [raw.id], execution.id, 0)
    enriched = await registry.create_derived(
        "enriched", SCHEMA, "e.parquet", 5, [clean.id, lookup.id], execution.id, 1
    )
    report = await registry.create_derived(
        "report", SCHEMA, "r.parquet", 1, [enriched.id, clean.id], execution.id, 2
    )

    tracker = LineageTracker(db_session)
    edges = await tracker.ancestors_of(report.id)
    pairs = [(e.derived_dataset_id, e.source_dataset_id) for e in edges]

    assert pairs == [
        (report.id, enriched.id),
        (report.id, clean.id),
        (enriched.id, clean.id),
        (enriched.id, lookup.id),
        (clean.id, raw.id),
    ]

    shallow = await tracker.ancestors_of(report.id, max_depth=1)
    assert [(e.derived_dataset_id, e.source_dataset_id) for e in shallow] == pairs[:2]

    assert await tracker.ancestors_of(raw.id) == []
