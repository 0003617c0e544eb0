"""
Integration tests for pipeline execution: plan -> run -> datasets + lineage
"""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from core.exceptions import NotFound, PlanError
from dataflow.executor import StepExecutor
from dataflow.lineage import LineageTracker
from dataflow.registry import DatasetRegistry
from dataflow.runner import PipelineRunner
from models.base import DatasetKind, ExecutionStatus, JobStatus, StepStatus
from models.dataset import Dataset
from models.execution import PipelineExecution


def sql_step(name, source, inputs, output_name):
    return {"name": name, "kind": "sql_query", "source": source, "input_refs": inputs, "output_name": output_name}


THREE_STEPS = [
    sql_step("clean", "SELECT id, region, amount FROM sales WHERE amount > 50", ["sales"], "clean_sales"),
    sql_step("totals", "SELECT region, sum(amount) AS total FROM clean_sales GROUP BY region",
             ["clean_sales"], "region_totals"),
    {
        "name": "rank",
        "kind": "script",
        "source": "output = region_totals.sort_values('total', ascending=False).reset_index(drop=True)\n",
        "input_refs": ["region_totals"],
        "output_name": "ranked_regions",
    },
]


@pytest.fixture
def runner(orchestrator, storage, session_maker):
    return PipelineRunner(
        orchestrator,
        storage=storage,
        executor=StepExecutor(storage, default_timeout=30),
        session_maker=session_maker,
    )


async def load_execution(session_maker, execution_id):
    async with session_maker() as session:
        result = await session.execute(
            select(PipelineExecution)
            .options(selectinload(PipelineExecution.step_results))
            .where(PipelineExecution.id == execution_id)
        )
        return result.scalar_one()


async def run_to_end(runner, pipeline_id, user_id=None):
    plan = await runner.plan(pipeline_id)
    job, execution = await runner.prepare(plan, user_id=user_id)
    status = await runner.run(plan, execution.id, job.job_id)
    return job.job_id, execution.id, status


@pytest.mark.asyncio
async def test_successful_pipeline(runner, orchestrator, session_maker, storage,
                                   sales_frame, make_source_dataset, make_pipeline):
    sales = await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("regional-report", THREE_STEPS)

    job_id, execution_id, status = await run_to_end(runner, pipeline.id, user_id=42)

    assert status == ExecutionStatus.SUCCEEDED

    job = await orchestrator.get_status(job_id)
    assert job.status == JobStatus.SUCCEEDED
    assert job.progress == 100
    assert job.stage == "completed"
    assert job.job_metadata["completed_steps"] == 3
    assert len(job.job_metadata["output_dataset_ids"]) == 3

    execution = await load_execution(session_maker, execution_id)
    assert execution.status == ExecutionStatus.SUCCEEDED
    assert execution.executed_by == 42
    assert [s.step_index for s in execution.step_results] == [0, 1, 2]
    assert all(s.status == StepStatus.SUCCEEDED for s in execution.step_results)

    async with session_maker() as session:
        ranked = await DatasetRegistry(session).latest_by_name("ranked_regions")
        assert ranked.kind == DatasetKind.DERIVED
        assert ranked.created_by == 42
        frame = storage.read(ranked.storage_key)
        assert frame["region"].tolist() == ["east", "north", "south"]

        edges = await LineageTracker(session).ancestors_of(ranked.id)
        assert edges[-1].source_dataset_id == sales.id
        assert [e.step_index for e in edges] == [2, 1, 0]
        assert {e.execution_id for e in edges} == {execution_id}


@pytest.mark.asyncio
async def test_failing_middle_step_stops_pipeline(runner, orchestrator, session_maker,
                                                  sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    steps = [dict(step) for step in THREE_STEPS]
    steps[1]["source"] = "SELECT missing_column FROM clean_sales"
    pipeline = await make_pipeline("broken", steps)

    job_id, execution_id, status = await run_to_end(runner, pipeline.id)

    assert status == ExecutionStatus.FAILED

    job = await orchestrator.get_status(job_id)
    assert job.status == JobStatus.FAILED
    assert job.progress < 100
    assert job.error_message.startswith("Step 1 (totals) failed:")
    assert "missing_column" in job.error_message
    assert job.job_metadata["failed_step_index"] == 1

    execution = await load_execution(session_maker, execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.failed_step_index == 1
    assert [(s.step_index, s.status) for s in execution.step_results] == [
        (0, StepStatus.SUCCEEDED),
        (1, StepStatus.FAILED),
    ]
    assert execution.step_results[1].error_detail["error_type"] == "QueryError"

    async with session_maker() as session:
        names = (await session.execute(select(Dataset.name))).scalars().all()
    # step 0 output stays, nothing after the failing step
    assert sorted(names) == ["clean_sales", "sales"]


@pytest.mark.asyncio
async def test_cancel_between_steps(runner, orchestrator, session_maker,
                                    sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("cancel-me", THREE_STEPS)

    plan = await runner.plan(pipeline.id)
    job, execution = await runner.prepare(plan)

    original_execute = runner.executor.execute

    async def execute_then_cancel(step, resolved):
        result = await original_execute(step, resolved)
        if step.index == 0:
            await orchestrator.cancel(job.job_id)
        return result

    runner.executor.execute = execute_then_cancel

    status = await runner.run(plan, execution.id, job.job_id)

    assert status == ExecutionStatus.CANCELLED
    job = await orchestrator.get_status(job.job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "cancelled"

    record = await load_execution(session_maker, execution.id)
    assert record.status == ExecutionStatus.CANCELLED
    assert len(record.step_results) == 1


@pytest.mark.asyncio
async def test_cancel_before_first_step(runner, orchestrator, session_maker,
                                        sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("cancel-early", THREE_STEPS)

    plan = await runner.plan(pipeline.id)
    job, execution = await runner.prepare(plan)
    await orchestrator.cancel(job.job_id)

    assert await runner.run(plan, execution.id, job.job_id) == ExecutionStatus.CANCELLED

    record = await load_execution(session_maker, execution.id)
    assert record.step_results == []
    assert (await orchestrator.get_status(job.job_id)).error_message == "cancelled"


@pytest.mark.asyncio
async def test_rerun_creates_new_versions(runner, session_maker, sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("twice", THREE_STEPS[:1])

    await run_to_end(runner, pipeline.id)
    await run_to_end(runner, pipeline.id)

    async with session_maker() as session:
        versions = (await session.execute(
            select(Dataset.version).where(Dataset.name == "clean_sales").order_by(Dataset.version)
        )).scalars().all()
    assert versions == [1, 2]


@pytest.mark.asyncio
async def test_unresolvable_pipeline_creates_no_job(runner, orchestrator, make_pipeline):
    pipeline = await make_pipeline("dangling", [
        sql_step("s", "SELECT * FROM nowhere", ["nowhere"], "out"),
    ])

    with pytest.raises(PlanError):
        await runner.submit(pipeline.id)
    with pytest.raises(NotFound):
        await runner.submit(99999)

    assert await orchestrator.list_jobs() == []


@pytest.mark.asyncio
async def test_submit_runs_in_background(runner, orchestrator, sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("background", THREE_STEPS)

    job, execution = await runner.submit(pipeline.id, user_id=1)
    subscription = await orchestrator.subscribe(job.job_id)

    events = [event async for event in subscription]
    await runner.wait_all()

    progress = [event.job["progress"] for event in events]
    assert progress == sorted(progress)
    assert events[-1].event == "complete"
    stages = [event.job["stage"] for event in events]
    assert "executing-step-2" in stages


@pytest.mark.asyncio
async def test_shutdown_cancels_running_execution(orchestrator, storage, session_maker,
                                                  sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("slow", [{
        "name": "sleep",
        "kind": "script",
        "source": "while True:\n    pass\n",
        "input_refs": ["sales"],
        "output_name": "slow_out",
    }])
    runner = PipelineRunner(orchestrator, storage=storage, session_maker=session_maker)

    job, execution = await runner.submit(pipeline.id)
    await asyncio.sleep(0.5)
    await runner.shutdown()

    job = await orchestrator.get_status(job.job_id)
    assert job.status == JobStatus.FAILED
    execution = await load_execution(session_maker, execution.id)
    assert execution.status == ExecutionStatus.CANCELLED
    assert [(s.step_index, s.status) for s in execution.step_results] == [(0, StepStatus.FAILED)]
    assert execution.step_results[0].error_message == "cancelled"


@pytest.mark.asyncio
async def test_registration_failure_closes_step(runner, orchestrator, session_maker, storage,
                                                sales_frame, make_source_dataset, make_pipeline,
                                                monkeypatch):
    sales = await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("unregistered", THREE_STEPS[:1])

    async def broken_create_derived(self, **kwargs):
        raise RuntimeError("registry unavailable")

    monkeypatch.setattr(DatasetRegistry, "create_derived", broken_create_derived)

    job_id, execution_id, status = await run_to_end(runner, pipeline.id)

    assert status == ExecutionStatus.FAILED
    assert (await orchestrator.get_status(job_id)).status == JobStatus.FAILED

    execution = await load_execution(session_maker, execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert [(s.step_index, s.status) for s in execution.step_results] == [(0, StepStatus.FAILED)]
    assert "registry unavailable" in execution.step_results[0].error_message
    assert execution.step_results[0].completed_at is not None
    # the orphaned output file was removed
    assert sorted(p.name for p in storage.root.iterdir()) == [sales.storage_key]
