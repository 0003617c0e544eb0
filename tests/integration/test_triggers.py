"""
Integration tests for triggers: chained runs through a real PipelineRunner
"""

import pytest
from sqlalchemy import select

from dataflow.executor import StepExecutor
from dataflow.runner import PipelineRunner
from dataflow.triggers import TriggerService
from models.base import ExecutionStatus, TriggerEventType, TriggerType
from models.execution import PipelineExecution


def sql_step(source, inputs, output_name):
    return {"name": output_name, "kind": "sql_query", "source": source, "input_refs": inputs,
            "output_name": output_name}


@pytest.fixture
def runner(orchestrator, storage, session_maker):
    return PipelineRunner(
        orchestrator,
        storage=storage,
        executor=StepExecutor(storage, default_timeout=30),
        session_maker=session_maker,
    )


@pytest.fixture
def triggers(runner):
    service = TriggerService(runner)
    runner.add_completion_hook(service.on_execution_finished)
    return service


async def executions_of(session_maker, pipeline_id):
    async with session_maker() as session:
        result = await session.execute(
            select(PipelineExecution)
            .where(PipelineExecution.pipeline_id == pipeline_id)
            .order_by(PipelineExecution.id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_successful_run_starts_chained_pipeline(runner, triggers, session_maker,
                                                      sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    upstream = await make_pipeline("clean", [
        sql_step("SELECT * FROM sales WHERE amount > 50", ["sales"], "clean_sales"),
    ])
    downstream = await make_pipeline("totals", [
        sql_step("SELECT region, sum(amount) AS total FROM clean_sales GROUP BY region",
                 ["clean_sales"], "region_totals"),
    ])
    await triggers.create_trigger(
        downstream.id, TriggerType.PIPELINE_CHAIN, "after-clean",
        config={"upstream_pipeline_id": upstream.id}, created_by=9
    )

    _, upstream_execution = await runner.submit(upstream.id, user_id=1)
    await runner.wait_all()

    chained = await executions_of(session_maker, downstream.id)
    assert len(chained) == 1
    assert chained[0].status == ExecutionStatus.SUCCEEDED
    assert chained[0].executed_by == 9

    events = await triggers.list_events(downstream.id)
    assert len(events) == 1
    assert events[0].event_type == TriggerEventType.FIRED
    assert events[0].execution_id == chained[0].id
    assert events[0].detail["upstream_execution_id"] == upstream_execution.id


@pytest.mark.asyncio
async def test_failed_run_does_not_start_success_chain(runner, triggers, session_maker,
                                                       sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    upstream = await make_pipeline("broken", [
        sql_step("SELECT no_such_column FROM sales", ["sales"], "broken_out"),
    ])
    on_success = await make_pipeline("on-success", [sql_step("SELECT * FROM sales", ["sales"], "copy_a")])
    on_failure = await make_pipeline("on-failure", [sql_step("SELECT * FROM sales", ["sales"], "copy_b")])
    await triggers.create_trigger(
        on_success.id, TriggerType.PIPELINE_CHAIN, "ok", config={"upstream_pipeline_id": upstream.id}
    )
    await triggers.create_trigger(
        on_failure.id, TriggerType.PIPELINE_CHAIN, "alert",
        config={"upstream_pipeline_id": upstream.id, "condition": "failure"}
    )

    await runner.submit(upstream.id)
    await runner.wait_all()

    assert (await executions_of(session_maker, upstream.id))[0].status == ExecutionStatus.FAILED
    assert await executions_of(session_maker, on_success.id) == []
    recovered = await executions_of(session_maker, on_failure.id)
    assert [e.status for e in recovered] == [ExecutionStatus.SUCCEEDED]


@pytest.mark.asyncio
async def test_completion_hook_errors_do_not_affect_execution(runner, session_maker,
                                                             sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("clean", [sql_step("SELECT * FROM sales", ["sales"], "copy_c")])

    seen = []

    async def failing_hook(pipeline_id, execution_id, status):
        raise RuntimeError("listener down")

    async def recording_hook(pipeline_id, execution_id, status):
        seen.append((pipeline_id, execution_id, status))

    runner.add_completion_hook(failing_hook)
    runner.add_completion_hook(recording_hook)

    _, execution = await runner.submit(pipeline.id)
    await runner.wait_all()

    assert seen == [(pipeline.id, execution.id, ExecutionStatus.SUCCEEDED)]
    assert (await executions_of(session_maker, pipeline.id))[0].status == ExecutionStatus.SUCCEEDED
