import pytest

from core.exceptions import PlanError
from dataflow.pipelines import PipelineService
from dataflow.planner import build_plan
from dataflow.registry import DatasetRegistry


def sql_step(output_name, inputs, source="SELECT * FROM sales", name=None):
    return {
        "name": name or output_name,
        "kind": "sql_query",
        "source": source,
        "input_refs": inputs,
        "output_name": output_name,
    }


async def plan_for(session_maker, pipeline_id, storage=None):
    async with session_maker() as session:
        pipeline = await PipelineService(session).get(pipeline_id)
        return await build_plan(pipeline, DatasetRegistry(session), storage)


@pytest.mark.asyncio
async def test_plan_resolves_names_ids_and_step_outputs(
    session_maker, storage, sales_frame, make_source_dataset, make_pipeline
):
    sales = await make_source_dataset("sales", sales_frame)
    regions = await make_source_dataset("regions", sales_frame[["region"]])
    pipeline = await make_pipeline("daily", [
        sql_step("clean_sales", ["sales"]),
        sql_step("joined", ["clean_sales", regions.id], source="SELECT * FROM clean_sales"),
        sql_step("aliased", [{"ref": "joined", "alias": "j"}], source="SELECT * FROM j"),
    ])

    plan = await plan_for(session_maker, pipeline.id, storage)

    assert plan.pipeline_id == pipeline.id
    assert plan.total_steps == 3
    first, second, third = plan.steps

    assert first.index == 0
    assert first.inputs[0].binding == "sales"
    assert first.inputs[0].dataset.dataset_id == sales.id

    assert second.inputs[0].step_output == "clean_sales"
    assert second.inputs[0].dataset is None
    assert second.inputs[1].binding == "regions"
    assert second.inputs[1].dataset.dataset_id == regions.id

    assert third.inputs[0].binding == "j"
    assert third.inputs[0].step_output == "joined"


@pytest.mark.asyncio
async def test_name_resolves_to_latest_version(session_maker, sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    latest = await make_source_dataset("sales", sales_frame.head(2))
    pipeline = await make_pipeline("p", [sql_step("out", ["sales"])])

    plan = await plan_for(session_maker, pipeline.id)

    assert plan.steps[0].inputs[0].dataset.dataset_id == latest.id
    assert plan.steps[0].inputs[0].dataset.version == 2


@pytest.mark.asyncio
async def test_unknown_reference(session_maker, make_pipeline):
    pipeline = await make_pipeline("p", [sql_step("out", ["does_not_exist"])])

    with pytest.raises(PlanError) as exc_info:
        await plan_for(session_maker, pipeline.id)

    assert exc_info.value.context["reference"] == "does_not_exist"
    assert exc_info.value.context["step_index"] == 0


@pytest.mark.asyncio
async def test_unknown_dataset_id(session_maker, make_pipeline):
    pipeline = await make_pipeline("p", [sql_step("out", [999])])

    with pytest.raises(PlanError):
        await plan_for(session_maker, pipeline.id)


@pytest.mark.asyncio
async def test_forward_reference(session_maker, sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("p", [
        sql_step("first", ["second"]),
        sql_step("second", ["sales"]),
    ])

    with pytest.raises(PlanError, match="same or a later step"):
        await plan_for(session_maker, pipeline.id)


@pytest.mark.asyncio
async def test_self_reference(session_maker, make_pipeline):
    pipeline = await make_pipeline("p", [sql_step("loop", ["loop"])])

    with pytest.raises(PlanError):
        await plan_for(session_maker, pipeline.id)


@pytest.mark.asyncio
async def test_inactive_pipeline(session_maker, sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("p", [sql_step("out", ["sales"])], is_active=False)

    with pytest.raises(PlanError, match="inactive"):
        await plan_for(session_maker, pipeline.id)


@pytest.mark.asyncio
async def test_pipeline_without_steps(session_maker, make_pipeline):
    pipeline = await make_pipeline("empty", [])

    with pytest.raises(PlanError, match="no steps"):
        await plan_for(session_maker, pipeline.id)


@pytest.mark.asyncio
async def test_step_without_inputs(session_maker, make_pipeline):
    pipeline = await make_pipeline("p", [sql_step("out", [], source="SELECT 1 AS x")])

    with pytest.raises(PlanError, match="no input datasets"):
        await plan_for(session_maker, pipeline.id)


@pytest.mark.asyncio
async def test_duplicate_output_name(session_maker, sales_frame, make_source_dataset, make_pipeline):
    await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("p", [
        sql_step("out", ["sales"]),
        sql_step("out", ["sales"]),
    ])

    with pytest.raises(PlanError, match="more than one step"):
        await plan_for(session_maker, pipeline.id)


@pytest.mark.asyncio
async def test_duplicate_binding_requires_alias(session_maker, sales_frame, make_source_dataset, make_pipeline):
    sales = await make_source_dataset("sales", sales_frame)
    pipeline = await make_pipeline("p", [sql_step("out", ["sales", sales.id])])

    with pytest.raises(PlanError, match="bound twice"):
        await plan_for(session_maker, pipeline.id)


@pytest.mark.asyncio
async def test_missing_storage_file(session_maker, storage, sales_frame, make_source_dataset, make_pipeline):
    sales = await make_source_dataset("sales", sales_frame)
    storage.delete(sales.storage_key)
    pipeline = await make_pipeline("p", [sql_step("out", ["sales"])])

    with pytest.raises(PlanError, match="not readable"):
        await plan_for(session_maker, pipeline.id, storage)
