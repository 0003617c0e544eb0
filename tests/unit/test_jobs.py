import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from core.exceptions import InvalidTransition, NotFound, SubscriptionLimitExceeded
from dataflow.jobs import JobOrchestrator, normalize_metadata
from models.base import JobStatus, JobType
from models.job import AsyncJob


@pytest.mark.asyncio
async def test_create_job_starts_queued(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT, user_id=7, resource="dataset", resource_id="sales")

    status = await orchestrator.get_status(job.job_id)
    assert status.stage == "queued"
    assert status.progress == 0
    assert status.status == JobStatus.PENDING
    assert status.user_id == 7
    assert status.resource_id == "sales"
    assert status.error_message is None


@pytest.mark.asyncio
async def test_advance_updates_stage_progress_and_metadata(orchestrator):
    job = await orchestrator.create_job(JobType.PIPELINE_EXECUTION, user_id=1, metadata={"total_steps": 3})

    await orchestrator.advance(job.job_id, "executing-step-1", progress=33, metadata={"current_step": "b"})
    status = await orchestrator.get_status(job.job_id)

    assert status.status == JobStatus.RUNNING
    assert status.stage == "executing-step-1"
    assert status.progress == 33
    assert status.job_metadata == {"total_steps": 3, "current_step": "b"}


@pytest.mark.asyncio
async def test_advance_with_delta(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.advance(job.job_id, "parsing", progress_delta=10)
    await orchestrator.advance(job.job_id, "validating", progress_delta=20)

    assert (await orchestrator.get_status(job.job_id)).progress == 30


@pytest.mark.asyncio
async def test_progress_regression_is_rejected(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.advance(job.job_id, "validating", progress=30)

    with pytest.raises(InvalidTransition):
        await orchestrator.advance(job.job_id, "parsing", progress=10)

    status = await orchestrator.get_status(job.job_id)
    assert status.progress == 30
    assert status.stage == "validating"


@pytest.mark.asyncio
async def test_progress_below_completion_is_capped(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.advance(job.job_id, "materializing", progress=150)

    # 100 is only reachable through complete()
    assert (await orchestrator.get_status(job.job_id)).progress == 99


@pytest.mark.asyncio
async def test_complete_sets_terminal_success(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.advance(job.job_id, "validating", progress=30)
    await orchestrator.complete(job.job_id, metadata={"dataset_id": 4})

    status = await orchestrator.get_status(job.job_id)
    assert status.status == JobStatus.SUCCEEDED
    assert status.stage == "completed"
    assert status.progress == 100
    assert status.error_message is None
    assert status.completed_at is not None
    assert status.job_metadata["dataset_id"] == 4


@pytest.mark.asyncio
async def test_complete_is_idempotent(orchestrator):
    hook_calls = []
    orchestrator.add_terminal_hook(hook_calls.append)

    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.complete(job.job_id)
    first = await orchestrator.get_status(job.job_id)
    await orchestrator.complete(job.job_id)
    second = await orchestrator.get_status(job.job_id)

    assert second.updated_at == first.updated_at
    assert len(hook_calls) == 1


@pytest.mark.asyncio
async def test_complete_after_failure_is_rejected(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.fail(job.job_id, "boom")

    with pytest.raises(InvalidTransition):
        await orchestrator.complete(job.job_id)


@pytest.mark.asyncio
async def test_fail_sets_message_and_blocks_further_transitions(orchestrator):
    job = await orchestrator.create_job(JobType.PIPELINE_EXECUTION)
    await orchestrator.advance(job.job_id, "executing-step-0", progress=0)
    await orchestrator.fail(job.job_id, "Step 0 (clean) failed: bad column")

    status = await orchestrator.get_status(job.job_id)
    assert status.status == JobStatus.FAILED
    assert status.error_message == "Step 0 (clean) failed: bad column"
    assert status.progress < 100

    with pytest.raises(InvalidTransition):
        await orchestrator.advance(job.job_id, "executing-step-1", progress=50)
    with pytest.raises(InvalidTransition):
        await orchestrator.fail(job.job_id, "again")


@pytest.mark.asyncio
async def test_fail_with_empty_message_still_sets_error(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.fail(job.job_id, "")

    assert (await orchestrator.get_status(job.job_id)).error_message


@pytest.mark.asyncio
async def test_unknown_job_raises_not_found(orchestrator):
    with pytest.raises(NotFound):
        await orchestrator.get_status("does-not-exist")
    with pytest.raises(NotFound):
        await orchestrator.advance("does-not-exist", "parsing", progress=10)


@pytest.mark.asyncio
async def test_cancel_sets_flag_only(orchestrator):
    job = await orchestrator.create_job(JobType.PIPELINE_EXECUTION)
    assert await orchestrator.is_cancel_requested(job.job_id) is False

    await orchestrator.cancel(job.job_id)

    assert await orchestrator.is_cancel_requested(job.job_id) is True
    status = await orchestrator.get_status(job.job_id)
    assert status.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_terminal_job_is_rejected(orchestrator):
    job = await orchestrator.create_job(JobType.PIPELINE_EXECUTION)
    await orchestrator.complete(job.job_id)

    with pytest.raises(InvalidTransition):
        await orchestrator.cancel(job.job_id)


@pytest.mark.asyncio
async def test_concurrent_advances_keep_progress_monotonic(orchestrator):
    job = await orchestrator.create_job(JobType.PIPELINE_EXECUTION)

    async def advance(value):
        try:
            await orchestrator.advance(job.job_id, f"step-{value}", progress=value)
        except InvalidTransition:
            pass

    await asyncio.gather(*(advance(v) for v in [10, 40, 20, 60, 30]))

    # whatever order the writes were applied in, the last value is the maximum
    assert (await orchestrator.get_status(job.job_id)).progress == 60


@pytest.mark.asyncio
async def test_subscribe_receives_current_state_then_transitions(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT, user_id=1)
    subscription = await orchestrator.subscribe(job.job_id)

    await orchestrator.advance(job.job_id, "parsing", progress=10)
    await orchestrator.advance(job.job_id, "validating", progress=30)
    await orchestrator.complete(job.job_id)

    events = [event async for event in subscription]

    assert [e.event for e in events] == ["progress", "progress", "progress", "complete"]
    assert [e.job["progress"] for e in events] == [0, 10, 30, 100]
    assert orchestrator.subscriber_count(job.job_id) == 0


@pytest.mark.asyncio
async def test_subscribe_to_finished_job_yields_single_event(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.fail(job.job_id, "bad file")

    subscription = await orchestrator.subscribe(job.job_id)
    events = [event async for event in subscription]

    assert len(events) == 1
    assert events[0].event == "error"
    assert events[0].job["error_message"] == "bad file"


@pytest.mark.asyncio
async def test_subscriber_limit(orchestrator):
    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    first = await orchestrator.subscribe(job.job_id)
    await orchestrator.subscribe(job.job_id)

    with pytest.raises(SubscriptionLimitExceeded):
        await orchestrator.subscribe(job.job_id)

    first.close()
    third = await orchestrator.subscribe(job.job_id)
    assert third is not None
    assert orchestrator.subscriber_count(job.job_id) == 2


@pytest.mark.asyncio
async def test_terminal_hook_receives_snapshot(orchestrator):
    received = []

    async def hook(snapshot):
        received.append(snapshot)

    orchestrator.add_terminal_hook(hook)
    job = await orchestrator.create_job(JobType.PIPELINE_EXECUTION, user_id=3, resource_id=9)
    await orchestrator.fail(job.job_id, "cancelled")

    assert len(received) == 1
    assert received[0]["job_id"] == job.job_id
    assert received[0]["status"] == JobStatus.FAILED
    assert received[0]["error_message"] == "cancelled"
    assert received[0]["user_id"] == 3


@pytest.mark.asyncio
async def test_failing_terminal_hook_does_not_break_transition(orchestrator):
    def broken_hook(snapshot):
        raise RuntimeError("audit sink down")

    orchestrator.add_terminal_hook(broken_hook)
    job = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.complete(job.job_id)

    assert (await orchestrator.get_status(job.job_id)).status == JobStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_fail_stale_jobs(orchestrator, session_maker):
    stale = await orchestrator.create_job(JobType.DATA_IMPORT)
    fresh = await orchestrator.create_job(JobType.DATA_IMPORT)
    finished = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.complete(finished.job_id)

    old = datetime.utcnow() - timedelta(minutes=45)
    async with session_maker() as session:
        await session.execute(
            update(AsyncJob).where(AsyncJob.job_id.in_([stale.job_id, finished.job_id])).values(updated_at=old)
        )
        await session.commit()

    assert await orchestrator.fail_stale_jobs(stale_minutes=30) == 1

    stale_status = await orchestrator.get_status(stale.job_id)
    assert stale_status.status == JobStatus.FAILED
    assert stale_status.error_message == "Job timed out: no progress for 30 minutes"
    assert (await orchestrator.get_status(fresh.job_id)).status == JobStatus.PENDING
    assert (await orchestrator.get_status(finished.job_id)).status == JobStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_delete_old_jobs_only_removes_terminal(orchestrator, session_maker):
    old_done = await orchestrator.create_job(JobType.DATA_IMPORT)
    await orchestrator.complete(old_done.job_id)
    old_running = await orchestrator.create_job(JobType.DATA_IMPORT)

    old = datetime.utcnow() - timedelta(days=40)
    async with session_maker() as session:
        await session.execute(update(AsyncJob).values(updated_at=old))
        await session.commit()

    assert await orchestrator.delete_old_jobs(retention_days=30) == 1

    with pytest.raises(NotFound):
        await orchestrator.get_status(old_done.job_id)
    assert (await orchestrator.get_status(old_running.job_id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_list_jobs_filters_by_user(orchestrator):
    await orchestrator.create_job(JobType.DATA_IMPORT, user_id=1)
    await orchestrator.create_job(JobType.PIPELINE_EXECUTION, user_id=1)
    await orchestrator.create_job(JobType.DATA_IMPORT, user_id=2)

    assert len(await orchestrator.list_jobs(user_id=1)) == 2
    assert len(await orchestrator.list_jobs(user_id=1, job_type=JobType.DATA_IMPORT)) == 1


def test_normalize_metadata_closed_value_set():
    assert normalize_metadata({
        "count": 3,
        "ratio": 0.5,
        "ok": True,
        "status": JobStatus.RUNNING,
        "when": datetime(2024, 1, 2, 3, 4, 5),
        "nested": {1: ("a", "b")},
    }) == {
        "count": 3,
        "ratio": 0.5,
        "ok": True,
        "status": "running",
        "when": "2024-01-02T03:04:05",
        "nested": {"1": ["a", "b"]},
    }

    with pytest.raises(TypeError):
        normalize_metadata({"bad": object()})


def test_orchestrator_defaults_to_configured_limits():
    orchestrator = JobOrchestrator(session_maker=object())
    assert orchestrator.max_subscribers == 5
