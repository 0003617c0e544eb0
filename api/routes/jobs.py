"""
Async job status, cancellation and event stream endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from api.dependencies import get_current_user, get_orchestrator
from dataflow.jobs import JobOrchestrator
from models.base import JobType
from schemas.api import JobStatusResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"])


async def _owned_job(job_id: str, user_id: int, orchestrator: JobOrchestrator):
    job = await orchestrator.get_status(job_id)
    if job.user_id is not None and job.user_id != user_id:
        logger.warning(f"User {user_id} tried to access job {job_id} owned by {job.user_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Job belongs to another user")
    return job


@router.get("", response_model=List[JobStatusResponse])
async def list_my_jobs(
    job_type: Optional[JobType] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    user_id: int = Depends(get_current_user),
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    jobs = await orchestrator.list_jobs(user_id=user_id, job_type=job_type, limit=limit)
    return [JobStatusResponse.from_job(job) for job in jobs]


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    user_id: int = Depends(get_current_user),
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    job = await _owned_job(job_id, user_id, orchestrator)
    return JobStatusResponse.from_job(job)


@router.post("/{job_id}/cancel", response_model=JobStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def cancel_job(
    job_id: str,
    user_id: int = Depends(get_current_user),
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """
    Request cancellation. The job stops before its next step and ends
    FAILED with the message "cancelled".
    """
    await _owned_job(job_id, user_id, orchestrator)
    job = await orchestrator.cancel(job_id)
    return JobStatusResponse.from_job(job)


@router.get("/{job_id}/events")
async def stream_job_events(
    job_id: str,
    user_id: int = Depends(get_current_user),
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """
    Server-Sent Events stream of job transitions.

    The first event is the current state; the stream ends after the
    'complete' or 'error' event.
    """
    await _owned_job(job_id, user_id, orchestrator)
    subscription = await orchestrator.subscribe(job_id)

    async def event_stream():
        try:
            async for event in subscription:
                payload = JobStatusResponse.from_job(event.job).model_dump_json()
                yield f"event: {event.event}\ndata: {payload}\n\n"
        finally:
            subscription.close()

    # frees the subscriber slot even when the body never starts
    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(subscription.close)
    )
