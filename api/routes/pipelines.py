"""
Pipeline definition and execution endpoints
"""

from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from api.dependencies import (
    get_db,
    get_pipeline_runner,
    require_permission,
    PIPELINE_READ,
    PIPELINE_WRITE,
    PIPELINE_EXECUTE,
)
from dataflow.pipelines import PipelineService
from dataflow.runner import PipelineRunner
from models.execution import PipelineExecution
from schemas.api import JobAcceptedResponse
from schemas.pipelines import (
    ExecutionResponse,
    PipelineActiveUpdate,
    PipelineCreate,
    PipelineResponse,
    StepDefinition,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/pipelines", tags=["Pipelines"])


@router.post("", response_model=PipelineResponse, status_code=status.HTTP_201_CREATED)
async def create_pipeline(
    body: PipelineCreate,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(PIPELINE_WRITE))
):
    pipeline = await PipelineService(db).create(
        name=body.name,
        description=body.description,
        is_active=body.is_active,
        steps=[step.model_dump() for step in body.steps],
        created_by=user_id,
    )
    return pipeline


@router.get("", response_model=List[PipelineResponse])
async def list_pipelines(
    active_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(PIPELINE_READ))
):
    return await PipelineService(db).list(active_only=active_only, limit=limit, offset=offset)


@router.get("/{pipeline_id}", response_model=PipelineResponse)
async def get_pipeline(
    pipeline_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(PIPELINE_READ))
):
    return await PipelineService(db).get(pipeline_id)


@router.patch("/{pipeline_id}/active", response_model=PipelineResponse)
async def set_pipeline_active(
    pipeline_id: int,
    body: PipelineActiveUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(PIPELINE_WRITE))
):
    return await PipelineService(db).set_active(pipeline_id, body.is_active)


@router.put("/{pipeline_id}/steps", response_model=PipelineResponse)
async def replace_pipeline_steps(
    pipeline_id: int,
    steps: List[StepDefinition],
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(PIPELINE_WRITE))
):
    return await PipelineService(db).replace_steps(pipeline_id, [step.model_dump() for step in steps])


@router.post(
    "/{pipeline_id}/executions",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def execute_pipeline(
    pipeline_id: int,
    runner: PipelineRunner = Depends(get_pipeline_runner),
    user_id: int = Depends(require_permission(PIPELINE_EXECUTE))
):
    """
    Start a pipeline run.

    The plan is validated before the job exists, so an unresolvable input
    is rejected here with 422. Otherwise the job id returns immediately.
    """
    job, execution = await runner.submit(pipeline_id, user_id=user_id)
    logger.info(f"User {user_id} started pipeline {pipeline_id}: job {job.job_id}")
    return JobAcceptedResponse(
        job_id=job.job_id,
        status=job.status,
        execution_id=execution.id,
        status_url=f"/jobs/{job.job_id}",
    )


@router.get("/{pipeline_id}/executions", response_model=List[ExecutionResponse])
async def list_pipeline_executions(
    pipeline_id: int,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(PIPELINE_READ))
):
    await PipelineService(db).get(pipeline_id)
    result = await db.execute(
        select(PipelineExecution)
        .options(selectinload(PipelineExecution.step_results))
        .where(PipelineExecution.pipeline_id == pipeline_id)
        .order_by(PipelineExecution.created_at.desc(), PipelineExecution.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
