"""
Pipeline execution detail endpoint
"""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from api.dependencies import get_db, require_permission, PIPELINE_READ
from core.exceptions import NotFound
from models.execution import PipelineExecution
from schemas.pipelines import ExecutionResponse

router = APIRouter(prefix="/executions", tags=["Executions"])


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(PIPELINE_READ))
):
    """Execution status with per-step results, including the failing step's error detail."""
    result = await db.execute(
        select(PipelineExecution)
        .options(selectinload(PipelineExecution.step_results))
        .where(PipelineExecution.id == execution_id)
    )
    execution = result.scalar_one_or_none()
    if execution is None:
        raise NotFound(f"Execution {execution_id} not found", context={"execution_id": execution_id})
    return execution
