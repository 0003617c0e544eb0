"""
Dashboard read-side projection over datasets, pipelines, imports and executions.
"""

from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.config import settings
from dataflow.pipelines import PipelineService
from dataflow.registry import DatasetRegistry
from models.base import DatasetKind
from models.data_import import DataImport
from models.execution import PipelineExecution


async def get_dashboard_stats(db: AsyncSession, recent_limit: Optional[int] = None) -> Dict[str, Any]:
    """Totals plus the most recent imports and executions."""
    limit = recent_limit or settings.DASHBOARD_RECENT_LIMIT
    registry = DatasetRegistry(db)
    pipelines = PipelineService(db)

    recent_imports = await db.execute(
        select(DataImport).order_by(DataImport.created_at.desc(), DataImport.id.desc()).limit(limit)
    )
    recent_executions = await db.execute(
        select(PipelineExecution)
        .options(selectinload(PipelineExecution.pipeline))
        .order_by(PipelineExecution.created_at.desc(), PipelineExecution.id.desc())
        .limit(limit)
    )

    return {
        "total_datasets": await registry.count(),
        "source_datasets": await registry.count(DatasetKind.SOURCE),
        "derived_datasets": await registry.count(DatasetKind.DERIVED),
        "total_pipelines": await pipelines.count(),
        "active_pipelines": await pipelines.count(active_only=True),
        "recent_imports": [
            {
                "id": record.id,
                "job_id": record.job_id,
                "dataset_id": record.dataset_id,
                "dataset_name": record.dataset_name,
                "file_name": record.file_name,
                "status": record.status,
                "total_rows": record.total_rows,
                "error_rows": record.error_rows,
                "created_at": record.created_at,
            }
            for record in recent_imports.scalars().all()
        ],
        "recent_executions": [
            {
                "id": execution.id,
                "job_id": execution.job_id,
                "pipeline_id": execution.pipeline_id,
                "pipeline_name": execution.pipeline.name if execution.pipeline else None,
                "status": execution.status,
                "failed_step_index": execution.failed_step_index,
                "created_at": execution.created_at,
                "completed_at": execution.completed_at,
            }
            for execution in recent_executions.scalars().all()
        ],
    }
