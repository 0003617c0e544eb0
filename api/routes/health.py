"""
Health check endpoint with database, storage and job status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db, get_storage
from core.config import settings
from core.database import check_connection
from dataflow.storage import ParquetStorage
from schemas.api import HealthCheckResponse
from models.base import JobStatus
from models.job import AsyncJob
from datetime import datetime, timedelta
import os
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    storage: ParquetStorage = Depends(get_storage)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Whether the dataset storage directory is writable
    - Number of running and stale async jobs
    """

    db_connected = await check_connection(db)

    storage_writable = storage.root.is_dir() and os.access(storage.root, os.W_OK)

    active_jobs = 0
    stale_jobs = 0
    if db_connected:
        try:
            active_filter = AsyncJob.status.in_([JobStatus.PENDING, JobStatus.RUNNING])
            cutoff = datetime.utcnow() - timedelta(minutes=settings.JOB_STALE_MINUTES)

            result = await db.execute(select(func.count()).select_from(AsyncJob).where(active_filter))
            active_jobs = result.scalar() or 0

            result = await db.execute(
                select(func.count()).select_from(AsyncJob).where(active_filter, AsyncJob.updated_at < cutoff)
            )
            stale_jobs = result.scalar() or 0
        except Exception as e:
            logger.error(f"Failed to count async jobs: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        storage_writable=storage_writable,
        active_jobs=active_jobs,
        stale_jobs=stale_jobs
    )
