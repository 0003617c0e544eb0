"""
Dashboard statistics endpoint
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, require_permission, DATASET_READ
from dataflow.dashboard import get_dashboard_stats
from schemas.api import DashboardResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Dashboard"])


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    request: Request,
    limit: Optional[int] = Query(None, ge=1, le=50, description="Number of recent imports/executions to return"),
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(DATASET_READ))
):
    """
    Get dashboard statistics.

    Returns:
    - Dataset totals (all, source, derived)
    - Pipeline totals (all, active)
    - Most recent imports and executions
    """
    request_id = request.state.request_id
    logger.info(f"[{request_id}] GET /dashboard")

    stats = await get_dashboard_stats(db, recent_limit=limit)
    return DashboardResponse(**stats)
