"""
Pipeline definitions: create, read and toggle pipelines with ordered steps.
"""

from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.exceptions import NotFound
from models.base import StepKind
from models.pipeline import Pipeline, PipelineStep

logger = logging.getLogger(__name__)


class PipelineService:
    """CRUD for pipelines; steps are replaced as a whole, never edited in place."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def create(
        self,
        name: str,
        steps: List[Dict[str, Any]],
        description: Optional[str] = None,
        is_active: bool = True,
        created_by: Optional[int] = None
    ) -> Pipeline:
        pipeline = Pipeline(
            name=name,
            description=description,
            is_active=is_active,
            created_by=created_by,
        )
        pipeline.steps = [self._build_step(index, data) for index, data in enumerate(steps)]
        self.db.add(pipeline)
        await self.db.commit()

        logger.info(f"Created pipeline '{name}' with {len(steps)} steps")
        return await self.get(pipeline.id)

    async def get(self, pipeline_id: int) -> Pipeline:
        result = await self.db.execute(
            select(Pipeline)
            .options(selectinload(Pipeline.steps))
            .where(Pipeline.id == pipeline_id)
            .execution_options(populate_existing=True)
        )
        pipeline = result.scalar_one_or_none()
        if pipeline is None:
            raise NotFound(f"Pipeline {pipeline_id} not found", context={"pipeline_id": pipeline_id})
        return pipeline

    async def list(self, active_only: bool = False, limit: int = 50, offset: int = 0) -> List[Pipeline]:
        query = select(Pipeline).options(selectinload(Pipeline.steps))
        if active_only:
            query = query.where(Pipeline.is_active.is_(True))
        query = query.order_by(Pipeline.id).offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def set_active(self, pipeline_id: int, is_active: bool) -> Pipeline:
        pipeline = await self.get(pipeline_id)
        pipeline.is_active = is_active
        await self.db.commit()
        logger.info(f"Pipeline {pipeline_id} {'activated' if is_active else 'deactivated'}")
        return await self.get(pipeline_id)

    async def replace_steps(self, pipeline_id: int, steps: List[Dict[str, Any]]) -> Pipeline:
        pipeline = await self.get(pipeline_id)
        pipeline.steps.clear()
        await self.db.flush()
        pipeline.steps.extend(self._build_step(index, data) for index, data in enumerate(steps))
        await self.db.commit()
        return await self.get(pipeline_id)

    async def count(self, active_only: bool = False) -> int:
        query = select(func.count()).select_from(Pipeline)
        if active_only:
            query = query.where(Pipeline.is_active.is_(True))
        result = await self.db.execute(query)
        return result.scalar() or 0

    @staticmethod
    def _build_step(index: int, data: Dict[str, Any]) -> PipelineStep:
        return PipelineStep(
            step_index=index,
            name=data.get("name") or f"step-{index}",
            kind=StepKind(data["kind"]),
            source=data["source"],
            input_refs=list(data.get("input_refs") or []),
            output_name=data["output_name"],
            timeout_seconds=data.get("timeout_seconds"),
        )
