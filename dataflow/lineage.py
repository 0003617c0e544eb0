"""
Lineage tracking for derived datasets.

Edges are append-only: they are recorded in the same transaction that
creates the derived dataset and are never updated or deleted.
"""

from collections import deque
from typing import List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.dataset import LineageEdge

logger = logging.getLogger(__name__)


class LineageTracker:
    """Records and queries producer edges between datasets."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def record(
        self,
        derived_dataset_id: int,
        source_dataset_id: int,
        execution_id: int,
        step_index: int,
        commit: bool = False
    ) -> LineageEdge:
        """Append one edge. The caller owns the transaction unless commit=True."""
        edge = LineageEdge(
            derived_dataset_id=derived_dataset_id,
            source_dataset_id=source_dataset_id,
            execution_id=execution_id,
            step_index=step_index,
        )
        self.db.add(edge)
        if commit:
            await self.db.commit()
        logger.debug(
            f"Lineage: dataset {derived_dataset_id} <- {source_dataset_id} "
            f"(execution {execution_id}, step {step_index})"
        )
        return edge

    async def parents_of(self, dataset_id: int) -> List[LineageEdge]:
        result = await self.db.execute(
            select(LineageEdge)
            .where(LineageEdge.derived_dataset_id == dataset_id)
            .order_by(LineageEdge.id)
        )
        return list(result.scalars().all())

    async def ancestors_of(self, dataset_id: int, max_depth: Optional[int] = None) -> List[LineageEdge]:
        """
        Transitive closure of producer edges, breadth-first from dataset_id.

        Edges of the same dataset keep insertion order; each dataset is
        expanded once.
        """
        edges: List[LineageEdge] = []
        visited = {dataset_id}
        queue = deque([(dataset_id, 0)])

        while queue:
            current, depth = queue.popleft()
            if max_depth is not None and depth >= max_depth:
                continue
            for edge in await self.parents_of(current):
                edges.append(edge)
                if edge.source_dataset_id not in visited:
                    visited.add(edge.source_dataset_id)
                    queue.append((edge.source_dataset_id, depth + 1))

        return edges
