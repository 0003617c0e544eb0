"""
Dataset Registry - ground truth for dataset metadata.

Datasets are immutable once created. Writing a name that already exists
creates the next version; readers always see complete records.
"""

from typing import Any, Dict, List, Optional, Sequence, Union
import logging

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFound
from dataflow.lineage import LineageTracker
from models.base import DatasetKind
from models.dataset import Dataset

logger = logging.getLogger(__name__)

MAX_VERSION_ATTEMPTS = 3


class DatasetRegistry:
    """
    Reads and creates dataset records.

    SOURCE datasets are created by imports; DERIVED datasets only by the
    pipeline runner, together with their lineage edges.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, dataset_id: int) -> Dataset:
        dataset = await self.db.get(Dataset, dataset_id)
        if dataset is None:
            raise NotFound(f"Dataset {dataset_id} not found", context={"dataset_id": dataset_id})
        return dataset

    async def latest_by_name(self, name: str) -> Optional[Dataset]:
        result = await self.db.execute(
            select(Dataset)
            .where(Dataset.name == name)
            .order_by(Dataset.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def resolve(self, reference: Union[int, str]) -> Dataset:
        """
        Resolve an integer id or a dataset name (latest version).

        Strings are always names, even when they look numeric.
        """
        if isinstance(reference, int) and not isinstance(reference, bool):
            return await self.get(reference)

        dataset = await self.latest_by_name(reference)
        if dataset is None:
            raise NotFound(f"Dataset '{reference}' not found", context={"reference": reference})
        return dataset

    async def list(
        self,
        kind: Optional[DatasetKind] = None,
        name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dataset]:
        query = select(Dataset)
        if kind:
            query = query.where(Dataset.kind == kind)
        if name:
            query = query.where(Dataset.name == name)
        query = query.order_by(Dataset.created_at.desc(), Dataset.id.desc()).offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count(self, kind: Optional[DatasetKind] = None) -> int:
        query = select(func.count()).select_from(Dataset)
        if kind:
            query = query.where(Dataset.kind == kind)
        result = await self.db.execute(query)
        return result.scalar() or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_source(
        self,
        name: str,
        schema: List[Dict[str, Any]],
        storage_key: str,
        row_count: int,
        created_by: Optional[int] = None,
        description: Optional[str] = None
    ) -> Dataset:
        """Register an imported dataset. SOURCE datasets have no lineage."""
        return await self._insert_version(
            name=name,
            kind=DatasetKind.SOURCE,
            schema=schema,
            storage_key=storage_key,
            row_count=row_count,
            created_by=created_by,
            description=description,
        )

    async def create_derived(
        self,
        name: str,
        schema: List[Dict[str, Any]],
        storage_key: str,
        row_count: int,
        source_dataset_ids: Sequence[int],
        execution_id: int,
        step_index: int,
        created_by: Optional[int] = None
    ) -> Dataset:
        """Register a step output and its lineage edges in one transaction."""
        sources = list(dict.fromkeys(source_dataset_ids))
        if not sources:
            raise ValueError("A derived dataset needs at least one source dataset")

        return await self._insert_version(
            name=name,
            kind=DatasetKind.DERIVED,
            schema=schema,
            storage_key=storage_key,
            row_count=row_count,
            created_by=created_by,
            lineage=(sources, execution_id, step_index),
        )

    async def _next_version(self, name: str) -> int:
        result = await self.db.execute(
            select(func.max(Dataset.version)).where(Dataset.name == name)
        )
        return (result.scalar() or 0) + 1

    async def _insert_version(self, name, kind, schema, storage_key, row_count,
                              created_by=None, description=None, lineage=None) -> Dataset:
        for attempt in range(1, MAX_VERSION_ATTEMPTS + 1):
            dataset = Dataset(
                name=name,
                version=await self._next_version(name),
                kind=kind,
                description=description,
                schema=schema,
                row_count=int(row_count),
                column_count=len(schema),
                storage_key=storage_key,
                created_by=created_by,
            )
            self.db.add(dataset)
            try:
                await self.db.flush()
                if lineage:
                    sources, execution_id, step_index = lineage
                    tracker = LineageTracker(self.db)
                    for source_id in sources:
                        await tracker.record(dataset.id, source_id, execution_id, step_index)
                await self.db.commit()
            except IntegrityError:
                # a concurrent writer took this version number
                await self.db.rollback()
                if attempt == MAX_VERSION_ATTEMPTS:
                    raise
                continue

            await self.db.refresh(dataset)
            logger.info(
                f"Registered {kind.value} dataset '{name}' v{dataset.version} "
                f"(id={dataset.id}, rows={dataset.row_count})"
            )
            return dataset
