"""
Dataset read endpoints: list, detail, row preview and lineage
"""

from typing import List, Optional
import asyncio
import json

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, get_storage, require_permission, DATASET_READ
from dataflow.lineage import LineageTracker
from dataflow.registry import DatasetRegistry
from dataflow.storage import ParquetStorage
from models.base import DatasetKind
from schemas.datasets import DatasetResponse, DatasetRowsResponse, LineageEdgeResponse, LineageResponse

router = APIRouter(prefix="/datasets", tags=["Datasets"])


@router.get("", response_model=List[DatasetResponse])
async def list_datasets(
    kind: Optional[DatasetKind] = Query(None, description="Filter by source/derived"),
    name: Optional[str] = Query(None, description="All versions of one dataset name"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(DATASET_READ))
):
    datasets = await DatasetRegistry(db).list(kind=kind, name=name, limit=limit, offset=offset)
    return [DatasetResponse.from_dataset(d) for d in datasets]


@router.get("/{dataset_id}", response_model=DatasetResponse)
async def get_dataset(
    dataset_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(DATASET_READ))
):
    return DatasetResponse.from_dataset(await DatasetRegistry(db).get(dataset_id))


@router.get("/{dataset_id}/rows", response_model=DatasetRowsResponse)
async def preview_dataset_rows(
    dataset_id: int,
    limit: int = Query(100, ge=1, le=10000),
    db: AsyncSession = Depends(get_db),
    storage: ParquetStorage = Depends(get_storage),
    user_id: int = Depends(require_permission(DATASET_READ))
):
    dataset = await DatasetRegistry(db).get(dataset_id)
    frame = await asyncio.to_thread(storage.read, dataset.storage_key, limit)
    rows = json.loads(frame.to_json(orient="records", date_format="iso"))
    return DatasetRowsResponse(
        dataset_id=dataset.id,
        columns=[str(c) for c in frame.columns],
        rows=rows,
        returned_rows=len(rows),
        total_rows=dataset.row_count,
    )


@router.get("/{dataset_id}/lineage", response_model=LineageResponse)
async def get_dataset_lineage(
    dataset_id: int,
    max_depth: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(DATASET_READ))
):
    """Transitive producer edges, breadth-first from the dataset."""
    await DatasetRegistry(db).get(dataset_id)
    edges = await LineageTracker(db).ancestors_of(dataset_id, max_depth=max_depth)
    return LineageResponse(
        dataset_id=dataset_id,
        edges=[LineageEdgeResponse.model_validate(edge) for edge in edges],
    )
