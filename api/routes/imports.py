"""
File import endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, get_import_runner, require_permission, DATA_IMPORT, DATASET_READ
from core.exceptions import NotFound, ValidationFailed
from dataflow.importer import ImportRequest, ImportRunner
from dataflow.parser import ParseOptions
from dataflow.validator import ColumnSpec
from models.data_import import DataImport
from schemas.api import JobAcceptedResponse
from schemas.datasets import ImportOptions, ImportResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/imports", tags=["Imports"])


@router.post("", response_model=JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_import(
    file: UploadFile = File(...),
    options: str = Form(..., description="JSON-encoded ImportOptions"),
    runner: ImportRunner = Depends(get_import_runner),
    user_id: int = Depends(require_permission(DATA_IMPORT))
):
    """
    Upload a delimited file and import it into a new SOURCE dataset.

    The file is parsed and validated in the background; poll the returned
    job. A failed job carries the ordered row-level errors in its metadata.
    """
    try:
        parsed = ImportOptions.model_validate_json(options)
    except PydanticValidationError as e:
        raise ValidationFailed(
            "Invalid import options",
            errors=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        )

    data = await file.read()
    request = ImportRequest(
        dataset_name=parsed.dataset_name,
        columns=[ColumnSpec.from_dict(column.model_dump()) for column in parsed.columns],
        file_name=file.filename,
        data=data,
        parse_options=ParseOptions(
            delimiter=parsed.delimiter,
            encoding=parsed.encoding,
            has_header=parsed.has_header,
            skip_rows=parsed.skip_rows,
        ),
        column_mapping=parsed.column_mapping,
        description=parsed.description,
        user_id=user_id,
    )
    job, record = await runner.submit(request)
    return JobAcceptedResponse(
        job_id=job.job_id,
        status=job.status,
        import_id=record.id,
        status_url=f"/jobs/{job.job_id}",
    )


@router.get("", response_model=List[ImportResponse])
async def list_imports(
    dataset_name: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(DATASET_READ))
):
    query = select(DataImport)
    if dataset_name:
        query = query.where(DataImport.dataset_name == dataset_name)
    query = query.order_by(DataImport.created_at.desc(), DataImport.id.desc()).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


@router.get("/{import_id}", response_model=ImportResponse)
async def get_import(
    import_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(require_permission(DATASET_READ))
):
    record = await db.get(DataImport, import_id)
    if record is None:
        raise NotFound(f"Import {import_id} not found", context={"import_id": import_id})
    return record
