# ============================================================================
# File: dataflow/importer.py
# Description: Asynchronous file import into a new SOURCE dataset
# ============================================================================
"""
Import Runner - parse, validate and materialize an uploaded file.

Stages reported on the job:
    parsing (10) -> validating (30) -> materializing (60) -> completed (100)

A failed import leaves no dataset behind. On success the SOURCE dataset
is registered without lineage, and the job metadata carries the row
errors of the rows that were skipped.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional, Set, Tuple
import asyncio
import logging

from core.config import settings
from core.database import async_session_maker
from core.exceptions import DataflowException, InvalidTransition, ValidationFailed
from dataflow.jobs import JobOrchestrator
from dataflow.parser import ParseOptions, file_type_for, parse_csv
from dataflow.registry import DatasetRegistry
from dataflow.storage import ParquetStorage
from dataflow.validator import ColumnSpec, ImportValidator
from models.base import JobStatus, JobType
from models.data_import import DataImport
from models.job import AsyncJob

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"


@dataclass
class ImportRequest:
    """Everything needed to run one import, captured at submission time."""
    dataset_name: str
    columns: List[ColumnSpec]
    file_name: str
    data: bytes
    parse_options: ParseOptions = field(default_factory=ParseOptions)
    column_mapping: Optional[Mapping[str, str]] = None
    description: Optional[str] = None
    user_id: Optional[int] = None


class ImportRunner:
    """
    Runs imports as async jobs.

    Responsibilities:
    - Reject oversized or unsupported files before a job exists
    - Drive parse -> validate -> materialize on its own asyncio task
    - Keep the data_imports audit record in step with the job
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        storage: Optional[ParquetStorage] = None,
        validator: Optional[ImportValidator] = None,
        session_maker=None,
        max_file_bytes: Optional[int] = None
    ):
        self.orchestrator = orchestrator
        self.storage = storage or ParquetStorage()
        self.validator = validator or ImportValidator()
        self._session_maker = session_maker or async_session_maker
        self.max_file_bytes = max_file_bytes or settings.IMPORT_MAX_FILE_BYTES
        self._tasks: Set[asyncio.Task] = set()

    async def submit(self, request: ImportRequest) -> Tuple[AsyncJob, DataImport]:
        """
        Accept an import and start it in the background.

        Raises:
            ValidationFailed: unsupported file type, empty or oversized file
        """
        job, record = await self.prepare(request)
        task = asyncio.create_task(self.run(request, record.id, job.job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job, record

    async def prepare(self, request: ImportRequest) -> Tuple[AsyncJob, DataImport]:
        file_type = file_type_for(request.file_name)
        size = len(request.data)
        if size == 0:
            raise ValidationFailed("Uploaded file is empty", errors=["Uploaded file is empty"])
        if size > self.max_file_bytes:
            message = f"File is {size} bytes; the limit is {self.max_file_bytes} bytes"
            raise ValidationFailed(message, errors=[message])

        job = await self.orchestrator.create_job(
            JobType.DATA_IMPORT,
            user_id=request.user_id,
            resource="dataset",
            resource_id=request.dataset_name,
            metadata={
                "dataset_name": request.dataset_name,
                "file_name": request.file_name,
                "file_size": size,
                "file_type": file_type,
            },
        )
        async with self._session_maker() as session:
            record = DataImport(
                job_id=job.job_id,
                dataset_name=request.dataset_name,
                file_name=request.file_name,
                file_size=size,
                file_type=file_type,
                status=JobStatus.PENDING,
                imported_by=request.user_id,
            )
            session.add(record)
            await session.commit()

        logger.info(f"Accepted import of '{request.file_name}' into '{request.dataset_name}' (job {job.job_id})")
        return job, record

    async def wait_all(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_all()

    async def run(self, request: ImportRequest, import_id: int, job_id: str) -> JobStatus:
        """Drive one import to a terminal state. Never raises for bad files."""
        total_rows = 0

        try:
            await self._update_import(import_id, status=JobStatus.RUNNING, started_at=datetime.utcnow())

            # --------------------------------------------------
            # PHASE 1: PARSE
            # --------------------------------------------------
            await self.orchestrator.advance(
                job_id, "parsing", progress=10, metadata={"total_rows": 0, "processed_rows": 0}
            )
            frame = await asyncio.to_thread(parse_csv, request.data, request.parse_options)
            total_rows = len(frame)

            if await self._cancelled(job_id, import_id, total_rows):
                return JobStatus.FAILED

            # --------------------------------------------------
            # PHASE 2: VALIDATE
            # --------------------------------------------------
            await self.orchestrator.advance(
                job_id, "validating", progress=30, metadata={"total_rows": total_rows, "processed_rows": 0}
            )
            batch = await asyncio.to_thread(
                self.validator.validate, frame, request.columns, request.column_mapping
            )

            if await self._cancelled(job_id, import_id, total_rows):
                return JobStatus.FAILED

            # --------------------------------------------------
            # PHASE 3: MATERIALIZE
            # --------------------------------------------------
            await self.orchestrator.advance(
                job_id,
                "materializing",
                progress=60,
                metadata={"total_rows": total_rows, "processed_rows": total_rows},
            )
            storage_key = await asyncio.to_thread(self.storage.write, batch.frame)
            try:
                async with self._session_maker() as session:
                    dataset = await DatasetRegistry(session).create_source(
                        name=request.dataset_name,
                        schema=[column.to_dict() for column in request.columns],
                        storage_key=storage_key,
                        row_count=batch.valid_rows,
                        created_by=request.user_id,
                        description=request.description,
                    )
            except Exception:
                self.storage.delete(storage_key)
                raise

            row_errors = [e.to_dict() for e in batch.row_errors]
            await self._update_import(
                import_id,
                status=JobStatus.SUCCEEDED,
                dataset_id=dataset.id,
                total_rows=batch.total_rows,
                success_rows=batch.valid_rows,
                error_rows=batch.invalid_rows,
                error_details={"row_errors": row_errors, "warnings": batch.warnings},
                completed_at=datetime.utcnow(),
            )
            await self.orchestrator.complete(job_id, metadata={
                "dataset_id": dataset.id,
                "dataset_version": dataset.version,
                "total_rows": batch.total_rows,
                "success_rows": batch.valid_rows,
                "error_rows": batch.invalid_rows,
                "row_errors": row_errors,
                "warnings": batch.warnings,
            })
            logger.info(
                f"Import {import_id} created dataset '{dataset.name}' v{dataset.version} "
                f"with {batch.valid_rows} rows ({batch.invalid_rows} skipped)"
            )
            return JobStatus.SUCCEEDED

        except ValidationFailed as e:
            logger.warning(f"Import {import_id} rejected: {e.message}")
            invalid_rows = e.context.get("invalid_rows", 0)
            await self._update_import(
                import_id,
                status=JobStatus.FAILED,
                total_rows=total_rows,
                success_rows=0,
                error_rows=invalid_rows,
                error_message=e.message,
                error_details={"errors": e.errors, "row_errors": e.row_errors},
                completed_at=datetime.utcnow(),
            )
            await self.orchestrator.fail(job_id, e.message, metadata={
                "total_rows": total_rows,
                "error_rows": invalid_rows,
                "errors": e.errors,
                "row_errors": e.row_errors,
            })
            return JobStatus.FAILED

        except asyncio.CancelledError:
            logger.warning(f"Import {import_id} interrupted by shutdown")
            await self._abort(import_id, job_id, CANCELLED_MESSAGE)
            raise

        except Exception as e:
            logger.exception(f"Unexpected error in import {import_id}")
            message = e.message if isinstance(e, DataflowException) else str(e) or type(e).__name__
            await self._abort(import_id, job_id, message)
            return JobStatus.FAILED

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _cancelled(self, job_id: str, import_id: int, total_rows: int) -> bool:
        if not await self.orchestrator.is_cancel_requested(job_id):
            return False
        logger.info(f"Import {import_id} cancelled")
        await self._update_import(
            import_id,
            status=JobStatus.FAILED,
            total_rows=total_rows,
            error_message=CANCELLED_MESSAGE,
            completed_at=datetime.utcnow(),
        )
        await self.orchestrator.fail(job_id, CANCELLED_MESSAGE, metadata={"cancelled": True})
        return True

    async def _abort(self, import_id: int, job_id: str, message: str) -> None:
        try:
            await self._update_import(
                import_id, status=JobStatus.FAILED, error_message=message, completed_at=datetime.utcnow()
            )
        except Exception:
            logger.exception(f"Could not mark import {import_id} as failed")
        try:
            await self.orchestrator.fail(job_id, message)
        except InvalidTransition:
            logger.debug(f"Job {job_id} was already terminal")

    async def _update_import(self, import_id: int, **fields: Any) -> None:
        async with self._session_maker() as session:
            record = await session.get(DataImport, import_id)
            for key, value in fields.items():
                setattr(record, key, value)
            await session.commit()
