"""
Parquet-backed dataset storage.

The registry treats storage as a capability: write rows, get back an opaque
storage key; read a key, get rows back. Files are never modified after a
key is handed out.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Dict, Any, Optional
import logging
import os
import uuid

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from core.config import settings
from core.exceptions import StorageError
from models.base import ColumnType

logger = logging.getLogger(__name__)


class OutputWriter:
    """
    Scoped writer for one new dataset file.

    Rows are written to a staging file; commit() publishes it under a fresh
    storage key. A writer that is never committed leaves nothing behind.
    """

    def __init__(self, storage: "ParquetStorage"):
        self._storage = storage
        self.staging_path = storage.root / f".staging-{uuid.uuid4().hex}.parquet"
        self.key: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.key is not None

    def write_frame(self, df: pd.DataFrame) -> None:
        df.to_parquet(self.staging_path, index=False)

    def write_table(self, table: pa.Table) -> None:
        pq.write_table(table, self.staging_path)

    def commit(self) -> str:
        if not self.staging_path.exists():
            raise StorageError(
                "Nothing was written to the output",
                context={"staging_path": str(self.staging_path)}
            )
        key = f"{uuid.uuid4().hex}.parquet"
        os.replace(self.staging_path, self._storage.root / key)
        self.key = key
        return key

    def discard(self) -> None:
        if self.staging_path.exists():
            self.staging_path.unlink()


class ParquetStorage:
    """Stores each materialized dataset as one parquet file under root."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.DATASET_STORAGE_DIR)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / key

    @contextmanager
    def open_reader(self, key: str) -> Iterator[Path]:
        """Read handle for an existing dataset file."""
        path = self.path_for(key)
        if not path.exists():
            raise StorageError("Dataset file is missing", context={"storage_key": key})
        yield path

    @contextmanager
    def open_writer(self) -> Iterator[OutputWriter]:
        """Scoped output writer; uncommitted output is removed on exit."""
        writer = OutputWriter(self)
        try:
            yield writer
        finally:
            if not writer.committed:
                writer.discard()

    def write(self, df: pd.DataFrame) -> str:
        with self.open_writer() as writer:
            writer.write_frame(df)
            return writer.commit()

    def read(self, key: str, limit: Optional[int] = None) -> pd.DataFrame:
        with self.open_reader(key) as path:
            try:
                df = pd.read_parquet(path)
            except (OSError, pa.ArrowException) as e:
                raise StorageError(
                    "Failed to read dataset file",
                    context={"storage_key": key},
                    original_exception=e
                )
        if limit is not None:
            df = df.head(limit)
        return df

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        if path.exists():
            path.unlink()
            logger.info(f"Deleted dataset file {key}")

    def describe(self, key: str) -> Dict[str, Any]:
        """Row count and column schema read from parquet metadata."""
        path = self.path_for(key)
        metadata = pq.read_metadata(path)
        return {
            "row_count": metadata.num_rows,
            "schema": schema_from_arrow(metadata.schema.to_arrow_schema()),
        }


def column_type_for(arrow_type: pa.DataType) -> ColumnType:
    """Map an arrow type to the closest declared column type."""
    if pa.types.is_boolean(arrow_type):
        return ColumnType.BOOLEAN
    if pa.types.is_integer(arrow_type):
        return ColumnType.INTEGER
    if pa.types.is_floating(arrow_type) or pa.types.is_decimal(arrow_type):
        return ColumnType.DECIMAL
    if pa.types.is_date(arrow_type):
        return ColumnType.DATE
    if pa.types.is_timestamp(arrow_type):
        return ColumnType.TIMESTAMP
    return ColumnType.TEXT


def schema_from_arrow(arrow_schema: pa.Schema) -> List[Dict[str, Any]]:
    return [
        {"name": field.name, "type": column_type_for(field.type).value, "nullable": field.nullable}
        for field in arrow_schema
    ]
