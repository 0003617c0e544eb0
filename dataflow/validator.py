# ============================================================================
# File: dataflow/validator.py
# Description: Structural and row-level validation of imported tables
# ============================================================================
"""
Import Validator - checks raw rows against a declared schema.

Validation order:
1. Structural: every declared column must be present (after the optional
   column mapping); extra columns are dropped with a warning.
2. Row-level: every cell is coerced into its declared type. A row with any
   bad cell is excluded and reported as one error entry per bad cell.
3. Threshold: if the share of invalid rows exceeds the configured error
   rate, the whole import fails with ValidationFailed.

Validation is pure: the same input and schema always give the same
batch and the same ordered error list.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import logging
import math
import re

import pandas as pd

from core.config import settings
from core.exceptions import ValidationFailed
from models.base import ColumnType

logger = logging.getLogger(__name__)

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%d-%m-%Y", "%d/%m/%Y", "%m/%d/%Y")
TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%d-%m-%Y %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%Y%m%d%H%M%S",
)
TRUE_VALUES = {"true", "1", "yes"}
FALSE_VALUES = {"false", "0", "no"}

_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_DECIMAL_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_INT64_MIN, _INT64_MAX = -(2 ** 63), 2 ** 63 - 1


@dataclass(frozen=True)
class ColumnSpec:
    """One declared column of an import schema."""
    name: str
    type: ColumnType = ColumnType.TEXT
    nullable: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ColumnSpec":
        return cls(
            name=data["name"],
            type=ColumnType(str(data.get("type", ColumnType.TEXT.value)).upper()),
            nullable=bool(data.get("nullable", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type.value, "nullable": self.nullable}


@dataclass(frozen=True)
class RowError:
    """A cell that could not be coerced. Rows are numbered from 1."""
    row: int
    column: str
    value: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row, "column": self.column, "value": self.value, "reason": self.reason}


@dataclass
class ValidatedBatch:
    """Rows that passed validation, with the non-fatal errors of skipped rows."""
    frame: pd.DataFrame
    total_rows: int
    row_errors: List[RowError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    invalid_rows: int = 0

    @property
    def valid_rows(self) -> int:
        return len(self.frame)

    @property
    def error_rate(self) -> float:
        return self.invalid_rows / self.total_rows if self.total_rows else 0.0


# ============================================================================
# Coercion
# ============================================================================

def strip_quotes(value: str) -> str:
    """Remove one pair of surrounding quotes, or a dangling leading quote."""
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    if value[:1] in ("'", '"'):
        return value[1:]
    return value


def _to_integer(value: str) -> int:
    if not _INTEGER_RE.match(value):
        raise ValueError(f"Invalid integer value: {value}")
    number = int(value)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise ValueError(f"Integer value out of range: {value}")
    return number


def _to_decimal(value: str) -> float:
    if not _DECIMAL_RE.match(value):
        raise ValueError(f"Invalid decimal value: {value}")
    number = float(value)
    if math.isinf(number):
        raise ValueError(f"Decimal value out of range: {value}")
    return number


def _to_boolean(value: str) -> bool:
    lowered = value.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value} (expected: true/false/1/0/yes/no)")


def _to_date(value: str) -> date:
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(
        f"Invalid date value: {value} "
        f"(expected formats: yyyy-MM-dd, yyyy/MM/dd, dd-MM-yyyy, dd/MM/yyyy, MM/dd/yyyy)"
    )


def _to_timestamp(value: str) -> datetime:
    parsed: Optional[datetime] = None
    if "T" in value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
    if parsed is None:
        for fmt in TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        raise ValueError(
            f"Invalid timestamp value: {value} "
            f"(expected formats: yyyy-MM-dd HH:mm:ss, yyyyMMddHHmmss, ISO format)"
        )
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


_CONVERTERS: Dict[ColumnType, Callable[[str], Any]] = {
    ColumnType.TEXT: lambda value: value,
    ColumnType.INTEGER: _to_integer,
    ColumnType.DECIMAL: _to_decimal,
    ColumnType.BOOLEAN: _to_boolean,
    ColumnType.DATE: _to_date,
    ColumnType.TIMESTAMP: _to_timestamp,
}


def coerce_value(raw: Optional[str], column_type: ColumnType) -> Any:
    """
    Convert one raw cell. Empty cells become None.

    Raises:
        ValueError: the cell is not coercible into column_type
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    value = strip_quotes(value)
    return _CONVERTERS[column_type](value)


def _build_column(values: List[Any], column_type: ColumnType) -> pd.Series:
    if column_type == ColumnType.INTEGER:
        return pd.Series(values, dtype="Int64")
    if column_type == ColumnType.DECIMAL:
        return pd.Series(values, dtype="Float64")
    if column_type == ColumnType.BOOLEAN:
        return pd.Series(values, dtype="boolean")
    if column_type == ColumnType.TIMESTAMP:
        return pd.Series(values, dtype="datetime64[ns]")
    return pd.Series(values, dtype="object")


# ============================================================================
# Validator
# ============================================================================

class ImportValidator:
    """
    Validates a raw frame of strings against declared columns.

    Args:
        error_threshold: Maximum tolerated fraction of invalid rows (0..1)
    """

    def __init__(self, error_threshold: Optional[float] = None):
        threshold = settings.IMPORT_ERROR_THRESHOLD if error_threshold is None else error_threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"error_threshold must be within [0, 1], got {threshold}")
        self.error_threshold = threshold

    def validate(
        self,
        raw: pd.DataFrame,
        schema: Sequence[ColumnSpec],
        column_mapping: Optional[Mapping[str, str]] = None
    ) -> ValidatedBatch:
        """
        Validate raw rows.

        Args:
            raw: Frame of string cells as produced by the parser
            schema: Declared columns, in output order
            column_mapping: Optional file column -> declared column renames

        Returns:
            ValidatedBatch with coerced rows and the skipped-row errors

        Raises:
            ValidationFailed: structural problems, or error rate above threshold
        """
        if not schema:
            raise ValidationFailed("Schema declares no columns", errors=["Schema declares no columns"])

        frame = raw.rename(columns=dict(column_mapping)) if column_mapping else raw
        structural_errors, warnings = self._check_structure(frame, schema)
        if structural_errors:
            logger.warning(f"Import rejected: {'; '.join(structural_errors)}")
            raise ValidationFailed(
                "File does not match the declared schema",
                errors=structural_errors,
                context={"missing_columns": len(structural_errors)}
            )

        total_rows = len(frame)
        if total_rows == 0:
            raise ValidationFailed("File contains no data rows", errors=["File contains no data rows"])

        row_errors: List[RowError] = []
        columns: Dict[str, List[Any]] = {spec.name: [] for spec in schema}
        invalid_rows = 0

        records = frame[[spec.name for spec in schema]].itertuples(index=False, name=None)
        for row_number, cells in enumerate(records, start=1):
            converted = []
            row_ok = True
            for spec, cell in zip(schema, cells):
                raw_value = "" if cell is None else str(cell)
                try:
                    value = coerce_value(raw_value, spec.type)
                except ValueError as e:
                    row_errors.append(RowError(row_number, spec.name, raw_value, str(e)))
                    row_ok = False
                    continue
                if value is None and not spec.nullable:
                    row_errors.append(RowError(row_number, spec.name, raw_value, "Required field is empty"))
                    row_ok = False
                    continue
                converted.append(value)

            if not row_ok:
                invalid_rows += 1
                continue
            for spec, value in zip(schema, converted):
                columns[spec.name].append(value)

        error_rate = invalid_rows / total_rows
        logger.info(
            f"Validated {total_rows} rows: {total_rows - invalid_rows} valid, "
            f"{invalid_rows} invalid ({error_rate:.1%}, threshold {self.error_threshold:.1%})"
        )

        if error_rate > self.error_threshold:
            raise ValidationFailed(
                f"{invalid_rows} of {total_rows} rows failed validation "
                f"({error_rate:.1%} exceeds the {self.error_threshold:.1%} threshold)",
                row_errors=[e.to_dict() for e in row_errors],
                context={
                    "total_rows": total_rows,
                    "invalid_rows": invalid_rows,
                    "error_threshold": self.error_threshold,
                }
            )

        validated = pd.DataFrame({
            spec.name: _build_column(columns[spec.name], spec.type) for spec in schema
        })
        return ValidatedBatch(
            frame=validated,
            total_rows=total_rows,
            row_errors=row_errors,
            warnings=warnings,
            invalid_rows=invalid_rows,
        )

    @staticmethod
    def _check_structure(frame: pd.DataFrame, schema: Sequence[ColumnSpec]):
        present = list(frame.columns)
        declared = [spec.name for spec in schema]
        errors = [f"Missing column: {name}" for name in declared if name not in present]

        duplicates = sorted({name for name in declared if declared.count(name) > 1})
        errors.extend(f"Column declared more than once: {name}" for name in duplicates)

        warnings = [f"Ignoring unmapped column: {name}" for name in present if name not in declared]
        for warning in warnings:
            logger.warning(warning)
        return errors, warnings
