from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class DatasetKind(str, enum.Enum):
    """Dataset origin"""
    SOURCE = "source"
    DERIVED = "derived"


class ColumnType(str, enum.Enum):
    """Declared column types"""
    TEXT = "TEXT"
    INTEGER = "INTEGER"
    DECIMAL = "DECIMAL"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    TIMESTAMP = "TIMESTAMP"


class StepKind(str, enum.Enum):
    """Pipeline step kinds"""
    SQL_QUERY = "sql_query"
    SCRIPT = "script"


class ExecutionStatus(str, enum.Enum):
    """Pipeline execution status"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, enum.Enum):
    """Per-step result status"""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobStatus(str, enum.Enum):
    """Async job lifecycle state"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobType(str, enum.Enum):
    """Kinds of async jobs"""
    PIPELINE_EXECUTION = "pipeline_execution"
    DATA_IMPORT = "data_import"


class TriggerType(str, enum.Enum):
    """What starts a pipeline run on its own"""
    SCHEDULE = "schedule"
    PIPELINE_CHAIN = "pipeline_chain"
    API = "api"


class TriggerEventType(str, enum.Enum):
    """Outcome of one trigger firing"""
    FIRED = "fired"
    SKIPPED = "skipped"
    ERROR = "error"



TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.SUCCEEDED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})
