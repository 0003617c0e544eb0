"""
Custom exceptions for the dataflow engine with structured error context.

Each exception carries a context dictionary for debugging and for the
terminal-state detail exposed to callers (failing step index, row errors).

Exception Hierarchy:
    DataflowException (base)
    ├── PlanError              pipeline structurally invalid, never retried
    ├── StepExecutionError
    │   ├── QueryError         SQL step failed
    │   └── ScriptError        script step failed, timed out or bound no output
    ├── ValidationFailed       import exceeded the row error threshold
    ├── InvalidTransition      job state used out of order
    ├── SubscriptionLimitExceeded  too many live subscribers for one job
    ├── NotFound               unknown job / dataset / pipeline / execution
    ├── StorageError           dataset storage backend failure
    └── TriggerError           invalid trigger definition (cron, chain cycle)
"""

from typing import Optional, Dict, Any, List
from datetime import datetime


class DataflowException(Exception):
    """
    Base exception for all dataflow errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (ids, step index, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Planning Errors
# ============================================================================

class PlanError(DataflowException):
    """
    Raised when a pipeline cannot be turned into an execution plan.

    Context should include:
        - pipeline_id: The pipeline being planned
        - step_index: Index of the offending step (if applicable)
        - reference: The unresolvable input reference (if applicable)
    """
    pass


# ============================================================================
# Step Execution Errors
# ============================================================================

class StepExecutionError(DataflowException):
    """Base exception for a failed transformation step."""
    pass


class QueryError(StepExecutionError):
    """
    Raised when a SQL step fails (syntax, semantics, type mismatch, timeout).

    Context should include:
        - output_name: Declared output of the step
        - diagnostic: The underlying engine message
    """
    pass


class ScriptError(StepExecutionError):
    """
    Raised when a script step fails, times out, or binds no output.

    Context should include:
        - output_name: Declared output of the step
        - exit_code: Interpreter exit code (if the process finished)
        - timeout: True when the wall-clock limit was exceeded
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        timeout: bool = False
    ):
        super().__init__(message, context, original_exception)
        self.timeout = timeout
        if timeout:
            self.context["timeout"] = True


# ============================================================================
# Import Validation Errors
# ============================================================================

class ValidationFailed(DataflowException):
    """
    Raised when an import fails structural checks or exceeds the row error
    threshold. No dataset is created.

    Attributes:
        errors: Structural (file-level) error messages
        row_errors: Ordered row-level error entries (row, column, reason)
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        row_errors: Optional[List[Dict[str, Any]]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.errors = list(errors or [])
        self.row_errors = list(row_errors or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        data["row_errors"] = self.row_errors
        return data


# ============================================================================
# Job State Errors
# ============================================================================

class InvalidTransition(DataflowException):
    """
    Raised when a job transition violates the job state machine
    (advancing a terminal job, regressing progress, completing a failed job).
    """
    pass


class SubscriptionLimitExceeded(DataflowException):
    """Raised when a job already has the maximum number of live subscribers."""
    pass


class NotFound(DataflowException):
    """Raised when a job, dataset, pipeline or execution id is unknown."""
    pass


class StorageError(DataflowException):
    """Raised when the dataset storage backend cannot read or write rows."""
    pass


class TriggerError(DataflowException):
    """
    Raised when a trigger definition is invalid: bad cron or timezone,
    a chain onto itself or one that would close a cycle.
    """
    pass
