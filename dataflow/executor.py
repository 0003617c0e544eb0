# ============================================================================
# File: dataflow/executor.py
# Description: Runs one SQL query or script step against materialized inputs
# ============================================================================
"""
Step Executor - executes a single transformation step.

- SQL_QUERY steps run in a fresh in-memory DuckDB connection holding one
  table per input. File access is then switched off and locked, so the
  single SELECT a step may contain sees only its inputs; the result is
  written to the staged parquet output.
- SCRIPT steps run in a fresh Python interpreter (dataflow.script_runner)
  under a wall-clock timeout, with inputs bound as read-only values.

Output is all-or-nothing: the output file is only published when the step
finishes successfully. Read handles, the scratch directory and the output
writer are released on every exit path.
"""

from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
import asyncio
import json
import logging
import os
import sys
import tempfile

import duckdb

from core.config import settings
from core.exceptions import QueryError, ScriptError, StorageError
from dataflow.storage import ParquetStorage, OutputWriter
from models.base import StepKind

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[1]
MAX_LOG_CHARS = 64 * 1024
OUTPUT_BINDING = "output"

# Applied after the inputs are loaded: no file or network access, no
# extension loading, and no way to switch either back on.
LOCKDOWN_SETTINGS = (
    "SET autoload_known_extensions = false",
    "SET autoinstall_known_extensions = false",
    "SET enable_external_access = false",
    "SET lock_configuration = true",
)


@dataclass(frozen=True)
class DatasetHandle:
    """A resolved, materialized dataset a step reads from."""
    dataset_id: int
    name: str
    version: int
    storage_key: str


@dataclass(frozen=True)
class StepResult:
    """Published output of a successful step."""
    output_name: str
    storage_key: str
    row_count: int
    schema: List[Dict[str, Any]] = field(default_factory=list)
    log: Optional[str] = None


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _tail(text: str) -> str:
    return text[-MAX_LOG_CHARS:] if len(text) > MAX_LOG_CHARS else text


class StepExecutor:
    """
    Executes one step and publishes its output.

    Raises:
        QueryError: SQL syntax/semantic/type errors or timeout
        ScriptError: script exception, timeout, or missing output binding
    """

    def __init__(
        self,
        storage: ParquetStorage,
        default_timeout: Optional[float] = None,
        python_executable: Optional[str] = None
    ):
        self.storage = storage
        self.default_timeout = default_timeout or settings.STEP_TIMEOUT_SECONDS
        self.python_executable = (
            python_executable or settings.SCRIPT_PYTHON_EXECUTABLE or sys.executable
        )

    async def execute(self, step, resolved_inputs: Mapping[str, DatasetHandle]) -> StepResult:
        timeout = getattr(step, "timeout_seconds", None) or self.default_timeout

        with ExitStack() as stack:
            input_paths = {
                name: stack.enter_context(self.storage.open_reader(handle.storage_key))
                for name, handle in resolved_inputs.items()
            }
            writer = stack.enter_context(self.storage.open_writer())

            if step.kind == StepKind.SQL_QUERY:
                await self._run_sql(step, input_paths, writer, timeout)
                log = None
            elif step.kind == StepKind.SCRIPT:
                scratch = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="step_")))
                log = await self._run_script(step, input_paths, writer, timeout, scratch)
            else:
                raise ScriptError(f"Unsupported step kind: {step.kind}")

            try:
                key = writer.commit()
            except StorageError as e:
                error_cls = QueryError if step.kind == StepKind.SQL_QUERY else ScriptError
                raise error_cls(
                    "Step finished without producing output",
                    context={"output_name": step.output_name},
                    original_exception=e
                )

        description = self.storage.describe(key)
        logger.info(
            f"Step '{step.output_name}' produced {description['row_count']} rows "
            f"({len(description['schema'])} columns)"
        )
        return StepResult(
            output_name=step.output_name,
            storage_key=key,
            row_count=description["row_count"],
            schema=description["schema"],
            log=log,
        )

    # ------------------------------------------------------------------
    # SQL
    # ------------------------------------------------------------------

    async def _run_sql(
        self,
        step,
        input_paths: Dict[str, Path],
        writer: OutputWriter,
        timeout: float
    ) -> None:
        query = step.source.strip().rstrip(";").strip()
        if not query:
            raise QueryError("Query text is empty", context={"output_name": step.output_name})

        con = duckdb.connect(database=":memory:")
        task = asyncio.ensure_future(
            asyncio.to_thread(self._run_query, con, query, input_paths, writer)
        )
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as e:
            con.interrupt()
            # the worker thread owns the connection until it unwinds
            await asyncio.gather(task, return_exceptions=True)
            if isinstance(e, asyncio.CancelledError):
                raise
            raise QueryError(
                f"Query timed out after {timeout} seconds",
                context={"output_name": step.output_name, "timeout": True}
            )
        except QueryError as e:
            e.context.setdefault("output_name", step.output_name)
            raise
        except duckdb.Error as e:
            raise QueryError(
                str(e),
                context={"output_name": step.output_name, "diagnostic": type(e).__name__},
                original_exception=e
            )
        finally:
            con.close()

    @staticmethod
    def _run_query(con, query: str, input_paths: Dict[str, Path], writer: OutputWriter) -> None:
        # inputs are copied in while file access is still allowed
        for name, path in input_paths.items():
            con.execute(
                f"CREATE TABLE {quote_identifier(name)} AS "
                f"SELECT * FROM read_parquet({quote_literal(str(path))})"
            )
        for setting in LOCKDOWN_SETTINGS:
            con.execute(setting)

        statements = con.extract_statements(query)
        if len(statements) != 1 or statements[0].type != duckdb.StatementType.SELECT:
            raise QueryError(
                "Step query must be exactly one SELECT statement",
                context={"statements": len(statements)}
            )
        writer.write_table(con.execute(query).fetch_arrow_table())

    # ------------------------------------------------------------------
    # Script
    # ------------------------------------------------------------------

    async def _run_script(
        self,
        step,
        input_paths: Dict[str, Path],
        writer: OutputWriter,
        timeout: float,
        scratch: Path
    ) -> str:
        script_path = scratch / "step.py"
        script_path.write_text(step.source, encoding="utf-8")

        manifest_path = scratch / "manifest.json"
        manifest_path.write_text(json.dumps({
            "step_name": getattr(step, "name", step.output_name),
            "inputs": {name: str(path) for name, path in input_paths.items()},
            "script_path": str(script_path),
            "output_binding": OUTPUT_BINDING,
            "output_path": str(writer.staging_path),
        }), encoding="utf-8")

        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(
            p for p in [str(PROJECT_ROOT), env.get("PYTHONPATH", "")] if p
        )

        logger.info(f"Executing script step '{step.output_name}' (timeout {timeout}s)")
        proc = await asyncio.create_subprocess_exec(
            self.python_executable, "-m", "dataflow.script_runner", str(manifest_path),
            cwd=str(scratch),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ScriptError(
                f"Script timed out after {timeout} seconds",
                context={"output_name": step.output_name},
                timeout=True
            )
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        out_text = stdout.decode("utf-8", errors="replace")
        err_text = stderr.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            logger.error(f"Script step '{step.output_name}' exited with code {proc.returncode}")
            raise ScriptError(
                _tail(err_text.strip()) or f"Script exited with code {proc.returncode}",
                context={"output_name": step.output_name, "exit_code": proc.returncode}
            )

        return _tail(out_text + err_text)
