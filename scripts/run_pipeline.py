"""
Script to run one pipeline to completion from the command line

    python scripts/run_pipeline.py <pipeline_id> [--user-id N]
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import engine
from core.exceptions import DataflowException
from core.logging import setup_logging
from dataflow.jobs import JobOrchestrator
from dataflow.runner import PipelineRunner
from models.base import ExecutionStatus

setup_logging()
logger = logging.getLogger(__name__)


async def run_pipeline(pipeline_id: int, user_id: int = None) -> int:
    """Plan, run and wait for one pipeline. Returns a process exit code."""
    orchestrator = JobOrchestrator()
    runner = PipelineRunner(orchestrator)

    try:
        plan = await runner.plan(pipeline_id)
        job, execution = await runner.prepare(plan, user_id=user_id)
        logger.info(f"Running pipeline {pipeline_id} as job {job.job_id}")

        status = await runner.run(plan, execution.id, job.job_id)
        job = await orchestrator.get_status(job.job_id)

        if status == ExecutionStatus.SUCCEEDED:
            logger.info(f"Pipeline succeeded: {job.job_metadata}")
            return 0
        logger.error(f"Pipeline ended {status.value}: {job.error_message}")
        return 1

    except DataflowException as e:
        logger.error(f"Pipeline could not start: {e}")
        return 2
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Run a dataflow pipeline")
    parser.add_argument("pipeline_id", type=int)
    parser.add_argument("--user-id", type=int, default=None)
    args = parser.parse_args()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    sys.exit(asyncio.run(run_pipeline(args.pipeline_id, args.user_id)))


if __name__ == "__main__":
    main()
