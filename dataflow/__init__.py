"""
Dataset pipeline execution engine.

Modules:
    storage: Parquet-backed dataset storage (write rows -> storage key)
    registry: Dataset versions (SOURCE and DERIVED)
    lineage: Append-only lineage edges and ancestor queries
    executor: Runs one SQL query or script step
    script_runner: Child-process entry point for script steps
    planner: Resolves pipeline steps into an execution plan
    pipelines: Pipeline definitions
    runner: Drives a pipeline execution as an async job
    parser / validator / importer: File imports into SOURCE datasets
    jobs: Async job lifecycle, subscriptions and terminal hooks
    scheduler: Stale-job sweeper and retention
    dashboard: Read-side aggregate stats

Usage:
    from dataflow.jobs import JobOrchestrator
    from dataflow.runner import PipelineRunner

    orchestrator = JobOrchestrator()
    runner = PipelineRunner(orchestrator)
    job, execution = await runner.submit(pipeline_id, user_id=1)
"""
