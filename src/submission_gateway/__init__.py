"""
Submission Gateway - background processing for manuscript submissions

This package accepts PDF submissions from partner integrations (Editorial
Manager, ScholarOne, email intake) and direct API clients, runs them through a
downstream analysis service in the background, and reports the outcome back.

- Durable job queue with bounded concurrency and exponential-backoff retries
- Stuck-job recovery after crashes
- Completion callbacks fired only after the terminal state is persisted
- Per-run processing sessions written to S3 (or a local directory) as an audit trail

Key Components:
    - database: SQLite job store with atomic claims and conditional transitions
    - registry: Per-job processors/callbacks and the job-type fallback table
    - job_manager: Dispatcher, retry/cancel operations and worker pool
    - reaper: Periodic stuck-job sweep and retention purge
    - session: Processing session accumulator and its single flush
    - s3_service: Audit sinks (S3 and local directory)
    - analysis / notifications: Outbound HTTP to the analysis service and partners
    - processors: Submission job processor and enqueue helper
    - configuration: OmegaConf settings with environment overrides
    - main: FastAPI application

Usage:
    uvicorn submission_gateway.main:app --host 0.0.0.0 --port 8000
"""
