"""
RQ job functions for royalty statement processing.
These are the entry points that the worker calls.
"""

import asyncio
from typing import Optional

import structlog
from redis import Redis
from rq import Queue, get_current_job
from rq.exceptions import NoSuchJobError
from rq.job import Job
from rq.job import JobStatus as RqJobStatus

from royalties.config import settings
from royalties.models.database import close_db
from royalties.models.enums import JobState
from royalties.observability.metrics import worker_jobs_active
from royalties.schemas.statements import JobStatus, ProcessingOptions

logger = structlog.get_logger(__name__)

_STATE_MAP = {
    RqJobStatus.QUEUED: JobState.QUEUED,
    RqJobStatus.DEFERRED: JobState.QUEUED,
    RqJobStatus.SCHEDULED: JobState.QUEUED,
    RqJobStatus.STARTED: JobState.ACTIVE,
    RqJobStatus.FINISHED: JobState.COMPLETED,
    RqJobStatus.FAILED: JobState.FAILED,
    RqJobStatus.STOPPED: JobState.FAILED,
    RqJobStatus.CANCELED: JobState.FAILED,
}

_processor = None


def get_connection() -> Redis:
    return Redis.from_url(settings.REDIS_URL)


def get_queue() -> Queue:
    """Get the royalty processing queue."""
    return Queue(settings.QUEUE_NAME, connection=get_connection())


def get_processor():
    """Process-wide processor, so the catalog cache outlives single jobs."""
    global _processor
    if _processor is None:
        from royalties.pipeline.orchestrator import RoyaltyProcessor

        _processor = RoyaltyProcessor()
    return _processor


# ── Enqueue ─────────────────────────────────────────────────
def enqueue_statement_processing(
    statement_id: str,
    content: bytes,
    options: Optional[ProcessingOptions] = None,
    job_id: Optional[str] = None,
) -> str:
    """
    Enqueue a statement for processing. The file content travels with the job.
    Returns the job ID.
    """
    q = get_queue()
    job = q.enqueue(
        process_statement_job,
        statement_id,
        content,
        (options or ProcessingOptions()).model_dump(),
        job_id=job_id,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=settings.JOB_RESULT_TTL_SECONDS,
        failure_ttl=settings.JOB_FAILURE_TTL_SECONDS,
        meta={"statement_id": statement_id, "progress": 0.0},
    )
    logger.info("job_enqueued", statement_id=statement_id, job_id=job.id, kind="process")
    return job.id


def enqueue_distribution_calculation(statement_id: str, job_id: Optional[str] = None) -> str:
    q = get_queue()
    job = q.enqueue(
        calculate_distributions_job,
        statement_id,
        job_id=job_id,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=settings.JOB_RESULT_TTL_SECONDS,
        failure_ttl=settings.JOB_FAILURE_TTL_SECONDS,
        meta={"statement_id": statement_id},
    )
    logger.info("job_enqueued", statement_id=statement_id, job_id=job.id, kind="distribute")
    return job.id


# ── Job bodies ──────────────────────────────────────────────
def process_statement_job(statement_id: str, content: bytes, options: Optional[dict] = None) -> dict:
    """
    Process one statement inside the RQ worker.
    Progress (0-100) is written to job.meta after every matched batch.
    """
    logger.info("job_started", statement_id=statement_id)
    worker_jobs_active.inc()
    try:
        result = asyncio.run(
            _process_statement_async(statement_id, content, ProcessingOptions(**(options or {})))
        )
        logger.info("job_completed", statement_id=statement_id, status=result.get("status"))
        return result
    except Exception as e:
        logger.error("job_failed", statement_id=statement_id, error=str(e))
        raise
    finally:
        worker_jobs_active.dec()


async def _process_statement_async(
    statement_id: str, content: bytes, options: ProcessingOptions
) -> dict:
    job = get_current_job()

    def report(processed: int, total: int) -> None:
        if job is None or not total:
            return
        job.meta["progress"] = round(processed / total * 100, 1)
        job.save_meta()

    try:
        result = await get_processor().process_statement(
            statement_id, content, options, on_progress=report
        )
        return result.model_dump(mode="json")
    finally:
        # The engine's connections belong to this job's event loop
        await close_db()


def calculate_distributions_job(statement_id: str) -> dict:
    logger.info("job_started", statement_id=statement_id, kind="distribute")
    worker_jobs_active.inc()
    try:
        result = asyncio.run(_calculate_distributions_async(statement_id))
        logger.info("job_completed", statement_id=statement_id, kind="distribute")
        return result
    except Exception as e:
        logger.error("job_failed", statement_id=statement_id, error=str(e))
        raise
    finally:
        worker_jobs_active.dec()


async def _calculate_distributions_async(statement_id: str) -> dict:
    try:
        result = await get_processor().calculate_distributions(statement_id)
        return result.summary.model_dump(mode="json")
    finally:
        await close_db()


# ── Status ──────────────────────────────────────────────────
def get_job_status(job_id: str, connection: Optional[Redis] = None) -> JobStatus:
    try:
        job = Job.fetch(job_id, connection=connection or get_connection())
    except NoSuchJobError:
        return JobStatus(job_id=job_id, state=JobState.NOT_FOUND)

    state = _STATE_MAP.get(job.get_status(), JobState.QUEUED)
    result = job.return_value() if state == JobState.COMPLETED else None
    failed_reason = None
    if state == JobState.FAILED and job.exc_info:
        lines = [line for line in job.exc_info.strip().splitlines() if line.strip()]
        failed_reason = lines[-1] if lines else None

    return JobStatus(
        job_id=job_id,
        state=state,
        progress=100.0 if state == JobState.COMPLETED else float(job.meta.get("progress", 0.0)),
        result=result,
        failed_reason=failed_reason,
    )


def cancel_job(job_id: str, connection: Optional[Redis] = None) -> bool:
    """Cancel a job that has not started. Started jobs run to completion."""
    try:
        job = Job.fetch(job_id, connection=connection or get_connection())
    except NoSuchJobError:
        return False
    if job.get_status() != RqJobStatus.QUEUED:
        return False
    job.cancel()
    logger.info("job_cancelled", job_id=job_id, statement_id=job.meta.get("statement_id"))
    return True
