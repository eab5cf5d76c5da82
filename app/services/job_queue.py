import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import threading
import uuid
from typing import Any, Callable

from app.core.request_context import reset_request_id, set_request_id

logger = logging.getLogger(__name__)

JobHandler = Callable[["JobRecord"], dict | None]

TERMINAL_STATUSES = {"succeeded", "failed", "cancelled"}
# Finished jobs stay pollable for this long, then are dropped on the next enqueue.
JOB_RETENTION = timedelta(hours=1)


@dataclass
class JobRecord:
    job_id: uuid.UUID
    job_type: str
    status: str
    created_at: datetime
    updated_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None
    result: dict | None = None
    error: str | None = None
    cancel_requested: bool = False
    handler: JobHandler | None = None


_jobs: dict[uuid.UUID, JobRecord] = {}
_jobs_lock = threading.Lock()
_queue: asyncio.Queue[uuid.UUID] | None = None
_worker_task: asyncio.Task | None = None
_loop: asyncio.AbstractEventLoop | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def prune_finished_jobs(now: datetime | None = None, retention: timedelta = JOB_RETENTION) -> int:
    """Drop terminal jobs last updated more than ``retention`` ago. Returns how many were dropped."""
    cutoff = (now or _utcnow()) - retention
    with _jobs_lock:
        expired = [
            job_id
            for job_id, job in _jobs.items()
            if job.status in TERMINAL_STATUSES and job.updated_at < cutoff
        ]
        for job_id in expired:
            del _jobs[job_id]
    if expired:
        logger.info("jobs_pruned", extra={"count": len(expired)})
    return len(expired)


def enqueue_job(
    job_type: str,
    payload: dict[str, Any],
    handler: JobHandler,
    *,
    request_id: str | None = None,
) -> JobRecord:
    if _queue is None or _loop is None:
        raise RuntimeError("job queue is not running")

    now = _utcnow()
    prune_finished_jobs(now)
    job = JobRecord(
        job_id=uuid.uuid4(),
        job_type=job_type,
        status="queued",
        created_at=now,
        updated_at=now,
        payload=payload,
        request_id=request_id,
        handler=handler,
    )
    with _jobs_lock:
        _jobs[job.job_id] = job

    asyncio.run_coroutine_threadsafe(_queue.put(job.job_id), _loop)
    logger.info("job_enqueued", extra={"job_id": str(job.job_id), "job_type": job_type})
    return job


def get_job(job_id: uuid.UUID) -> JobRecord | None:
    with _jobs_lock:
        return _jobs.get(job_id)


def cancel_job(job_id: uuid.UUID) -> JobRecord | None:
    with _jobs_lock:
        job = _jobs.get(job_id)
        if job is None:
            return None
        if job.status in TERMINAL_STATUSES:
            return job
        job.cancel_requested = True
        if job.status == "queued":
            job.status = "cancelled"
            job.updated_at = _utcnow()
        return job


def _set_status(job: JobRecord, status: str, **fields: Any) -> None:
    with _jobs_lock:
        job.status = status
        for key, value in fields.items():
            setattr(job, key, value)
        job.updated_at = _utcnow()


def _run_handler(job: JobRecord) -> dict | None:
    token = set_request_id(job.request_id or f"job-{job.job_id}")
    try:
        if job.handler is None:
            raise RuntimeError("job handler missing")
        return job.handler(job)
    finally:
        reset_request_id(token)


async def _worker_loop() -> None:
    assert _queue is not None
    while True:
        job_id = await _queue.get()
        job = get_job(job_id)
        try:
            if job is None or job.status == "cancelled":
                continue
            if job.cancel_requested:
                _set_status(job, "cancelled")
                continue

            _set_status(job, "running")
            try:
                result = await asyncio.to_thread(_run_handler, job)
            except Exception as exc:  # noqa: BLE001
                logger.exception("job_failed", extra={"job_id": str(job_id), "job_type": job.job_type})
                _set_status(job, "failed", error=str(exc))
            else:
                _set_status(job, "succeeded", result=result)
        finally:
            _queue.task_done()


async def start_worker() -> None:
    global _queue, _worker_task, _loop
    if _worker_task is not None:
        return
    _loop = asyncio.get_running_loop()
    _queue = asyncio.Queue()
    _worker_task = asyncio.create_task(_worker_loop())


async def stop_worker() -> None:
    global _worker_task, _queue, _loop
    if _worker_task is None:
        return
    _worker_task.cancel()
    try:
        await _worker_task
    except asyncio.CancelledError:
        pass
    _worker_task = None
    _queue = None
    _loop = None


async def wait_for_idle() -> None:
    """Block until every queued job has been processed."""
    if _queue is not None:
        await _queue.join()
