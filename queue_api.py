"""Worker trigger and job status endpoints.

``POST /queue/process`` is reached by three callers: the client right after
enqueueing, the worker's own retrigger and the periodic scheduler sweep. The
scheduler checks the queue before acting so a healthy chain is left alone;
the other callers always process.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional
import logging

from config import settings
from database import get_db, get_job_by_id
from monitoring import queue_length, trigger_count
from queue_index import QueueIndex, get_queue_index
from rate_limiter import STATUS_LIMIT, limiter
from security import CALLER_SCHEDULER, security_manager
from worker_task import NO_JOBS, ScrapeWorker

logger = logging.getLogger(__name__)

queue_router = APIRouter()

class TriggerRequest(BaseModel):
    batch: Optional[int] = None
    cron: bool = False

class QueueStats(BaseModel):
    queueLength: int
    processingCount: int
    completedToday: int = 0
    failedToday: int = 0

class StatsResponse(BaseModel):
    success: bool
    stats: QueueStats

class JobStatusResponse(BaseModel):
    success: bool
    jobId: str
    status: str
    queuePosition: Optional[int] = None
    processing: bool = False
    errorMessage: Optional[str] = None
    createdAt: Optional[datetime] = None

def get_worker(queue_index: QueueIndex = Depends(get_queue_index)) -> ScrapeWorker:
    """Worker dependency"""
    return ScrapeWorker(queue_index)

def _job_response(result: dict, caller: str) -> JSONResponse:
    if not result["success"] and result.get("error") == NO_JOBS:
        trigger_count.labels(caller=caller, outcome="empty").inc()
        content = {"success": False, "message": NO_JOBS}
        if caller == CALLER_SCHEDULER:
            # queue drained between the stats check and the dequeue
            content["skipped"] = True
        return JSONResponse(status_code=404, content=content)

    if not result["success"]:
        trigger_count.labels(caller=caller, outcome="failed").inc()
        return JSONResponse(status_code=500, content={
            "success": False,
            "message": result.get("error") or "Failed to process job",
            "jobId": result.get("jobId"),
        })

    trigger_count.labels(caller=caller, outcome="processed").inc()
    return JSONResponse(content={
        "success": True,
        "message": "Job processed successfully (next job will be auto-triggered)",
        "jobId": result["jobId"],
    })

def _sweep(worker: ScrapeWorker, queue_index: QueueIndex, batch_size: int) -> JSONResponse:
    reclaimed = worker.reclaim_stale_jobs()
    if reclaimed:
        logger.warning(f"Sweep reclaimed {len(reclaimed)} stale job(s): {', '.join(reclaimed)}")

    stats = queue_index.stats()
    queue_length.set(stats["queueLength"])

    if stats["queueLength"] == 0 and stats["processingCount"] == 0:
        logger.info("Sweep triggered but queue is empty, skipping")
        trigger_count.labels(caller=CALLER_SCHEDULER, outcome="skipped").inc()
        return JSONResponse(content={
            "success": True,
            "message": "Queue is empty, no processing needed",
            "skipped": True,
            "stats": stats,
        })

    if stats["processingCount"] > 0:
        logger.info(f"Sweep triggered but {stats['processingCount']} job(s) already processing, skipping")
        trigger_count.labels(caller=CALLER_SCHEDULER, outcome="skipped").inc()
        return JSONResponse(content={
            "success": True,
            "message": f"Jobs already processing ({stats['processingCount']}), self-triggering is working",
            "skipped": True,
            "stats": stats,
        })

    if batch_size > 1:
        logger.info(f"Sweep found {stats['queueLength']} stalled job(s), processing batch of {batch_size}")
        processed = worker.process_batch(batch_size)
        trigger_count.labels(caller=CALLER_SCHEDULER, outcome="batch").inc()
        return JSONResponse(content={
            "success": True,
            "message": f"Processed {processed} job(s)",
            "processed": processed,
            "queueLength": stats["queueLength"],
        })

    logger.info(f"Sweep found {stats['queueLength']} stalled job(s), processing next job")
    return _job_response(worker.process_next_job(), CALLER_SCHEDULER)

@queue_router.post("/process")
def trigger_processing(
    body: Optional[TriggerRequest] = None,
    caller: str = Depends(security_manager.verify_trigger_caller),
    queue_index: QueueIndex = Depends(get_queue_index),
    worker: ScrapeWorker = Depends(get_worker),
):
    """Advance the queue by one job, or sweep it when called by the scheduler"""
    body = body or TriggerRequest()
    if body.cron:
        caller = CALLER_SCHEDULER

    logger.info(f"Worker trigger received from {caller} caller")

    if caller == CALLER_SCHEDULER:
        batch_size = body.batch if body.batch is not None else settings.sweep_batch_size
        return _sweep(worker, queue_index, batch_size)

    return _job_response(worker.process_next_job(), caller)

@queue_router.get("/process", response_model=StatsResponse)
def queue_stats(queue_index: QueueIndex = Depends(get_queue_index)):
    """Queue statistics"""
    stats = queue_index.stats()
    queue_length.set(stats["queueLength"])
    return StatsResponse(success=True, stats=QueueStats(**stats))

@queue_router.get("/status/{job_id}", response_model=JobStatusResponse)
@limiter.limit(STATUS_LIMIT)
def job_status(
    request: Request,
    job_id: str,
    db: Session = Depends(get_db),
    queue_index: QueueIndex = Depends(get_queue_index),
):
    """Poll the status of a scrape job"""
    job = get_job_by_id(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    queue_position = None
    if job.status == "queued":
        queue_position = queue_index.position(job_id)

    return JobStatusResponse(
        success=True,
        jobId=job.id,
        status=job.status,
        queuePosition=queue_position,
        processing=queue_index.is_processing(job_id),
        errorMessage=job.error_message,
        createdAt=job.created_at,
    )
