import json
import time
import logging
from datetime import datetime
from typing import Callable, List, Optional

import redis
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import SessionLocal, get_job_by_id, update_job_status
from monitoring import queue_length, record_job
from queue_index import QueueIndex
from scrape_executor import scrape_listing
from trigger import get_worker_trigger

logger = logging.getLogger(__name__)

NO_JOBS = "No jobs in queue"
LEASE_EXPIRED = "Processing lease expired"


def _serialize_result(data) -> str:
    if hasattr(data, "model_dump_json"):
        return data.model_dump_json()
    return json.dumps(data, default=str)


class ScrapeWorker:
    """Processes scrape jobs one at a time off the queue index.

    Each ``process_next_job`` call dequeues a single job, runs the executor,
    persists the outcome and, while jobs remain, dispatches the worker
    trigger so the next invocation picks up the following job. Failures of
    an individual job always end in a ``failed`` row and never stop the chain.
    """

    def __init__(self, queue_index: QueueIndex, session_factory=SessionLocal,
                 executor: Callable = scrape_listing, trigger=None):
        self.queue = queue_index
        self.session_factory = session_factory
        self.executor = executor
        self.trigger = trigger if trigger is not None else get_worker_trigger()

    def process_next_job(self) -> dict:
        job_id = self.queue.dequeue_next()
        if job_id is None:
            logger.info("No jobs in queue, nothing to process")
            return {"success": False, "error": NO_JOBS}

        result = self._run_job(job_id)
        self._continue_chain()
        return result

    def process_batch(self, max_jobs: int = 5) -> int:
        """Drain up to ``max_jobs`` sequentially, returning how many ran"""
        processed = 0
        for _ in range(max_jobs):
            job_id = self.queue.dequeue_next()
            if job_id is None:
                break
            self._run_job(job_id)
            processed += 1

        logger.info(f"Batch finished, processed {processed} job(s)")
        if processed:
            self._continue_chain()
        return processed

    def reclaim_stale_jobs(self, lease_seconds: Optional[int] = None) -> List[str]:
        """Fail jobs whose processing lease outlived the invocation that took them"""
        lease = lease_seconds if lease_seconds is not None else settings.processing_lease
        reclaimed = []

        for job_id in self.queue.stale_processing(lease):
            # Only the caller that actually removes the marker owns the reclaim
            if not self.queue.clear_processing(job_id):
                continue

            logger.warning(f"Job {job_id} held processing for more than {lease}s, marking failed")
            db = self.session_factory()
            try:
                update_job_status(
                    db, job_id, "failed",
                    expected_status="processing",
                    error_message=LEASE_EXPIRED,
                    completed_at=datetime.utcnow()
                )
            finally:
                db.close()

            self.queue.record_outcome(False)
            reclaimed.append(job_id)

        return reclaimed

    def _run_job(self, job_id: str) -> dict:
        start_time = time.time()
        self.queue.mark_processing(job_id)
        logger.info(f"Processing job {job_id}")

        data = None
        error = None
        found = False
        claimed = False
        db = self.session_factory()
        try:
            try:
                job = get_job_by_id(db, job_id)
            except SQLAlchemyError as e:
                logger.error(f"Job {job_id}: failed to read job row: {e}")
                db.rollback()
                job = None

            if job is None:
                logger.error(f"Job {job_id} is queued but missing from the job store")
                error = f"Job {job_id} not found in job store"
            else:
                found = True
                source_url = job.source_url
                claimed = update_job_status(
                    db, job_id, "processing",
                    expected_status="queued",
                    started_at=datetime.utcnow()
                )

                if not claimed:
                    # Row already left the queued state, never move it backwards
                    logger.warning(f"Job {job_id} could not be claimed from queued, skipping")
                    error = f"Job {job_id} is no longer queued"
                else:
                    try:
                        data = self.executor(source_url)
                    except Exception as e:
                        error = str(e) or e.__class__.__name__
                        logger.error(f"Job {job_id} failed: {error}", exc_info=True)

            elapsed = time.time() - start_time
            if claimed:
                if error is None:
                    persisted = update_job_status(
                        db, job_id, "completed",
                        expected_status="processing",
                        result=_serialize_result(data),
                        provider=getattr(data, "provider", None),
                        error_message=None,
                        completed_at=datetime.utcnow(),
                        processing_time=int(elapsed)
                    )
                else:
                    persisted = update_job_status(
                        db, job_id, "failed",
                        expected_status="processing",
                        error_message=error,
                        completed_at=datetime.utcnow(),
                        processing_time=int(elapsed)
                    )
                if not persisted:
                    logger.error(f"Job {job_id}: outcome could not be persisted")
        finally:
            db.close()
            self.queue.clear_processing(job_id)

        success = error is None
        status = "completed" if success else "failed"
        if claimed or not found:
            self.queue.record_outcome(success)
            record_job(status, elapsed)
        logger.info(f"Job {job_id} {status if claimed or not found else 'skipped'} in {elapsed:.2f}s")

        if success:
            return {"success": True, "jobId": job_id}
        return {"success": False, "jobId": job_id, "error": error}

    def _continue_chain(self) -> bool:
        try:
            remaining = self.queue.stats()["queueLength"]
        except redis.RedisError as e:
            logger.warning(f"Could not read queue length before retrigger: {e}")
            remaining = None

        if remaining is not None:
            queue_length.set(remaining)
            if remaining == 0:
                logger.info("Queue empty, stopping continuous processing")
                return False

        logger.info(f"{remaining if remaining is not None else 'Unknown number of'} job(s) remaining, triggering next worker")
        return self.trigger.dispatch()
