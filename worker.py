"""Resident worker for hosts that can keep a process running.

Replaces the self-triggering HTTP chain with a polling loop over the same
queue index and job store, reclaiming expired processing leases as it goes.
Run several copies for more throughput.
"""
import signal
import threading
import time

import redis
from loguru import logger

from config import settings
from queue_index import QueueIndex
from trigger import NullTrigger
from worker_task import NO_JOBS, ScrapeWorker

logger.add("worker.log", rotation="1 week", retention="4 weeks", level="INFO")

_stop = threading.Event()

def setup_signal_handlers():
    def _handler(signum, frame):
        logger.info(f"Received signal {signum}, stopping worker")
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)

def run_worker(worker: ScrapeWorker, poll_interval: float = None, stop_event: threading.Event = None,
               reclaim_every: float = 60.0):
    """Process jobs until ``stop_event`` is set, sleeping while the queue is empty"""
    poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval
    stop_event = stop_event or _stop
    last_reclaim = 0.0
    processed = 0

    logger.info(f"Worker started (poll interval {poll_interval}s)")
    while not stop_event.is_set():
        try:
            if time.time() - last_reclaim >= reclaim_every:
                reclaimed = worker.reclaim_stale_jobs()
                if reclaimed:
                    logger.warning(f"Reclaimed {len(reclaimed)} stale job(s): {reclaimed}")
                last_reclaim = time.time()

            result = worker.process_next_job()
        except redis.RedisError as e:
            logger.error(f"Queue store unavailable: {e}")
            stop_event.wait(poll_interval)
            continue

        if result.get("error") == NO_JOBS:
            stop_event.wait(poll_interval)
            continue

        processed += 1
        if result["success"]:
            logger.info(f"Job {result['jobId']} completed")
        else:
            logger.warning(f"Job {result['jobId']} failed: {result['error']}")

    logger.info(f"Worker stopped after {processed} job(s)")
    return processed

if __name__ == "__main__":
    setup_signal_handlers()
    redis_conn = redis.from_url(settings.redis_url)
    run_worker(ScrapeWorker(QueueIndex(redis_conn), trigger=NullTrigger()))
