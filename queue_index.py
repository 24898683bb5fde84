import redis
import time
import logging
from datetime import datetime
from typing import List, Optional

from config import settings

logger = logging.getLogger(__name__)

STATS_TTL = 86400 * 2


def _decode(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


class QueueIndex:
    """Pending-job ordering and processing markers kept in Redis.

    ``pending`` is a list (RPUSH/LPOP), the processing set is a sorted set
    scored by the time each job was marked. Every mutation is a single Redis
    command so concurrent invocations never corrupt the index.
    """

    def __init__(self, redis_conn: redis.Redis, prefix: Optional[str] = None):
        self.redis = redis_conn
        self.prefix = prefix or settings.queue_key_prefix
        self.pending_key = self.prefix
        self.processing_key = f"{self.prefix}:processing"

    def _stats_key(self) -> str:
        return f"{self.prefix}:stats:{datetime.utcnow().date().isoformat()}"

    def enqueue(self, job_id: str) -> int:
        """Append to the tail of the queue, returning the new length"""
        length = self.redis.rpush(self.pending_key, job_id)
        logger.info(f"Job {job_id} enqueued ({length} pending)")
        return length

    def remove(self, job_id: str) -> int:
        """Drop every occurrence of a job from the pending list"""
        return self.redis.lrem(self.pending_key, 0, job_id)

    def dequeue_next(self) -> Optional[str]:
        """Atomically pop the head of the queue"""
        job_id = self.redis.lpop(self.pending_key)
        return _decode(job_id) if job_id is not None else None

    def mark_processing(self, job_id: str, started_at: Optional[float] = None):
        self.redis.zadd(self.processing_key, {job_id: started_at if started_at is not None else time.time()})

    def clear_processing(self, job_id: str) -> bool:
        return bool(self.redis.zrem(self.processing_key, job_id))

    def is_processing(self, job_id: str) -> bool:
        return self.redis.zscore(self.processing_key, job_id) is not None

    def position(self, job_id: str) -> Optional[int]:
        """0-based index of the job in the pending list, None if absent"""
        pending = [_decode(item) for item in self.redis.lrange(self.pending_key, 0, -1)]
        try:
            return pending.index(job_id)
        except ValueError:
            return None

    def stale_processing(self, older_than: float) -> List[str]:
        """Ids whose processing lease started more than ``older_than`` seconds ago"""
        cutoff = time.time() - older_than
        return [_decode(item) for item in self.redis.zrangebyscore(self.processing_key, "-inf", cutoff)]

    def record_outcome(self, success: bool):
        key = self._stats_key()
        self.redis.hincrby(key, "completed" if success else "failed", 1)
        self.redis.expire(key, STATS_TTL)

    def stats(self) -> dict:
        counters = {_decode(k): int(v) for k, v in self.redis.hgetall(self._stats_key()).items()}
        return {
            "queueLength": self.redis.llen(self.pending_key),
            "processingCount": self.redis.zcard(self.processing_key),
            "completedToday": counters.get("completed", 0),
            "failedToday": counters.get("failed", 0),
        }


# Shared connection for the API process
redis_conn = redis.from_url(settings.redis_url)

def get_queue_index() -> QueueIndex:
    """Queue index dependency"""
    return QueueIndex(redis_conn)
