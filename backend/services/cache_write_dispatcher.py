"""
Dispatchers that persist cache writes off the response path.

    - ThreadCacheWriteDispatcher: in-process ThreadPoolExecutor
    - RQCacheWriteDispatcher: Redis queue consumed by `rq worker cache-writes`

Both are fire-and-forget: a failed write is logged and dropped.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor

from redis import Redis
from rq import Queue

from core.config import CACHE_WRITE_BACKEND, CACHE_WRITE_QUEUE, CACHE_WRITE_WORKERS, REDIS_URL
from core.models import PendingCacheWrite

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ThreadCacheWriteDispatcher:
    """Runs SimilarityCacheService.upsert on a small thread pool."""

    def __init__(self, cache_service, max_workers: int = CACHE_WRITE_WORKERS):
        self.cache_service = cache_service
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='cache-write')

    def submit(self, pending: PendingCacheWrite) -> Future:
        future = self.executor.submit(
            self.cache_service.upsert, pending.question, pending.response, pending.metadata
        )
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future):
        error = future.exception()
        if error is not None:
            logger.error(f"Background cache write failed: {error}")

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)


class RQCacheWriteDispatcher:
    """Enqueues writes for workers.cache_tasks.persist_cache_write."""

    def __init__(self, redis_url: str = REDIS_URL, queue_name: str = CACHE_WRITE_QUEUE, queue: Queue = None):
        self.queue = queue or Queue(queue_name, connection=Redis.from_url(redis_url))

    def submit(self, pending: PendingCacheWrite):
        from workers.cache_tasks import persist_cache_write

        job = self.queue.enqueue(persist_cache_write, pending.model_dump(mode='json'), job_timeout=60)
        logger.debug(f"Enqueued cache write job {job.id}")
        return job

    def shutdown(self, wait: bool = True):
        pass


def create_cache_write_dispatcher(cache_service, backend: str = None):
    """
    Build the dispatcher selected by CACHE_WRITE_BACKEND ("thread" or "rq").
    """
    backend = backend or CACHE_WRITE_BACKEND
    if backend == 'rq':
        logger.info(f"Cache writes go to RQ queue '{CACHE_WRITE_QUEUE}'")
        return RQCacheWriteDispatcher()
    if backend != 'thread':
        raise ValueError(f"Unknown cache write backend '{backend}'")
    return ThreadCacheWriteDispatcher(cache_service)
