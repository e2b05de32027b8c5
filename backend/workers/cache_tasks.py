"""
RQ worker tasks for persisting cache writes.

Run a worker with:
    cd backend && rq worker cache-writes
"""

import logging
from typing import Dict

from core.cache_repository import create_cache_repository
from core.models import PendingCacheWrite
from services.embedding_service import EmbeddingService
from services.similarity_cache_service import SimilarityCacheService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_cache_service = None


def get_cache_service() -> SimilarityCacheService:
    """Lazily build one cache service per worker process."""
    global _cache_service
    if _cache_service is None:
        _cache_service = SimilarityCacheService(create_cache_repository(), EmbeddingService())
    return _cache_service


def persist_cache_write(payload: Dict, cache_service: SimilarityCacheService = None) -> Dict:
    """
    Store one queued cache write.

    Args:
        payload: PendingCacheWrite serialised with model_dump(mode='json')
        cache_service: Override for the worker's cache service

    Returns:
        Dict with 'stored' and the entry id, for the RQ job result
    """
    pending = PendingCacheWrite.model_validate(payload)
    service = cache_service or get_cache_service()

    entry = service.upsert(pending.question, pending.response, pending.metadata)
    if entry is None:
        logger.error(f"Failed to persist cache write for '{pending.question[:50]}'")
        return {'stored': False, 'entry_id': None}

    logger.info(f"✓ Persisted cache entry {entry.id} (usage {entry.metadata.usage_count})")
    return {'stored': True, 'entry_id': entry.id}
