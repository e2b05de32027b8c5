"""
Similarity Cache Service

Semantic cache of answered questions. A new question is matched against the
most-used part of the cache by embedding similarity, with a word-overlap
fallback, and served from the cache when close enough. Answers are written
back with near-duplicate detection, and the cache is kept under a ceiling by
usage-weighted LRU soft deletion.

Usage:
    from core.cache_repository import create_cache_repository
    from services.embedding_service import EmbeddingService
    from services.similarity_cache_service import SimilarityCacheService

    cache = SimilarityCacheService(create_cache_repository(), EmbeddingService())

    match = cache.lookup("tìm phòng trọ quận 1")
    if match:
        response = match.entry.response
    else:
        response = build_response(...)
        cache.upsert("tìm phòng trọ quận 1", response, metadata)
"""

import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from core.cache_repository import CacheRepository
from core.config import (
    CACHE_DEDUP_THRESHOLD,
    CACHE_LEXICAL_THRESHOLD,
    CACHE_MAX_ENTRIES,
    CACHE_SCAN_LIMIT,
    CACHE_SERVE_THRESHOLD,
)
from core.models import CacheEntry, CacheMatch, CacheMetadata, utcnow
from services.retrieval_strategies import (
    LexicalRetrievalStrategy,
    RetrievalStrategy,
    VectorRetrievalStrategy,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(days=7)
TOP_QUESTIONS = 10


class SimilarityCacheService:
    """
    Service for serving and storing answers by question similarity.
    """

    def __init__(
        self,
        repository: CacheRepository,
        embedding_service,
        serve_threshold: float = CACHE_SERVE_THRESHOLD,
        dedup_threshold: float = CACHE_DEDUP_THRESHOLD,
        lexical_threshold: float = CACHE_LEXICAL_THRESHOLD,
        scan_limit: int = CACHE_SCAN_LIMIT,
        max_entries: int = CACHE_MAX_ENTRIES,
        strategies: Optional[List[RetrievalStrategy]] = None
    ):
        """
        Initialize the cache service.

        Args:
            repository: Storage backend
            embedding_service: Anything with embed(text) -> List[float]
            serve_threshold: Default minimum similarity for lookup
            dedup_threshold: Similarity at which upsert updates instead of inserting
            lexical_threshold: Minimum word-overlap score for the lexical fallback
            scan_limit: Size of the working set compared on each lookup
            max_entries: Ceiling on active entries
            strategies: Ordered retrieval strategies (default: vector, then lexical)

        Raises:
            ValueError: if dedup_threshold < serve_threshold, which would let
                upsert store entries that lookup already treats as the same question
        """
        if dedup_threshold < serve_threshold:
            raise ValueError(
                f"dedup_threshold ({dedup_threshold}) must be >= serve_threshold ({serve_threshold})"
            )

        self.repository = repository
        self.embedding_service = embedding_service
        self.serve_threshold = serve_threshold
        self.dedup_threshold = dedup_threshold
        self.scan_limit = scan_limit
        self.max_entries = max_entries

        self.vector_strategy = VectorRetrievalStrategy(embedding_service, repository, scan_limit)
        self.strategies = strategies if strategies is not None else [
            self.vector_strategy,
            LexicalRetrievalStrategy(lexical_threshold),
        ]

    def lookup(self, question: str, threshold: float = None) -> Optional[CacheMatch]:
        """
        Find a cached answer for a question.

        Args:
            question: User question
            threshold: Minimum vector similarity (default: serve_threshold)

        Returns:
            CacheMatch, or None on a miss or any cache-layer error
        """
        threshold = self.serve_threshold if threshold is None else threshold
        question = (question or '').strip()
        if not question:
            return None

        try:
            if self.repository.count_active() == 0:
                return None

            entries = self.repository.list_working_set(self.scan_limit)
            match = None
            for strategy in self.strategies:
                match = strategy.find(question, entries, threshold)
                if match is not None:
                    break
                logger.debug(f"No {strategy.name} match for '{question[:50]}'")

            if match is None:
                return None

            logger.info(
                f"Cache hit via {match.strategy} (similarity {match.similarity:.3f}) "
                f"for entry {match.entry.id}"
            )
            self._record_usage(match)
            return match

        except Exception as e:
            logger.error(f"Cache lookup failed, treating as miss: {e}", exc_info=True)
            return None

    def _record_usage(self, match: CacheMatch):
        try:
            self.repository.increment_usage(match.entry.id, match.similarity)
        except Exception as e:
            logger.warning(f"Failed to record usage for entry {match.entry.id}: {e}")

    def upsert(self, question: str, response, metadata: Optional[CacheMetadata] = None) -> Optional[CacheEntry]:
        """
        Store an answer, updating a near-duplicate entry instead of adding one.

        Args:
            question: User question
            response: TextResponse or StructuredResponse
            metadata: Entry metadata (usage fields are managed here)

        Returns:
            The stored entry, or None if storing failed
        """
        question = (question or '').strip()
        if not question:
            logger.warning("Refusing to cache an empty question")
            return None

        metadata = metadata.model_copy(deep=True) if metadata else CacheMetadata()

        try:
            embedding = self.embedding_service.embed(question)
            entries = self.repository.list_working_set(self.scan_limit)
            duplicate = self.vector_strategy.match(embedding, entries, self.dedup_threshold)

            if duplicate is not None:
                existing = duplicate.entry
                metadata.usage_count = existing.metadata.usage_count + 1
                metadata.last_used_at = utcnow()
                metadata.verified = metadata.verified or existing.metadata.verified
                updated = existing.model_copy(update={'response': response, 'metadata': metadata})
                stored = self.repository.update(updated)
                logger.info(
                    f"Updated cache entry {stored.id} (similarity {duplicate.similarity:.3f}, "
                    f"usage {stored.metadata.usage_count})"
                )
            else:
                metadata.usage_count = 1
                metadata.last_used_at = utcnow()
                entry = CacheEntry(question=question, embedding=embedding, response=response, metadata=metadata)
                stored = self.repository.insert(entry)
                logger.info(f"Cached new entry {stored.id}: '{question[:50]}'")

        except Exception as e:
            logger.error(f"Failed to cache answer for '{question[:50]}': {e}", exc_info=True)
            return None

        self.evict_excess()
        return stored

    def evict_excess(self, max_entries: int = None) -> int:
        """
        Soft-delete the least valuable entries above the ceiling.

        Entries are ranked by usage_count ascending, then last_used_at
        ascending; the first (count - max_entries) are deleted.

        Args:
            max_entries: Ceiling (default: self.max_entries)

        Returns:
            Number of entries soft-deleted
        """
        ceiling = self.max_entries if max_entries is None else max_entries
        try:
            active = self.repository.count_active()
            excess = active - ceiling
            if excess <= 0:
                return 0

            victims = self.repository.eviction_candidates(excess)
            deleted = self.repository.soft_delete([e.id for e in victims])
            logger.info(f"Evicted {deleted} cache entries (active {active}, ceiling {ceiling})")
            return deleted

        except Exception as e:
            logger.error(f"Cache eviction failed: {e}", exc_info=True)
            return 0

    def find_by_scope(
        self,
        kind: str = None,
        source: str = None,
        verified: bool = None,
        include_deleted: bool = False
    ) -> List[CacheEntry]:
        try:
            return self.repository.find_by_scope(kind, source, verified, include_deleted)
        except Exception as e:
            logger.error(f"Failed to list cache entries: {e}", exc_info=True)
            return []

    def verify_entry(self, entry_id: str, admin_notes: str = None) -> bool:
        """
        Mark an entry as reviewed.

        Returns:
            True if the entry exists and was updated
        """
        fields: Dict[str, Any] = {'verified': True}
        if admin_notes is not None:
            fields['admin_notes'] = admin_notes
        try:
            if self.repository.get(entry_id) is None:
                return False
            return self.repository.update_many([entry_id], **fields) > 0
        except Exception as e:
            logger.error(f"Failed to verify entry {entry_id}: {e}", exc_info=True)
            return False

    def soft_delete(self, entry_ids: Iterable[str]) -> int:
        try:
            return self.repository.soft_delete(list(entry_ids))
        except Exception as e:
            logger.error(f"Failed to delete cache entries: {e}", exc_info=True)
            return 0

    def get_cache_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with cache stats, empty if the repository failed
        """
        try:
            entries = self.repository.list_all(include_deleted=True)
        except Exception as e:
            logger.error(f"Error getting cache stats: {e}", exc_info=True)
            return {}

        active = [e for e in entries if not e.is_deleted]
        recent_since = utcnow() - RECENT_WINDOW
        total_usage = sum(e.metadata.usage_count for e in active)
        top = sorted(active, key=lambda e: e.metadata.usage_count, reverse=True)[:TOP_QUESTIONS]

        return {
            'total_entries': len(entries),
            'active_entries': len(active),
            'deleted_entries': len(entries) - len(active),
            'recent_entries': sum(1 for e in active if e.created_at >= recent_since),
            'verified_entries': sum(1 for e in active if e.metadata.verified),
            'total_usage': total_usage,
            'avg_usage': round(total_usage / len(active), 2) if active else 0,
            'by_kind': dict(Counter(e.metadata.kind.value for e in active)),
            'by_source': dict(Counter(e.metadata.source_of_answer.value for e in active)),
            'top_questions': [
                {'id': e.id, 'question': e.question, 'usage_count': e.metadata.usage_count}
                for e in top
            ],
            'max_entries': self.max_entries,
            'serve_threshold': self.serve_threshold,
            'dedup_threshold': self.dedup_threshold,
        }


if __name__ == '__main__':
    from core.cache_repository import InMemoryCacheRepository
    from core.models import TextResponse
    from services.embedding_service import EmbeddingService

    print("--- Testing Similarity Cache Service ---\n")

    cache = SimilarityCacheService(InMemoryCacheRepository(), EmbeddingService())

    question = "Thời tiết hôm nay thế nào?"
    cache.upsert(question, TextResponse(message="Xin lỗi, tôi chỉ hỗ trợ tìm phòng trọ."))
    cache.upsert(question, TextResponse(message="Xin lỗi, tôi chỉ hỗ trợ tìm phòng trọ."))

    match = cache.lookup(question)
    if match:
        print(f"✓ Hit via {match.strategy}, similarity {match.similarity:.3f}")
        print(f"  Usage count: {match.entry.metadata.usage_count}")
    else:
        print("✗ Miss")

    print(f"\nStats: {cache.get_cache_stats()}")
