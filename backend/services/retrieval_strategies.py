"""
Retrieval strategies for the similarity cache.

Each strategy looks at a working set of cache entries and returns the best
CacheMatch it can justify, or None. SimilarityCacheService tries them in
order and serves the first match.
"""

import logging
import math
from typing import List, Optional, Sequence

from core.config import CACHE_LEXICAL_THRESHOLD, CACHE_SCAN_LIMIT
from core.models import CacheEntry, CacheMatch
from processors.text_normalizer import jaccard, word_set

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns 0.0 for mismatched lengths or zero vectors.
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def clamp_similarity(value: float) -> float:
    return max(0.0, min(1.0, value))


class RetrievalStrategy:
    """Base class: find the best entry for a question, or None."""

    name = 'base'

    def find(self, question: str, entries: List[CacheEntry], threshold: float) -> Optional[CacheMatch]:
        raise NotImplementedError


class VectorRetrievalStrategy(RetrievalStrategy):
    """
    Cosine similarity between the question embedding and stored embeddings.

    Entries whose embedding length differs from the query's are skipped, so a
    cache written by a different embedding model never produces matches.
    When the repository scores similarity itself (pgvector), the search runs
    there; otherwise the working set is scored here.
    """

    name = 'vector'

    def __init__(self, embedding_service, repository=None, scan_limit: int = CACHE_SCAN_LIMIT):
        self.embedding_service = embedding_service
        self.repository = repository
        self.scan_limit = scan_limit

    def find(self, question: str, entries: List[CacheEntry], threshold: float) -> Optional[CacheMatch]:
        if not entries:
            return None
        query_vector = self.embedding_service.embed(question)
        return self.match(query_vector, entries, threshold)

    def match(
        self,
        query_vector: List[float],
        entries: List[CacheEntry],
        threshold: float
    ) -> Optional[CacheMatch]:
        """Best match for an already-computed query vector."""
        if self.repository is not None and self.repository.supports_vector_search:
            found = self.repository.nearest(query_vector, self.scan_limit, threshold)
            if found is None:
                return None
            entry, score = found
            return CacheMatch(entry=entry, similarity=clamp_similarity(score), strategy=self.name)
        return self.find_with_vector(query_vector, entries, threshold)

    def find_with_vector(
        self,
        query_vector: List[float],
        entries: List[CacheEntry],
        threshold: float
    ) -> Optional[CacheMatch]:
        """
        Args:
            query_vector: Embedding of the question
            entries: Candidate entries
            threshold: Minimum cosine similarity to accept

        Returns:
            CacheMatch for the highest-scoring entry at or above threshold
        """
        best_entry = None
        best_score = -1.0
        skipped = 0

        for entry in entries:
            if len(entry.embedding) != len(query_vector):
                skipped += 1
                continue
            score = cosine_similarity(query_vector, entry.embedding)
            if score >= threshold and score > best_score:
                best_entry, best_score = entry, score

        if skipped:
            logger.debug(f"Skipped {skipped} entries with mismatched embedding dimension")
        if best_entry is None:
            return None
        return CacheMatch(entry=best_entry, similarity=clamp_similarity(best_score), strategy=self.name)


class LexicalRetrievalStrategy(RetrievalStrategy):
    """
    Jaccard overlap of normalised word sets.

    Uses its own threshold; the caller's (vector) threshold is ignored.
    """

    name = 'lexical'

    def __init__(self, threshold: float = CACHE_LEXICAL_THRESHOLD):
        self.threshold = threshold

    def find(self, question: str, entries: List[CacheEntry], threshold: float = None) -> Optional[CacheMatch]:
        query_words = word_set(question)
        if not query_words:
            return None

        best_entry = None
        best_score = 0.0
        for entry in entries:
            score = jaccard(query_words, word_set(entry.question))
            if score >= self.threshold and score > best_score:
                best_entry, best_score = entry, score

        if best_entry is None:
            return None
        return CacheMatch(entry=best_entry, similarity=clamp_similarity(best_score), strategy=self.name)
