"""
Query Orchestrator

Runs one chat message through the pipeline:

    cache lookup -> (hit: fresh search or direct replay)
                 -> scope gate -> rule extraction -> [LLM escalation]
                 -> listing search -> response shaping
                 -> cache admission (persisted after the response is returned)

Usage:
    orchestrator = QueryOrchestrator(cache, extractor, llm, listing_search, dispatcher)
    response = orchestrator.process_message("tìm phòng trọ quận 1 dưới 3 triệu")
"""

import logging
import time
from typing import List, Optional

from core.config import MAX_MESSAGE_LENGTH
from core.models import (
    AnswerSource,
    CacheEntry,
    CacheMetadata,
    ChatResponse,
    PendingCacheWrite,
    QueryKind,
    ResponseSource,
    SearchCriteria,
    StructuredResponse,
    TextResponse,
)
from processors.criteria_extractor import CriteriaExtractor
from services.listing_search_service import ListingSearchService
from services.similarity_cache_service import SimilarityCacheService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

OUT_OF_SCOPE_MESSAGE = (
    "Em xin lỗi, nhưng em chỉ có thể hỗ trợ các câu hỏi liên quan đến tìm kiếm phòng trọ, "
    "căn hộ và các dịch vụ bất động sản. Nếu Anh/Chị có nhu cầu tìm phòng trọ hoặc căn hộ, "
    "em rất sẵn lòng hỗ trợ!"
)
FOUND_MESSAGE = "Tôi đã tìm thấy {count} kết quả phù hợp với yêu cầu của bạn."
EMPTY_MESSAGE = "Vui lòng nhập nội dung tin nhắn."

OUT_OF_SCOPE_SUGGESTIONS = [
    'Tìm phòng trọ phù hợp',
    'Tìm căn hộ chung cư',
    'Tìm nhà nguyên căn',
    'Xem tin đăng mới nhất',
]
GENERAL_SUGGESTIONS = [
    'Hãy cho tôi biết bạn đang tìm loại phòng gì?',
    'Bạn có ngân sách dự kiến không?',
    'Khu vực nào bạn muốn tìm kiếm?',
    'Xem các tin đăng mới nhất',
]


class EmptyMessageError(ValueError):
    """Raised for an empty or whitespace-only message."""


class PipelineOutcome:
    """A built response plus the cache write it earned, if any."""

    def __init__(self, response: ChatResponse, pending_write: Optional[PendingCacheWrite] = None):
        self.response = response
        self.pending_write = pending_write


def search_suggestions(criteria: SearchCriteria) -> List[str]:
    suggestions = []
    if criteria.category:
        suggestions.append('Xem thêm cùng loại hình')
    if criteria.price_range is not None and criteria.price_range.max is not None:
        suggestions.append('Tìm với mức giá khác')
    if criteria.province_ref is not None:
        suggestions.append('Tìm khu vực lân cận')
    if criteria.ward_ref is not None:
        suggestions.append('Tìm phường/xã khác')
    suggestions.append('Lọc theo tiện ích')
    return suggestions


class QueryOrchestrator:
    """
    Stateless per-message pipeline over the cache, extractors and listing search.
    """

    def __init__(
        self,
        cache: SimilarityCacheService,
        extractor: CriteriaExtractor,
        llm=None,
        listing_search: ListingSearchService = None,
        dispatcher=None,
        max_message_length: int = MAX_MESSAGE_LENGTH
    ):
        """
        Args:
            cache: Similarity cache
            extractor: Rule-based criteria extractor (also the scope gate)
            llm: Optional LLMService for escalation
            listing_search: Downstream listing search client
            dispatcher: Optional cache write dispatcher used by process_message
            max_message_length: Messages are truncated to this many characters
        """
        self.cache = cache
        self.extractor = extractor
        self.llm = llm
        self.listing_search = listing_search or ListingSearchService()
        self.dispatcher = dispatcher
        self.max_message_length = max_message_length

    def handle(self, message: str) -> PipelineOutcome:
        """
        Build the response for a message and decide whether to cache it.

        Args:
            message: Raw user message

        Returns:
            PipelineOutcome

        Raises:
            EmptyMessageError: if the message is empty or whitespace
        """
        started = time.monotonic()
        text = (message or '').strip()
        if not text:
            raise EmptyMessageError(EMPTY_MESSAGE)
        text = text[:self.max_message_length]

        match = self.cache.lookup(text)
        if match is not None:
            outcome = self._from_cache(match.entry, match.similarity)
            if outcome is not None:
                outcome.response.processing_time_ms = _elapsed_ms(started)
                return outcome

        if not self.extractor.is_in_scope(text):
            logger.info(f"Out-of-scope message: '{text[:50]}'")
            response = self._out_of_scope_response(ResponseSource.SCOPE_GATE)
            response.processing_time_ms = _elapsed_ms(started)
            pending = PendingCacheWrite(
                question=text,
                response=TextResponse(message=response.message),
                metadata=CacheMetadata(
                    kind=QueryKind.NON_ROOM,
                    source_of_answer=AnswerSource.RULES,
                    processing_time_ms=response.processing_time_ms,
                ),
            )
            return PipelineOutcome(response, pending)

        criteria = self.extractor.extract(text)
        source = ResponseSource.RULES
        if self.llm is not None and self.extractor.should_escalate(text, criteria):
            logger.info(f"Escalating to LLM (completeness {criteria.completeness_score})")
            llm_criteria = self.llm.extract_criteria(text)
            criteria = llm_criteria.merged_with(criteria)
            source = ResponseSource.LLM

        result = self.listing_search.search(criteria)
        response = self._structured_response(criteria, result.items, source)
        response.processing_time_ms = _elapsed_ms(started)

        pending = None
        if result.items:
            pending = PendingCacheWrite(
                question=text,
                response=StructuredResponse(
                    message=response.message,
                    criteria=criteria,
                    results=result.items,
                    total_found=len(result.items),
                ),
                metadata=CacheMetadata(
                    kind=QueryKind.ROOM_SEARCH,
                    source_of_answer=AnswerSource.LLM if source == ResponseSource.LLM else AnswerSource.RULES,
                    extracted_criteria=criteria.model_dump(mode='json'),
                    search_criteria=criteria,
                    processing_time_ms=response.processing_time_ms,
                    result_count=len(result.items),
                ),
            )
        else:
            logger.info("No listings found, answer not cached")

        return PipelineOutcome(response, pending)

    def _from_cache(self, entry: CacheEntry, similarity: float) -> Optional[PipelineOutcome]:
        cached = entry.response
        if isinstance(cached, StructuredResponse):
            result = self.listing_search.search(cached.criteria)
            response = self._structured_response(cached.criteria, result.items, ResponseSource.CACHE_FRESH_SEARCH)
            response.similarity = similarity
            return PipelineOutcome(response)

        if isinstance(cached, TextResponse):
            in_scope = entry.metadata.kind != QueryKind.NON_ROOM
            response = ChatResponse(
                message=cached.message,
                is_in_scope_query=in_scope,
                suggestions=GENERAL_SUGGESTIONS if in_scope else OUT_OF_SCOPE_SUGGESTIONS,
                source=ResponseSource.CACHE_DIRECT,
                similarity=similarity,
            )
            return PipelineOutcome(response)

        logger.warning(f"Cache entry {entry.id} has an unknown response type, ignoring")
        return None

    @staticmethod
    def _out_of_scope_response(source: ResponseSource) -> ChatResponse:
        return ChatResponse(
            message=OUT_OF_SCOPE_MESSAGE,
            is_in_scope_query=False,
            suggestions=list(OUT_OF_SCOPE_SUGGESTIONS),
            source=source,
        )

    @staticmethod
    def _structured_response(criteria: SearchCriteria, listings: list, source: ResponseSource) -> ChatResponse:
        return ChatResponse(
            message=FOUND_MESSAGE.format(count=len(listings)),
            is_in_scope_query=True,
            criteria=criteria,
            listings=listings,
            total_found=len(listings),
            suggestions=search_suggestions(criteria) if listings else list(GENERAL_SUGGESTIONS),
            source=source,
        )

    def write_back(self, outcome: PipelineOutcome) -> Optional[CacheEntry]:
        """
        Persist the outcome's cache write, if it earned one.

        Returns:
            The stored entry, or None when nothing was (or could be) stored
        """
        pending = outcome.pending_write
        if pending is None:
            return None
        return self.cache.upsert(pending.question, pending.response, pending.metadata)

    def process_message(self, message: str) -> ChatResponse:
        """
        Handle a message and hand its cache write to the dispatcher.

        Without a dispatcher the write runs inline before returning.
        """
        outcome = self.handle(message)
        if outcome.pending_write is not None:
            if self.dispatcher is not None:
                self.dispatcher.submit(outcome.pending_write)
            else:
                self.write_back(outcome)
        return outcome.response


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
