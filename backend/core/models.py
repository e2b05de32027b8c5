"""
Domain models for the query cache and criteria extraction pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, computed_field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums
class QueryKind(str, Enum):
    ROOM_SEARCH = "room-search-query"
    NON_ROOM = "non-room-query"
    TEST = "test"
    SEED = "seed"
    MANUAL = "manual"


class AnswerSource(str, Enum):
    RULES = "rules"
    LLM = "llm"
    MANUAL = "manual"
    SEED = "seed"


class PriorityLevel(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class ResponseSource(str, Enum):
    CACHE_FRESH_SEARCH = "cache-fresh-search"
    CACHE_DIRECT = "cache-direct"
    SCOPE_GATE = "scope-gate"
    RULES = "rules"
    LLM = "llm"


class Category(str, Enum):
    PHONG_TRO = "phong_tro"
    CAN_HO = "can_ho"
    NHA_NGUYEN_CAN = "nha_nguyen_can"
    CHUNG_CU_MINI = "chung_cu_mini"
    HOMESTAY = "homestay"


# Search criteria
class Reference(BaseModel):
    """
    A place or amenity mention.

    `value` is the canonical id when the directory resolved the name and the
    raw text otherwise; downstream consumers only ever read `value`.
    """
    value: str
    name: str
    resolved: bool = False

    @classmethod
    def raw(cls, text: str) -> 'Reference':
        return cls(value=text, name=text, resolved=False)


class NumericRange(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode='after')
    def _check_bounds(self) -> 'NumericRange':
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"range min {self.min} is greater than max {self.max}")
        return self

    @property
    def is_empty(self) -> bool:
        return self.min is None and self.max is None


class SearchCriteria(BaseModel):
    is_in_scope_query: bool = False
    category: Optional[str] = None
    province_ref: Optional[Reference] = None
    ward_ref: Optional[Reference] = None
    price_range: Optional[NumericRange] = None
    area_range: Optional[NumericRange] = None
    amenity_refs: List[Reference] = Field(default_factory=list)

    @model_validator(mode='after')
    def _dedupe_amenities(self) -> 'SearchCriteria':
        seen = set()
        unique = []
        for ref in self.amenity_refs:
            if ref.value in seen:
                continue
            seen.add(ref.value)
            unique.append(ref)
        self.amenity_refs = unique
        return self

    @computed_field
    @property
    def completeness_score(self) -> int:
        slots = [
            self.category is not None,
            self.province_ref is not None or self.ward_ref is not None,
            self.price_range is not None and not self.price_range.is_empty,
            self.area_range is not None and not self.area_range.is_empty,
            len(self.amenity_refs) > 0,
        ]
        return sum(slots)

    def merged_with(self, other: Optional['SearchCriteria']) -> 'SearchCriteria':
        """Return a copy whose empty slots are filled from `other`."""
        if other is None:
            return self.model_copy(deep=True)

        def pick_range(mine, theirs):
            if mine is not None and not mine.is_empty:
                return mine
            return theirs

        return SearchCriteria(
            is_in_scope_query=self.is_in_scope_query or other.is_in_scope_query,
            category=self.category or other.category,
            province_ref=self.province_ref or other.province_ref,
            ward_ref=self.ward_ref or other.ward_ref,
            price_range=pick_range(self.price_range, other.price_range),
            area_range=pick_range(self.area_range, other.area_range),
            amenity_refs=self.amenity_refs or other.amenity_refs,
        )

    def to_query_params(self, page: int = 1, limit: int = 8) -> Dict[str, Any]:
        """Flatten into the listing-search query string (None values dropped)."""
        params = {
            'category': self.category,
            'provinceRef': self.province_ref.value if self.province_ref else None,
            'wardRef': self.ward_ref.value if self.ward_ref else None,
            'priceMin': _as_int(self.price_range.min) if self.price_range else None,
            'priceMax': _as_int(self.price_range.max) if self.price_range else None,
            'areaMin': _as_int(self.area_range.min) if self.area_range else None,
            'areaMax': _as_int(self.area_range.max) if self.area_range else None,
            'amenityRefs': ','.join(ref.value for ref in self.amenity_refs) or None,
            'page': page,
            'limit': limit,
        }
        return {k: v for k, v in params.items() if v is not None}


def _as_int(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(round(value))


# Cached payloads
class TextResponse(BaseModel):
    kind: Literal["text"] = "text"
    message: str


class StructuredResponse(BaseModel):
    kind: Literal["structured"] = "structured"
    message: str = ""
    criteria: SearchCriteria
    results: List[Dict[str, Any]] = Field(default_factory=list)
    total_found: int = 0


CachedResponse = Annotated[Union[TextResponse, StructuredResponse], Field(discriminator='kind')]


class CacheMetadata(BaseModel):
    kind: QueryKind = QueryKind.ROOM_SEARCH
    source_of_answer: AnswerSource = AnswerSource.RULES
    usage_count: int = Field(1, ge=0)
    last_used_at: datetime = Field(default_factory=utcnow)
    priority_level: PriorityLevel = PriorityLevel.NORMAL
    extracted_criteria: Optional[Dict[str, Any]] = None
    search_criteria: Optional[SearchCriteria] = None
    tags: Set[str] = Field(default_factory=set)
    verified: bool = False
    processing_time_ms: Optional[float] = Field(None, ge=0)
    last_similarity: Optional[float] = Field(None, ge=0, le=1)
    result_count: Optional[int] = None
    admin_notes: Optional[str] = Field(None, max_length=500)


class CacheEntry(BaseModel):
    id: Optional[str] = None
    question: str = Field(..., min_length=1, max_length=1000)
    embedding: List[float]
    response: CachedResponse
    metadata: CacheMetadata = Field(default_factory=CacheMetadata)
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CacheMatch(BaseModel):
    entry: CacheEntry
    similarity: float = Field(..., ge=0, le=1)
    strategy: str


# Downstream search
class ListingResult(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = 0


# Orchestrator output
class ChatResponse(BaseModel):
    message: str
    is_in_scope_query: bool
    criteria: Optional[SearchCriteria] = None
    listings: List[Dict[str, Any]] = Field(default_factory=list)
    total_found: int = 0
    suggestions: List[str] = Field(default_factory=list)
    source: ResponseSource
    similarity: Optional[float] = None
    processing_time_ms: float = 0.0


class PendingCacheWrite(BaseModel):
    """A cache admission decision waiting to be persisted off the response path."""
    question: str
    response: CachedResponse
    metadata: CacheMetadata
