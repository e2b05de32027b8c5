"""
Pydantic models for API requests and responses.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

from core.models import AnswerSource, QueryKind


# Chat Models
class ChatMessageRequest(BaseModel):
    message: str = Field(..., description="User message, Vietnamese or English")


# Cache Admin Models
class CacheEntrySummary(BaseModel):
    id: str
    question: str
    response_kind: str
    kind: QueryKind
    source_of_answer: AnswerSource
    usage_count: int
    verified: bool
    is_deleted: bool
    last_used_at: datetime
    created_at: datetime
    admin_notes: Optional[str] = None


class VerifyEntryRequest(BaseModel):
    admin_notes: Optional[str] = Field(None, max_length=500)


class CleanupRequest(BaseModel):
    max_entries: Optional[int] = Field(None, ge=0, description="Ceiling to enforce (default: configured)")


class CleanupResponse(BaseModel):
    evicted: int
    active_entries: int


class ScheduledJob(BaseModel):
    job_id: str
    name: str
    next_run_time: Optional[str]
    trigger: str


class HealthResponse(BaseModel):
    api: str
    cache: str
    embeddings: str
    llm: str
    providers: Dict[str, Any] = {}


class EntryListResponse(BaseModel):
    entries: List[CacheEntrySummary]
    total: int
