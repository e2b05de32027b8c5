"""
Rental Chat API - FastAPI application for the rental-search chat assistant.
"""

from contextlib import asynccontextmanager
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from api.models import (
    ChatMessageRequest, CacheEntrySummary, EntryListResponse,
    VerifyEntryRequest, CleanupRequest, CleanupResponse, HealthResponse, ScheduledJob
)
from core.cache_repository import create_cache_repository
from core.config import CACHE_WRITE_BACKEND, SCHEDULER_ENABLED
from core.models import AnswerSource, CacheEntry, ChatResponse, QueryKind
from processors.criteria_extractor import CriteriaExtractor
from services import scheduler_service
from services.cache_write_dispatcher import create_cache_write_dispatcher
from services.embedding_service import EmbeddingService
from services.listing_search_service import ListingSearchService
from services.llm_service import LLMService
from services.query_orchestrator import EmptyMessageError, QueryOrchestrator
from services.similarity_cache_service import SimilarityCacheService
from services.vocabulary_service import VocabularyService


class Services:
    """The wired pipeline shared by all requests."""

    def __init__(self):
        self.embeddings = EmbeddingService()
        self.cache = SimilarityCacheService(create_cache_repository(), self.embeddings)
        self.vocabulary = VocabularyService()
        self.extractor = CriteriaExtractor(self.vocabulary)
        self.llm = LLMService(self.extractor)
        # Queued write-back when configured, else FastAPI background tasks
        self.dispatcher = create_cache_write_dispatcher(self.cache) if CACHE_WRITE_BACKEND == 'rq' else None
        self.orchestrator = QueryOrchestrator(
            self.cache, self.extractor, self.llm, ListingSearchService()
        )


_services = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services()
        logger.info("✓ Chat pipeline initialized")
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    if SCHEDULER_ENABLED:
        scheduler_service.schedule_cache_maintenance(get_services().cache)
    yield
    scheduler_service.shutdown_scheduler()


# Initialize FastAPI app
app = FastAPI(
    title="Rental Chat API",
    description="Chat assistant for rental listings with a semantic query cache",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _entry_summary(entry: CacheEntry) -> CacheEntrySummary:
    meta = entry.metadata
    return CacheEntrySummary(
        id=entry.id,
        question=entry.question,
        response_kind=entry.response.kind,
        kind=meta.kind,
        source_of_answer=meta.source_of_answer,
        usage_count=meta.usage_count,
        verified=meta.verified,
        is_deleted=entry.is_deleted,
        last_used_at=meta.last_used_at,
        created_at=entry.created_at,
        admin_notes=meta.admin_notes
    )


# ============================================================================
# Health & Info Endpoints
# ============================================================================

@app.get("/")
def read_root():
    return {
        "message": "Rental Chat API is running",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health", response_model=HealthResponse)
def health_check(services: Services = Depends(get_services)):
    """Check health of API and dependencies."""
    health = {
        "api": "healthy",
        "cache": "unknown",
        "embeddings": "unknown",
        "llm": "unknown",
        "providers": {}
    }

    health["cache"] = "healthy" if services.cache.get_cache_stats() else "unhealthy"
    health["embeddings"] = "healthy" if services.embeddings.health_check() else "degraded"
    health["llm"] = "healthy" if services.llm.health_check() else "degraded"
    health["providers"] = {
        "embeddings": services.embeddings.health.get_stats(),
        "llm": services.llm.health.get_stats()
    }

    return health


# ============================================================================
# Chat Endpoints
# ============================================================================

@app.post("/chat/message", response_model=ChatResponse)
def send_message(
    request: ChatMessageRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services)
):
    """Answer a chat message; the cache write runs after the response is sent."""
    try:
        outcome = services.orchestrator.handle(request.message)
    except EmptyMessageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to process message: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    if outcome.pending_write is not None:
        if services.dispatcher is not None:
            services.dispatcher.submit(outcome.pending_write)
        else:
            background_tasks.add_task(services.orchestrator.write_back, outcome)

    return outcome.response


# ============================================================================
# Cache Admin Endpoints
# ============================================================================

@app.get("/cache/stats")
def get_cache_stats(services: Services = Depends(get_services)):
    """Get cache statistics."""
    stats = services.cache.get_cache_stats()
    if not stats:
        raise HTTPException(status_code=500, detail="Cache statistics unavailable")
    return stats


@app.get("/cache/entries", response_model=EntryListResponse)
def list_cache_entries(
    kind: Optional[QueryKind] = None,
    source: Optional[AnswerSource] = None,
    verified: Optional[bool] = None,
    include_deleted: bool = False,
    limit: int = 100,
    services: Services = Depends(get_services)
):
    """List cache entries, newest first, optionally filtered."""
    entries = services.cache.find_by_scope(kind, source, verified, include_deleted)
    return EntryListResponse(
        entries=[_entry_summary(e) for e in entries[:max(limit, 0)]],
        total=len(entries)
    )


@app.post("/cache/cleanup", response_model=CleanupResponse)
def cleanup_cache(request: CleanupRequest = None, services: Services = Depends(get_services)):
    """Evict entries above the ceiling."""
    try:
        max_entries = request.max_entries if request else None
        evicted = services.cache.evict_excess(max_entries)
        stats = services.cache.get_cache_stats()
        logger.info(f"✓ Manual cache cleanup evicted {evicted} entries")
        return CleanupResponse(evicted=evicted, active_entries=stats.get('active_entries', 0))
    except Exception as e:
        logger.error(f"Failed to clean up cache: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/cache/entries/{entry_id}/verify")
def verify_cache_entry(
    entry_id: str,
    request: VerifyEntryRequest = None,
    services: Services = Depends(get_services)
):
    """Mark a cache entry as verified by an admin."""
    admin_notes = request.admin_notes if request else None
    if not services.cache.verify_entry(entry_id, admin_notes):
        raise HTTPException(status_code=404, detail=f"Cache entry {entry_id} not found")
    return {"message": f"Cache entry {entry_id} verified", "entry_id": entry_id}


@app.delete("/cache/entries/{entry_id}")
def delete_cache_entry(entry_id: str, services: Services = Depends(get_services)):
    """Soft-delete a cache entry."""
    if services.cache.soft_delete([entry_id]) == 0:
        raise HTTPException(status_code=404, detail=f"Cache entry {entry_id} not found")
    return {"message": f"Cache entry {entry_id} deleted", "entry_id": entry_id}


# ============================================================================
# SCHEDULING ENDPOINTS
# ============================================================================

@app.get("/schedules")
def list_schedules():
    """List all active schedules with next run times."""
    try:
        jobs = scheduler_service.get_scheduled_jobs()
        return {"schedules": [ScheduledJob(**job) for job in jobs]}
    except Exception as e:
        logger.error(f"Failed to list schedules: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/schedules/cache-maintenance")
def update_maintenance_schedule(frequency: str, services: Services = Depends(get_services)):
    """
    Set how often cache eviction runs.

    Supported formats: "manual", "hourly", "daily", "weekly",
    "interval:30m", "interval:2h", "cron:0 4 * * *".
    """
    if frequency == "manual":
        scheduler_service.remove_cache_maintenance()
        return {"message": "Schedule removed", "frequency": frequency}

    if not scheduler_service.schedule_cache_maintenance(services.cache, frequency):
        raise HTTPException(status_code=400, detail="Invalid frequency format")
    return {"message": "Schedule updated", "frequency": frequency}


@app.post("/schedules/cache-maintenance/pause")
def pause_maintenance_schedule():
    """Pause cache maintenance without removing it."""
    if not scheduler_service.pause_cache_maintenance():
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"message": "Schedule paused"}


@app.post("/schedules/cache-maintenance/resume")
def resume_maintenance_schedule():
    if not scheduler_service.resume_cache_maintenance():
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"message": "Schedule resumed"}


@app.delete("/schedules/cache-maintenance")
def delete_maintenance_schedule():
    if scheduler_service.remove_cache_maintenance():
        return {"message": "Schedule removed"}
    return {"message": "No schedule to remove"}
