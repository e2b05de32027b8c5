"""Shared fixtures: in-memory cache, deterministic embeddings, fake directory and listing search."""

from typing import Dict, List

import pytest

from core.cache_repository import InMemoryCacheRepository
from core.models import ListingResult, SearchCriteria
from processors.criteria_extractor import CriteriaExtractor
from services.embedding_service import hash_embedding
from services.similarity_cache_service import SimilarityCacheService
from services.vocabulary_service import VocabularyCache, VocabularyService

PROVINCES = [
    {'id': 'p-hcm', 'name': 'Thành phố Hồ Chí Minh'},
    {'id': 'p-hn', 'name': 'Thành phố Hà Nội'},
    {'id': 'p-dn', 'name': 'Thành phố Đà Nẵng'},
]

WARDS = {
    'p-hcm': [
        {'id': 'w-q1', 'name': 'Quận 1'},
        {'id': 'w-q10', 'name': 'Quận 10'},
        {'id': 'w-gv', 'name': 'Quận Gò Vấp'},
        {'id': 'w-tb', 'name': 'Quận Tân Bình'},
        {'id': 'w-bt', 'name': 'Quận Bình Thạnh'},
    ],
    'p-hn': [
        {'id': 'w-cg', 'name': 'Quận Cầu Giấy'},
    ],
}

AMENITIES = [
    {'id': 'a-wifi', 'name': 'WiFi'},
    {'id': 'a-dh', 'name': 'Điều hòa'},
    {'id': 'a-bc', 'name': 'Ban công'},
]


class FakeEmbeddingService:
    """Hash embeddings with call counting."""

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return hash_embedding((text or '').strip().lower(), self.dimension)


class FakeDirectoryConnector:
    def __init__(self):
        self.calls: Dict[str, int] = {}

    def _count(self, scope: str):
        self.calls[scope] = self.calls.get(scope, 0) + 1

    def fetch_provinces(self):
        self._count('provinces')
        return list(PROVINCES)

    def fetch_wards(self, province):
        self._count(f'wards:{province}')
        return list(WARDS.get(province, []))

    def fetch_amenities(self):
        self._count('amenities')
        return list(AMENITIES)


class FakeListingSearch:
    def __init__(self, items=None):
        self.items = items if items is not None else [{'_id': 'l1', 'title': 'Phòng trọ Quận 1'}]
        self.calls: List[SearchCriteria] = []

    def search(self, criteria, page=1, limit=None) -> ListingResult:
        self.calls.append(criteria)
        return ListingResult(items=list(self.items), total=len(self.items))


class FakeLLM:
    def __init__(self, criteria: SearchCriteria = None):
        self.criteria = criteria or SearchCriteria(is_in_scope_query=True)
        self.calls: List[str] = []

    def extract_criteria(self, message: str) -> SearchCriteria:
        self.calls.append(message)
        return self.criteria


@pytest.fixture
def embeddings():
    return FakeEmbeddingService()


@pytest.fixture
def repository():
    return InMemoryCacheRepository()


@pytest.fixture
def cache(repository, embeddings):
    return SimilarityCacheService(repository, embeddings, max_entries=100)


@pytest.fixture
def directory():
    return FakeDirectoryConnector()


@pytest.fixture
def vocabulary(directory):
    return VocabularyService(connector=directory, cache=VocabularyCache(ttl_seconds=3600))


@pytest.fixture
def extractor(vocabulary):
    return CriteriaExtractor(vocabulary)


@pytest.fixture
def listing_search():
    return FakeListingSearch()


@pytest.fixture
def llm():
    return FakeLLM()
