"""
Reference vocabulary resolver.

Maps free-text place and amenity names onto canonical directory ids using the
fuzzy matcher. Directory listings are cached per scope ("provinces",
"wards:<province id>", "amenities") for VOCABULARY_TTL_SECONDS.

Usage:
    from services.vocabulary_service import VocabularyService

    vocabulary = VocabularyService()
    province = vocabulary.resolve_province("Sài Gòn")
    ward = vocabulary.resolve_ward("Quận 1", province)
"""

import logging
import threading
import time
import requests
from typing import Callable, Dict, List, Optional

from connectors.directory_connector import DirectoryConnector
from core.config import (
    AMENITY_MATCH_THRESHOLD,
    DEFAULT_PROVINCE_NAME,
    LOCATION_MATCH_THRESHOLD,
    VOCABULARY_TTL_SECONDS,
)
from core.models import Reference
from processors.fuzzy_matcher import best_match

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Used when the directory has no amenities to offer
FALLBACK_AMENITIES = [
    {'id': '68c6bab2ab13f9d982ee9995', 'name': 'WiFi'},
    {'id': '68be84191b3b9b4fa53e7d57', 'name': 'Điều hòa'},
    {'id': '68b95b0e4bad16608dbefad8', 'name': 'Ban công'},
    {'id': '68be84191b3b9b4fa53e7d58', 'name': 'Tủ lạnh'},
    {'id': '68be84191b3b9b4fa53e7d59', 'name': 'Thang máy'},
    {'id': '68be84191b3b9b4fa53e7d60', 'name': 'Bảo vệ 24/7'},
]


class VocabularyCache:
    """
    Thread-safe TTL cache of directory listings keyed by scope.

    The lock only guards the map; fetching happens outside it, so two callers
    that both see an expired scope may both refresh it. The last write wins,
    which is harmless because both fetched the same listing.
    """

    def __init__(self, ttl_seconds: float = VOCABULARY_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def get(self, scope: str) -> Optional[List[Dict[str, str]]]:
        with self._lock:
            cached = self._entries.get(scope)
            if cached is None:
                return None
            stored_at, records = cached
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[scope]
                return None
            return records

    def set(self, scope: str, records: List[Dict[str, str]]):
        if not records:
            return
        with self._lock:
            self._entries[scope] = (self._clock(), list(records))

    def invalidate(self, scope: Optional[str] = None):
        with self._lock:
            if scope is None:
                self._entries.clear()
            else:
                self._entries.pop(scope, None)

    def scopes(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)


class VocabularyService:
    """
    Resolves raw names to canonical References. Never raises: directory
    failures leave names unresolved.
    """

    def __init__(
        self,
        connector: Optional[DirectoryConnector] = None,
        cache: Optional[VocabularyCache] = None,
        location_threshold: float = LOCATION_MATCH_THRESHOLD,
        amenity_threshold: float = AMENITY_MATCH_THRESHOLD,
        default_province_name: str = DEFAULT_PROVINCE_NAME
    ):
        self.connector = connector or DirectoryConnector()
        self.cache = cache or VocabularyCache()
        self.location_threshold = location_threshold
        self.amenity_threshold = amenity_threshold
        self.default_province_name = default_province_name

    def _load(self, scope: str, fetch: Callable[[], List[Dict[str, str]]]) -> List[Dict[str, str]]:
        cached = self.cache.get(scope)
        if cached is not None:
            return cached

        try:
            records = fetch()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to load '{scope}' from directory: {e}")
            return []

        if records:
            self.cache.set(scope, records)
            logger.info(f"Cached {len(records)} records for scope '{scope}'")
        else:
            logger.warning(f"Directory returned no records for scope '{scope}'")
        return records

    def provinces(self) -> List[Dict[str, str]]:
        return self._load('provinces', self.connector.fetch_provinces)

    def wards(self, province_id: str) -> List[Dict[str, str]]:
        return self._load(f'wards:{province_id}', lambda: self.connector.fetch_wards(province_id))

    def amenities(self) -> List[Dict[str, str]]:
        return self._load('amenities', self.connector.fetch_amenities) or FALLBACK_AMENITIES

    @staticmethod
    def _match(raw_name: str, records: List[Dict[str, str]], threshold: float) -> Reference:
        match = best_match(raw_name, records, threshold)
        if match is None:
            return Reference.raw(raw_name)
        record, score = match
        logger.debug(f"Resolved '{raw_name}' -> '{record['name']}' ({score:.2f})")
        return Reference(value=record['id'], name=record['name'], resolved=True)

    def resolve_province(self, raw_name: str) -> Reference:
        return self._match(raw_name.strip(), self.provinces(), self.location_threshold)

    def default_province(self) -> Reference:
        return self.resolve_province(self.default_province_name)

    def resolve_ward(self, raw_name: str, province: Optional[Reference] = None) -> Reference:
        """
        Resolve a ward or district name within a province.

        Args:
            raw_name: Name as written by the user (e.g. "Quận 1", "Bến Nghé")
            province: Resolved province; the default province is used when None

        Returns:
            Reference: canonical ward, or the raw name when it cannot be resolved
        """
        raw_name = raw_name.strip()
        province = province or self.default_province()
        if not province.resolved:
            return Reference.raw(raw_name)
        return self._match(raw_name, self.wards(province.value), self.location_threshold)

    def resolve_location(self, raw_name: str, scope: str = 'province', province: Optional[Reference] = None) -> Reference:
        if scope == 'ward':
            return self.resolve_ward(raw_name, province)
        if scope == 'province':
            return self.resolve_province(raw_name)
        raise ValueError(f"Unknown location scope '{scope}'")

    def resolve_amenities(self, raw_names: List[str]) -> List[Reference]:
        names = [n.strip() for n in raw_names if n and n.strip()]
        if not names:
            return []
        records = self.amenities()
        return [self._match(name, records, self.amenity_threshold) for name in names]
