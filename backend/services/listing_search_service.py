"""
Client for the downstream listing search API.

The search endpoint answers {success, data: {properties, pagination: {total}}}
in the normal case, but older deployments return the listings under other
keys or as an object keyed by id. Any failure yields an empty result.
"""

import logging
import requests
from typing import Any, List, Optional

from core.config import LISTING_PAGE_SIZE, LISTING_SEARCH_TIMEOUT, LISTING_SEARCH_URL
from core.models import ListingResult, SearchCriteria

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ListingSearchService:
    """
    Service for searching rental listings by criteria.
    """

    def __init__(
        self,
        url: str = LISTING_SEARCH_URL,
        timeout: float = LISTING_SEARCH_TIMEOUT,
        page_size: int = LISTING_PAGE_SIZE,
        session: Optional[requests.Session] = None
    ):
        self.url = url
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests.Session()

    def search(self, criteria: SearchCriteria, page: int = 1, limit: int = None) -> ListingResult:
        """
        Search listings matching the criteria.

        Args:
            criteria: Extracted search criteria
            page: 1-based page number
            limit: Max listings returned (default: page_size)

        Returns:
            ListingResult (empty on any failure)
        """
        limit = limit or self.page_size
        params = criteria.to_query_params(page=page, limit=limit)

        try:
            response = self.session.get(self.url, params=params, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Listing search failed: {e}")
            return ListingResult()
        except ValueError as e:
            logger.error(f"Listing search returned invalid JSON: {e}")
            return ListingResult()

        if not isinstance(body, dict) or not body.get('success', True):
            message = body.get('message') if isinstance(body, dict) else None
            logger.warning(f"Listing search unsuccessful: {message or 'unknown error'}")
            return ListingResult()

        items = self._extract_listings(body)
        total = self._extract_total(body)
        if total > 0 and not items:
            logger.warning(f"Listing search reported {total} results but returned none")

        items = items[:limit]
        logger.info(f"Listing search returned {len(items)} listings (total {total})")
        return ListingResult(items=items, total=max(total, len(items)))

    @staticmethod
    def _extract_listings(body: dict) -> List[Any]:
        data = body.get('data')
        listings = None
        if isinstance(data, dict):
            listings = data.get('properties')
            if listings is None:
                listings = data.get('items')
            if isinstance(listings, dict):
                listings = list(listings.values())

        if not isinstance(listings, list) or not listings:
            for alternative in (data, body.get('properties'), body.get('items')):
                if isinstance(alternative, list) and alternative:
                    listings = alternative
                    break

        if not isinstance(listings, list):
            return []
        return [item for item in listings if isinstance(item, dict)]

    @staticmethod
    def _extract_total(body: dict) -> int:
        data = body.get('data')
        pagination = data.get('pagination') if isinstance(data, dict) else None
        if not isinstance(pagination, dict):
            pagination = body.get('pagination')
        if not isinstance(pagination, dict):
            return 0
        try:
            return int(pagination.get('total') or 0)
        except (TypeError, ValueError):
            return 0
