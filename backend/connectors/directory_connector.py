"""
Connector for the reference directory API (provinces, wards, amenities).

Every listing is paginated with limit/offset and signals more pages with a
`hasMore` flag, either at the top level or under `pagination`. Items are
normalised to {'id': str, 'name': str} whatever the exact response shape.
"""

import logging
import requests
from typing import Any, Dict, List, Optional

from core.config import (
    DIRECTORY_BASE_URL,
    DIRECTORY_MAX_PAGES,
    DIRECTORY_PAGE_SIZE,
    DIRECTORY_RATE_LIMIT_PRESET,
    DIRECTORY_TIMEOUT,
)
from services.rate_limiter import RateLimiter, get_preset_config

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ITEM_CONTAINER_KEYS = ('items', 'data', 'results', 'docs', 'provinces', 'wards', 'amenities')
ID_KEYS = ('id', '_id', 'code')
NAME_KEYS = ('name', 'fullName', 'full_name', 'title')


class DirectoryConnector:
    """
    Paginated HTTP client for the reference directory.

    Failures are raised as requests.RequestException; callers decide how to
    degrade.
    """

    def __init__(
        self,
        base_url: str = DIRECTORY_BASE_URL,
        timeout: float = DIRECTORY_TIMEOUT,
        page_size: int = DIRECTORY_PAGE_SIZE,
        max_pages: int = DIRECTORY_MAX_PAGES,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Args:
            base_url: Directory API root (e.g. "http://host/api/directory")
            timeout: Per-request timeout in seconds
            page_size: `limit` sent with every page request
            max_pages: Hard ceiling on pages followed for one listing
            rate_limiter: Limiter shared by all directory calls
            session: Optional pre-configured requests session
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.page_size = page_size
        self.max_pages = max_pages
        self.rate_limiter = rate_limiter or RateLimiter(
            get_preset_config(DIRECTORY_RATE_LIMIT_PRESET),
            source_name=f"Directory: {self.base_url}"
        )
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})

    def fetch_provinces(self) -> List[Dict[str, str]]:
        return self._fetch_all_pages('/provinces')

    def fetch_wards(self, province: str) -> List[Dict[str, str]]:
        """
        Args:
            province: Canonical province id (or raw name when unresolved)
        """
        return self._fetch_all_pages('/wards', {'province': province})

    def fetch_amenities(self) -> List[Dict[str, str]]:
        return self._fetch_all_pages('/amenities')

    def _fetch_all_pages(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, str]]:
        """
        Follow `hasMore` until the listing is exhausted or max_pages is reached.

        Args:
            path: Endpoint path under base_url
            params: Extra query parameters

        Returns:
            List of normalised {'id', 'name'} records
        """
        url = f"{self.base_url}{path}"
        records: List[Dict[str, str]] = []
        offset = 0

        for page in range(self.max_pages):
            page_params = dict(params or {})
            page_params.update({'limit': self.page_size, 'offset': offset})

            body = self._get_json(url, page_params)
            items = self._extract_items(body)
            records.extend(r for r in (self._normalize_item(i) for i in items) if r)

            if not items or not self._has_more(body):
                logger.info(f"Fetched {len(records)} records from {path} in {page + 1} page(s)")
                return records

            offset += len(items)

        logger.warning(f"Stopped paging {path} after {self.max_pages} pages ({len(records)} records)")
        return records

    def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        """GET with rate limiting; 429s are retried with backoff until the limiter gives up."""
        while True:
            self.rate_limiter.wait_if_needed()
            response = self.session.get(url, params=params, timeout=self.timeout)
            self.rate_limiter.record_request()

            if response.status_code == 429:
                retry_after = response.headers.get('Retry-After')
                retry_after = float(retry_after) if retry_after and retry_after.isdigit() else None
                if self.rate_limiter.record_429_response(retry_after):
                    continue
                # Out of retries: make the 429 an exception for the caller
                self.rate_limiter.reset_backoff()
                response.raise_for_status()

            response.raise_for_status()
            self.rate_limiter.record_success()
            try:
                return response.json()
            except ValueError as e:
                raise requests.exceptions.InvalidJSONError(f"Invalid JSON from {url}: {e}") from e

    @staticmethod
    def _extract_items(body: Any) -> List[Any]:
        """Find the item list in `[...]`, `{items}`, `{data}`, `{data: {items}}` and similar shapes."""
        if isinstance(body, list):
            return body
        if not isinstance(body, dict):
            return []
        for key in ITEM_CONTAINER_KEYS:
            value = body.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, dict):
                nested = DirectoryConnector._extract_items(value)
                if nested:
                    return nested
        return []

    @staticmethod
    def _has_more(body: Any) -> bool:
        if not isinstance(body, dict):
            return False
        if 'hasMore' in body:
            return bool(body['hasMore'])
        for key in ('pagination', 'data'):
            nested = body.get(key)
            if isinstance(nested, dict) and 'hasMore' in nested:
                return bool(nested['hasMore'])
        pagination = body.get('data', {}).get('pagination') if isinstance(body.get('data'), dict) else None
        if isinstance(pagination, dict):
            return bool(pagination.get('hasMore'))
        return False

    @staticmethod
    def _normalize_item(item: Any) -> Optional[Dict[str, str]]:
        if isinstance(item, str):
            return {'id': item, 'name': item}
        if not isinstance(item, dict):
            return None

        item_id = next((item[k] for k in ID_KEYS if item.get(k) not in (None, '')), None)
        name = next((item[k] for k in NAME_KEYS if item.get(k)), None)
        if name is None:
            return None
        return {'id': str(item_id if item_id is not None else name), 'name': str(name)}
