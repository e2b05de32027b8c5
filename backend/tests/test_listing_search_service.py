import pytest
import requests

from core.models import NumericRange, Reference, SearchCriteria
from services.listing_search_service import ListingSearchService


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("not JSON")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        if self.error is not None:
            raise self.error
        return self.response


CRITERIA = SearchCriteria(
    is_in_scope_query=True,
    category='phong_tro',
    province_ref=Reference(value='p-hcm', name='Hồ Chí Minh', resolved=True),
    ward_ref=Reference(value='w-q1', name='Quận 1', resolved=True),
    price_range=NumericRange(min=1_800_000.4, max=3_000_000),
    amenity_refs=[Reference.raw('a-wifi'), Reference.raw('a-dh')],
)


def make_service(session, page_size=8):
    return ListingSearchService(url="http://listings.test/search", page_size=page_size, session=session)


def test_search_sends_flattened_criteria():
    session = FakeSession(FakeResponse(200, {
        'success': True,
        'data': {'properties': [{'_id': 'l1'}, {'_id': 'l2'}], 'pagination': {'total': 12}},
    }))

    result = make_service(session).search(CRITERIA, page=2)

    assert [item['_id'] for item in result.items] == ['l1', 'l2']
    assert result.total == 12
    url, params = session.calls[0]
    assert url == "http://listings.test/search"
    assert params == {
        'category': 'phong_tro',
        'provinceRef': 'p-hcm',
        'wardRef': 'w-q1',
        'priceMin': 1_800_000,
        'priceMax': 3_000_000,
        'amenityRefs': 'a-wifi,a-dh',
        'page': 2,
        'limit': 8,
    }


@pytest.mark.parametrize("body", [
    {'success': True, 'data': {'items': {'x': {'_id': 'l1'}, 'y': {'_id': 'l2'}}}},
    {'success': True, 'data': [{'_id': 'l1'}, {'_id': 'l2'}, 'junk']},
    {'properties': [{'_id': 'l1'}, {'_id': 'l2'}]},
])
def test_alternative_response_shapes(body):
    result = make_service(FakeSession(FakeResponse(200, body))).search(CRITERIA)

    assert [item['_id'] for item in result.items] == ['l1', 'l2']
    assert result.total == 2


def test_results_are_capped_at_limit():
    listings = [{'_id': f'l{i}'} for i in range(10)]
    session = FakeSession(FakeResponse(200, {'success': True, 'data': {'properties': listings}}))

    result = make_service(session).search(CRITERIA, limit=3)

    assert len(result.items) == 3
    assert result.total == 3


@pytest.mark.parametrize("session", [
    FakeSession(error=requests.exceptions.Timeout("slow")),
    FakeSession(FakeResponse(502, {})),
    FakeSession(FakeResponse(200, None)),
    FakeSession(FakeResponse(200, {'success': False, 'message': 'bad filter'})),
    FakeSession(FakeResponse(200, ['not', 'an', 'object'])),
])
def test_failures_return_empty_result(session):
    result = make_service(session).search(CRITERIA)

    assert result.items == []
    assert result.total == 0
