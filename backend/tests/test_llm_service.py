import json
from unittest.mock import patch

import pytest
import requests

from services.llm_service import LLMService, parse_json_response
from services.provider_health import ProviderHealth


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=''):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def ollama_reply(fields):
    return FakeResponse(200, {'response': json.dumps(fields, ensure_ascii=False)})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(extractor, clock):
    health = ProviderHealth('test-llm', cooldown_seconds=60, clock=clock)
    return LLMService(extractor, ollama_host='http://ollama.test:11434', health=health)


@pytest.mark.parametrize("text, expected", [
    ('{"isRoomSearchQuery": true}', {'isRoomSearchQuery': True}),
    ('Kết quả: {"wardName": "Quận 1", "note": "a } b"} xong', {'wardName': 'Quận 1', 'note': 'a } b'}),
    ('{"category": "can_ho", "minPrice": 5000000,', {'category': 'can_ho', 'minPrice': 5000000}),
    ('{"a": {"b": 1}', {'a': {'b': 1}}),
])
def test_parse_json_response_repairs_common_output(text, expected):
    assert parse_json_response(text) == expected


@pytest.mark.parametrize("text", ['', 'không có JSON', '[1, 2, 3]', '{"wardName": "Quận'])
def test_parse_json_response_rejects_non_objects(text):
    assert parse_json_response(text) is None


def test_extract_criteria_builds_from_llm_fields(service):
    fields = {
        'isRoomSearchQuery': True,
        'category': 'phong_tro',
        'provinceName': None,
        'wardName': 'Gò Vấp',
        'amenityNames': ['máy lạnh'],
        'minPrice': None,
        'maxPrice': 3000000,
        'minArea': None,
        'maxArea': None,
    }
    with patch('services.llm_service.requests.post', return_value=ollama_reply(fields)) as post:
        criteria = service.extract_criteria('tìm phòng gần chợ, máy lạnh, "giá tốt"')

    payload = post.call_args.kwargs['json']
    assert payload['format'] == 'json'
    assert payload['stream'] is False
    assert "'giá tốt'" in payload['prompt']
    assert post.call_args.args[0] == 'http://ollama.test:11434/api/generate'

    assert criteria.category == 'phong_tro'
    assert criteria.ward_ref.value == 'w-gv'
    assert criteria.province_ref.value == 'p-hcm'
    assert [ref.value for ref in criteria.amenity_refs] == ['a-dh']
    assert criteria.price_range.max == 3_000_000
    assert service.health.is_available() is True


def test_network_error_falls_back_to_rules_and_starts_cooldown(service, clock):
    message = "phòng trọ quận 1 dưới 3 triệu"
    error = requests.exceptions.ConnectionError("refused")

    with patch('services.llm_service.requests.post', side_effect=error) as post:
        first = service.extract_criteria(message)
        second = service.extract_criteria(message)

    assert post.call_count == 1
    assert first.ward_ref.value == 'w-q1'
    assert second == first
    assert service.health.is_available() is False

    clock.now += 61
    with patch('services.llm_service.requests.post', return_value=ollama_reply({'isRoomSearchQuery': False})) as post:
        service.extract_criteria(message)
    assert post.call_count == 1


def test_http_error_falls_back_to_rules(service):
    with patch('services.llm_service.requests.post', return_value=FakeResponse(500, text='boom')):
        criteria = service.extract_criteria("căn hộ bình thạnh có ban công")

    assert criteria.category == 'can_ho'
    assert criteria.ward_ref.value == 'w-bt'
    assert service.health.is_available() is False


def test_unparseable_output_falls_back_to_rules(service):
    reply = FakeResponse(200, {'response': 'Xin lỗi, tôi không hiểu.'})
    with patch('services.llm_service.requests.post', return_value=reply):
        criteria = service.extract_criteria("phòng trọ q10 giá 4tr")

    assert criteria.ward_ref.value == 'w-q10'
    assert service.health.is_available() is True


def test_health_check(service):
    with patch('services.llm_service.requests.get', return_value=FakeResponse(200, {})):
        assert service.health_check() is True
    with patch('services.llm_service.requests.get', side_effect=requests.exceptions.Timeout()):
        assert service.health_check() is False


def test_wrongly_typed_fields_are_ignored(service):
    fields = {'isRoomSearchQuery': True, 'wardName': 'Quận 1', 'amenityNames': 3}
    with patch('services.llm_service.requests.post', return_value=ollama_reply(fields)):
        criteria = service.extract_criteria("tìm phòng gần trường, không ồn ào")

    assert criteria.is_in_scope_query is True
    assert criteria.ward_ref.value == 'w-q1'
    assert criteria.amenity_refs == []


def test_field_errors_fall_back_to_rules(service):
    message = "phòng trọ q10 giá 4tr"
    with patch('services.llm_service.requests.post', return_value=ollama_reply({'isRoomSearchQuery': True})), \
            patch.object(service.extractor, 'build_from_fields', side_effect=TypeError("bad field")):
        criteria = service.extract_criteria(message)

    assert criteria == service.extractor.extract(message)
    assert criteria.ward_ref.value == 'w-q10'


@pytest.mark.parametrize("body", [
    [{'response': '{"isRoomSearchQuery": false}'}],
    {'response': {'isRoomSearchQuery': False}},
    'ok',
])
def test_unexpected_envelope_falls_back_to_rules(service, body):
    with patch('services.llm_service.requests.post', return_value=FakeResponse(200, body)):
        criteria = service.extract_criteria("phòng trọ q10 giá 4tr")

    assert criteria.is_in_scope_query is True
    assert criteria.ward_ref.value == 'w-q10'
