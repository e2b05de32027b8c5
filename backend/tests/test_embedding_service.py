import math
from unittest.mock import patch

import pytest
import requests

from services.embedding_service import EmbeddingService, hash_embedding, ollama_base_url, string_hash
from services.provider_health import ProviderHealth


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body or {}
        self.text = ''

    def json(self):
        return self._body


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    health = ProviderHealth('test-embeddings', cooldown_seconds=30, clock=clock)
    return EmbeddingService(ollama_host='ollama.test', embedding_dimension=4, health=health)


def test_string_hash_is_stable():
    assert string_hash('') == 0
    assert string_hash('a') == 97
    assert string_hash('ab') == 97 * 31 + 98
    assert string_hash('phòng trọ') == string_hash('phòng trọ')


def test_hash_embedding_is_a_deterministic_unit_vector():
    first = hash_embedding('phòng trọ quận 1', 32)
    second = hash_embedding('phòng trọ quận 1', 32)

    assert first == second
    assert len(first) == 32
    assert math.sqrt(sum(v * v for v in first)) == pytest.approx(1.0)


def test_hash_embedding_of_empty_text_is_zero():
    assert hash_embedding('   ', 8) == [0.0] * 8


def test_ollama_base_url():
    assert ollama_base_url('localhost') == 'http://localhost:11434'
    assert ollama_base_url('http://ollama:11434/') == 'http://ollama:11434'


def test_embed_uses_provider_vector(service):
    reply = FakeResponse(200, {'embedding': [0.1, 0.2, 0.3, 0.4]})
    with patch('services.embedding_service.requests.post', return_value=reply) as post:
        vector = service.embed('  Phòng Trọ  ')

    assert vector == [0.1, 0.2, 0.3, 0.4]
    assert post.call_args.kwargs['json'] == {'model': service.model, 'prompt': 'phòng trọ'}
    assert post.call_args.args[0] == 'http://ollama.test:11434/api/embeddings'


def test_wrong_dimension_falls_back_without_cooldown(service):
    reply = FakeResponse(200, {'embedding': [0.1, 0.2]})
    with patch('services.embedding_service.requests.post', return_value=reply):
        vector = service.embed('phòng trọ')

    assert vector == hash_embedding('phòng trọ', 4)
    assert service.health.is_available() is True


def test_provider_failure_starts_cooldown(service, clock):
    with patch('services.embedding_service.requests.post',
               side_effect=requests.exceptions.ConnectionError('refused')) as post:
        first = service.embed('căn hộ')
        second = service.embed('căn hộ')

    assert post.call_count == 1
    assert first == second == hash_embedding('căn hộ', 4)
    assert service.health.get_stats()['cooldown_remaining_seconds'] == 30.0

    clock.now += 31
    reply = FakeResponse(200, {'embedding': [1.0, 0.0, 0.0, 0.0]})
    with patch('services.embedding_service.requests.post', return_value=reply) as post:
        assert service.embed('căn hộ') == [1.0, 0.0, 0.0, 0.0]
    assert post.call_count == 1


def test_http_error_falls_back(service):
    with patch('services.embedding_service.requests.post', return_value=FakeResponse(503)):
        vector = service.embed('nhà nguyên căn')

    assert vector == hash_embedding('nhà nguyên căn', 4)
    assert service.health.is_available() is False


def test_empty_text_makes_no_request(service):
    with patch('services.embedding_service.requests.post') as post:
        assert service.embed('   ') == [0.0] * 4
    post.assert_not_called()
