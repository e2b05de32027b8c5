import pytest
import requests

from services.vocabulary_service import FALLBACK_AMENITIES, VocabularyCache, VocabularyService

from conftest import FakeDirectoryConnector


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FlakyConnector(FakeDirectoryConnector):
    """Fails the first `failures` province fetches."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def fetch_provinces(self):
        if self.failures > 0:
            self.failures -= 1
            self._count('provinces')
            raise requests.exceptions.ConnectionError("directory down")
        return super().fetch_provinces()


class NoAmenitiesConnector(FakeDirectoryConnector):
    def fetch_amenities(self):
        self._count('amenities')
        return []


def test_vocabulary_is_fetched_once_per_ttl(directory):
    clock = FakeClock()
    vocabulary = VocabularyService(connector=directory, cache=VocabularyCache(ttl_seconds=60, clock=clock))

    vocabulary.resolve_province("Hà Nội")
    vocabulary.resolve_province("Đà Nẵng")
    assert directory.calls['provinces'] == 1

    clock.now = 59
    vocabulary.resolve_province("Hà Nội")
    assert directory.calls['provinces'] == 1

    clock.now = 60
    vocabulary.resolve_province("Hà Nội")
    assert directory.calls['provinces'] == 2


def test_failed_fetch_is_not_cached():
    connector = FlakyConnector(failures=1)
    vocabulary = VocabularyService(connector=connector, cache=VocabularyCache(ttl_seconds=60))

    first = vocabulary.resolve_province("Sài Gòn")
    second = vocabulary.resolve_province("Sài Gòn")

    assert first.resolved is False
    assert first.value == "Sài Gòn"
    assert second.value == 'p-hcm'
    assert connector.calls['provinces'] == 2


def test_wards_are_cached_per_province(vocabulary, directory):
    hcm = vocabulary.resolve_province("TP.HCM")
    hanoi = vocabulary.resolve_province("Hà Nội")

    assert vocabulary.resolve_ward("Quận 10", hcm).value == 'w-q10'
    assert vocabulary.resolve_ward("Cầu Giấy", hanoi).value == 'w-cg'
    assert vocabulary.resolve_ward("Q1", hcm).value == 'w-q1'

    assert directory.calls['wards:p-hcm'] == 1
    assert directory.calls['wards:p-hn'] == 1
    assert vocabulary.cache.scopes() == ['provinces', 'wards:p-hcm', 'wards:p-hn']


def test_ward_without_province_uses_default(vocabulary):
    ward = vocabulary.resolve_ward("Gò Vấp")

    assert ward.resolved is True
    assert ward.value == 'w-gv'
    assert ward.name == 'Quận Gò Vấp'


def test_ward_under_unresolved_province_stays_raw(vocabulary):
    province = vocabulary.resolve_province("Atlantis")

    assert province.resolved is False
    assert vocabulary.resolve_ward("Quận 1", province).value == 'Quận 1'


def test_resolve_location_scopes(vocabulary):
    assert vocabulary.resolve_location("Hà Nội").value == 'p-hn'
    assert vocabulary.resolve_location("Quận Bình Thạnh", scope='ward').value == 'w-bt'
    with pytest.raises(ValueError):
        vocabulary.resolve_location("Quận 1", scope='street')


def test_amenities_resolve_with_synonyms(vocabulary):
    refs = vocabulary.resolve_amenities(["wi-fi", "máy lạnh", "hồ bơi", " "])

    assert [ref.value for ref in refs] == ['a-wifi', 'a-dh', 'hồ bơi']
    assert refs[2].resolved is False


def test_empty_amenity_directory_uses_fallback_list():
    vocabulary = VocabularyService(connector=NoAmenitiesConnector(), cache=VocabularyCache(ttl_seconds=60))

    assert vocabulary.amenities() == FALLBACK_AMENITIES
    assert vocabulary.resolve_amenities(["Tủ lạnh"])[0].value == '68be84191b3b9b4fa53e7d58'
    assert vocabulary.cache.scopes() == []


def test_invalidate_forces_refetch(vocabulary, directory):
    vocabulary.resolve_province("Hà Nội")
    vocabulary.cache.invalidate('provinces')
    vocabulary.resolve_province("Hà Nội")

    assert directory.calls['provinces'] == 2

    vocabulary.cache.invalidate()
    assert vocabulary.cache.scopes() == []


@pytest.mark.parametrize("raw_name, expected", [
    ("Bình Thạnh", 'w-bt'),
    ("quận bình thạnh", 'w-bt'),
    ("Tân Bình", 'w-tb'),
    ("quan tan binh", 'w-tb'),
])
def test_wards_sharing_letters_resolve_to_the_named_one(vocabulary, raw_name, expected):
    assert vocabulary.resolve_ward(raw_name).value == expected
