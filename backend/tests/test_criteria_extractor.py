import pytest

from core.models import NumericRange, SearchCriteria
from processors.criteria_extractor import (
    CriteriaExtractor,
    derive_min_price,
    parse_area,
    parse_price,
    to_vnd,
)
from processors.text_normalizer import strip_diacritics


def price(text):
    return parse_price(strip_diacritics(text.lower()))


def area(text):
    return parse_area(strip_diacritics(text.lower()))


@pytest.mark.parametrize("message", [
    "",
    "a",
    "aaaaaaaa",
    "!!!???",
    "12345",
    "asdfghjkl",
    "Thời tiết hôm nay thế nào?",
    "bạn là ai",
    "hello",
    "viết code python giúp tôi",
])
def test_out_of_scope_messages(message):
    assert CriteriaExtractor().is_in_scope(message) is False


@pytest.mark.parametrize("message", [
    "tìm phòng trọ quận 1",
    "phong tro duoi 3 trieu",
    "căn hộ có wifi",
    "cần thuê nhà ở Gò Vấp",
])
def test_in_scope_messages(message):
    assert CriteriaExtractor().is_in_scope(message) is True


def test_quan_1_scenario_resolves_and_does_not_escalate(extractor):
    message = "tìm phòng trọ dưới 3 triệu ở Quận 1"

    criteria = extractor.extract(message)

    assert criteria.is_in_scope_query is True
    assert criteria.category == 'phong_tro'
    assert criteria.price_range.max == 3_000_000
    assert criteria.price_range.min == pytest.approx(1_800_000)
    assert criteria.ward_ref.value == 'w-q1'
    assert criteria.ward_ref.resolved is True
    assert criteria.province_ref.value == 'p-hcm'
    assert criteria.completeness_score >= 2
    assert extractor.should_escalate(message, criteria) is False


def test_unaccented_message_reads_the_same(extractor):
    criteria = extractor.extract("tim phong tro duoi 3 trieu o quan 1")

    assert criteria.ward_ref.value == 'w-q1'
    assert criteria.price_range.max == 3_000_000


def test_short_district_form(extractor):
    criteria = extractor.extract("phòng trọ q10 giá 4tr")

    assert criteria.ward_ref.value == 'w-q10'
    assert criteria.price_range == NumericRange(min=4_000_000, max=4_000_000 * 1.3)


def test_named_district_and_province_alias(extractor):
    criteria = extractor.extract("thuê căn hộ Bình Thạnh, Sài Gòn có ban công và wifi")

    assert criteria.category == 'can_ho'
    assert criteria.province_ref.value == 'p-hcm'
    assert criteria.ward_ref.value == 'w-bt'
    assert {ref.value for ref in criteria.amenity_refs} == {'a-bc', 'a-wifi'}


def test_unresolved_place_is_kept_raw(extractor):
    criteria = extractor.extract("tìm phòng trọ ở Bến Nghé")

    assert criteria.ward_ref is not None
    assert criteria.ward_ref.resolved is False
    assert criteria.ward_ref.value == 'Bến Nghé'


def test_without_vocabulary_names_are_raw():
    criteria = CriteriaExtractor().extract("phòng trọ quận 1 hà nội")

    assert criteria.ward_ref.value == 'Quận 1'
    assert criteria.province_ref.value == 'Hà Nội'
    assert criteria.ward_ref.resolved is False


@pytest.mark.parametrize("text, expected", [
    ("từ 2 đến 4 triệu", (2_000_000, 4_000_000)),
    ("3-5tr", (3_000_000, 5_000_000)),
    ("5 - 3 triệu", (3_000_000, 5_000_000)),
    ("dưới 3 triệu", (1_800_000, 3_000_000)),
    ("dưới 600k", (500_000, 600_000)),
    ("dưới 400k", (400_000, 400_000)),
    ("trên 5 triệu", (5_000_000, None)),
    ("giá 3tr5", (3_500_000, 3_500_000 * 1.3)),
    ("tầm 2 củ", (2_000_000, 2_600_000)),
    ("giá 3.500.000đ", (3_500_000, 3_500_000 * 1.3)),
    ("khoảng 2500000", (2_500_000, 2_500_000 * 1.3)),
    ("1 tỷ", (1_000_000_000, 1_300_000_000)),
])
def test_price_patterns(text, expected):
    result = price(text)
    assert result.min == pytest.approx(expected[0])
    if expected[1] is None:
        assert result.max is None
    else:
        assert result.max == pytest.approx(expected[1])


def test_phone_number_is_not_a_price():
    assert price("liên hệ 0912345678") is None


def test_area_is_not_read_as_price():
    assert price("phòng 25m2") is None


@pytest.mark.parametrize("text, expected", [
    ("20-30m2", (20, 30)),
    ("từ 20 đến 30 m2", (20, 30)),
    ("khoảng 25m2", (20, 30)),
    ("tầm 3m2", (0, 8)),
    ("dưới 30m2", (None, 30)),
    ("trên 40 m2", (40, None)),
    ("rộng 25m2", (25, 35)),
])
def test_area_patterns(text, expected):
    result = area(text)
    assert (result.min, result.max) == expected


def test_unit_conversion():
    assert to_vnd("5", None) == 5_000_000
    assert to_vnd("3", "tr", "5") == 3_500_000
    assert to_vnd("500", "k") == 500_000
    assert to_vnd("2000000", None) == 2_000_000


def test_derived_min_price_stays_within_bounds():
    assert derive_min_price(3_000_000) == pytest.approx(1_800_000)
    assert derive_min_price(700_000) == 500_000
    assert derive_min_price(300_000) == 300_000


@pytest.mark.parametrize("message", [
    "phòng trọ dưới 3 triệu",
    "phòng 20m2 giá 2tr",
    "căn hộ từ 9 đến 7 triệu, 50-40m2",
    "dưới 400k",
    "trọ tầm 2m2",
])
def test_ranges_are_always_ordered(message):
    criteria = CriteriaExtractor().extract(message)
    for rng in (criteria.price_range, criteria.area_range):
        if rng is not None and rng.min is not None and rng.max is not None:
            assert rng.min <= rng.max


def test_escalates_complex_low_completeness_message():
    extractor = CriteriaExtractor()
    message = "tìm phòng gần trường, không ồn ào"
    criteria = SearchCriteria(is_in_scope_query=True)

    assert extractor.should_escalate(message, criteria) is True


def test_does_not_escalate_simple_or_complete_messages():
    extractor = CriteriaExtractor()
    sparse = SearchCriteria(is_in_scope_query=True)
    complete = CriteriaExtractor().extract("phòng trọ quận 1 dưới 3 triệu, không ồn ào")

    assert extractor.should_escalate("tìm phòng", sparse) is False
    assert complete.completeness_score >= 2
    assert extractor.should_escalate("phòng trọ quận 1 dưới 3 triệu, không ồn ào", complete) is False
    assert extractor.should_escalate("gần trường", SearchCriteria(is_in_scope_query=False)) is False


def test_long_or_comma_heavy_messages_escalate():
    extractor = CriteriaExtractor()
    sparse = SearchCriteria(is_in_scope_query=True)

    assert extractor.should_escalate("tìm phòng " + "rất đẹp " * 20, sparse) is True
    assert extractor.should_escalate("tìm phòng, sạch, thoáng, yên tĩnh, rộng", sparse) is True


def test_build_from_fields(extractor):
    criteria = extractor.build_from_fields({
        'isRoomSearchQuery': True,
        'category': 'phong_tro',
        'provinceName': 'Hồ Chí Minh',
        'wardName': 'Quận Gò Vấp',
        'amenityNames': ['máy lạnh', 'tiện ích khác'],
        'minPrice': None,
        'maxPrice': '3000000',
        'minArea': 22,
        'maxArea': None,
    })

    assert criteria.province_ref.value == 'p-hcm'
    assert criteria.ward_ref.value == 'w-gv'
    assert criteria.price_range.min == pytest.approx(1_800_000)
    assert criteria.price_range.max == 3_000_000
    assert criteria.area_range == NumericRange(min=22, max=27)
    assert [ref.value for ref in criteria.amenity_refs] == ['a-dh']


def test_build_from_fields_orders_swapped_bounds(extractor):
    criteria = extractor.build_from_fields({
        'isRoomSearchQuery': 'true',
        'minPrice': 7_000_000,
        'maxPrice': 5_000_000,
        'minArea': 'null',
        'districtName': 'Quận 1',
    })

    assert criteria.price_range == NumericRange(min=5_000_000, max=7_000_000)
    assert criteria.area_range is None
    assert criteria.ward_ref.value == 'w-q1'
    assert criteria.province_ref.value == 'p-hcm'


def test_build_from_fields_out_of_scope(extractor):
    assert extractor.build_from_fields({'isRoomSearchQuery': False}).is_in_scope_query is False


def test_unrelated_keywords_match_with_accents():
    # "Ái Mộ" folds to "ai mo"; only the unaccented "ai" is an unrelated keyword
    assert CriteriaExtractor().is_in_scope("tìm phòng trọ gần ngõ Ái Mộ") is True
    assert CriteriaExtractor().is_in_scope("ai là người tạo ra bạn, tìm phòng") is False


def test_distance_is_not_read_as_area():
    assert area("tìm phòng trọ cách trường 500m") is None
    assert area("phòng đi bộ 300 mét tới chợ") is None
    assert area("cách chợ khoảng 200m, phòng 25m2") == NumericRange(min=25, max=35)
    assert area("phòng 20m gần chợ") == NumericRange(min=20, max=30)
