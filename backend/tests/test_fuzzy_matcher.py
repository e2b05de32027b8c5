import pytest

from processors.fuzzy_matcher import best_match, canonical, similarity

from conftest import AMENITIES, PROVINCES, WARDS


@pytest.mark.parametrize("text, expected", [
    ("Q1", "quan 1"),
    ("q.10", "quan 10"),
    ("P3", "phuong 3"),
    ("Quận 1", "quan 1"),
    ("Quận Gò Vấp", "go vap"),
    ("TP.HCM", "ho chi minh"),
    ("Sài Gòn", "ho chi minh"),
    ("Thành phố Hồ Chí Minh", "ho chi minh"),
    ("máy lạnh", "dieu hoa"),
])
def test_canonical_forms(text, expected):
    assert canonical(text) == expected


def test_exact_match_scores_one():
    assert similarity("Quận 1", "quận 1") == 1.0


def test_numbered_places_must_agree():
    assert similarity("Quận 1", "Quận 10") == 0.0
    assert similarity("Q1", "Quận 1") == 1.0


def test_containment_scores_by_length_ratio():
    assert similarity("Bình Thạnh", "Quận Bình Thạnh") == 1.0
    assert similarity("Hồ Chí", "Hồ Chí Minh") == pytest.approx(len("ho chi") / len("ho chi minh"))


def test_containment_needs_whole_words():
    assert similarity("Quận 1", "Quận 12") == 0.0
    assert similarity("an", "Tân An") == pytest.approx(2 / 6)
    assert similarity("ta", "Tân An") < 1.0


def test_best_match_picks_the_right_ward():
    record, score = best_match("q10", WARDS['p-hcm'], 0.6)
    assert record['id'] == 'w-q10'
    assert score == 1.0

    record, _ = best_match("gò vấp", WARDS['p-hcm'], 0.6)
    assert record['id'] == 'w-gv'


def test_best_match_resolves_aliases():
    record, _ = best_match("Sài Gòn", PROVINCES, 0.6)
    assert record['id'] == 'p-hcm'

    record, _ = best_match("máy lạnh", AMENITIES, 0.45)
    assert record['id'] == 'a-dh'


def test_best_match_below_threshold_is_none():
    assert best_match("Bến Nghé", WARDS['p-hcm'], 0.6) is None
    assert best_match("", WARDS['p-hcm'], 0.1) is None


def test_same_letters_do_not_outrank_the_real_ward():
    # "binh thanh" and "tan binh" share every letter
    assert similarity("Bình Thạnh", "Quận Tân Bình") == 1.0

    record, score = best_match("Quận Bình Thạnh", WARDS['p-hcm'], 0.6)
    assert record['id'] == 'w-bt'
    assert score == 1.0

    record, _ = best_match("tân bình", WARDS['p-hcm'], 0.6)
    assert record['id'] == 'w-tb'


def test_containment_outranks_letter_overlap():
    candidates = [
        {'id': 'w-tb', 'name': 'Quận Tân Bình'},
        {'id': 'w-bt', 'name': 'Phường Bình Thạnh Đông'},
    ]
    record, score = best_match("Bình Thạnh", candidates, 0.6)

    assert record['id'] == 'w-bt'
    assert score == pytest.approx(len("binh thanh") / len("binh thanh dong"))
