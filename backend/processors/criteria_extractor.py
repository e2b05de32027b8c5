"""
Rule-based search criteria extraction for Vietnamese rental queries.

All pattern matching runs on a diacritic-folded copy of the message, so
"phong tro quan 1 duoi 3 trieu" and "phòng trọ quận 1 dưới 3 triệu" read the
same. Place names are sliced from the original text (the folded copy has the
same length) so unresolved names keep their accents.

Usage:
    from processors.criteria_extractor import CriteriaExtractor

    extractor = CriteriaExtractor(vocabulary)
    criteria = extractor.extract("tìm phòng trọ dưới 3 triệu ở Quận 1")
    if extractor.should_escalate(message, criteria):
        ...
"""

import logging
import re
import unicodedata
from typing import Any, Dict, List, Optional, Tuple

from core.config import ESCALATION_MAX_CHARS, ESCALATION_MAX_COMMAS, ESCALATION_MIN_COMPLETENESS
from core.models import Category, NumericRange, Reference, SearchCriteria
from processors.text_normalizer import collapse_whitespace, strip_diacritics

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

LETTER = r'[^\W\d_]'
LB = r'(?<!' + LETTER + r')'
RB = r'(?!' + LETTER + r')'

# Checked, accents included, before the domain keywords; a hit means out of scope
UNRELATED_KEYWORDS = [
    'ai', 'model', 'train', 'artificial intelligence', 'machine learning', 'chatgpt',
    'thời tiết', 'weather', 'tin tức', 'news', 'học tập', 'study', 'công nghệ', 'technology',
    'lập trình', 'programming', 'code', 'coding',
    'github', 'api', 'database', 'server', 'frontend', 'backend',
    'react', 'nodejs', 'python', 'javascript', 'html', 'css',
    'bạn là ai', 'bạn tên gì', 'who are you', 'what is your name',
    'xin chào', 'hello', 'hi', 'chào bạn', 'greetings',
]

DOMAIN_KEYWORDS = [
    'phòng trọ', 'nhà trọ', 'căn hộ', 'nhà thuê', 'thuê phòng', 'tìm phòng', 'homestay',
    'chung cư', 'nhà nguyên căn', 'studio', 'mini house', 'thuê nhà', 'ký túc xá', 'ở ghép',
    'phòng', 'trọ', 'thuê', 'tìm', 'cần', 'giá', 'triệu', 'tr', 'gần', 'quận', 'huyện', 'phường',
    'tỉnh', 'thành phố', 'tp', 'đại học', 'university', 'm2', 'mét vuông',
    'wifi', 'điều hòa', 'máy lạnh', 'ban công', 'tủ lạnh', 'thang máy',
    'gửi xe', 'parking', 'bảo vệ', 'security', 'room', 'apartment', 'house', 'rent',
]

# Ordered: first match wins
CATEGORY_KEYWORDS = [
    (Category.CHUNG_CU_MINI, ['chung cư mini', 'ccmn']),
    (Category.HOMESTAY, ['homestay']),
    (Category.NHA_NGUYEN_CAN, ['nhà nguyên căn', 'nguyên căn', 'thuê nhà', 'nhà riêng', 'house']),
    (Category.CAN_HO, ['căn hộ', 'chung cư', 'apartment', 'studio']),
    (Category.PHONG_TRO, ['phòng trọ', 'nhà trọ', 'trọ', 'phòng', 'room']),
]

AMENITY_KEYWORDS = [
    ('WiFi', ['wifi', 'wi-fi', 'internet']),
    ('Điều hòa', ['điều hòa', 'điều hoà', 'máy lạnh']),
    ('Ban công', ['ban công']),
    ('Tủ lạnh', ['tủ lạnh']),
    ('Thang máy', ['thang máy']),
    ('Chỗ để xe', ['chỗ để xe', 'bãi đỗ xe', 'giữ xe', 'gửi xe', 'để xe', 'parking']),
    ('Nhà bếp', ['nhà bếp', 'bếp']),
    ('Tủ quần áo', ['tủ quần áo', 'tủ đồ']),
    ('Máy giặt', ['máy giặt']),
    ('Tivi', ['tivi', 'tv']),
    ('Bảo vệ 24/7', ['bảo vệ', 'security']),
    ('Camera', ['camera']),
    ('Máy nước nóng', ['máy nước nóng', 'bình nóng lạnh', 'nước nóng']),
    ('Vệ sinh riêng', ['vệ sinh riêng', 'wc riêng', 'toilet riêng']),
]

PROVINCE_ALIASES = [
    ('Hồ Chí Minh', ['tp.hcm', 'tp. hcm', 'tp hcm', 'tphcm', 'hcm', 'hồ chí minh', 'sài gòn', 'saigon']),
    ('Hà Nội', ['hà nội', 'hanoi']),
    ('Đà Nẵng', ['đà nẵng', 'danang']),
    ('Cần Thơ', ['cần thơ']),
    ('Hải Phòng', ['hải phòng']),
    ('Bình Dương', ['bình dương']),
    ('Đồng Nai', ['đồng nai']),
    ('Khánh Hòa', ['khánh hòa', 'nha trang']),
    ('Huế', ['huế']),
]

# Districts commonly written without their "Quận"/"Huyện" prefix
KNOWN_DISTRICTS = [
    'gò vấp', 'tân bình', 'bình thạnh', 'phú nhuận', 'thủ đức', 'bình tân', 'tân phú',
    'nhà bè', 'hóc môn', 'củ chi', 'bình chánh', 'cầu giấy', 'đống đa', 'hoàn kiếm',
    'ba đình', 'hai bà trưng', 'thanh xuân', 'hoàng mai', 'long biên', 'tây hồ',
    'hải châu', 'sơn trà', 'ngũ hành sơn', 'liên chiểu', 'thanh khê', 'ninh kiều',
]

# Words that end a place name ("quận bình thạnh giá dưới 5tr" -> "bình thạnh")
NAME_STOPWORDS = {
    'gia', 'duoi', 'tren', 'tu', 'den', 'toi', 'khoang', 'tam', 'co', 'voi', 'va', 'cho',
    'can', 'tim', 'thue', 'gan', 'o', 'tai', 'khu', 'phong', 'tro', 'muon', 'dien', 'tich',
    'tien', 'ich', 'khong', 'hoac', 'hay', 'nhe', 'a', 'la', 'nhung', 'de', 'di', 've',
    'quan', 'huyen', 'phuong', 'xa', 'tinh', 'tp', 'trieu', 'tr', 'm2', 'nguoi',
}

LANDMARK_PREFIXES = (
    'dai hoc', 'truong', 'cho', 'ben xe', 'cong vien', 'benh vien', 'san bay',
    'sieu thi', 'nga tu', 'nga ba', 'cong ty', 'van phong', 'trung tam',
)

COMPLEX_KEYWORDS = [
    # distance qualifiers
    'gần', 'cách', 'km', 'đi bộ', 'phút', 'xung quanh', 'lân cận', 'quanh',
    # negations / exclusions
    'không', 'chẳng', 'trừ', 'ngoại trừ', 'tránh', 'miễn',
    # superlatives
    'nhất', 'rẻ nhất', 'tốt nhất', 'rộng nhất',
]

NUM = r'\d+(?:[.,]\d+)?'
PRICE_UNIT = r'(?:ty|ti|trieu|tr|cu|nghin|ngan|k|vnd|dong|d)' + RB
AREA_UNIT = r'(?:m2|m²|met vuong|m vuong|met|m)' + RB
NUM_END = r'(?![.,]?\d)'
NOT_AREA = r'(?!\s*' + AREA_UNIT + r')'


def _fold(keyword: str) -> str:
    return strip_diacritics(keyword.lower())


def _keyword_regex(keywords: List[str], fold: bool = True) -> re.Pattern:
    alternatives = sorted({re.escape(_fold(k) if fold else k.lower()) for k in keywords}, key=len, reverse=True)
    return re.compile(LB + '(?:' + '|'.join(alternatives) + ')' + RB)


def _price_value(name: str, unit_required: bool = False) -> str:
    unit = (
        rf'\s*(?P<{name}_unit>{PRICE_UNIT})'
        rf'(?:\s*(?P<{name}_tail>\d{{1,3}})(?!\d|[.,]\d))?'
    )
    return rf'(?P<{name}>{NUM}){NUM_END}' + (unit if unit_required else f'(?:{unit})?') + NOT_AREA


UNRELATED_RE = _keyword_regex(UNRELATED_KEYWORDS, fold=False)
DOMAIN_RE = _keyword_regex(DOMAIN_KEYWORDS)
DOMAIN_WORDS = {_fold(k) for k in DOMAIN_KEYWORDS if ' ' not in k}
CATEGORY_RES = [(category, _keyword_regex(words)) for category, words in CATEGORY_KEYWORDS]
AMENITY_RES = [(name, _keyword_regex(words)) for name, words in AMENITY_KEYWORDS]
COMPLEX_RE = _keyword_regex(COMPLEX_KEYWORDS)
KNOWN_DISTRICT_KEYS = {_fold(d) for d in KNOWN_DISTRICTS}

REPEATED_CHAR_RE = re.compile(r'([^\d\s])\1{4,}')
LONG_TOKEN_RE = re.compile(LETTER + r'{25,}')
SINGLE_WORD_RE = re.compile(r'^[a-z]{8,}$')

PRICE_RANGE_RE = re.compile(
    r'(?:tu\s*)?' + _price_value('low') + r'\s*(?:-|–|~|den|toi)\s*' + _price_value('high'))
PRICE_UPPER_RE = re.compile(
    LB + r'(?:duoi|toi da|khong qua|nho hon|it hon|max|<)\s*' + _price_value('value'))
PRICE_UPPER_SUFFIX_RE = re.compile(_price_value('value') + r'\s*(?:tro xuong|do lai|do xuong)' + RB)
PRICE_LOWER_RE = re.compile(
    LB + r'(?:tren|tu|toi thieu|it nhat|hon|min|>)\s*' + _price_value('value'))
PRICE_LOWER_SUFFIX_RE = re.compile(_price_value('value') + r'\s*tro len' + RB)
PRICE_SINGLE_RE = re.compile(r'(?<![\d.,])' + _price_value('value', unit_required=True))
PRICE_RAW_RE = re.compile(r'(?<![\d.,])(?P<value>[1-9]\d{5,9})(?![\d.,])')
THOUSANDS_SEPARATOR_RE = re.compile(r'(?<=\d)[.,](?=\d{3}(?!\d))')

AREA_RANGE_RE = re.compile(
    rf'(?P<low>{NUM})\s*(?:{AREA_UNIT})?\s*(?:-|–|~|den|toi)\s*(?P<high>{NUM})\s*{AREA_UNIT}')
AREA_AROUND_RE = re.compile(LB + rf'(?:khoang|tam|around|chung|xap xi)\s*(?P<value>{NUM})\s*{AREA_UNIT}')
AREA_UPPER_RE = re.compile(LB + rf'(?:duoi|toi da|khong qua|nho hon)\s*(?P<value>{NUM})\s*{AREA_UNIT}')
AREA_LOWER_RE = re.compile(LB + rf'(?:tren|tu|toi thieu|it nhat|rong hon|hon)\s*(?P<value>{NUM})\s*{AREA_UNIT}')
AREA_SINGLE_RE = re.compile(rf'(?<![\d.,])(?P<value>{NUM})\s*{AREA_UNIT}')
BARE_METRE_RE = re.compile(r'(?<![a-z])(?:met|m)$')
DISTANCE_RE = re.compile(LB + r'(?:cach|di bo|ban kinh|quang duong)' + RB)

NUMBERED_DISTRICT_RE = re.compile(LB + r'(?P<prefix>quan|q)\s*\.?\s*(?P<number>\d{1,2})(?!\d)')
NUMBERED_WARD_RE = re.compile(LB + r'(?P<prefix>phuong|p)\s*\.?\s*(?P<number>\d{1,2})(?!\d)')
NAMED_ADMIN_RE = re.compile(LB + r'(?P<prefix>quan|huyen|phuong|thi xa|thi tran|xa)\s+(?=' + LETTER + ')')
PROVINCE_PREFIX_RE = re.compile(LB + r'(?P<prefix>tinh|thanh pho|tp)\s*\.?\s+(?=' + LETTER + ')')
PREPOSITION_RE = re.compile(LB + r'(?P<prefix>khu vuc|o|tai|gan|khu)\s+(?=' + LETTER + ')')
AMENITY_LIST_RE = re.compile(LB + r'tien ich\s*(?:gom|nhu|la|:)?\s*:?\s*(?P<items>[^.;!?\n]+)')
NAME_WORD_RE = re.compile(r'\s*(' + LETTER + r'+)')

ADMIN_DISPLAY = {
    'quan': 'Quận', 'q': 'Quận', 'huyen': 'Huyện', 'phuong': 'Phường', 'p': 'Phường',
    'xa': 'Xã', 'thi xa': 'Thị xã', 'thi tran': 'Thị trấn',
}
ADMIN_ACCENTED = {
    'quan': 'quận', 'huyen': 'huyện', 'phuong': 'phường', 'xa': 'xã', 'thi xa': 'thị xã',
    'thi tran': 'thị trấn', 'tinh': 'tỉnh', 'thanh pho': 'thành phố', 'o': 'ở', 'tai': 'tại',
    'gan': 'gần', 'khu vuc': 'khu vực', 'khu': 'khu',
}

MILLION = 1_000_000
MIN_DERIVED_PRICE = 500_000


def to_vnd(number: str, unit: Optional[str], tail: Optional[str] = None) -> float:
    """
    Convert a matched amount to VND.

    "3tr5" and "3 triệu 500" both read 3.5 million. A bare number under 1000
    is taken to be in millions ("dưới 5" -> 5,000,000).
    """
    value = float(number.replace(',', '.'))
    unit = (unit or '').strip()
    if unit in ('ty', 'ti'):
        multiplier = 1_000_000_000
    elif unit in ('trieu', 'tr', 'cu'):
        multiplier = MILLION
    elif unit in ('nghin', 'ngan', 'k'):
        multiplier = 1_000
    elif unit in ('vnd', 'dong', 'd'):
        multiplier = 1
    else:
        multiplier = MILLION if value < 1000 else 1

    if tail and multiplier >= MILLION and value.is_integer():
        value += int(tail) / (10 ** len(tail))
    return value * multiplier


def derive_min_price(max_price: float) -> float:
    """Lower bound for a query that only gives a ceiling: 60% of it, at least 500k, never above it."""
    return min(max(max_price * 0.6, MIN_DERIVED_PRICE), max_price)


def parse_price(folded: str) -> Optional[NumericRange]:
    """Price range from a folded message; first matching pattern wins."""
    folded = THOUSANDS_SEPARATOR_RE.sub('', folded)

    match = PRICE_RANGE_RE.search(folded)
    if match and (match.group('low_unit') or match.group('high_unit')):
        high_unit = match.group('high_unit') or match.group('low_unit')
        low_unit = match.group('low_unit') or high_unit
        low = to_vnd(match.group('low'), low_unit, match.group('low_tail'))
        high = to_vnd(match.group('high'), high_unit, match.group('high_tail'))
        low, high = sorted((low, high))
        return NumericRange(min=low, max=high)

    match = PRICE_UPPER_RE.search(folded) or PRICE_UPPER_SUFFIX_RE.search(folded)
    if match:
        high = to_vnd(match.group('value'), match.group('value_unit'), match.group('value_tail'))
        return NumericRange(min=derive_min_price(high), max=high)

    match = PRICE_LOWER_RE.search(folded) or PRICE_LOWER_SUFFIX_RE.search(folded)
    if match and (match.group('value_unit') or float(match.group('value').replace(',', '.')) >= 100_000):
        return NumericRange(min=to_vnd(match.group('value'), match.group('value_unit'), match.group('value_tail')))

    match = PRICE_SINGLE_RE.search(folded)
    if match:
        value = to_vnd(match.group('value'), match.group('value_unit'), match.group('value_tail'))
        return NumericRange(min=value, max=value * 1.3)

    match = PRICE_RAW_RE.search(folded)
    if match:
        value = float(match.group('value'))
        return NumericRange(min=value, max=value * 1.3)

    return None


def _is_distance(folded: str, match) -> bool:
    """A bare metre value after a distance word ("cách trường 500m") is not a floor area."""
    if not BARE_METRE_RE.search(match.group(0)):
        return False
    return DISTANCE_RE.search(folded[max(0, match.start() - 30):match.start()]) is not None


def _area_match(pattern: re.Pattern, folded: str):
    for match in pattern.finditer(folded):
        if not _is_distance(folded, match):
            return match
    return None


def parse_area(folded: str) -> Optional[NumericRange]:
    """Area range in m2 from a folded message; first matching pattern wins."""
    def number(match, group='value'):
        return float(match.group(group).replace(',', '.'))

    match = _area_match(AREA_RANGE_RE, folded)
    if match:
        low, high = sorted((number(match, 'low'), number(match, 'high')))
        return NumericRange(min=low, max=high)

    match = _area_match(AREA_AROUND_RE, folded)
    if match:
        value = number(match)
        return NumericRange(min=max(0.0, value - 5), max=value + 5)

    match = _area_match(AREA_UPPER_RE, folded)
    if match:
        return NumericRange(max=number(match))

    match = _area_match(AREA_LOWER_RE, folded)
    if match:
        return NumericRange(min=number(match))

    match = _area_match(AREA_SINGLE_RE, folded)
    if match:
        value = number(match)
        return NumericRange(min=value, max=value + 10)

    return None


def detect_category(folded: str) -> Optional[str]:
    for category, pattern in CATEGORY_RES:
        if pattern.search(folded):
            return category.value
    return None


class _Message:
    """Lower-cased message plus its folded twin, index-aligned."""

    def __init__(self, text: str):
        lowered = collapse_whitespace(unicodedata.normalize('NFC', text or '').lower())
        folded = strip_diacritics(lowered)
        self.lowered = lowered if len(lowered) == len(folded) else folded
        self.folded = folded

    def original(self, start: int, end: int) -> str:
        return self.lowered[start:end]

    def written_as(self, start: int, end: int, accented: str) -> bool:
        """True when the span is the accented keyword or was typed without any accents."""
        span = self.original(start, end)
        return span == accented or span == self.folded[start:end]


def _read_name(message: _Message, pos: int, max_words: int = 4) -> Optional[Tuple[int, int]]:
    """Span of the place name starting at pos, ending at a stopword, digit or punctuation."""
    start = end = None
    words = 0
    while words < max_words:
        match = NAME_WORD_RE.match(message.folded, pos)
        if not match or match.group(1) in NAME_STOPWORDS:
            break
        if start is None:
            start = match.start(1)
        end = match.end(1)
        pos = match.end()
        words += 1
    if start is None:
        return None
    return start, end


def _title(name: str) -> str:
    return ' '.join(word.capitalize() for word in name.split())


class CriteriaExtractor:
    """
    Deterministic extractor. Its only I/O is the vocabulary resolver, which is
    optional: without one, names are kept as raw references.
    """

    def __init__(
        self,
        vocabulary=None,
        min_completeness: int = ESCALATION_MIN_COMPLETENESS,
        max_chars: int = ESCALATION_MAX_CHARS,
        max_commas: int = ESCALATION_MAX_COMMAS
    ):
        """
        Args:
            vocabulary: VocabularyService (or compatible) used to resolve names
            min_completeness: Criteria at or above this score never escalate
            max_chars: Messages longer than this count as complex
            max_commas: Messages with more commas than this count as complex
        """
        self.vocabulary = vocabulary
        self.min_completeness = min_completeness
        self.max_chars = max_chars
        self.max_commas = max_commas

    # Scope gate

    def is_in_scope(self, text: str) -> bool:
        """
        Decide whether a message is a rental search at all.

        Args:
            text (str): Raw user message

        Returns:
            bool: False for empty, gibberish or unrelated messages
        """
        message = _Message(text)
        lowered, folded = message.lowered, message.folded

        if len(lowered) < 2:
            return False
        if REPEATED_CHAR_RE.search(lowered):
            logger.debug(f"Scope gate: repeated characters in '{text}'")
            return False
        if not re.search(LETTER, lowered):
            return False
        if SINGLE_WORD_RE.match(folded) and folded not in DOMAIN_WORDS:
            logger.debug(f"Scope gate: meaningless token '{text}'")
            return False
        if LONG_TOKEN_RE.search(folded):
            return False
        if UNRELATED_RE.search(lowered):
            logger.debug(f"Scope gate: unrelated topic in '{text}'")
            return False
        return DOMAIN_RE.search(folded) is not None

    # Extraction

    def extract(self, text: str) -> SearchCriteria:
        """
        Extract search criteria from a message.

        Args:
            text (str): Raw user message

        Returns:
            SearchCriteria: empty with is_in_scope_query=False for out-of-scope messages
        """
        if not self.is_in_scope(text):
            return SearchCriteria(is_in_scope_query=False)

        message = _Message(text)
        province_name, ward_name = self._find_locations(message)
        province_ref, ward_ref = self._resolve_locations(province_name, ward_name)

        criteria = SearchCriteria(
            is_in_scope_query=True,
            category=detect_category(message.folded),
            province_ref=province_ref,
            ward_ref=ward_ref,
            price_range=parse_price(message.folded),
            area_range=parse_area(message.folded),
            amenity_refs=self._resolve_amenities(self._find_amenities(message)),
        )
        logger.info(f"Rule extraction completeness={criteria.completeness_score} for '{text[:80]}'")
        return criteria

    def build_from_fields(self, fields: Dict[str, Any]) -> SearchCriteria:
        """
        Turn a raw field dict (LLM output) into SearchCriteria with the same
        normalisation, bound ordering and name resolution as extract().

        Args:
            fields (dict): isRoomSearchQuery, category, provinceName, wardName
                (or districtName), amenityNames, minPrice, maxPrice, minArea, maxArea

        Returns:
            SearchCriteria
        """
        in_scope = fields.get('isRoomSearchQuery')
        if isinstance(in_scope, str):
            in_scope = in_scope.strip().lower() == 'true'
        if not in_scope:
            return SearchCriteria(is_in_scope_query=False)

        category = _clean_text(fields.get('category'))
        if category and category not in {c.value for c in Category}:
            category = detect_category(_fold(category))

        price_range = self._price_from_fields(fields.get('minPrice'), fields.get('maxPrice'))
        area_range = self._area_from_fields(fields.get('minArea'), fields.get('maxArea'))

        province_ref, ward_ref = self._resolve_locations(
            _clean_text(fields.get('provinceName')),
            _clean_text(fields.get('wardName') or fields.get('districtName')),
        )

        names = fields.get('amenityNames') or []
        if isinstance(names, str):
            names = [names]
        elif not isinstance(names, (list, tuple)):
            names = []
        names = [n for n in (_clean_text(v) for v in names) if n and _fold(n) != 'tien ich khac']

        return SearchCriteria(
            is_in_scope_query=True,
            category=category,
            province_ref=province_ref,
            ward_ref=ward_ref,
            price_range=price_range,
            area_range=area_range,
            amenity_refs=self._resolve_amenities(names),
        )

    # Escalation gate

    def should_escalate(self, text: str, criteria: SearchCriteria) -> bool:
        """
        Ask the LLM only when the rules found too little in a message that
        looks too complex for them.

        Args:
            text (str): Raw user message
            criteria (SearchCriteria): Rule extraction result

        Returns:
            bool: True if the LLM extractor should be consulted
        """
        if not criteria.is_in_scope_query:
            return False
        if criteria.completeness_score >= self.min_completeness:
            return False

        message = _Message(text)
        complex_pattern = COMPLEX_RE.search(message.folded) is not None
        too_long = len(message.lowered) > self.max_chars
        too_many_clauses = message.lowered.count(',') > self.max_commas
        return complex_pattern or too_long or too_many_clauses

    # Locations

    def _find_locations(self, message: _Message) -> Tuple[Optional[str], Optional[str]]:
        """Return (province name, ward/district name) as written, either may be None."""
        folded = message.folded
        ward = None
        province = None

        for pattern in (NUMBERED_DISTRICT_RE, NUMBERED_WARD_RE):
            match = pattern.search(folded)
            if match and self._prefix_ok(message, match):
                ward = f"{ADMIN_DISPLAY[match.group('prefix')]} {int(match.group('number'))}"
                break

        if ward is None:
            for match in NAMED_ADMIN_RE.finditer(folded):
                if not self._prefix_ok(message, match):
                    continue
                span = _read_name(message, match.end(), max_words=3)
                if span:
                    ward = f"{ADMIN_DISPLAY[match.group('prefix')]} {_title(message.original(*span))}"
                    break

        if ward is None:
            for district in KNOWN_DISTRICTS:
                match = re.search(LB + re.escape(_fold(district)) + RB, folded)
                if match and message.written_as(match.start(), match.end(), district):
                    ward = _title(district)
                    break

        province = self._find_province(message)

        if ward is None and province is None:
            province, ward = self._find_prepositional(message)

        return province, ward

    def _find_province(self, message: _Message) -> Optional[str]:
        for canonical_name, aliases in PROVINCE_ALIASES:
            for alias in aliases:
                match = re.search(LB + re.escape(_fold(alias)) + RB, message.folded)
                if match and message.written_as(match.start(), match.end(), alias):
                    return canonical_name

        for match in PROVINCE_PREFIX_RE.finditer(message.folded):
            if not self._prefix_ok(message, match):
                continue
            span = _read_name(message, match.end(), max_words=3)
            if span and message.folded[span[0]:span[1]] not in KNOWN_DISTRICT_KEYS:
                return _title(message.original(*span))
        return None

    def _find_prepositional(self, message: _Message) -> Tuple[Optional[str], Optional[str]]:
        for match in PREPOSITION_RE.finditer(message.folded):
            if not self._prefix_ok(message, match):
                continue
            span = _read_name(message, match.end())
            if not span:
                continue
            folded_name = message.folded[span[0]:span[1]]
            if folded_name.startswith(LANDMARK_PREFIXES):
                continue
            name = _title(message.original(*span))
            for canonical_name, aliases in PROVINCE_ALIASES:
                if folded_name in {_fold(a) for a in aliases}:
                    return canonical_name, None
            return None, name
        return None, None

    @staticmethod
    def _prefix_ok(message: _Message, match) -> bool:
        prefix = match.group('prefix')
        accented = ADMIN_ACCENTED.get(prefix)
        if accented is None:
            return True
        return message.written_as(match.start('prefix'), match.end('prefix'), accented)

    def _resolve_locations(
        self,
        province_name: Optional[str],
        ward_name: Optional[str]
    ) -> Tuple[Optional[Reference], Optional[Reference]]:
        if self.vocabulary is None:
            return (
                Reference.raw(province_name) if province_name else None,
                Reference.raw(ward_name) if ward_name else None,
            )

        province_ref = self.vocabulary.resolve_province(province_name) if province_name else None
        ward_ref = None
        if ward_name:
            if province_ref is None:
                default = self.vocabulary.default_province()
                if default.resolved:
                    province_ref = default
            ward_ref = self.vocabulary.resolve_ward(ward_name, province_ref)
        return province_ref, ward_ref

    # Amenities

    def _find_amenities(self, message: _Message) -> List[str]:
        names = [name for name, pattern in AMENITY_RES if pattern.search(message.folded)]
        seen = {_fold(n) for n in names}

        listed = AMENITY_LIST_RE.search(message.folded)
        if listed:
            start = listed.start('items')
            raw_items = re.split(r',|\bva\b|&|\+', message.folded[start:listed.end('items')])
            offset = start
            for item in raw_items:
                item_start = message.folded.find(item, offset)
                offset = item_start + len(item)
                span = _read_name(message, item_start, max_words=4)
                if not span:
                    continue
                folded_item = message.folded[span[0]:span[1]]
                if any(pattern.search(folded_item) for _, pattern in AMENITY_RES) or folded_item in seen:
                    continue
                seen.add(folded_item)
                names.append(message.original(*span))
        return names

    def _resolve_amenities(self, names: List[str]) -> List[Reference]:
        if not names:
            return []
        if self.vocabulary is None:
            return [Reference.raw(name) for name in names]
        return self.vocabulary.resolve_amenities(names)

    # Field coercion

    def _price_from_fields(self, min_value, max_value) -> Optional[NumericRange]:
        low = _coerce_price(min_value)
        high = _coerce_price(max_value)
        if low is None and high is None:
            return None
        if high is not None and low is None:
            low = derive_min_price(high)
        if low is not None and high is not None and low > high:
            low, high = high, low
        return NumericRange(min=low, max=high)

    def _area_from_fields(self, min_value, max_value) -> Optional[NumericRange]:
        low = _coerce_number(min_value)
        high = _coerce_number(max_value)
        if low is None and high is None:
            return None
        if low is not None and high is None:
            high = low + 5
        if low is not None and low > high:
            low, high = high, low
        return NumericRange(min=low, max=high)


def _clean_text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ('null', 'none', 'undefined'):
        return None
    return text


def _coerce_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    text = _clean_text(value)
    if text is None:
        return None
    match = re.search(NUM, text)
    if not match:
        return None
    number = float(match.group(0).replace(',', '.'))
    return number if number > 0 else None


def _coerce_price(value) -> Optional[float]:
    """Numbers and strings such as 3000000, "3000000", "3 triệu" or "3tr5" to VND."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return to_vnd(str(value), None) if value > 0 else None
    text = _clean_text(value)
    if text is None:
        return None
    folded = _fold(text).replace(' ', '') if re.fullmatch(r'[\d\s.,]+', text) else _fold(text)
    match = PRICE_SINGLE_RE.search(folded) or re.search(rf'(?P<value>{NUM})', folded)
    if not match:
        return None
    groups = match.groupdict()
    value = to_vnd(groups['value'], groups.get('value_unit'), groups.get('value_tail'))
    return value if value > 0 else None
