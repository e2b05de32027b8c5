"""
Fuzzy name matching against the reference directory.

Scoring for one (query, candidate) pair, first rule that applies wins:
    1. exact, raw or canonical                      -> EXACT, 1.0
    2. diacritic-folded containment                 -> CONTAINMENT, len(shorter) / len(longer)
    3. raw containment                              -> CONTAINMENT, len(shorter) / len(longer)
    4. character-set Jaccard of the folded strings  -> OVERLAP, score

Both sides go through alias expansion and administrative-prefix stripping
before rules 2-4, so "TP.HCM", "Sài Gòn" and "Thành phố Hồ Chí Minh" all
compare as "ho chi minh".
"""

import re
from typing import Dict, List, Optional, Tuple

from processors.text_normalizer import jaccard, normalize

ALIASES = {
    # Provinces
    'hcm': 'ho chi minh',
    'tphcm': 'ho chi minh',
    'tp hcm': 'ho chi minh',
    'ho chi minh city': 'ho chi minh',
    'sai gon': 'ho chi minh',
    'saigon': 'ho chi minh',
    'sg': 'ho chi minh',
    'hn': 'ha noi',
    'hanoi': 'ha noi',
    'danang': 'da nang',
    # Amenities
    'may lanh': 'dieu hoa',
    'dieu hoa nhiet do': 'dieu hoa',
    'wi fi': 'wifi',
    'internet': 'wifi',
    'mang': 'wifi',
    'giu xe': 'cho de xe',
    'bai do xe': 'cho de xe',
    'nha xe': 'cho de xe',
    'binh nong lanh': 'may nuoc nong',
    'nuoc nong': 'may nuoc nong',
    'wc rieng': 've sinh rieng',
    'toilet rieng': 've sinh rieng',
    'bep': 'nha bep',
    'tv': 'tivi',
}

# Stripped only when what remains is a name, not a bare number ("Quận 1" stays)
ADMIN_PREFIXES = ('thanh pho', 'thi tran', 'thi xa', 'tinh', 'tp', 'quan', 'huyen', 'phuong', 'xa')

_SHORT_DISTRICT = re.compile(r'^q\s*(\d+)$')
_SHORT_WARD = re.compile(r'^p\s*(\d+)$')
_NUMBER = re.compile(r"\d+")

EXACT, CONTAINMENT, OVERLAP = 2, 1, 0


def canonical(text: str) -> str:
    """Folded, alias-expanded, prefix-stripped form used for comparison."""
    value = normalize(text)
    value = ALIASES.get(value, value)

    district = _SHORT_DISTRICT.match(value)
    if district:
        return f"quan {district.group(1)}"
    ward = _SHORT_WARD.match(value)
    if ward:
        return f"phuong {ward.group(1)}"

    for prefix in ADMIN_PREFIXES:
        if value.startswith(prefix + ' '):
            rest = value[len(prefix) + 1:].strip()
            if rest and not rest.isdigit():
                value = rest
            break

    return ALIASES.get(value, value)


def _contains_word(short: str, long: str) -> bool:
    return re.search(r'(?<!\w)' + re.escape(short) + r'(?!\w)', long) is not None


def _containment_ratio(a: str, b: str) -> Optional[float]:
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if shorter and _contains_word(shorter, longer):
        return len(shorter) / len(longer)
    return None


def score_match(query: str, candidate: str) -> Tuple[int, float]:
    """
    Score how well `candidate` matches `query`.

    Args:
        query (str): Name as written by the user
        candidate (str): Canonical directory name

    Returns:
        (tier, score): tier is EXACT, CONTAINMENT or OVERLAP, score is in [0, 1].
        Any higher tier outranks any lower one, whatever the scores.
    """
    raw_a = (query or '').strip().lower()
    raw_b = (candidate or '').strip().lower()
    if not raw_a or not raw_b:
        return OVERLAP, 0.0

    if raw_a == raw_b:
        return EXACT, 1.0

    folded_a, folded_b = canonical(raw_a), canonical(raw_b)
    if not folded_a or not folded_b:
        return OVERLAP, 0.0

    # Numbered places must agree on the number ("Quận 1" is not "Quận 10")
    numbers_a, numbers_b = _NUMBER.findall(folded_a), _NUMBER.findall(folded_b)
    if numbers_a and numbers_b and numbers_a != numbers_b:
        return OVERLAP, 0.0

    if folded_a == folded_b:
        return EXACT, 1.0

    for a, b in ((folded_a, folded_b), (raw_a, raw_b)):
        ratio = _containment_ratio(a, b)
        if ratio is not None:
            return CONTAINMENT, ratio

    # Same letters, different words ("binh thanh" / "tan binh") can score 1.0 here
    return OVERLAP, jaccard(set(folded_a.replace(' ', '')), set(folded_b.replace(' ', '')))


def similarity(query: str, candidate: str) -> float:
    """Score of `candidate` against `query`, in [0, 1], ignoring the tier."""
    return score_match(query, candidate)[1]


def best_match(
    query: str,
    candidates: List[Dict],
    threshold: float,
    name_key: str = 'name'
) -> Optional[Tuple[Dict, float]]:
    """
    Pick the best candidate scoring at or above threshold.

    Candidates are ranked by tier, then score; the first of equals wins.

    Args:
        query (str): Raw name to resolve
        candidates (List[Dict]): Directory records with at least a name field
        threshold (float): Minimum accepted score
        name_key (str): Key holding the candidate's display name

    Returns:
        (candidate, score) or None when nothing reaches the threshold
    """
    best = None
    best_rank = None
    for candidate in candidates:
        tier, score = score_match(query, candidate.get(name_key, ''))
        if score <= 0 or score < threshold:
            continue
        if best_rank is None or (tier, score) > best_rank:
            best, best_rank = candidate, (tier, score)
            if tier == EXACT:
                break

    if best is None:
        return None
    return best, best_rank[1]
