"""
Text helpers shared by the extractor, the fuzzy matcher and the cache's
lexical retrieval: Vietnamese diacritic folding and word sets.
"""

import re
import unicodedata
from typing import Set

_NON_WORD = re.compile(r"[^\w\s/]", re.UNICODE)
_SPACES = re.compile(r"\s+")


def strip_diacritics(text: str) -> str:
    """'Quận Bình Thạnh' -> 'Quan Binh Thanh'. đ/Đ have no decomposition and are mapped by hand."""
    text = text.replace('đ', 'd').replace('Đ', 'D')
    decomposed = unicodedata.normalize('NFD', text)
    return ''.join(ch for ch in decomposed if unicodedata.category(ch) != 'Mn')


def collapse_whitespace(text: str) -> str:
    return _SPACES.sub(' ', text).strip()


def normalize(text: str) -> str:
    """Lower-case, fold diacritics, turn punctuation into spaces."""
    if not text:
        return ''
    folded = strip_diacritics(text.lower())
    return collapse_whitespace(_NON_WORD.sub(' ', folded))


def word_set(text: str) -> Set[str]:
    """Diacritic-folded set of words, used for token-overlap similarity."""
    return set(normalize(text).split())


def jaccard(a: Set, b: Set) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)
