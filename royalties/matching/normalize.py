"""
Text normalization and string similarity for catalog matching.

Titles and names are compared after the same normalization used to build
the catalog snapshot, so the two sides of every comparison agree.
"""

import re
import unicodedata
from typing import Optional

from rapidfuzz.distance import Levenshtein

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_LEADING_ARTICLE = re.compile(r"^(the|a|an)\s+")
_NON_IDENTIFIER = re.compile(r"[^A-Z0-9]")

# Soundex-style consonant groups
_PHONETIC_GROUPS = {
    **dict.fromkeys("bfpv", "1"),
    **dict.fromkeys("cgjkqsxz", "2"),
    **dict.fromkeys("dt", "3"),
    "l": "4",
    **dict.fromkeys("mn", "5"),
    "r": "6",
}
PHONETIC_EMPTY = "000000"


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _PUNCTUATION.sub("", stripped).replace("_", " ")
    return _WHITESPACE.sub(" ", stripped).strip()


def normalize_title(title: Optional[str]) -> str:
    """normalize_text plus removal of one leading article."""
    return _LEADING_ARTICLE.sub("", normalize_text(title), count=1)


def normalize_name(name: Optional[str]) -> str:
    return normalize_text(name)


def normalize_identifier(value: Optional[str]) -> str:
    """ISWC / ISRC / work code: uppercase, keep [A-Z0-9] only."""
    if not value:
        return ""
    return _NON_IDENTIFIER.sub("", value.upper())


def phonetic_code(text: Optional[str]) -> str:
    """
    Simplified Soundex-like code, always 6 characters.
    Vowels and h/w/y are dropped, consonants mapped to their group digit,
    adjacent repeats collapsed. "000000" means nothing encodable.
    """
    encoded = []
    for ch in normalize_text(text):
        digit = _PHONETIC_GROUPS.get(ch)
        if digit is None:
            continue
        if encoded and encoded[-1] == digit:
            continue
        encoded.append(digit)
    return "".join(encoded)[:6].ljust(6, "0")


def _bigrams(s: str) -> set[str]:
    return {s[i:i + 2] for i in range(len(s) - 1)}


def bigram_jaccard(a: Optional[str], b: Optional[str]) -> float:
    """Jaccard similarity over character bigram sets."""
    s1, s2 = normalize_text(a), normalize_text(b)
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    b1, b2 = _bigrams(s1), _bigrams(s2)
    union = len(b1 | b2)
    return len(b1 & b2) / union if union else 0.0


def levenshtein_similarity(a: Optional[str], b: Optional[str]) -> float:
    """1 - edit_distance / max_length, on normalized text."""
    s1, s2 = normalize_text(a), normalize_text(b)
    if not s1 and not s2:
        return 1.0
    return Levenshtein.normalized_similarity(s1, s2)


def title_similarity(a: str, b: str) -> float:
    """
    Score two normalized titles.
    Exact equality scores 1.0, equal phonetic codes 0.95, otherwise an even
    blend of bigram Jaccard and edit-distance similarity.
    """
    if a == b:
        return 1.0
    code_a = phonetic_code(a)
    if code_a != PHONETIC_EMPTY and code_a == phonetic_code(b):
        return 0.95
    return 0.5 * bigram_jaccard(a, b) + 0.5 * levenshtein_similarity(a, b)


def _is_initials_form(tokens: list[str]) -> bool:
    return len(tokens) >= 2 and all(len(t) == 1 for t in tokens[:-1])


def writer_similarity(search: str, full_name: str, first_name: str, last_name: str) -> float:
    """
    Score a statement writer string against one catalog writer.

    max(full_name_sim, last_name_sim * 0.9). A search like "j lennon" whose
    initial agrees with the writer's first name scores its full-name
    similarity on the surname alone.
    """
    search = normalize_name(search)
    if not search:
        return 0.0
    full = normalize_name(full_name)
    last = normalize_name(last_name)

    full_sim = bigram_jaccard(search, full)
    tokens = search.split(" ")
    last_sim = bigram_jaccard(tokens[-1], last) if last else 0.0
    if last:
        last_sim = max(last_sim, bigram_jaccard(search, last))

    first = normalize_name(first_name)
    if _is_initials_form(tokens) and first and first[0] == tokens[0]:
        full_sim = max(full_sim, bigram_jaccard(tokens[-1], last))

    return max(full_sim, last_sim * 0.9)
