"""
Lexical similarity for memory deduplication.

Texts are reduced to token sets and compared with the Jaccard index. Latin
text tokenizes into words; anything containing CJK ideographs tokenizes into
overlapping character bigrams, since those scripts have no word boundaries.
"""

import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")
_CJK_IDEOGRAPH_RE = re.compile(r"[\u3400-\u9fff]")


def _is_punct_or_symbol(ch: str) -> bool:
    return unicodedata.category(ch)[0] in ("P", "S")


def _strip_punct(text: str) -> str:
    return "".join(ch for ch in text if not _is_punct_or_symbol(ch))


def normalize_content(value: str) -> str:
    """Trim and collapse internal whitespace to single spaces."""
    return _WHITESPACE_RE.sub(" ", (value or "").strip())


def normalize_for_comparison(value: str) -> str:
    """Lowercase and drop punctuation, symbols and all whitespace."""
    compact = normalize_content(value).lower()
    return "".join(
        ch for ch in compact if not ch.isspace() and not _is_punct_or_symbol(ch)
    )


def bigrams(value: str) -> list[str]:
    if len(value) < 2:
        return [value] if value else []
    return [value[i : i + 2] for i in range(len(value) - 1)]


def tokenize(text: str) -> frozenset[str]:
    """Token set of a text: CJK bigrams, else word tokens, else bigrams."""
    compact = normalize_for_comparison(text)
    if not compact:
        return frozenset()

    if _CJK_IDEOGRAPH_RE.search(compact):
        return frozenset(bigrams(compact))

    words = [
        _strip_punct(token)
        for token in normalize_content(text).lower().split(" ")
    ]
    words = [w for w in words if w]
    if not words:
        return frozenset(bigrams(compact))
    return frozenset(words)


def jaccard(left: frozenset, right: frozenset) -> float:
    """|A ∩ B| / |A ∪ B|; 0.0 when either set is empty."""
    if not left or not right:
        return 0.0
    intersection = len(left & right)
    union = len(left) + len(right) - intersection
    return intersection / union if union else 0.0


def similarity(a: str, b: str) -> float:
    return jaccard(tokenize(a), tokenize(b))
