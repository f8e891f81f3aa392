"""Chinese-aware text normalization for wholesale product names.

normalize() is the comparison form used everywhere (memory keys, exact
matching, conflict checks). deep_normalize() additionally folds synonyms and
CJK numerals and is only used for tolerant comparisons.

Example:
    normalize("中华（软） 20支")  -> "中华软20支"
    deep_normalize("中华(软)二十支") -> "中华软盒20支"
"""

import re
import unicodedata
from typing import FrozenSet, Iterable, List, Optional, Set

_DISCARD = re.compile(r"[^\u4e00-\u9fa5a-z0-9]")
_CJK_RUN = re.compile(r"[\u4e00-\u9fa5]+")
_PARENTHESES = re.compile(r"[（(\[【]([^）)\]】]*)[）)\]】]")

# Applied in order; packaged forms first so bare 硬/软 never double up.
SYNONYMS = (
    (re.compile(r"硬包"), "硬盒"),
    (re.compile(r"软包"), "软盒"),
    (re.compile(r"硬(?!盒)"), "硬盒"),
    (re.compile(r"软(?!盒)"), "软盒"),
    (re.compile(r"细烟"), "细支"),
    (re.compile(r"中号"), "中支"),
)

# Packaging and specification tokens, longest first.
SPEC_TOKENS = (
    "硬盒", "软盒", "细支", "中支", "粗支", "短支", "长支", "爆珠", "双爆",
    "条装", "盒装", "硬", "软", "薄荷", "冰爽",
)

_CJK_DIGITS = {
    "零": 0, "〇": 0, "一": 1, "二": 2, "两": 2, "三": 3, "四": 4,
    "五": 5, "六": 6, "七": 7, "八": 8, "九": 9,
}
_CJK_UNITS = {"十": 10, "百": 100, "千": 1000}
_CJK_NUMERAL_RUN = re.compile(r"[零〇一二两三四五六七八九十百千]+")


def normalize(text: Optional[str]) -> str:
    """Reduce text to its canonical comparison form.

    Folds full-width characters, lowercases and keeps only CJK ideographs,
    latin letters and digits. Never raises; empty input yields "".
    """
    if not text:
        return ""
    folded = unicodedata.normalize("NFKC", str(text)).lower()
    return _DISCARD.sub("", folded)


def _cjk_numeral_value(run: str) -> str:
    # Plain digit sequences such as 九五 read digit by digit
    if not any(ch in _CJK_UNITS for ch in run):
        return "".join(str(_CJK_DIGITS[ch]) for ch in run)

    total = 0
    current = 0
    for ch in run:
        if ch in _CJK_DIGITS:
            current = _CJK_DIGITS[ch]
        else:
            unit = _CJK_UNITS[ch]
            total += (current or 1) * unit
            current = 0
    return str(total + current)


def convert_cjk_numerals(text: str) -> str:
    return _CJK_NUMERAL_RUN.sub(lambda m: _cjk_numeral_value(m.group(0)), text)


def deep_normalize(text: Optional[str]) -> str:
    """normalize() plus synonym folding and CJK numerals to Arabic digits."""
    result = normalize(text)
    for pattern, replacement in SYNONYMS:
        result = pattern.sub(replacement, result)
    return convert_cjk_numerals(result)


def expand_parentheses(text: Optional[str]) -> str:
    """Keep bracketed content inline: "中华(软)" -> "中华 软"."""
    if not text:
        return ""
    return _PARENTHESES.sub(lambda m: " " + m.group(1) + " ", str(text))


def build_brand_set(brands: Iterable[Optional[str]]) -> FrozenSet[str]:
    """Normalized, non-empty brand names."""
    return frozenset(b for b in (normalize(brand) for brand in brands) if b)


def detect_brand(normalized_name: str, brand_set: Iterable[str]) -> Optional[str]:
    """Longest brand of brand_set contained in normalized_name."""
    if not normalized_name:
        return None
    for brand in sorted(brand_set, key=lambda b: (-len(b), b)):
        if brand and brand in normalized_name:
            return brand
    return None


def remove_brand(normalized_name: str, brand: Optional[str]) -> str:
    if not brand:
        return normalized_name
    return normalized_name.replace(brand, "")


def strip_spec_tokens(text: str) -> str:
    for token in SPEC_TOKENS:
        text = text.replace(token, "")
    return text


def spec_tokens(text: str) -> Set[str]:
    """Packaging/specification tokens present in text (longest match wins)."""
    found = set()
    for token in SPEC_TOKENS:
        if token in text:
            found.add(token)
            text = text.replace(token, "")
    return found


def extract_keywords(normalized_name: str, brand: Optional[str] = None) -> Set[str]:
    """CJK runs of two or more characters left after brand and spec removal."""
    remainder = normalized_name.replace(brand, " ") if brand else normalized_name
    for token in SPEC_TOKENS:
        remainder = remainder.replace(token, " ")
    return {run for run in _CJK_RUN.findall(remainder) if len(run) >= 2}


def char_jaccard(a: str, b: str) -> float:
    set_a, set_b = set(a), set(b)
    if not set_a and not set_b:
        return 1.0
    union = set_a | set_b
    return len(set_a & set_b) / len(union)


def keyword_list(values: Iterable[Optional[str]]) -> List[str]:
    """Normalize a catalog keyword list, dropping blanks and duplicates."""
    seen = []
    for value in values:
        norm = normalize(value)
        if norm and norm not in seen:
            seen.append(norm)
    return seen
