"""Text processing helpers used throughout the statistical responder."""

from __future__ import annotations

import math
import re
import unicodedata
from collections import Counter
from collections.abc import Iterable
from typing import List, Sequence, Tuple

from rapidfuzz.distance import Levenshtein

_SCRIPT_PATTERNS = (
    ("kanji", re.compile(r"[\u4e00-\u9fff\u3005]")),
    ("hiragana", re.compile(r"[\u3040-\u309f]")),
    ("katakana", re.compile(r"[\u30a0-\u30ff]")),
    ("latin", re.compile(r"[A-Za-z_]")),
    ("digit", re.compile(r"[0-9]")),
)

PARTICLES = frozenset(
    {
        "は", "が", "を", "に", "で", "と", "の", "も", "へ", "や", "か", "ね", "よ",
        "から", "まで", "より", "について", "に関して", "って", "けど", "ので", "のに",
    }
)
AUXILIARIES = frozenset({"です", "ます", "だ", "でした", "ました", "ません", "たい", "ない"})
NOISE_CHARACTERS = frozenset("、。？！ー～・?!,.")
EXCLUDED_POS = frozenset({"助詞", "記号", "助動詞"})


def normalise_text(value: str) -> str:
    """Normalise text with NFKC and collapse whitespace."""
    collapsed = " ".join(value.strip().split())
    return unicodedata.normalize("NFKC", collapsed)


def script_of(char: str) -> str:
    """Return the script class of a single character."""
    for name, pattern in _SCRIPT_PATTERNS:
        if pattern.match(char):
            return name
    return "symbol"


def tokenize(value: str) -> List[str]:
    """Split text into runs of characters sharing a script class."""
    text = normalise_text(value)
    tokens: List[str] = []
    current = ""
    current_script = ""
    for char in text:
        if char.isspace():
            if current:
                tokens.append(current)
            current, current_script = "", ""
            continue
        script = script_of(char)
        if script == "symbol":
            if current:
                tokens.append(current)
            tokens.append(char)
            current, current_script = "", ""
            continue
        # latin words keep embedded digits
        same_run = script == current_script or {script, current_script} == {"latin", "digit"}
        if current and not same_run:
            tokens.append(current)
            current = ""
        current += char
        current_script = script
    if current:
        tokens.append(current)
    return tokens


def tag_token(surface: str) -> str:
    """Assign a coarse part-of-speech tag to ``surface``."""
    if surface in PARTICLES:
        return "助詞"
    if surface in AUXILIARIES:
        return "助動詞"
    if all(script_of(char) == "symbol" for char in surface):
        return "記号"
    if surface.endswith(("する", "れる", "いる")):
        return "動詞"
    # short hiragana runs are inflections or function words
    if len(surface) <= 3 and all(script_of(char) == "hiragana" for char in surface):
        return "助動詞"
    return "名詞"


def tokenize_with_pos(value: str) -> List[Tuple[str, str]]:
    return [(surface, tag_token(surface)) for surface in tokenize(value)]


def is_noise_token(token: str) -> bool:
    """Return ``True`` for punctuation, single kana and one-character tokens."""
    if len(token) <= 1:
        return True
    return all(char in NOISE_CHARACTERS for char in token)


def informative_tokens(value: str) -> List[str]:
    """Tokens of ``value`` that are neither particles, auxiliaries nor symbols."""
    return [surface for surface, pos in tokenize_with_pos(value) if pos not in EXCLUDED_POS]


def levenshtein(left: str, right: str) -> int:
    """Classic edit distance between two strings."""
    return Levenshtein.distance(left, right)


def levenshtein_similarity(left: str, right: str) -> float:
    """Edit distance normalised by the longer string, 1.0 for identical input."""
    return Levenshtein.normalized_similarity(left, right)


def shannon_entropy(value: str) -> float:
    """Character-level Shannon entropy in bits."""
    if not value:
        return 0.0
    counts = Counter(value)
    total = len(value)
    return -sum((count / total) * math.log2(count / total) for count in counts.values())


def script_diversity(value: str) -> float:
    """Fraction of distinct script classes present, saturating at three."""
    scripts = {script_of(char) for char in value} - {"symbol"}
    return min(len(scripts) / 3, 1.0)


def information_content(value: str) -> float:
    """Shannon entropy normalised by its maximum for the string length."""
    if len(value) <= 1:
        return 0.0
    return shannon_entropy(value) / math.log2(len(value))


def jaccard(left: Iterable[str], right: Iterable[str]) -> float:
    left_set, right_set = set(left), set(right)
    union = left_set | right_set
    if not union:
        return 0.0
    return len(left_set & right_set) / len(union)


def contains_any(text: str, needles: Sequence[str]) -> int:
    """Count how many of ``needles`` occur in ``text``."""
    return sum(1 for needle in needles if needle in text)


def keyword_quality(keyword: str) -> float:
    """Blend of script diversity and normalised entropy, both in ``[0, 1]``."""
    return 0.5 * script_diversity(keyword) + 0.5 * information_content(keyword)
