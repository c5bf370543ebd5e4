"""
Text helpers shared by the classifier, linker, synthesizer and index builder.

All similarity in the pipeline is set similarity over normalized tokens, so
every stage must normalize the same way.
"""

import math
import re
from typing import Iterable, List, Set

CHARS_PER_TOKEN = 4

STOP_WORDS = {
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need",
    "to", "of", "in", "for", "on", "with", "at", "by",
    "from", "up", "about", "into", "over", "after", "we", "our", "us",
    "i", "me", "my", "you", "your", "it", "its", "they", "them", "their",
    "this", "that", "these", "those", "what", "which", "who", "whom",
    "when", "where", "why", "how", "and", "or", "but", "if", "because",
    "as", "until", "while", "although", "though", "even", "just", "also",
    "please", "so", "then", "than", "some", "all", "any", "not", "no",
}

_WORD_RE = re.compile(r"[a-z0-9]+")


def _stem(word: str) -> str:
    # Plural folding only; "redis", "status" and "process" stay intact
    if len(word) > 3 and word.endswith("s") and not word.endswith(("ss", "is", "us")):
        return word[:-1]
    return word


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric words with plurals folded, in order."""
    if not text:
        return []
    return [_stem(w) for w in _WORD_RE.findall(text.lower())]


def normalize_tokens(text: str) -> Set[str]:
    """Token set used for message similarity and keyword search."""
    return {t for t in tokenize(text) if t not in STOP_WORDS and len(t) > 1}


def path_tokens(path: str) -> Set[str]:
    """Split a file path into its directory, stem and extension tokens."""
    return {t for t in tokenize(path.replace("\\", "/")) if len(t) > 1}


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard index of two collections; 0.0 when both are empty."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(suffix))].rstrip() + suffix
