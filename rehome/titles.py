import re
from typing import List, Optional

# --- Title normalization ---

# Titles at or under this length after cleaning are treated as over-stripped
MIN_TITLE_LENGTH = 5

_BRACKET_PAIRS = (("(", ")"), ("[", "]"), ("<", ">"), ("{", "}"))
_OPENING = {o: i for i, (o, _) in enumerate(_BRACKET_PAIRS)}
_CLOSING = {c: i for i, (_, c) in enumerate(_BRACKET_PAIRS)}

_ASCII_TITLE_RE = re.compile(r"[^a-zA-Z0-9\- ]")
_SPACES_RE = re.compile(r"\s+")
# " - " splitters, including runs like " - - "
_SEPARATOR_RE = re.compile(r"(?:\s+-)+\s+")
# "- part 2", "- chapter 10.5", "- ep. 3"
_CHAPTER_REFERENCE_RE = re.compile(r"\s*-\s*(?:part|chapter|episode|ch|ep)\.?\s*\d+(?:\.\d+)?")
# "vol.1", "volume 3" keep the marker word, drop the number
_VOLUME_NUMBER_RE = re.compile(r"\b(volume|vol)\.?\s*\d+(?:\.\d+)?")


def _remove_text_in_brackets(text: str, read_forward: bool = True) -> str:
    """Drop everything enclosed in (), [], <> or {} using per-pair depth counters.
    Reading backwards swaps the roles of opening and closing brackets, which keeps
    the main title when it is itself an unclosed bracket segment."""
    opening, closing = (_OPENING, _CLOSING) if read_forward else (_CLOSING, _OPENING)
    depth = [0] * len(_BRACKET_PAIRS)
    out: List[str] = []
    for c in (text if read_forward else reversed(text)):
        if c in opening:
            depth[opening[c]] += 1
        elif c in closing:
            i = closing[c]
            depth[i] = max(0, depth[i] - 1)
        elif not any(depth):
            out.append(c)
    result = "".join(out)
    return result if read_forward else result[::-1]


def _strip_chapter_reference(text: str) -> str:
    text = _CHAPTER_REFERENCE_RE.sub(" ", text)
    return _VOLUME_NUMBER_RE.sub(r"\1", text)


def _keep_letters(text: str) -> str:
    # Unicode-aware variant of _ASCII_TITLE_RE for non-Latin titles
    return "".join(c if (c.isalnum() or c in "- ") else " " for c in text)


def _tidy(text: str) -> str:
    # Repeat until stable: collapsing a splitter can expose a new chapter reference
    while True:
        tidied = _SEPARATOR_RE.sub(" ", _SPACES_RE.sub(" ", text).strip())
        tidied = _SPACES_RE.sub(" ", _strip_chapter_reference(tidied)).strip()
        if tidied == text:
            return tidied
        text = tidied


def normalize_title(title: Optional[str]) -> str:
    """Normalize a title for searching and comparison.
    - lowercases
    - strips bracketed segments, retrying from the end if that leaves almost nothing
    - removes chapter/volume number references
    - keeps only [a-z0-9- ], or any letters/digits when that over-strips a non-Latin title
    - collapses ' - ' splitters and whitespace
    Never raises; the result may be empty.
    """
    lowered = (title or "").lower()
    cleaned = _remove_text_in_brackets(lowered, read_forward=True)
    if len(cleaned.strip()) <= MIN_TITLE_LENGTH:
        cleaned = _remove_text_in_brackets(lowered, read_forward=False)
    cleaned = _strip_chapter_reference(cleaned)
    ascii_only = _tidy(_ASCII_TITLE_RE.sub(" ", cleaned))
    if len(ascii_only) > MIN_TITLE_LENGTH:
        return ascii_only
    return _tidy(_keep_letters(cleaned))


# --- Query planning ---

def build_search_queries(normalized_title: str, extra_query: Optional[str] = None) -> List[str]:
    """Ordered, de-duplicated search queries for a normalized title:
    full title, two longest words, longest word, first two words, first word.
    Returns [] for a title without words."""
    tokens = (normalized_title or "").split()
    if not tokens:
        return []
    # sorted() is stable, so equal-length words keep their original order
    by_length = sorted(tokens, key=len, reverse=True)
    queries = [
        " ".join(tokens),
        " ".join(by_length[:2]),
        by_length[0],
        " ".join(tokens[:2]),
        tokens[0],
    ]
    extra = (extra_query or "").strip()
    if extra:
        queries = [f"{q} {extra}" for q in queries]
    return list(dict.fromkeys(queries))


# --- Similarity ---

def levenshtein(s1: str, s2: str) -> int:
    """Levenshtein (edit) distance between two strings."""
    if s1 == s2:
        return 0
    len1, len2 = len(s1), len(s2)
    if len1 == 0:
        return len2
    if len2 == 0:
        return len1

    # Two-row table sized by the shorter string
    if len1 > len2:
        s1, s2 = s2, s1
        len1, len2 = len2, len1

    prev_row = list(range(len1 + 1))
    for j in range(1, len2 + 1):
        curr_row = [j] + [0] * len1
        for i in range(1, len1 + 1):
            cost = 0 if s1[i - 1] == s2[j - 1] else 1
            curr_row[i] = min(
                curr_row[i - 1] + 1,
                prev_row[i] + 1,
                prev_row[i - 1] + cost,
            )
        prev_row = curr_row

    return prev_row[len1]


def title_similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1]; two empty strings are identical."""
    a = a or ""
    b = b or ""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest
