"""
Shared text helpers: prompt-safe sanitising and multilingual query terms.
"""
from __future__ import annotations

import re

_QUERY_TERM_RE = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]{2,}|[a-z0-9]{2,}")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\u200b-\u200f\u2028\u2029\u2060\ufeff]")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def sanitize_text_for_prompt(text: str | None) -> str:
    """
    Normalizes book or user text before it reaches a prompt or the chunk index.
    All character offsets in the package refer to text passed through here.
    """
    payload = str(text or "")
    if not payload:
        return ""
    payload = payload.replace("\r\n", "\n").replace("\r", "\n")
    payload = _CONTROL_CHARS_RE.sub("", payload)
    payload = _TRAILING_SPACE_RE.sub("\n", payload)
    return _BLANK_RUN_RE.sub("\n\n", payload)


def extract_query_terms(query: str, *, limit: int = 12) -> list[str]:
    """Distinct CJK runs and ASCII words of two or more characters, in query order."""
    normalized = sanitize_text_for_prompt(query).lower()
    if not normalized:
        return []

    terms: list[str] = []
    seen: set[str] = set()
    for raw in _QUERY_TERM_RE.findall(normalized):
        term = raw.strip()
        if len(term) < 2 or term in seen:
            continue
        seen.add(term)
        terms.append(term)
        if len(terms) >= limit:
            break
    return terms


def compute_keyword_boost(text: str, query_terms: list[str]) -> float:
    """Weighted count of query terms present in text; longer terms weigh more."""
    if not query_terms or not text:
        return 0.0
    haystack = text.lower()
    boost = 0.0
    for term in query_terms:
        if term not in haystack:
            continue
        if len(term) >= 6:
            boost += 1.2
        elif len(term) >= 4:
            boost += 1.0
        else:
            boost += 0.7
    return boost
