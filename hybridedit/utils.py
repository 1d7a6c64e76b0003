"""
Utilities: normalization, tokenization, safe JSON extraction, and small helpers.
"""

from __future__ import annotations

import json
import re
from typing import Iterable, List

from .errors import OracleResponseError

_WORD_RE = re.compile(r"\w+(?:['\-]\w+)*", re.UNICODE)
_TAG_RE = re.compile(r"<[^<>]+>")


def norm_text(s: str) -> str:
    """Collapse runs of whitespace to one space."""
    return re.sub(r"\s+", " ", s).strip()


def tokenize(s: str) -> List[str]:
    """Lower-cased words, punctuation dropped (apostrophes/hyphens inside words kept)."""
    return _WORD_RE.findall(s.lower())


def significant_words(s: str, min_len: int = 3) -> List[str]:
    return [w for w in tokenize(s) if len(w) >= min_len]


def key_phrases(term: str) -> List[str]:
    """
    Phrases used to spot a long term in a file:
    - single words longer than 3 chars
    - every bi-gram
    - every tri-gram
    """
    words = tokenize(term)
    phrases: List[str] = [w for w in words if len(w) > 3]
    phrases.extend(" ".join(words[i:i + 2]) for i in range(len(words) - 1))
    phrases.extend(" ".join(words[i:i + 3]) for i in range(len(words) - 2))
    return phrases


def words_match(search_word: str, node_word: str) -> bool:
    """Partial-word match in either direction; the shorter side must be meaningful."""
    if search_word == node_word:
        return True
    if search_word in node_word:
        return True
    return len(node_word) >= 3 and node_word in search_word


def whitespace_pattern(text: str) -> re.Pattern:
    """Regex matching `text` with any run of whitespace standing in for each gap."""
    parts = text.split()
    return re.compile(r"\s+".join(re.escape(p) for p in parts))


def count_markup_tags(s: str) -> int:
    return len(_TAG_RE.findall(s))


def tag_balance(s: str) -> int:
    """
    Opening tags minus closing tags. Self-closing tags count as balanced.
    Fragments like `<>` / `</>` are handled as ordinary tags.
    """
    balance = 0
    for tag in _TAG_RE.findall(s):
        if tag.startswith("</"):
            balance -= 1
        elif tag.endswith("/>") or tag.startswith("<!") or tag.startswith("<?"):
            continue
        else:
            balance += 1
    return balance


def dedupe_preserving_order(items: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for it in items:
        if it and it not in seen:
            seen.add(it)
            out.append(it)
    return out


def extract_first_json_object(text: str) -> str:
    """
    Extract the first JSON object from an LLM response.
    Handles markdown code fences, extra text, and braces inside string values.
    """
    t = text.strip()
    t = re.sub(r"```(?:json|JSON)?", "", t)

    start = t.find("{")
    while start >= 0:
        depth = 0
        in_str = False
        escaped = False
        for i in range(start, len(t)):
            ch = t[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    cand = t[start:i + 1].strip()
                    try:
                        json.loads(cand)
                    except json.JSONDecodeError:
                        break
                    return cand
        start = t.find("{", start + 1)

    raise OracleResponseError("No JSON object found.")


def preview(s: str, limit: int = 80) -> str:
    s = norm_text(s)
    return s if len(s) <= limit else s[: limit - 3] + "..."
