"""
Candidate file discovery.

Strategies run cheapest first; the first one that accepts a file tags it:
exact substring -> case-insensitive -> key phrases -> token overlap.
No parsing happens here.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .config import LocatorConfig
from .models import CandidateFile, LocatorStrategy
from .utils import key_phrases, significant_words
from .workspace import Workspace, file_type, list_source_files

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchStrategy:
    name: LocatorStrategy
    test: Callable[[str], bool]
    confidence: float


def build_strategies(search_term: str, cfg: LocatorConfig) -> List[SearchStrategy]:
    term_lower = search_term.lower()
    phrases = key_phrases(search_term)
    words = significant_words(search_term, cfg.min_token_length)

    def key_phrase_test(content: str) -> bool:
        if not phrases:
            return False
        c = content.lower()
        found = sum(1 for ph in phrases if ph in c)
        return found >= math.ceil(len(phrases) * cfg.key_phrase_ratio)

    def token_test(content: str) -> bool:
        if not words:
            return False
        c = content.lower()
        found = sum(1 for w in words if w in c)
        return found >= math.ceil(len(words) * cfg.token_ratio)

    return [
        SearchStrategy(LocatorStrategy.EXACT, lambda c: search_term in c, 1.0),
        SearchStrategy(LocatorStrategy.CASE_INSENSITIVE, lambda c: term_lower in c.lower(), 0.95),
        SearchStrategy(LocatorStrategy.KEY_PHRASES, key_phrase_test, 0.7),
        SearchStrategy(LocatorStrategy.TOKEN_OVERLAP, token_test, 0.6),
    ]


def match_strategy(content: str, strategies: List[SearchStrategy]) -> Optional[LocatorStrategy]:
    for strategy in strategies:
        if strategy.test(content):
            return strategy.name
    return None


class CandidateLocator:
    """Shortlist project files likely to contain the search term."""

    def __init__(self, cfg: Optional[LocatorConfig] = None):
        self.cfg = cfg or LocatorConfig()

    def locate(self, workspace: Workspace, search_term: str) -> Tuple[List[CandidateFile], int]:
        """Return (candidates, files_scanned). Unreadable files are skipped with a warning."""
        paths = list_source_files(workspace, self.cfg.file_extensions, self.cfg.exclude_dirs)
        strategies = build_strategies(search_term, self.cfg)

        def read(path: str) -> Tuple[str, Optional[str]]:
            try:
                return path, workspace.read(path)
            except (OSError, ValueError) as e:
                logger.warning("Error reading %s: %s", path, e)
                return path, None

        with ThreadPoolExecutor(max_workers=self.cfg.read_workers) as pool:
            contents = list(pool.map(read, paths))

        candidates: List[CandidateFile] = []
        for path, content in contents:
            if content is None:
                continue
            hit = match_strategy(content, strategies)
            if hit is not None:
                logger.debug("Candidate %s (%s)", path, hit.value)
                candidates.append(CandidateFile(path=path, content=content, strategy=hit, file_type=file_type(path)))

        logger.info("Found %d candidate files out of %d scanned", len(candidates), len(paths))
        return candidates, len(paths)
