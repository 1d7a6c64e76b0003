"""Tests for the candidate file locator ladder."""

from hybridedit.config import LocatorConfig
from hybridedit.locator import CandidateLocator, build_strategies, match_strategy
from hybridedit.models import LocatorStrategy
from hybridedit.workspace import InMemoryWorkspace


class TestStrategyLadder:
    """Cheapest strategy that accepts a file tags it."""

    def _match(self, term, content):
        return match_strategy(content, build_strategies(term, LocatorConfig()))

    def test_exact(self):
        assert self._match("Welcome to our site", "<h1>Welcome to our site</h1>") is LocatorStrategy.EXACT

    def test_case_insensitive(self):
        assert self._match("Welcome to our site", "<h1>welcome to OUR site</h1>") is LocatorStrategy.CASE_INSENSITIVE

    def test_key_phrases(self):
        content = "<span>Contact</span> <strong>Us</strong> <em>Today</em>"
        assert self._match("Contact Us Today", content) is LocatorStrategy.KEY_PHRASES

    def test_token_overlap(self):
        content = "premium goods\nall handmade\nfine leather"
        assert self._match("Premium quality handmade leather", content) is LocatorStrategy.TOKEN_OVERLAP

    def test_no_match(self):
        assert self._match("Completely absent phrase", "<p>nothing</p>") is None


class TestCandidateLocator:
    def test_locate_respects_exclusions(self, sample_files):
        ws = InMemoryWorkspace(sample_files)
        candidates, scanned = CandidateLocator().locate(ws, "Welcome to our site")
        assert [c.path for c in candidates] == ["src/components/Hero.tsx"]
        assert candidates[0].strategy is LocatorStrategy.EXACT
        assert candidates[0].file_type == "react-typescript"
        # node_modules and README.md are never scanned
        assert scanned == 3

    def test_fragmented_term_found_by_phrases(self, sample_files):
        candidates, _ = CandidateLocator().locate(InMemoryWorkspace(sample_files), "Contact Us Today")
        assert [(c.path, c.strategy) for c in candidates] == [
            ("src/components/Footer.tsx", LocatorStrategy.KEY_PHRASES)
        ]

    def test_unreadable_file_is_skipped(self, sample_files):
        class FlakyWorkspace(InMemoryWorkspace):
            def read(self, path):
                if path.endswith("Hero.tsx"):
                    raise OSError("permission denied")
                return super().read(path)

        candidates, scanned = CandidateLocator().locate(FlakyWorkspace(sample_files), "Welcome to our site")
        assert candidates == []
        assert scanned == 3
