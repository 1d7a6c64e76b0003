"""
Structural text extraction.

Key idea:
- Parse each candidate (tree-sitter, TSX/TS/JS grammars) and collect every
  textual unit in document order: JSX body text, string literals wrapped in
  JSX expressions, and bare string literals elsewhere.
- Exact pass: keep units containing the search term (case- and
  whitespace-insensitive).
- Fragmented pass, only when a file has no exact hit: greedily chain nearby
  units that each contribute the next unmatched words of the term, and keep
  chains that cover enough of it.
- Files that cannot be parsed go through a line-oriented scan that yields the
  same records.
"""

from __future__ import annotations

import bisect
import logging
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from tree_sitter import Node, Parser
from tree_sitter_language_pack import get_parser

from .config import ExtractionConfig
from .models import CandidateFile, ExtractionResult, Fragment, NodeKind, TextNode
from .utils import norm_text, tokenize, whitespace_pattern, words_match

logger = logging.getLogger(__name__)

_LANGUAGES = {
    ".tsx": "tsx",
    ".jsx": "tsx",
    ".ts": "typescript",
    ".js": "javascript",
    ".mjs": "javascript",
}

_STRING_TYPES = {"string", "template_string"}
_ELEMENT_TYPES = {"jsx_element", "jsx_self_closing_element"}

# Attribute values that configure an element rather than display text.
_NON_TEXT_ATTRIBUTES = {
    "className", "class", "style", "id", "key", "href", "src", "to", "type",
    "name", "role", "htmlFor", "rel", "target", "variant", "size", "as",
    "method", "action", "xmlns", "viewBox", "d", "fill", "stroke",
}
_MODULE_PARENTS = {"import_statement", "export_statement", "import_require_clause"}

_TAG_RE = re.compile(r"<[^<>]*>")


@lru_cache(maxsize=None)
def _parser_for(language: str) -> Parser:
    return get_parser(language)


def language_for(path: str) -> Optional[str]:
    return _LANGUAGES.get(PurePosixPath(path).suffix.lower())


class _SourceIndex:
    """Byte offset <-> (line, column) mapping for one source text."""

    def __init__(self, source: str):
        self.data = source.encode("utf-8", errors="surrogateescape")
        self.line_starts = [0] + [m.end() for m in re.finditer(b"\n", self.data)]

    def position(self, byte_offset: int) -> Tuple[int, int]:
        row = bisect.bisect_right(self.line_starts, byte_offset) - 1
        col = len(self.data[self.line_starts[row]:byte_offset].decode("utf-8", errors="surrogateescape"))
        return row + 1, col

    def text(self, start: int, end: int) -> str:
        return self.data[start:end].decode("utf-8", errors="surrogateescape")


@dataclass
class _Unit:
    """A textual unit before it becomes a TextNode."""
    content: str
    kind: NodeKind
    start_line: int
    end_line: int
    start_column: int
    end_column: int
    start_byte: int = -1
    end_byte: int = -1
    ts_node: Optional[Node] = None


# ---------------------------------------------------------------------------
# Tree walk
# ---------------------------------------------------------------------------

def _span_unit(index: _SourceIndex, start: int, end: int, kind: NodeKind, ts_node: Node) -> _Unit:
    sl, sc = index.position(start)
    el, ec = index.position(end)
    return _Unit(index.text(start, end), kind, sl, el, sc, ec, start, end, ts_node)


def _jsx_text_unit(node: Node, index: _SourceIndex) -> Optional[_Unit]:
    raw = index.text(node.start_byte, node.end_byte)
    stripped = raw.strip()
    if not stripped:
        return None
    lead = len(raw[: len(raw) - len(raw.lstrip())].encode("utf-8"))
    start = node.start_byte + lead
    end = start + len(stripped.encode("utf-8", errors="surrogateescape"))
    return _span_unit(index, start, end, NodeKind.JSX_TEXT, node)


def _string_unit(node: Node, index: _SourceIndex, kind: NodeKind, min_len: int) -> Optional[_Unit]:
    if node.type == "template_string" and any(c.type == "template_substitution" for c in node.children):
        return None
    start, end = node.start_byte + 1, node.end_byte - 1  # drop the quotes
    if end <= start:
        return None
    unit = _span_unit(index, start, end, kind, node)
    if len(unit.content.strip()) < min_len:
        return None
    return unit


def _attribute_name(attr: Node) -> str:
    for child in attr.named_children:
        if child.type in ("property_identifier", "jsx_namespace_name", "identifier"):
            return (child.text or b"").decode("utf-8", errors="surrogateescape")
    return ""


def _is_display_string(node: Node) -> bool:
    """False for module specifiers, object keys, and non-text JSX attributes."""
    parent = node.parent
    if parent is None:
        return True
    if parent.type == "jsx_expression":
        parent = parent.parent
        if parent is None:
            return True
    if parent.type in _MODULE_PARENTS:
        return False
    if parent.type == "jsx_attribute":
        return _attribute_name(parent) not in _NON_TEXT_ATTRIBUTES
    if parent.type == "pair" and parent.child_by_field_name("key") == node:
        return False
    if parent.type == "arguments" and parent.parent is not None:
        fn = parent.parent.child_by_field_name("function")
        if fn is not None and fn.type in ("identifier", "import") and (fn.text or b"") in (b"require", b"import"):
            return False
    return True


def collect_units(root: Node, index: _SourceIndex, cfg: ExtractionConfig) -> List[_Unit]:
    """Pre-order walk collecting textual units in document order."""
    units: List[_Unit] = []
    stack: List[Node] = [root]
    while stack:
        node = stack.pop()
        t = node.type

        if t == "jsx_text":
            unit = _jsx_text_unit(node, index)
            if unit:
                units.append(unit)
            continue

        if t == "jsx_expression":
            inner = [c for c in node.named_children if c.type != "comment"]
            if len(inner) == 1 and inner[0].type in _STRING_TYPES:
                if _is_display_string(inner[0]):
                    unit = _string_unit(inner[0], index, NodeKind.EXPRESSION_LITERAL, 1)
                    if unit:
                        units.append(unit)
                continue

        elif t in _STRING_TYPES:
            if _is_display_string(node):
                unit = _string_unit(node, index, NodeKind.STRING_LITERAL, cfg.min_literal_length)
                if unit:
                    units.append(unit)
            continue

        stack.extend(reversed(node.children))
    return units


def _enclosing_element(node: Optional[Node]) -> Optional[Node]:
    p = node.parent if node is not None else None
    while p is not None and p.type not in _ELEMENT_TYPES:
        p = p.parent
    return p


def _container_for(units: Sequence[_Unit]) -> Optional[Node]:
    """Smallest JSX element enclosing every unit (None outside JSX)."""
    first, last = units[0], units[-1]
    el = _enclosing_element(first.ts_node)
    while el is not None and not (el.start_byte <= first.start_byte and last.end_byte <= el.end_byte):
        el = _enclosing_element(el)
    return el


# ---------------------------------------------------------------------------
# Matching passes (shared by tree and line paths)
# ---------------------------------------------------------------------------

def contains_term(content: str, search_term: str) -> bool:
    return norm_text(search_term).lower() in norm_text(content).lower()


def _absorb(node_words: Iterable[str], words: Sequence[str], w: int) -> Tuple[bool, int]:
    contributed = False
    for nw in node_words:
        if w < len(words) and words_match(words[w], nw):
            w += 1
            contributed = True
    return contributed, w


def grow_run(units: Sequence[_Unit], start: int, words: Sequence[str], lookahead: int) -> Tuple[List[int], int]:
    """
    Greedy chain from `start`: each absorbed unit must contribute the next
    unmatched word(s) in order. One non-contributing unit is tolerated when
    the unit after it helps. Returns (unit indexes, words matched).
    """
    run: List[int] = []
    w = 0
    end = min(len(units), start + lookahead)
    j = start
    while j < end and w < len(words):
        contributed, w = _absorb(tokenize(units[j].content), words, w)
        if contributed:
            run.append(j)
        elif not run:
            break
        elif not (j + 1 < end and _absorb(tokenize(units[j + 1].content), words, w)[0]):
            break
        j += 1
    return run, w


def find_fragment_runs(
    units: Sequence[_Unit],
    search_term: str,
    coverage: float,
    lookahead: int,
) -> List[Tuple[List[int], int]]:
    words = tokenize(search_term)
    if not words:
        return []
    need = max(1, math.ceil(len(words) * coverage))

    runs: List[Tuple[List[int], int]] = []
    i = 0
    while i < len(units):
        run, matched = grow_run(units, i, words, lookahead)
        if run and matched >= need:
            runs.append((run, matched))
            i = run[-1] + 1
        else:
            i += 1
    return runs


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class StructuralExtractor:
    def __init__(self, cfg: Optional[ExtractionConfig] = None):
        self.cfg = cfg or ExtractionConfig()

    def extract(self, candidates: Sequence[CandidateFile], search_term: str) -> ExtractionResult:
        all_nodes: List[TextNode] = []
        sources: Dict[str, str] = {}
        for cand in candidates:
            sources[cand.path] = cand.content
            nodes = self.extract_file(cand.path, cand.content, search_term)
            logger.debug("%s: %d nodes", cand.path, len(nodes))
            all_nodes.extend(nodes)

        unique = dedupe_nodes(all_nodes)
        removed = len(all_nodes) - len(unique)
        logger.info("Extracted %d unique text nodes (removed %d duplicates)", len(unique), removed)
        return ExtractionResult(nodes=unique, sources=sources, duplicates_removed=removed)

    def extract_file(self, path: str, source: str, search_term: str) -> List[TextNode]:
        language = language_for(path)
        if language is None:
            return self.line_scan(path, source, search_term)

        index = _SourceIndex(source)
        try:
            tree = _parser_for(language).parse(index.data)
        except Exception as e:  # grammar download/load failures of any pack version
            logger.warning("No %s parser for %s (%s), using line scan", language, path, e)
            return self.line_scan(path, source, search_term)
        if tree.root_node.has_error:
            logger.warning("Parse errors in %s, using line scan", path)
            return self.line_scan(path, source, search_term)

        units = collect_units(tree.root_node, index, self.cfg)
        lines = source.split("\n")

        exact = [u for u in units if contains_term(u.content, search_term)]
        if exact:
            return [self._node(path, [u], lines, _exact_relevance(u.content, search_term)) for u in exact]

        return self._fragmented(path, units, lines, search_term)

    # -- line-oriented fallback -------------------------------------------

    def line_scan(self, path: str, source: str, search_term: str) -> List[TextNode]:
        lines = source.split("\n")
        term = search_term.strip()
        if not term:
            return []

        exact_re = re.compile(re.escape(term), re.I)
        units: List[_Unit] = []
        for i, line in enumerate(lines, start=1):
            for m in exact_re.finditer(line):
                units.append(_Unit(m.group(0), NodeKind.LINE_MATCH, i, i, m.start(), m.end()))
        if units:
            return [self._node(path, [u], lines, 0.9 if term in u.content else 0.85) for u in units]

        flex = re.compile(whitespace_pattern(term).pattern, re.I)
        starts = _line_start_offsets(source)
        for m in flex.finditer(source):
            sl, sc = _char_position(starts, m.start())
            el, ec = _char_position(starts, m.end())
            units.append(_Unit(m.group(0), NodeKind.LINE_MATCH, sl, el, sc, ec))
        if units:
            return [self._node(path, [u], lines, 0.8) for u in units]

        return self._fragmented(path, text_segments(lines), lines, search_term)

    # -- helpers -------------------------------------------------------------

    def _fragmented(self, path: str, units: Sequence[_Unit], lines: List[str], search_term: str) -> List[TextNode]:
        total = len(tokenize(search_term))
        nodes: List[TextNode] = []
        for run, matched in find_fragment_runs(
            units, search_term, self.cfg.fragment_coverage, self.cfg.fragment_lookahead
        ):
            members = [units[k] for k in run]
            logger.debug(
                "Fragmented match in %s: %s (%d/%d words)",
                path, " | ".join(u.content for u in members), matched, total,
            )
            nodes.append(self._node(path, members, lines, round(0.9 * matched / total, 3), fragmented=True))
        return nodes

    def _node(
        self,
        path: str,
        members: List[_Unit],
        lines: List[str],
        relevance: float,
        fragmented: bool = False,
    ) -> TextNode:
        first, last = members[0], members[-1]
        n = self.cfg.context_lines

        container: Optional[str] = None
        container_line = 0
        if first.ts_node is not None:
            el = _container_for(members)
            if el is not None and (el.end_point[0] - el.start_point[0] + 1) <= self.cfg.max_snippet_lines:
                container = (el.text or b"").decode("utf-8", errors="surrogateescape")
                container_line = el.start_point[0] + 1

        fragments: Tuple[Fragment, ...] = ()
        if fragmented:
            fragments = tuple(
                Fragment(u.content, u.kind, u.start_line, u.end_line, u.start_column, u.end_column)
                for u in members
            )

        return TextNode(
            path=path,
            content=" ".join(u.content for u in members) if fragmented else first.content,
            kind=NodeKind.FRAGMENTED if fragmented else first.kind,
            start_line=first.start_line,
            end_line=last.end_line,
            start_column=first.start_column,
            end_column=last.end_column,
            context_before=lines[max(0, first.start_line - 1 - n): first.start_line - 1],
            context_after=lines[last.end_line: last.end_line + n],
            fragments=fragments,
            relevance=relevance,
            container=container,
            container_start_line=container_line,
        )


def _exact_relevance(content: str, search_term: str) -> float:
    return 1.0 if norm_text(content).lower() == norm_text(search_term).lower() else 0.9


def _line_start_offsets(source: str) -> List[int]:
    return [0] + [m.end() for m in re.finditer("\n", source)]


def _char_position(starts: List[int], offset: int) -> Tuple[int, int]:
    row = bisect.bisect_right(starts, offset) - 1
    return row + 1, offset - starts[row]


def text_segments(lines: Sequence[str]) -> List[_Unit]:
    """Runs of text between markup tags, line by line, in document order."""
    units: List[_Unit] = []
    for i, line in enumerate(lines, start=1):
        for piece_start, piece_end in _untagged_spans(line):
            raw = line[piece_start:piece_end]
            stripped = raw.strip()
            if not stripped:
                continue
            col = piece_start + (len(raw) - len(raw.lstrip()))
            units.append(_Unit(stripped, NodeKind.LINE_MATCH, i, i, col, col + len(stripped)))
    return units


def _untagged_spans(line: str) -> List[Tuple[int, int]]:
    spans: List[Tuple[int, int]] = []
    pos = 0
    for m in _TAG_RE.finditer(line):
        if m.start() > pos:
            spans.append((pos, m.start()))
        pos = m.end()
    if pos < len(line):
        spans.append((pos, len(line)))
    return spans


def dedupe_nodes(nodes: Iterable[TextNode]) -> List[TextNode]:
    seen = set()
    unique: List[TextNode] = []
    for node in nodes:
        if node.dedupe_key in seen:
            logger.debug("Dropping duplicate node %s:%d-%d", node.path, node.start_line, node.end_line)
            continue
        seen.add(node.dedupe_key)
        unique.append(node)
    return unique
