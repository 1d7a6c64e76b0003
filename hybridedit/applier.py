"""
Patch application.

Per file, proposals are applied bottom-up (descending start line) so an edit
never shifts the position of one not yet applied. Each proposal walks a fixed
cascade and stops at the first strategy that changes the content:

1. exact snippet
2. whitespace-normalized snippet
3. fragment redistribution (fragmented nodes only)
4. direct content
5. line-anchored content, near the recorded line
"""

from __future__ import annotations

import difflib
import logging
import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import ApplyConfig
from .models import AppliedChange, ApplyStrategy, BatchResult, Fragment, ModificationProposal
from .session import SessionStore, snapshot_key
from .workspace import Workspace
from .utils import whitespace_pattern

logger = logging.getLogger(__name__)


@dataclass
class ApplyReport:
    changes: List[AppliedChange] = field(default_factory=list)
    applied: List[Tuple[ModificationProposal, ApplyStrategy]] = field(default_factory=list)
    skipped: List[ModificationProposal] = field(default_factory=list)
    diffs: List[str] = field(default_factory=list)
    # path -> I/O error for files that could not be read or written
    file_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def modified_files(self) -> List[str]:
        return [c.path for c in self.changes]

    @property
    def total_replacements(self) -> int:
        return len(self.applied)

    @property
    def strategy_counts(self) -> Counter:
        return Counter(s.value for _, s in self.applied)


def unified_diff(path: str, before: str, after: str) -> str:
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
        )
    )


def _line_of(content: str, offset: int) -> int:
    return content.count("\n", 0, offset) + 1


def _replace_nearest(content: str, spans: List[Tuple[int, int]], new: str, anchor_line: int) -> str:
    """Replace the span whose start line is closest to `anchor_line`."""
    start, end = min(spans, key=lambda s: abs(_line_of(content, s[0]) - anchor_line))
    return content[:start] + new + content[end:]


def _anchor(p: ModificationProposal) -> int:
    return p.node.container_start_line or p.node.start_line


# ---------------------------------------------------------------------------
# Strategies: each returns the new content, or None when it does not apply
# ---------------------------------------------------------------------------

def apply_exact_snippet(content: str, p: ModificationProposal, cfg: ApplyConfig) -> Optional[str]:
    old, new = p.original_snippet, p.modified_snippet
    if not old or old == new or old not in content:
        return None
    spans = [(m.start(), m.start() + len(old)) for m in re.finditer(re.escape(old), content)]
    return _replace_nearest(content, spans, new, _anchor(p))


def apply_normalized_snippet(content: str, p: ModificationProposal, cfg: ApplyConfig) -> Optional[str]:
    old, new = p.original_snippet, p.modified_snippet
    if not old.split() or " ".join(old.split()) == " ".join(new.split()):
        return None
    spans = [(m.start(), m.end()) for m in whitespace_pattern(old).finditer(content)]
    if not spans:
        return None
    return _replace_nearest(content, spans, new, _anchor(p))


def redistribute_words(fragments: Sequence[Fragment], modified: str) -> List[str]:
    """
    Hand out the modified words across fragments in order: each fragment gets
    as many words as it originally held, the last one takes the remainder.
    Fragments left without words become empty.
    """
    words = modified.split()
    out: List[str] = []
    pos = 0
    for i, frag in enumerate(fragments):
        if i == len(fragments) - 1:
            take = words[pos:]
        else:
            take = words[pos: pos + max(1, len(frag.content.split()))]
        pos += len(take)
        out.append(" ".join(take))
    return out


def _fragment_span(content: str, line_starts: List[int], frag: Fragment) -> Optional[Tuple[int, int]]:
    if frag.start_line - 1 < len(line_starts):
        start = line_starts[frag.start_line - 1] + frag.start_column
        end = start + len(frag.content)
        if content[start:end] == frag.content:
            return start, end
        # columns drifted (an edit earlier on the same line); look within the line
        line_start = line_starts[frag.start_line - 1]
        line_end = content.find("\n", line_start)
        line_end = len(content) if line_end < 0 else line_end
        idx = content.find(frag.content, line_start, line_end)
        if idx >= 0:
            return idx, idx + len(frag.content)
    return None


def apply_fragment_redistribution(content: str, p: ModificationProposal, cfg: ApplyConfig) -> Optional[str]:
    fragments = p.node.fragments
    if len(fragments) < 2 or p.modified_content.split() == p.original_content.split():
        return None

    pieces = redistribute_words(fragments, p.modified_content)
    line_starts = [0] + [m.end() for m in re.finditer("\n", content)]
    spans = []
    for frag in fragments:
        span = _fragment_span(content, line_starts, frag)
        if span is None:
            logger.debug("Fragment %r not found at line %d", frag.content, frag.start_line)
            return None
        spans.append(span)

    updated = content
    for (start, end), piece in sorted(zip(spans, pieces), key=lambda x: x[0][0], reverse=True):
        updated = updated[:start] + piece + updated[end:]
    return updated


def apply_direct_content(content: str, p: ModificationProposal, cfg: ApplyConfig) -> Optional[str]:
    old, new = p.original_content, p.modified_content
    if not old or old == new or old not in content:
        return None
    return content.replace(old, new, 1)


def apply_line_anchored(content: str, p: ModificationProposal, cfg: ApplyConfig) -> Optional[str]:
    if p.original_content == p.modified_content:
        return None
    line_starts = [0] + [m.end() for m in re.finditer("\n", content)]
    first = max(0, p.node.start_line - 1 - cfg.line_window)
    last = min(len(line_starts), p.node.end_line + cfg.line_window)
    if first >= len(line_starts):
        return None
    lo = line_starts[first]
    hi = line_starts[last] if last < len(line_starts) else len(content)

    candidates = [c for c in (p.original_content, p.node.content) if c.strip()]
    # exact case anywhere in the window beats a case-folded match
    for flags in (0, re.I):
        for candidate in candidates:
            m = re.compile(re.escape(candidate), flags).search(content, lo, hi)
            if m:
                return content[: m.start()] + p.modified_content + content[m.end():]
    return None


CASCADE: List[Tuple[ApplyStrategy, Callable[[str, ModificationProposal, ApplyConfig], Optional[str]]]] = [
    (ApplyStrategy.EXACT_SNIPPET, apply_exact_snippet),
    (ApplyStrategy.NORMALIZED_SNIPPET, apply_normalized_snippet),
    (ApplyStrategy.FRAGMENT_REDISTRIBUTION, apply_fragment_redistribution),
    (ApplyStrategy.DIRECT_CONTENT, apply_direct_content),
    (ApplyStrategy.LINE_ANCHORED, apply_line_anchored),
]


def apply_proposal(content: str, p: ModificationProposal, cfg: ApplyConfig) -> Optional[Tuple[str, ApplyStrategy]]:
    for strategy, fn in CASCADE:
        updated = fn(content, p, cfg)
        if updated is not None and updated != content:
            return updated, strategy
    return None


class PatchApplier:
    """Applies validated proposals file by file; one writer per file."""

    def __init__(
        self,
        cfg: Optional[ApplyConfig] = None,
        *,
        session_store: Optional[SessionStore] = None,
        session_id: str = "default",
    ):
        self.cfg = cfg or ApplyConfig()
        self.session_store = session_store
        self.session_id = session_id

    def apply(
        self,
        workspace: Workspace,
        batch_results: Sequence[BatchResult],
        *,
        description: str = "",
        dry_run: bool = False,
    ) -> ApplyReport:
        by_file: Dict[str, List[ModificationProposal]] = defaultdict(list)
        for b in batch_results:
            for p in b.proposals:
                if p.should_apply:
                    by_file[p.node.path].append(p)

        report = ApplyReport()
        for path in sorted(by_file):
            proposals = sorted(by_file[path], key=lambda p: p.node.start_line, reverse=True)
            self._apply_file(workspace, path, proposals, report, description, dry_run)

        logger.info(
            "Applied %d replacements across %d files (%d skipped)",
            report.total_replacements, len(report.changes), len(report.skipped),
        )
        return report

    def _apply_file(
        self,
        workspace: Workspace,
        path: str,
        proposals: List[ModificationProposal],
        report: ApplyReport,
        description: str,
        dry_run: bool,
    ) -> None:
        try:
            original = workspace.read(path)
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            report.file_errors[path] = str(e)
            report.skipped.extend(proposals)
            return

        content = original
        applied: List[Tuple[ModificationProposal, ApplyStrategy]] = []
        for p in proposals:
            hit = apply_proposal(content, p, self.cfg)
            if hit is None:
                logger.warning("No strategy matched %s:%d (%r)", path, p.node.start_line, p.node.content[:60])
                report.skipped.append(p)
                continue
            content, strategy = hit
            logger.debug("%s:%d applied via %s", path, p.node.start_line, strategy.value)
            applied.append((p, strategy))

        if content == original:
            return

        if not dry_run:
            if self.session_store is not None:
                self.session_store.set(self.session_id, snapshot_key(path), original)
            try:
                workspace.write(path, content)
            except OSError as e:
                # the other files of the run still go through
                logger.error("Cannot write %s: %s", path, e)
                report.file_errors[path] = str(e)
                report.skipped.extend(p for p, _ in applied)
                return

        report.applied.extend(applied)
        diff = unified_diff(path, original, content) if self.cfg.generate_diffs else ""
        if diff:
            report.diffs.append(diff)
        report.changes.append(
            AppliedChange(
                path=path,
                strategy="+".join(sorted({s.value for _, s in applied})),
                replacement_count=len(applied),
                diff=diff,
                description=description,
            )
        )
