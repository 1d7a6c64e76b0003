"""
Shared fixtures for the hybridedit test suite.

Provides:
- ScriptedOracle: an Oracle that records every call and answers from a
  callable or a queue of canned responses (no network)
- replace_responder: answers proposal prompts by swapping the search term
  inside each snippet
- ReadOnlyPaths: an in-memory workspace whose writes fail for chosen paths
- sample_files: a small React project covering exact, fragmented and
  markup-only cases
"""

from __future__ import annotations

import json
import re
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from hybridedit.models import Fragment, ModificationProposal, NodeKind, TextNode
from hybridedit.workspace import InMemoryWorkspace

_NODE_RE = re.compile(
    r"NODE (\d+)\n"
    r"File: ([^\n]*)\n"
    r"Lines: (\d+)-(\d+)\n"
    r"Kind: (\w+)\n"
    r"Fragmented: (yes|no)\n"
    r"Target text: ([^\n]*)\n"
    r"Snippet:\n```jsx\n(.*?)\n```",
    re.S,
)
_TERM_RE = re.compile(r'^Search term: "(.*)"$', re.M)
_REPLACEMENT_RE = re.compile(r'^Replacement term: "(.*)"$', re.M)
_BATCH_RE = re.compile(r"^Batch: (\S+)$", re.M)


class ScriptedOracle:
    """Oracle double. `responder(system, user)` wins over the response queue."""

    def __init__(
        self,
        responder: Optional[Callable[[str, str], str]] = None,
        responses: Optional[Sequence[Union[str, Exception]]] = None,
    ):
        self.responder = responder
        self.responses: List[Union[str, Exception]] = list(responses or [])
        self.calls: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def complete(self, system: str, user: str) -> str:
        with self._lock:
            self.calls.append((system, user))
            if self.responder is None:
                if not self.responses:
                    raise RuntimeError("no scripted response left")
                nxt = self.responses.pop(0)
                if isinstance(nxt, Exception):
                    raise nxt
                return nxt
        return self.responder(system, user)


class ReadOnlyPaths(InMemoryWorkspace):
    """Workspace whose writes to some paths fail like a read-only file."""

    def __init__(self, files, read_only):
        super().__init__(files)
        self.read_only = set(read_only)

    def write(self, path, content):
        if path in self.read_only:
            raise PermissionError(f"read-only {path}")
        super().write(path, content)


def parse_prompt_nodes(user: str) -> List[dict]:
    nodes = []
    for m in _NODE_RE.finditer(user):
        nodes.append(
            {
                "index": int(m.group(1)),
                "path": m.group(2),
                "start_line": int(m.group(3)),
                "end_line": int(m.group(4)),
                "kind": m.group(5),
                "fragmented": m.group(6) == "yes",
                "target": json.loads(m.group(7)),
                "snippet": m.group(8),
            }
        )
    return nodes


def batch_id_of(user: str) -> str:
    m = _BATCH_RE.search(user)
    return m.group(1) if m else ""


def replace_responder(system: str, user: str) -> str:
    """
    Swap the search term inside each snippet (case-insensitive).
    Fragmented nodes come back with the snippet untouched and only the new
    content, leaving the redistribution to the applier.
    """
    search = _TERM_RE.search(user).group(1)
    replacement = _REPLACEMENT_RE.search(user).group(1)
    pattern = re.compile(re.escape(search), re.I)

    mods = []
    for node in parse_prompt_nodes(user):
        if node["fragmented"]:
            modified_snippet = node["snippet"]
            modified_content = replacement
        else:
            modified_snippet = pattern.sub(replacement, node["snippet"], count=1)
            modified_content = pattern.sub(replacement, node["target"], count=1)
        mods.append(
            {
                "nodeIndex": node["index"],
                "originalSnippet": node["snippet"],
                "modifiedSnippet": modified_snippet,
                "originalContent": node["target"],
                "modifiedContent": modified_content,
                "confidence": 0.9,
                "shouldApply": True,
                "reasoning": "text swap",
                "strategy": "redistribution" if node["fragmented"] else "text_replacement",
                "warnings": [],
            }
        )
    return json.dumps({"modifications": mods, "overallStrategy": "replace", "batchConfidence": 0.9})


def scope_response(scope: str, search: str = "", replacement: str = "", variations: Sequence[str] = ()) -> str:
    payload: dict = {"scope": scope, "reasoning": "scripted"}
    if search:
        payload["textChangeAnalysis"] = {
            "searchTerm": search,
            "replacementTerm": replacement,
            "searchVariations": list(variations),
        }
    return "```json\n" + json.dumps(payload) + "\n```"


def routing_responder(scope_answer: str) -> Callable[[str, str], str]:
    """Classification prompts get `scope_answer`, proposal prompts get replace_responder."""

    def respond(system: str, user: str) -> str:
        if user.startswith("USER REQUEST:"):
            return scope_answer
        return replace_responder(system, user)

    return respond


HERO_TSX = """import React from "react";

export default function Hero() {
  return (
    <section className="hero">
      <h1 className="text-4xl font-bold">Welcome to our site</h1>
      <p>We build things.</p>
    </section>
  );
}
"""

FOOTER_TSX = """export function Footer() {
  return (
    <footer>
      <a href="/contact" className="cta">
        <span>Contact</span> <strong>Us</strong> <em>Today</em>
      </a>
    </footer>
  );
}
"""

BANNER_HTML = """<div class="banner">
  <p>Free shipping on all orders</p>
</div>
"""

PACKAGE_NOISE = """export const Welcome = "Welcome to our site";
"""


@pytest.fixture
def sample_files() -> Dict[str, str]:
    return {
        "src/components/Hero.tsx": HERO_TSX,
        "src/components/Footer.tsx": FOOTER_TSX,
        "public/banner.html": BANNER_HTML,
        "node_modules/lib/index.js": PACKAGE_NOISE,
        "README.md": "Welcome to our site\n",
    }


def make_node(
    path: str = "src/App.tsx",
    content: str = "Hello",
    start_line: int = 1,
    end_line: Optional[int] = None,
    start_column: int = 0,
    fragments: Sequence[Fragment] = (),
    kind: NodeKind = NodeKind.JSX_TEXT,
    container: Optional[str] = None,
) -> TextNode:
    return TextNode(
        path=path,
        content=content,
        kind=NodeKind.FRAGMENTED if fragments else kind,
        start_line=start_line,
        end_line=end_line if end_line is not None else start_line,
        start_column=start_column,
        end_column=start_column + len(content),
        fragments=tuple(fragments),
        container=container,
    )


def make_proposal(
    node: TextNode,
    original_snippet: str = "",
    modified_snippet: str = "",
    original_content: Optional[str] = None,
    modified_content: str = "",
    confidence: float = 0.9,
    should_apply: bool = True,
    batch_id: str = "batch_1",
    node_index: int = 0,
) -> ModificationProposal:
    return ModificationProposal(
        batch_id=batch_id,
        node_index=node_index,
        node=node,
        original_snippet=original_snippet,
        modified_snippet=modified_snippet,
        original_content=original_content if original_content is not None else node.content,
        modified_content=modified_content,
        confidence=confidence,
        should_apply=should_apply,
        reasoning="",
        strategy="text_replacement",
    )
