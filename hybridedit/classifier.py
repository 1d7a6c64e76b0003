"""
Modification scope classification.

Two stages:
- a pure keyword/pattern scorer (`heuristic_scope`) that never does I/O
- an oracle confirmation that is authoritative when it answers sensibly,
  and falls back to the heuristic suggestion when it does not.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from .errors import ClassificationError
from .llm import Oracle
from .models import (
    SCOPE_PRIORITY,
    ColorChange,
    HeuristicResult,
    ModificationScope,
    ScopeDecision,
    ScopeOracleResponse,
    TextChangeTerms,
)
from .utils import dedupe_preserving_order, extract_first_json_object

logger = logging.getLogger(__name__)

S = ModificationScope

# Quoted forms come first: they are the only ones whose terms are trusted verbatim.
_QUOTED_TERM_PATTERNS = [
    re.compile(r"change\s+\"([^\"]+)\"\s+to\s+\"([^\"]+)\"", re.I),
    re.compile(r"replace\s+\"([^\"]+)\"\s+with\s+\"([^\"]+)\"", re.I),
    re.compile(r"update\s+\"([^\"]+)\"\s+to\s+\"([^\"]+)\"", re.I),
    re.compile(r"change\s+'([^']+)'\s+to\s+'([^']+)'", re.I),
    re.compile(r"replace\s+'([^']+)'\s+with\s+'([^']+)'", re.I),
    re.compile(r"update\s+'([^']+)'\s+to\s+'([^']+)'", re.I),
    re.compile(r"from\s+[\"']([^\"']+)[\"']\s+to\s+[\"']([^\"']+)[\"']", re.I),
]

_TEXT_CHANGE_PATTERNS = [
    re.compile(r"change\s+[\"']([^\"']+)[\"']\s+to\s+[\"']([^\"']+)[\"']", re.I),
    re.compile(r"replace\s+[\"']([^\"']+)[\"']\s+with\s+[\"']([^\"']+)[\"']", re.I),
    re.compile(r"update\s+[\"']([^\"']+)[\"']\s+to\s+[\"']([^\"']+)[\"']", re.I),
    re.compile(r"change\s+(\w+)\s+to\s+(\w+)", re.I),
    re.compile(r"replace\s+(\w+)\s+with\s+(\w+)", re.I),
    re.compile(r"update.*text.*to", re.I),
    re.compile(r"change.*heading.*to", re.I),
    re.compile(r"change.*label.*to", re.I),
    re.compile(r"update.*button.*text", re.I),
]

_THEME_KEYWORDS = [
    "change color", "change background", "change theme", "change colors",
    "make it red", "make it blue", "make it green", "make background",
    "color scheme", "color palette", "change to red", "change to blue",
    "button color", "text color", "background color", "primary color",
    "secondary color", "accent color", "theme color",
]

_COMPONENT_KEYWORDS = [
    "create", "add new", "build new", "make new", "new component",
    "new page", "new feature", "add a", "build a", "create a",
]

_TARGETED_KEYWORDS = [
    "change button", "make button", "this button", "the button",
    "change text", "update text", "modify text", "this text",
    "change label", "update label", "modify label", "the label",
    "one button", "single button", "specific", "only", "just change", "just update",
]

_FULL_FILE_KEYWORDS = [
    "redesign", "overhaul", "complete", "entire", "whole",
    "layout", "responsive", "mobile", "restructure", "rearrange",
    "organize", "reorder", "multiple", "several", "all buttons",
    "all text", "dark mode", "light mode", "header", "footer", "navigation",
]

_SPECIFIC_TARGET_RE = re.compile(r"\b(this|that|the|specific)\s+(button|text|element|component)\b")
_SINGLE_ELEMENT_RE = re.compile(r"\b(one|single|specific|this|that)\s+(button|text|color|element)\b")
_BREADTH_RE = re.compile(r"\b(all|every|multiple|several)\s+(buttons?|texts?|elements?)\b")

_COLOR_PATTERNS = [
    re.compile(r"(?:change|make|set)\s+(?:the\s+)?(?:background|bg)\s+(?:color\s+)?(?:to\s+)?([a-z]+|#[0-9a-f]{3,6})\b"),
    re.compile(r"(?:change|make|set)\s+(?:the\s+)?(?:primary|secondary|accent)\s+color\s+(?:to\s+)?([a-z]+|#[0-9a-f]{3,6})\b"),
    re.compile(r"(?:change|make|set)\s+(?:the\s+)?(?:button|text)\s+color\s+(?:to\s+)?([a-z]+|#[0-9a-f]{3,6})\b"),
    re.compile(r"make\s+it\s+([a-z]+)\b"),
    re.compile(r"color\s+(?:scheme|palette)\s+(?:to\s+)?([a-z]+)\b"),
]
_NAMED_COLOR_RE = re.compile(r"\b(red|blue|green|yellow|purple|orange|pink|black|white|gray|grey)\b")

_COMPONENT_NAME_PATTERNS = [
    re.compile(r"(?:add|create|build|make|new)\s+(?:a\s+)?([A-Z][a-zA-Z]+)"),
    re.compile(r"([A-Z][a-zA-Z]+)\s+(?:component|page)"),
    re.compile(r"(?:component|page)\s+(?:called|named)\s+([A-Z][a-zA-Z]+)", re.I),
]


# ---------------------------------------------------------------------------
# Heuristic pass (pure)
# ---------------------------------------------------------------------------

def extract_terms_from_prompt(prompt: str) -> Optional[TextChangeTerms]:
    """Pull search/replacement terms out of explicit `change X to Y` forms."""
    for pattern in _QUOTED_TERM_PATTERNS:
        m = pattern.search(prompt)
        if m:
            search, replacement = m.group(1).strip(), m.group(2).strip()
            if search and replacement and search.lower() != replacement.lower():
                return TextChangeTerms(search, replacement, generate_search_variations(search))

    m = re.search(r"change\s+(.+?)\s+to\s+(.+)$", prompt.strip(), re.I)
    if m:
        search = m.group(1).strip().strip("\"'")
        replacement = m.group(2).strip().rstrip(".!").strip("\"'")
        if search and replacement and search.lower() != replacement.lower():
            return TextChangeTerms(search, replacement, generate_search_variations(search))
    return None


def generate_search_variations(search_term: str) -> List[str]:
    """Case forms, de-quoted/de-punctuated forms, and first/last words."""
    variations = [
        search_term,
        search_term.lower(),
        search_term.upper(),
        search_term[:1].upper() + search_term[1:].lower(),
    ]

    without_quotes = re.sub(r"[\"']", "", search_term)
    if without_quotes != search_term:
        variations += [without_quotes, without_quotes.lower(), without_quotes.upper()]

    without_punct = re.sub(r"[^\w\s]", "", search_term).strip()
    if without_punct and without_punct != search_term:
        variations.append(without_punct)

    words = search_term.split()
    if len(words) > 1:
        variations += [words[0], words[-1]]

    return dedupe_preserving_order(v for v in variations if v.strip())


def heuristic_scope(prompt: str) -> HeuristicResult:
    """
    Keyword/pattern scoring across the five scopes.
    Deterministic, no I/O. Ties resolve to the most specific scope.
    """
    p = prompt.lower()
    scores: Dict[ModificationScope, int] = {s: 0 for s in SCOPE_PRIORITY}

    if any(pat.search(prompt) for pat in _TEXT_CHANGE_PATTERNS):
        scores[S.TEXT_REPLACE] += 50
    if "change" in p and any(w in p for w in ("text", "label", "heading")):
        scores[S.TEXT_REPLACE] += 25

    has_color_keyword = any(k in p for k in _THEME_KEYWORDS)
    is_global_color = has_color_keyword and not _SPECIFIC_TARGET_RE.search(p)
    if is_global_color:
        scores[S.THEME_CHANGE] += 40
        if re.search(r"\b(primary|secondary|accent|theme)\s+(color|colors)\b", p):
            scores[S.THEME_CHANGE] += 30
        if re.search(r"\b(change|make|set)\s+(background|bg)\s+(color|to)\b", p):
            scores[S.THEME_CHANGE] += 25
        if re.search(r"\b(color\s+scheme|color\s+palette|theme\s+colors)\b", p):
            scores[S.THEME_CHANGE] += 35

    scores[S.COMPONENT_ADDITION] += 20 * sum(1 for k in _COMPONENT_KEYWORDS if k in p)
    scores[S.TARGETED_NODES] += 15 * sum(1 for k in _TARGETED_KEYWORDS if k in p)
    scores[S.FULL_FILE] += 10 * sum(1 for k in _FULL_FILE_KEYWORDS if k in p)

    word_count = len(prompt.split())
    if (
        0 < word_count <= 5
        and scores[S.TEXT_REPLACE] == 0
        and not is_global_color
        and scores[S.COMPONENT_ADDITION] == 0
    ):
        scores[S.TARGETED_NODES] += 20
    elif word_count > 15:
        scores[S.FULL_FILE] += 10

    if _SINGLE_ELEMENT_RE.search(p):
        scores[S.TARGETED_NODES] += 25
    if _BREADTH_RE.search(p):
        scores[S.FULL_FILE] += 20

    best = max(scores.values())
    if best == 0:
        return HeuristicResult(S.FULL_FILE, 0.5, "Default for unclear requests", scores)

    # SCOPE_PRIORITY is most-specific-first, so the first hit wins ties.
    suggested = next(s for s in SCOPE_PRIORITY if scores[s] == best)
    confidence = min(0.95, best / 100.0)
    reasoning = _HEURISTIC_REASONS[suggested]
    if suggested is S.FULL_FILE:
        confidence = max(0.5, confidence)

    text_change = extract_terms_from_prompt(prompt) if suggested is S.TEXT_REPLACE else None
    return HeuristicResult(suggested, confidence, reasoning, scores, text_change)


_HEURISTIC_REASONS = {
    S.TEXT_REPLACE: "Simple text replacement pattern detected",
    S.THEME_CHANGE: "Global color change detected without a specific target",
    S.TARGETED_NODES: "Keywords suggest a specific element modification",
    S.COMPONENT_ADDITION: "Keywords suggest creating a new component or page",
    S.FULL_FILE: "Keywords suggest comprehensive changes",
}


def extract_color_changes(prompt: str) -> List[ColorChange]:
    p = prompt.lower()
    changes: List[ColorChange] = []
    for pattern in _COLOR_PATTERNS:
        for m in pattern.finditer(p):
            text = m.group(0)
            kind = "general"
            for candidate in ("background", "primary", "secondary", "accent", "button", "text"):
                if candidate in text or (candidate == "background" and " bg" in text):
                    kind = candidate
                    break
            changes.append(ColorChange(type=kind, color=m.group(1)))

    if not changes:
        m = _NAMED_COLOR_RE.search(p)
        if m:
            changes.append(ColorChange(type="general", color=m.group(1)))
    return changes


def extract_component_name(prompt: str) -> str:
    for pattern in _COMPONENT_NAME_PATTERNS:
        m = pattern.search(prompt)
        if m:
            name = m.group(1).strip()
            return name[:1].upper() + name[1:]
    return "NewComponent"


def determine_component_type(prompt: str) -> str:
    p = prompt.lower()
    if any(w in p for w in ("page", "route", "screen")):
        return "page"
    if any(w in p for w in ("app", "main", "application")):
        return "app"
    return "component"


# ---------------------------------------------------------------------------
# Oracle confirmation
# ---------------------------------------------------------------------------

_SYSTEM = (
    "You classify UI modification requests for a code-editing service.\n"
    "Choose the MOST SPECIFIC method that can fulfill the request.\n"
    "Return ONLY valid JSON matching the schema.\n"
)


def build_scope_prompt(
    prompt: str,
    project_summary: str,
    conversation_context: str,
    heuristic: HeuristicResult,
) -> str:
    parts = [f'USER REQUEST: "{prompt}"', ""]
    if project_summary:
        parts += ["PROJECT SUMMARY:", project_summary, ""]
    if conversation_context:
        parts += ["CONVERSATION CONTEXT:", conversation_context, ""]
    parts += [
        "HEURISTIC ANALYSIS:",
        f"Suggested: {heuristic.suggested_scope.value} ({heuristic.confidence:.0%} confidence)",
        f"Reason: {heuristic.reasoning}",
        "",
        "METHOD OPTIONS (in order of preference):",
        "1. TEXT_REPLACE - replace specific visible text (labels, headings, button text).",
        "   e.g. \"change 'Welcome' to 'Hello'\", \"replace 'Contact Us' with 'Get In Touch'\".",
        "   You MUST give the exact search term, the exact replacement term, and search variations",
        "   (case forms, de-punctuated forms, partial-word forms).",
        "2. THEME_CHANGE - global color/theme changes with no specific target element.",
        "3. TARGETED_NODES - one specific existing element (\"make THIS text bold\").",
        "4. COMPONENT_ADDITION - create a new component, page or feature.",
        "5. FULL_FILE - layout restructuring or multiple related changes (last resort).",
        "",
        "JSON schema:",
        "{",
        '  "scope": "TEXT_REPLACE"|"THEME_CHANGE"|"TARGETED_NODES"|"COMPONENT_ADDITION"|"FULL_FILE",',
        '  "reasoning": string,',
        '  "textChangeAnalysis": {            // only for TEXT_REPLACE',
        '    "searchTerm": string,',
        '    "replacementTerm": string,',
        '    "searchVariations": [string]',
        "  }",
        "}",
    ]
    return "\n".join(parts)


def parse_scope_response(text: str) -> Tuple[ModificationScope, str, Optional[TextChangeTerms]]:
    """Strictly parse an oracle answer. Raises ClassificationError on anything unusable."""
    try:
        payload = ScopeOracleResponse.model_validate_json(extract_first_json_object(text))
        scope = ModificationScope.parse(payload.scope)
    except (ValueError, ValidationError) as e:
        raise ClassificationError(f"Unusable classification response: {e}") from e

    terms: Optional[TextChangeTerms] = None
    if scope is S.TEXT_REPLACE:
        analysis = payload.text_change_analysis
        if analysis is None:
            raise ClassificationError("TEXT_REPLACE without textChangeAnalysis")
        terms = TextChangeTerms(
            search_term=analysis.search_term.strip(),
            replacement_term=analysis.replacement_term.strip(),
            search_variations=dedupe_preserving_order(v.strip() for v in analysis.search_variations),
        )
        if not terms.is_usable():
            raise ClassificationError("TEXT_REPLACE with empty or identical terms")
        if not terms.search_variations:
            terms.search_variations = generate_search_variations(terms.search_term)

    return scope, payload.reasoning or "No reasoning provided", terms


class ScopeClassifier:
    """Heuristic pass, then oracle confirmation; never fails the request."""

    def __init__(self, oracle: Optional[Oracle] = None):
        self.oracle = oracle

    def classify(
        self,
        prompt: str,
        project_summary: str = "",
        conversation_context: str = "",
    ) -> ScopeDecision:
        heuristic = heuristic_scope(prompt)
        logger.info(
            "Heuristic suggests %s (confidence %.2f)",
            heuristic.suggested_scope.value,
            heuristic.confidence,
        )

        if self.oracle is None:
            return self._decision_from_heuristic(prompt, heuristic, "oracle disabled")

        try:
            scope, reasoning, terms = self._ask_oracle(prompt, project_summary, conversation_context, heuristic)
        except ClassificationError as e:
            logger.warning("Classification fell back to heuristic: %s", e)
            return self._decision_from_heuristic(prompt, heuristic, str(e))

        decision = ScopeDecision(
            scope=scope,
            reasoning=reasoning,
            confidence=max(heuristic.confidence, 0.8) if scope is heuristic.suggested_scope else 0.8,
            source="oracle",
            text_change=terms,
        )
        self._fill_payload(prompt, decision)
        logger.info("Scope decision: %s (%s)", decision.scope.value, decision.source)
        return decision

    def _ask_oracle(
        self,
        prompt: str,
        project_summary: str,
        conversation_context: str,
        heuristic: HeuristicResult,
    ) -> Tuple[ModificationScope, str, Optional[TextChangeTerms]]:
        user = build_scope_prompt(prompt, project_summary, conversation_context, heuristic)
        try:
            text = self.oracle.complete(_SYSTEM, user)
        except Exception as e:  # transport errors of any client
            raise ClassificationError(f"Oracle call failed: {type(e).__name__}: {e}") from e
        return parse_scope_response(text)

    def _decision_from_heuristic(self, prompt: str, heuristic: HeuristicResult, why: str) -> ScopeDecision:
        decision = ScopeDecision(
            scope=heuristic.suggested_scope,
            reasoning=f"Heuristic fallback ({why}): {heuristic.reasoning}",
            confidence=heuristic.confidence,
            source="heuristic",
            text_change=heuristic.text_change,
        )
        self._fill_payload(prompt, decision)
        return decision

    @staticmethod
    def _fill_payload(prompt: str, decision: ScopeDecision) -> None:
        if decision.scope is S.COMPONENT_ADDITION:
            decision.component_name = extract_component_name(prompt)
            decision.component_type = determine_component_type(prompt)
        elif decision.scope is S.THEME_CHANGE:
            decision.color_changes = extract_color_changes(prompt)
        elif decision.scope is S.TEXT_REPLACE and decision.text_change is None:
            decision.text_change = extract_terms_from_prompt(prompt)
