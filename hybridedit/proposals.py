"""
Change proposals: batch the extracted nodes, ask the oracle for edits, and
validate every answer before anything downstream trusts it.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError

from .config import ExtractionConfig, ProposalConfig
from .errors import BatchOracleError
from .llm import Oracle
from .models import (
    BatchResult,
    ExtractionResult,
    InvalidProposal,
    ModificationBatch,
    ModificationProposal,
    OracleBatchResponse,
    OracleModification,
    ProposalOutcome,
    TextChangeTerms,
    TextNode,
    ValidProposal,
)
from .utils import count_markup_tags, extract_first_json_object, tag_balance

logger = logging.getLogger(__name__)

_SYSTEM = (
    "You are a precise code modification assistant for UI source files.\n"
    "You change visible text and nothing else: every tag, attribute, class name and\n"
    "expression in a snippet must survive unchanged.\n"
    "Return ONLY valid JSON matching the requested schema.\n"
)


def build_snippet(node: TextNode, source: str, max_lines: int) -> str:
    """
    Smallest structural snippet around a node: the enclosing element when the
    file was parsed, otherwise a line window widened until its tags balance.
    """
    if node.container:
        return node.container

    lines = source.split("\n")
    start, end = node.start_line - 1, node.end_line
    while end - start <= max_lines:
        window = "\n".join(lines[start:end])
        if count_markup_tags(window) and tag_balance(window) == 0:
            return window
        if start == 0 and end >= len(lines):
            break
        start = max(0, start - 1)
        end = min(len(lines), end + 1)

    return "\n".join(lines[node.start_line - 1: node.end_line])


def make_batches(
    extraction: ExtractionResult,
    terms: TextChangeTerms,
    prompt: str,
    cfg: ProposalConfig,
    extraction_cfg: Optional[ExtractionConfig] = None,
) -> List[ModificationBatch]:
    """Fixed-size batches in extraction order, ids batch_1, batch_2, ..."""
    max_lines = (extraction_cfg or ExtractionConfig()).max_snippet_lines
    nodes = extraction.nodes
    batches: List[ModificationBatch] = []
    for i in range(0, len(nodes), cfg.batch_size):
        chunk = nodes[i: i + cfg.batch_size]
        batches.append(
            ModificationBatch(
                batch_id=f"batch_{len(batches) + 1}",
                nodes=list(chunk),
                search_term=terms.search_term,
                replacement_term=terms.replacement_term,
                prompt=prompt,
                search_variations=list(terms.search_variations),
                snippets=[build_snippet(n, extraction.sources.get(n.path, ""), max_lines) for n in chunk],
            )
        )
    logger.info("Created %d batches from %d nodes", len(batches), len(nodes))
    return batches


def build_batch_prompt(batch: ModificationBatch) -> str:
    parts = [
        f"Batch: {batch.batch_id}",
        f'User request: "{batch.prompt}"',
        f'Search term: "{batch.search_term}"',
        f'Replacement term: "{batch.replacement_term}"',
    ]
    if batch.search_variations:
        parts.append("Search variations: " + ", ".join(f'"{v}"' for v in batch.search_variations))
    parts += [
        "",
        "For every node below, rewrite its snippet so the target text reads as requested.",
        "Handle these cases, always keeping tags, attributes and expressions intact:",
        "1. The whole term sits in one text node: swap the literal text.",
        "2. The term is split across several tags in the snippet: redistribute the",
        "   replacement words across the same text positions, in order.",
        "3. The replacement is longer or shorter than the original: map its words onto the",
        "   related text nodes by meaning, using element names and roles as hints.",
        "Set shouldApply=false when the node is not really the requested text.",
        "",
    ]
    for i, (node, snippet) in enumerate(zip(batch.nodes, batch.snippets)):
        parts += [
            f"NODE {i}",
            f"File: {node.path}",
            f"Lines: {node.start_line}-{node.end_line}",
            f"Kind: {node.kind.value}",
            f"Fragmented: {'yes' if node.is_fragmented else 'no'}",
            f"Target text: {json.dumps(node.content, ensure_ascii=False)}",
            "Snippet:",
            "```jsx",
            snippet,
            "```",
            "",
        ]
    parts += [
        "JSON schema:",
        "{",
        '  "modifications": [',
        "    {",
        '      "nodeIndex": number,            // 0-based NODE number above',
        '      "originalSnippet": string,      // snippet exactly as given',
        '      "modifiedSnippet": string,',
        '      "originalContent": string,      // the target text',
        '      "modifiedContent": string,      // the new text',
        '      "confidence": number,           // 0..1',
        '      "shouldApply": boolean,',
        '      "reasoning": string,',
        '      "strategy": string,',
        '      "warnings": [string]',
        "    }",
        "  ],",
        '  "overallStrategy": string,',
        '  "batchConfidence": number',
        "}",
    ]
    return "\n".join(parts)


def validate_modification(
    batch: ModificationBatch,
    raw: object,
    seen: set,
    min_confidence: float = 0.0,
) -> ProposalOutcome:
    """One untrusted modification -> ValidProposal | InvalidProposal."""
    index = raw.get("nodeIndex") if isinstance(raw, dict) else None
    index = index if isinstance(index, int) and not isinstance(index, bool) else None
    try:
        mod = OracleModification.model_validate(raw)
    except ValidationError as e:
        return InvalidProposal(index, f"schema violation: {e.error_count()} error(s)")

    if mod.node_index >= len(batch.nodes):
        return InvalidProposal(mod.node_index, f"nodeIndex out of range (batch has {len(batch.nodes)} nodes)")
    if mod.node_index in seen:
        return InvalidProposal(mod.node_index, "duplicate nodeIndex")
    seen.add(mod.node_index)

    node = batch.nodes[mod.node_index]
    should_apply = mod.should_apply and mod.confidence >= min_confidence
    if mod.should_apply and not should_apply:
        logger.debug("%s node %d below min confidence (%.2f)", batch.batch_id, mod.node_index, mod.confidence)

    return ValidProposal(
        ModificationProposal(
            batch_id=batch.batch_id,
            node_index=mod.node_index,
            node=node,
            original_snippet=mod.original_snippet,
            modified_snippet=mod.modified_snippet,
            original_content=mod.original_content if mod.original_content is not None else node.content,
            modified_content=mod.modified_content if mod.modified_content is not None else batch.replacement_term,
            confidence=mod.confidence,
            should_apply=should_apply,
            reasoning=mod.reasoning,
            strategy=mod.strategy,
            warnings=list(mod.warnings),
        )
    )


def parse_batch_response(batch: ModificationBatch, text: str, min_confidence: float = 0.0) -> BatchResult:
    """Raises BatchOracleError when the envelope itself is unusable."""
    try:
        payload = OracleBatchResponse.model_validate_json(extract_first_json_object(text))
    except (ValueError, ValidationError) as e:
        raise BatchOracleError(batch.batch_id, f"unparseable response: {e}") from e

    seen: set = set()
    outcomes = [validate_modification(batch, raw, seen, min_confidence) for raw in payload.modifications]
    for bad in (o for o in outcomes if isinstance(o, InvalidProposal)):
        logger.warning("%s: invalid proposal for node %s: %s", batch.batch_id, bad.node_index, bad.reason)

    return BatchResult(
        batch_id=batch.batch_id,
        outcomes=outcomes,
        success=True,
        error_message=None,
        processed_nodes=len(batch.nodes),
        overall_strategy=payload.overall_strategy,
        batch_confidence=payload.batch_confidence,
    )


def failed_batch(batch: ModificationBatch, message: str) -> BatchResult:
    return BatchResult(
        batch_id=batch.batch_id,
        outcomes=[],
        success=False,
        error_message=message,
        processed_nodes=len(batch.nodes),
    )


class ProposalEngine:
    """Bounded-concurrency fan-out of one oracle call per batch."""

    def __init__(self, oracle: Oracle, cfg: Optional[ProposalConfig] = None):
        self.oracle = oracle
        self.cfg = cfg or ProposalConfig()

    def process_batch(self, batch: ModificationBatch) -> BatchResult:
        logger.debug("Processing %s (%d nodes)", batch.batch_id, len(batch.nodes))
        try:
            text = self._call(batch)
            result = parse_batch_response(batch, text, self.cfg.min_confidence)
        except BatchOracleError as e:
            logger.warning("Batch failed: %s", e)
            return failed_batch(batch, str(e))

        logger.info(
            "%s: %d proposals (%d to apply, %d invalid)",
            batch.batch_id, len(result.proposals), result.successful_modifications, len(result.invalid),
        )
        return result

    def _call(self, batch: ModificationBatch) -> str:
        try:
            return self.oracle.complete(_SYSTEM, build_batch_prompt(batch))
        except Exception as e:  # transport errors of any client
            raise BatchOracleError(batch.batch_id, f"oracle call failed: {type(e).__name__}: {e}") from e

    def run(
        self,
        batches: Sequence[ModificationBatch],
        *,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[BatchResult]:
        """
        Process all batches. `deadline` is a time.monotonic() value.
        Batches still pending at the deadline (or on cancel) are abandoned and
        reported as failed; results come back in batch order.
        """
        if not batches:
            return []

        results: Dict[str, BatchResult] = {}
        pool = ThreadPoolExecutor(max_workers=min(self.cfg.max_concurrency, len(batches)))
        try:
            futures: Dict[Future, ModificationBatch] = {pool.submit(self.process_batch, b): b for b in batches}
            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=self._poll_timeout(deadline, cancel), return_when=FIRST_COMPLETED)
                for f in done:
                    b = futures[f]
                    results[b.batch_id] = f.result()

                reason = self._stop_reason(deadline, cancel)
                if pending and reason:
                    in_flight = 0
                    for f in pending:
                        if not f.cancel():
                            in_flight += 1
                        b = futures[f]
                        logger.warning("Abandoning %s: %s", b.batch_id, reason)
                        results[b.batch_id] = failed_batch(b, f"abandoned: {reason}")
                    if in_flight:
                        # worker threads cannot be interrupted; their replies are dropped
                        logger.warning(
                            "%d oracle calls still in flight after %s; not waiting for them", in_flight, reason
                        )
                    break
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return [results[b.batch_id] for b in batches]

    @staticmethod
    def _poll_timeout(deadline: Optional[float], cancel: Optional[threading.Event]) -> Optional[float]:
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        if cancel is not None:
            timeout = 0.05 if timeout is None else min(timeout, 0.05)
        return timeout

    @staticmethod
    def _stop_reason(deadline: Optional[float], cancel: Optional[threading.Event]) -> str:
        if cancel is not None and cancel.is_set():
            return "cancelled"
        if deadline is not None and time.monotonic() >= deadline:
            return "deadline exceeded"
        return ""
