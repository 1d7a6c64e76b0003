"""
High-level pipeline:
- classify the request (heuristic + oracle)
- locate candidate files
- extract text nodes (exact, then fragmented)
- ask the oracle for per-batch proposals
- apply the proposals through the strategy cascade
- aggregate everything into one EditResult
"""

from __future__ import annotations

import logging
import threading
import time
from statistics import mean
from typing import Callable, Dict, List, Optional

from .applier import ApplyReport, PatchApplier
from .classifier import ScopeClassifier, extract_terms_from_prompt, generate_search_variations
from .config import HybridEditConfig
from .errors import HybridEditError, NoCandidateFilesError, NoNodesExtractedError
from .extractor import StructuralExtractor
from .llm import Oracle, OpenRouterOracle
from .locator import CandidateLocator
from .models import (
    BatchReport,
    BatchResult,
    CandidateFile,
    EditResult,
    ModificationRequest,
    ModificationScope,
    PreviewNode,
    PreviewResult,
    ScopeDecision,
    TextChangeTerms,
)
from .proposals import ProposalEngine, make_batches
from .report import save_report
from .session import InMemorySessionStore, SessionStore, recent_changes_summary
from .workspace import DirectoryWorkspace, InMemoryWorkspace, Workspace

logger = logging.getLogger(__name__)

ProgressFn = Callable[[str], None]
ScopeHandler = Callable[[ModificationRequest, ScopeDecision, Workspace], EditResult]


def aggregate(
    batch_results: List[BatchResult],
    report: ApplyReport,
    *,
    started: float,
    files_scanned: int,
    nodes_extracted: int,
) -> EditResult:
    """Fold batch and apply outcomes into the result contract."""
    total = report.total_replacements
    confidences = [p.confidence for p, _ in report.applied]
    ok_batches = sum(1 for b in batch_results if b.success)
    strategies = ", ".join(f"{k}={v}" for k, v in sorted(report.strategy_counts.items())) or "none"

    error: Optional[str] = None
    if total == 0:
        failed = [b for b in batch_results if not b.success]
        if failed and len(failed) == len(batch_results):
            error = "All proposal batches failed: " + "; ".join(b.error_message or b.batch_id for b in failed)
        elif report.file_errors:
            error = "Could not update files: " + "; ".join(f"{p}: {e}" for p, e in sorted(report.file_errors.items()))
        else:
            error = "No modifications were applied"
    io_note = f"; {len(report.file_errors)} files failed to update" if report.file_errors else ""

    return EditResult(
        success=total > 0,
        modified_files=report.modified_files,
        total_replacements=total,
        batches=[BatchReport.from_batch(b) for b in batch_results],
        diffs=report.diffs,
        average_confidence=round(mean(confidences), 4) if confidences else 0.0,
        processing_time_ms=int((time.monotonic() - started) * 1000),
        error=error,
        skipped_nodes=len(report.skipped),
        files_scanned=files_scanned,
        nodes_extracted=nodes_extracted,
        strategy_summary=(
            f"Hybrid text replacement: {nodes_extracted} nodes in {len(batch_results)} batches "
            f"({ok_batches} succeeded); {total} replacements in {len(report.changes)} files; "
            f"strategies: {strategies}{io_note}"
        ),
        applied_changes=report.changes,
        scope=ModificationScope.TEXT_REPLACE.value,
    )


class TextReplaceEngine:
    """Locate -> extract -> propose -> apply for one text replacement request."""

    def __init__(
        self,
        oracle: Oracle,
        cfg: Optional[HybridEditConfig] = None,
        *,
        session_store: Optional[SessionStore] = None,
        on_progress: Optional[ProgressFn] = None,
    ):
        self.cfg = cfg or HybridEditConfig()
        self.oracle = oracle
        self.session_store = session_store
        self.on_progress = on_progress
        self.locator = CandidateLocator(self.cfg.locator)
        self.extractor = StructuralExtractor(self.cfg.extraction)
        self.proposer = ProposalEngine(oracle, self.cfg.proposals)

    def _progress(self, message: str) -> None:
        logger.info(message)
        if self.on_progress is not None:
            self.on_progress(message)

    def _locate(self, workspace: Workspace, terms: TextChangeTerms):
        """Try the search term, then each variation, until some file qualifies."""
        scanned = 0
        for term in [terms.search_term] + [v for v in terms.search_variations if v != terms.search_term]:
            candidates, scanned = self.locator.locate(workspace, term)
            if candidates:
                if term != terms.search_term:
                    logger.info("Located candidates using variation %r", term)
                return candidates, scanned, term
        return [], scanned, terms.search_term

    def run(
        self,
        workspace: Workspace,
        terms: TextChangeTerms,
        prompt: str,
        *,
        session_id: str = "default",
        dry_run: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> EditResult:
        """Never raises for pipeline failures; they come back as EditResult.error."""
        started = time.monotonic()
        deadline = None
        if self.cfg.runtime.deadline_sec is not None:
            deadline = started + self.cfg.runtime.deadline_sec

        if not terms.is_usable():
            return EditResult.failure("Could not extract search and replacement terms from the request")
        if not terms.search_variations:
            terms.search_variations = generate_search_variations(terms.search_term)

        files_scanned = 0
        nodes_extracted = 0
        error: Optional[str] = None
        try:
            self._progress(f"Searching for '{terms.search_term}'")
            candidates, files_scanned, term = self._locate(workspace, terms)
            if not candidates:
                raise NoCandidateFilesError(f"No files contain text matching '{terms.search_term}'")
            self._progress(f"Found {len(candidates)} candidate files")

            extraction = self.extractor.extract(candidates, term)
            nodes_extracted = len(extraction.nodes)
            if not extraction.nodes:
                raise NoNodesExtractedError(
                    f"Found {len(candidates)} candidate files but no text nodes matching '{term}'"
                )
            self._progress(f"Extracted {nodes_extracted} text nodes")

            effective = TextChangeTerms(term, terms.replacement_term, terms.search_variations)
            batches = make_batches(extraction, effective, prompt, self.cfg.proposals, self.cfg.extraction)
            self._progress(f"Requesting proposals for {len(batches)} batches")
            batch_results = self.proposer.run(batches, deadline=deadline, cancel=cancel)

            applier = PatchApplier(self.cfg.apply, session_store=self.session_store, session_id=session_id)
            report = applier.apply(
                workspace,
                batch_results,
                description=f"Replaced '{term}' with '{terms.replacement_term}'",
                dry_run=dry_run,
            )
        except (HybridEditError, OSError) as e:
            logger.warning("Text replacement failed: %s", e)
            error = str(e)
        except Exception as e:  # callers get an EditResult, never a raw exception
            logger.exception("Unexpected error during text replacement")
            error = f"Unexpected error: {type(e).__name__}: {e}"
        if error is not None:
            return EditResult.failure(
                error,
                files_scanned=files_scanned,
                nodes_extracted=nodes_extracted,
                processing_time_ms=int((time.monotonic() - started) * 1000),
                scope=ModificationScope.TEXT_REPLACE.value,
            )

        result = aggregate(
            batch_results,
            report,
            started=started,
            files_scanned=files_scanned,
            nodes_extracted=nodes_extracted,
        )
        if self.session_store is not None and not dry_run:
            for change in result.applied_changes:
                self.session_store.append_change(session_id, change)
        self._progress(
            f"Completed: {result.total_replacements} replacements in {len(result.modified_files)} files"
        )
        return result

    def preview(self, workspace: Workspace, search_term: str) -> PreviewResult:
        """Locate and extract only; no oracle call, no writes."""
        candidates: List[CandidateFile] = []
        try:
            candidates, _ = self.locator.locate(workspace, search_term)
        except (HybridEditError, OSError) as e:
            return PreviewResult(success=False, summary=f"Preview failed: {e}")
        if not candidates:
            return PreviewResult(success=False, summary=f"No files contain text matching '{search_term}'")

        extraction = self.extractor.extract(candidates, search_term)
        nodes = [
            PreviewNode(
                path=n.path,
                content=n.content,
                kind=n.kind.value,
                start_line=n.start_line,
                end_line=n.end_line,
                fragment_count=max(1, len(n.fragments)),
            )
            for n in extraction.nodes
        ]
        return PreviewResult(
            success=bool(nodes),
            candidate_files={c.path: c.strategy.value for c in candidates},
            nodes=nodes,
            estimated_changes=len(nodes),
            summary=f"Found {len(nodes)} text nodes in {len(candidates)} files",
        )


class ModificationService:
    """
    Entry point for a modification request: classify, then dispatch.

    TEXT_REPLACE runs the hybrid engine; the sibling scopes go to handlers
    registered by the caller.
    """

    def __init__(
        self,
        engine: TextReplaceEngine,
        classifier: ScopeClassifier,
        *,
        session_store: Optional[SessionStore] = None,
        handlers: Optional[Dict[ModificationScope, ScopeHandler]] = None,
    ):
        self.engine = engine
        self.classifier = classifier
        self.session_store = session_store
        self.handlers: Dict[ModificationScope, ScopeHandler] = dict(handlers or {})

    def register(self, scope: ModificationScope, handler: ScopeHandler) -> None:
        self.handlers[scope] = handler

    def handle(
        self,
        request: ModificationRequest,
        workspace: Optional[Workspace] = None,
        *,
        session_id: str = "default",
        dry_run: bool = False,
    ) -> EditResult:
        try:
            workspace = workspace if workspace is not None else InMemoryWorkspace(request.files or {})
            return self._dispatch(request, workspace, session_id, dry_run)
        except (HybridEditError, OSError) as e:
            logger.warning("Modification request failed: %s", e)
            return EditResult.failure(str(e))
        except Exception as e:  # callers get an EditResult, never a raw exception
            logger.exception("Unexpected error while handling a modification request")
            return EditResult.failure(f"Unexpected error: {type(e).__name__}: {e}")

    def _dispatch(
        self,
        request: ModificationRequest,
        workspace: Workspace,
        session_id: str,
        dry_run: bool,
    ) -> EditResult:
        context = request.conversation_context
        if not context and self.session_store is not None:
            context = recent_changes_summary(self.session_store, session_id)

        decision = self.classifier.classify(request.prompt, request.context_summary, context)

        if decision.scope is ModificationScope.TEXT_REPLACE:
            terms = decision.text_change or extract_terms_from_prompt(request.prompt)
            if terms is None:
                return EditResult.failure(
                    "Could not extract search and replacement terms from the request",
                    scope=decision.scope.value,
                )
            return self.engine.run(workspace, terms, request.prompt, session_id=session_id, dry_run=dry_run)

        handler = self.handlers.get(decision.scope)
        if handler is None:
            return EditResult.failure(
                f"No handler registered for scope {decision.scope.value}",
                scope=decision.scope.value,
            )
        try:
            result = handler(request, decision, workspace)
        except Exception as e:  # handlers are caller code; any failure becomes a result
            logger.warning("Handler for %s failed: %s", decision.scope.value, e)
            return EditResult.failure(str(e), scope=decision.scope.value)
        if result.scope is None:
            result.scope = decision.scope.value
        return result


def build_service(
    cfg: HybridEditConfig,
    *,
    oracle: Optional[Oracle] = None,
    session_store: Optional[SessionStore] = None,
    on_progress: Optional[ProgressFn] = None,
) -> ModificationService:
    oracle = oracle if oracle is not None else OpenRouterOracle.from_config(cfg.llm)
    store = session_store if session_store is not None else InMemorySessionStore()
    engine = TextReplaceEngine(oracle, cfg, session_store=store, on_progress=on_progress)
    return ModificationService(engine, ScopeClassifier(oracle), session_store=store)


def run_from_config(
    cfg: HybridEditConfig,
    prompt: str,
    *,
    session_id: str = "default",
    dry_run: bool = False,
    oracle: Optional[Oracle] = None,
    session_store: Optional[SessionStore] = None,
) -> EditResult:
    """Run the full pipeline against `project.root` and write the report."""
    service = build_service(cfg, oracle=oracle, session_store=session_store)
    workspace = DirectoryWorkspace(cfg.project.root)
    result = service.handle(ModificationRequest(prompt=prompt), workspace, session_id=session_id, dry_run=dry_run)
    save_report(result, cfg.project.output_dir)
    return result
