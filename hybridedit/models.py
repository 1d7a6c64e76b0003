"""
Data models: pipeline records, oracle response schemas, and the result contract.

Records passed between stages are plain dataclasses. Anything that crosses the
oracle boundary or leaves the engine is a pydantic model, validated on the way
in and serialized (camelCase) on the way out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Request / scope decision
# ---------------------------------------------------------------------------

class ModificationScope(str, Enum):
    FULL_FILE = "FULL_FILE"
    TARGETED_NODES = "TARGETED_NODES"
    COMPONENT_ADDITION = "COMPONENT_ADDITION"
    THEME_CHANGE = "THEME_CHANGE"
    TEXT_REPLACE = "TEXT_REPLACE"

    @classmethod
    def parse(cls, value: Any) -> "ModificationScope":
        """Accept canonical names plus the legacy spellings oracles still emit."""
        key = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
        key = _SCOPE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Invalid scope: {value!r}") from None


_SCOPE_ALIASES = {
    "TEXT_BASED_CHANGE": "TEXT_REPLACE",
    "TEXT_CHANGE": "TEXT_REPLACE",
    "TAILWIND_CHANGE": "THEME_CHANGE",
    "THEME": "THEME_CHANGE",
    "TARGETED": "TARGETED_NODES",
    "COMPONENT": "COMPONENT_ADDITION",
}

# Most specific first; used to break ties.
SCOPE_PRIORITY: Tuple[ModificationScope, ...] = (
    ModificationScope.TEXT_REPLACE,
    ModificationScope.THEME_CHANGE,
    ModificationScope.TARGETED_NODES,
    ModificationScope.COMPONENT_ADDITION,
    ModificationScope.FULL_FILE,
)


@dataclass
class ModificationRequest:
    prompt: str
    files: Optional[Dict[str, str]] = None
    context_summary: str = ""
    conversation_context: str = ""


@dataclass
class TextChangeTerms:
    search_term: str
    replacement_term: str
    search_variations: List[str] = field(default_factory=list)

    def is_usable(self) -> bool:
        return bool(self.search_term.strip()) and bool(self.replacement_term.strip()) \
            and self.search_term != self.replacement_term


@dataclass
class ColorChange:
    type: str  # background|primary|secondary|accent|button|text|general
    color: str


@dataclass
class HeuristicResult:
    suggested_scope: ModificationScope
    confidence: float
    reasoning: str
    scores: Dict[ModificationScope, int] = field(default_factory=dict)
    text_change: Optional[TextChangeTerms] = None


@dataclass
class ScopeDecision:
    scope: ModificationScope
    reasoning: str
    confidence: float = 0.0
    source: str = "heuristic"  # oracle|heuristic
    text_change: Optional[TextChangeTerms] = None
    component_name: Optional[str] = None
    component_type: Optional[str] = None  # component|page|app
    color_changes: List[ColorChange] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Locate / extract
# ---------------------------------------------------------------------------

class LocatorStrategy(str, Enum):
    EXACT = "exact"
    CASE_INSENSITIVE = "case_insensitive"
    KEY_PHRASES = "key_phrases"
    TOKEN_OVERLAP = "token_overlap"


@dataclass(frozen=True)
class CandidateFile:
    path: str
    content: str
    strategy: LocatorStrategy
    file_type: str


class NodeKind(str, Enum):
    JSX_TEXT = "jsx_text"
    EXPRESSION_LITERAL = "expression_literal"
    STRING_LITERAL = "string_literal"
    LINE_MATCH = "line_match"
    FRAGMENTED = "fragmented"


@dataclass(frozen=True)
class Fragment:
    """One contributing sub-node of a fragmented match."""
    content: str
    kind: NodeKind
    start_line: int
    end_line: int
    start_column: int
    end_column: int


@dataclass
class TextNode:
    """
    A unit of text inside one file.

    Lines are 1-based, columns 0-based character offsets. `container` is the
    exact source of the smallest enclosing element, when the file was parsed.
    """
    path: str
    content: str
    kind: NodeKind
    start_line: int
    end_line: int
    start_column: int
    end_column: int
    context_before: List[str] = field(default_factory=list)
    context_after: List[str] = field(default_factory=list)
    fragments: Tuple[Fragment, ...] = ()
    relevance: float = 0.0
    container: Optional[str] = None
    container_start_line: int = 0

    @property
    def is_fragmented(self) -> bool:
        return len(self.fragments) > 1

    @property
    def dedupe_key(self) -> Tuple[str, int, int, str]:
        return (self.path, self.start_line, self.end_line, self.content.strip())


@dataclass
class ExtractionResult:
    nodes: List[TextNode]
    sources: Dict[str, str]  # path -> content snapshot the nodes were taken from
    duplicates_removed: int = 0


@dataclass
class ModificationBatch:
    batch_id: str
    nodes: List[TextNode]
    search_term: str
    replacement_term: str
    prompt: str
    search_variations: List[str] = field(default_factory=list)
    snippets: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Oracle schemas (untrusted input)
# ---------------------------------------------------------------------------

class _OracleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, strict=True)


class OracleModification(_OracleModel):
    """One proposal as returned by the oracle. Validated before any field is used."""
    node_index: int = Field(..., ge=0)
    original_snippet: str
    modified_snippet: str
    original_content: Optional[str] = None
    modified_content: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    should_apply: bool
    reasoning: str = ""
    strategy: str = "text_replacement"
    warnings: List[str] = Field(default_factory=list)


class OracleBatchResponse(_OracleModel):
    modifications: List[Any]
    overall_strategy: str = ""
    batch_confidence: float = Field(0.0, ge=0.0, le=1.0)


class TextChangeAnalysis(_OracleModel):
    search_term: str
    replacement_term: str
    search_variations: List[str] = Field(default_factory=list)


class ScopeOracleResponse(_OracleModel):
    scope: str
    reasoning: str = ""
    text_change_analysis: Optional[TextChangeAnalysis] = None


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

@dataclass
class ModificationProposal:
    batch_id: str
    node_index: int
    node: TextNode
    original_snippet: str
    modified_snippet: str
    original_content: str
    modified_content: str
    confidence: float
    should_apply: bool
    reasoning: str
    strategy: str
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ValidProposal:
    proposal: ModificationProposal


@dataclass(frozen=True)
class InvalidProposal:
    node_index: Optional[int]
    reason: str


ProposalOutcome = Union[ValidProposal, InvalidProposal]


@dataclass
class BatchResult:
    batch_id: str
    outcomes: List[ProposalOutcome]
    success: bool
    error_message: Optional[str]
    processed_nodes: int
    overall_strategy: str = ""
    batch_confidence: float = 0.0

    @property
    def proposals(self) -> List[ModificationProposal]:
        return [o.proposal for o in self.outcomes if isinstance(o, ValidProposal)]

    @property
    def invalid(self) -> List[InvalidProposal]:
        return [o for o in self.outcomes if isinstance(o, InvalidProposal)]

    @property
    def successful_modifications(self) -> int:
        return sum(1 for p in self.proposals if p.should_apply)

    @property
    def rejected(self) -> int:
        return sum(1 for p in self.proposals if not p.should_apply)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

class ApplyStrategy(str, Enum):
    EXACT_SNIPPET = "exact_snippet"
    NORMALIZED_SNIPPET = "normalized_snippet"
    FRAGMENT_REDISTRIBUTION = "fragment_redistribution"
    DIRECT_CONTENT = "direct_content"
    LINE_ANCHORED = "line_anchored"


# ---------------------------------------------------------------------------
# Result contract
# ---------------------------------------------------------------------------

class _ContractModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_contract(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class AppliedChange(_ContractModel):
    """One modified file, handed to the caller's session log."""
    path: str
    strategy: str
    replacement_count: int
    diff: str = ""
    description: str = ""


class BatchReport(_ContractModel):
    batch_id: str
    success: bool
    error_message: Optional[str] = None
    processed_nodes: int = 0
    successful_modifications: int = 0
    rejected_modifications: int = 0
    invalid_modifications: int = 0
    overall_strategy: str = ""
    batch_confidence: float = 0.0

    @classmethod
    def from_batch(cls, b: BatchResult) -> "BatchReport":
        return cls(
            batch_id=b.batch_id,
            success=b.success,
            error_message=b.error_message,
            processed_nodes=b.processed_nodes,
            successful_modifications=b.successful_modifications,
            rejected_modifications=b.rejected,
            invalid_modifications=len(b.invalid),
            overall_strategy=b.overall_strategy,
            batch_confidence=b.batch_confidence,
        )


class EditResult(_ContractModel):
    success: bool
    modified_files: List[str] = Field(default_factory=list)
    total_replacements: int = 0
    batches: List[BatchReport] = Field(default_factory=list)
    diffs: List[str] = Field(default_factory=list)
    average_confidence: float = 0.0
    processing_time_ms: int = 0
    error: Optional[str] = None
    skipped_nodes: int = 0
    files_scanned: int = 0
    nodes_extracted: int = 0
    strategy_summary: str = ""
    applied_changes: List[AppliedChange] = Field(default_factory=list)
    scope: Optional[str] = None

    @classmethod
    def failure(cls, message: str, **kwargs: Any) -> "EditResult":
        return cls(success=False, error=message, strategy_summary="Processing failed", **kwargs)


class PreviewNode(_ContractModel):
    path: str
    content: str
    kind: str
    start_line: int
    end_line: int
    fragment_count: int = 1


class PreviewResult(_ContractModel):
    success: bool
    candidate_files: Dict[str, str] = Field(default_factory=dict)  # path -> locator strategy
    nodes: List[PreviewNode] = Field(default_factory=list)
    estimated_changes: int = 0
    summary: str = ""
