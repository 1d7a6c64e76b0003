"""
Run configuration, loaded from a single YAML file.

Every tunable lives in the file: locator ratios, fragment coverage and
look-ahead, batch size, the applier's line window. The one exception is the
oracle API key, which is read from an environment variable by default.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .errors import MissingApiKeyError


class ProjectConfig(BaseModel):
    root: str = "."
    output_dir: str = "hybridedit_output"


class LLMConfig(BaseModel):
    provider: Literal["openrouter", "openai"] = "openrouter"
    model: str = "anthropic/claude-3.5-sonnet"
    base_url: str = "https://openrouter.ai/api/v1"
    # an inline key overrides the env var; keep it out of committed files
    api_key: Optional[str] = None
    api_key_env: str = "OPENROUTER_API_KEY"
    site_url: str = ""
    site_name: str = ""
    temperature: float = 0.0
    max_tokens: int = 4000
    timeout_sec: float = Field(90.0, gt=0.0)
    max_retries: int = Field(2, ge=0)

    def resolved_api_key(self) -> str:
        key = self.api_key or os.environ.get(self.api_key_env)
        if key:
            return key
        raise MissingApiKeyError(
            f"No oracle API key: export {self.api_key_env} or set llm.api_key in the config file."
        )


class LocatorConfig(BaseModel):
    file_extensions: List[str] = Field(
        default_factory=lambda: [".tsx", ".ts", ".jsx", ".js", ".html", ".css"]
    )
    exclude_dirs: List[str] = Field(
        default_factory=lambda: ["node_modules", ".git", "dist", "build", ".next", "coverage"]
    )
    key_phrase_ratio: float = Field(0.4, gt=0.0, le=1.0)
    token_ratio: float = Field(0.6, gt=0.0, le=1.0)
    min_token_length: int = 3
    read_workers: int = Field(8, ge=1)


class ExtractionConfig(BaseModel):
    context_lines: int = Field(4, ge=0)
    fragment_coverage: float = Field(0.6, gt=0.0, le=1.0)
    fragment_lookahead: int = Field(5, ge=1)
    min_literal_length: int = Field(4, ge=1)
    max_snippet_lines: int = Field(40, ge=1)


class ProposalConfig(BaseModel):
    batch_size: int = Field(10, ge=1)
    max_concurrency: int = Field(4, ge=1)
    min_confidence: float = Field(0.0, ge=0.0, le=1.0)


class ApplyConfig(BaseModel):
    generate_diffs: bool = True
    line_window: int = Field(2, ge=0)


class RuntimeConfig(BaseModel):
    verbose: bool = True
    deadline_sec: Optional[float] = None


class HybridEditConfig(BaseModel):
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    locator: LocatorConfig = Field(default_factory=LocatorConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    proposals: ProposalConfig = Field(default_factory=ProposalConfig)
    apply: ApplyConfig = Field(default_factory=ApplyConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "HybridEditConfig":
        text = Path(path).read_text(encoding="utf-8")
        data: Dict[str, Any] = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level, got {type(data).__name__}")
        return cls.model_validate(data)
