"""
Error kinds raised inside the pipeline.

Only the oracle-facing and file-system errors ever cross a stage boundary;
the engine turns all of them into structured results before returning.
"""

from __future__ import annotations


class HybridEditError(Exception):
    """Base class for every error raised by hybridedit."""


class ClassificationError(HybridEditError):
    """The oracle call or its parse failed during scope classification."""


class NoCandidateFilesError(HybridEditError):
    """No project file plausibly contains the search term."""


class NoNodesExtractedError(HybridEditError):
    """Candidate files were found but no text node qualified."""


class BatchOracleError(HybridEditError):
    """One proposal batch failed (transport error or unusable response)."""

    def __init__(self, batch_id: str, message: str):
        super().__init__(f"{batch_id}: {message}")
        self.batch_id = batch_id


class OracleResponseError(HybridEditError, ValueError):
    """The oracle reply carried no parseable JSON payload."""


class PathEscapeError(HybridEditError, ValueError):
    """A path resolved outside the project root."""


class MissingApiKeyError(HybridEditError, ValueError):
    """No oracle API key in the YAML file or the configured env var."""
