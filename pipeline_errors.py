"""
Exceptions raised when an analysis precondition fails.

Every run is a single forward pass, so these are never retried: the run
aborts and the message (plus details) lands in the run log.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for precondition failures in the analysis pipelines."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


class ConfigError(PipelineError):
    """Raised when the pipeline configuration is missing keys or malformed."""


class CountFileMismatchError(PipelineError):
    """Raised when per-sample count files disagree on gene order or layout."""


class GeneOrderMismatchError(PipelineError):
    """Raised when two gene-indexed tables are not in the same order."""


class ArtifactSchemaError(PipelineError):
    """Raised when a persisted artifact does not match its declared schema."""
