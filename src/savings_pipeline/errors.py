"""Exceptions raised by the savings product pipeline.

Record-level validation failures and unmatched institutions are data, not
errors, and never surface as exceptions.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base error for pipeline failures."""


class ConfigurationError(PipelineError):
    """Raised when pipeline configuration is invalid or inconsistent."""


class SourceFileError(PipelineError):
    """Raised when an input file cannot be read or lacks source/method metadata."""


class AuditSchemaError(PipelineError):
    """Raised when an audit payload fails its schema before being written."""


class ConcurrentExecutionError(PipelineError):
    """Raised when a batch is started while another one is still running."""


class StageExecutionError(PipelineError):
    """Raised when a pipeline stage fails on infrastructure errors."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message
