from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors raised by the pipeline itself."""


class ServiceError(PipelineError, RuntimeError):
    """External generation call failed or returned unusable content."""


class ConfigurationError(PipelineError, ValueError):
    """Malformed configuration; fatal, raised before any file is processed."""


class ResumabilityError(PipelineError, RuntimeError):
    """Persisted pipeline state exists but cannot be read back."""


class InvalidTransitionError(PipelineError, ValueError):
    """A stage status change that the state machine does not allow."""


class BatchClosedError(PipelineError, RuntimeError):
    """A batch result was mutated after ``complete()``."""


__all__ = [
    "PipelineError",
    "ServiceError",
    "ConfigurationError",
    "ResumabilityError",
    "InvalidTransitionError",
    "BatchClosedError",
]
