"""
Custom exceptions for the precise-asv pipeline.

This module provides specific exception types for better error handling
and debugging throughout the denoising core.
"""


class PreciseASVError(Exception):
    """Base exception for precise-asv pipeline errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(PreciseASVError):
    """Raised when input validation fails."""
    pass


class ProcessingError(PreciseASVError):
    """Raised when data processing fails."""
    pass


class StatisticalError(PreciseASVError):
    """Raised when statistical analysis fails."""
    pass


class ConfigurationError(PreciseASVError):
    """Raised when configuration is invalid."""
    pass


class InsufficientDataError(StatisticalError):
    """Raised when a quality bucket has too few observations to fit."""
    pass


class InvalidModelError(StatisticalError):
    """Raised when an error model holds non-finite or out-of-range rates."""
    pass


class ChimeraAmbiguous(StatisticalError):
    """Raised when the cross-sample quorum cannot settle a chimera call."""
    pass


class MergeRejected(ProcessingError):
    """Raised when a read pair fails the overlap consistency check."""
    pass


class SampleProcessingError(ProcessingError):
    """Raised when one sample fails inside a batch stage."""

    def __init__(self, sample_id: str, stage: str, cause: Exception):
        super().__init__(
            f"sample {sample_id!r} failed during {stage}: {cause}",
            {"sample_id": sample_id, "stage": stage, "cause": repr(cause)},
        )
        self.sample_id = sample_id
        self.stage = stage
        self.cause = cause
