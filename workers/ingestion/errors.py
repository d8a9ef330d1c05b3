"""
Error taxonomy for the lab ingestion pipeline.

Validation and format errors are terminal; transient errors are retried by
the orchestrator; summarization failures are logged and ignored. Lines that
look like biomarkers but fail to parse are reported as data in
``parsingErrors`` rather than raised.
"""

from typing import Optional


class LabIngestionError(Exception):
    """Base class for pipeline errors."""

    user_message = "Lab result processing failed"


class ValidationError(LabIngestionError):
    """The upload itself is invalid (type, size, quota). Never retried."""

    def __init__(self, message: str):
        super().__init__(message)
        self.user_message = message


class QuotaExceededError(ValidationError):
    def __init__(self, message: str = "Lab upload limit reached. Please upgrade your subscription."):
        super().__init__(message)


class FormatExtractionError(LabIngestionError):
    """A reader could not parse its input. Never retried."""

    def __init__(self, mimetype: str, cause: Optional[BaseException] = None):
        self.mimetype = mimetype
        self.cause = cause
        self.user_message = f"Could not read this file ({mimetype})"
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to extract text from {mimetype}{detail}")


class TransientIOError(LabIngestionError):
    """Storage, database or OCR timeout/connection failure. Retried up to the ceiling."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SummarizationFailure(LabIngestionError):
    """The text-completion service failed or timed out."""


class PreprocessedTextValidationError(ValueError):
    """A PreprocessedText is missing or has malformed required fields."""
