"""
Common exceptions for diagramflow.

Each exception carries an error ``code`` understood by
``services.error_handler.ErrorHandler``.
"""
from typing import Optional


class DiagramFlowError(Exception):
    """Base exception for all diagramflow errors."""

    code = "CRITICAL_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ConfigurationError(DiagramFlowError):
    """Raised when there are configuration issues."""
    code = "CRITICAL_ERROR"


class FileValidationError(DiagramFlowError):
    """Raised when an input file is rejected before processing."""
    code = "INVALID_FORMAT"


class PageExtractionError(DiagramFlowError):
    """Raised when page images or text cannot be extracted."""
    code = "EXTRACTION_FAILED"


class DetectionAPIError(DiagramFlowError):
    """Raised when the vision detection API call fails."""

    code = "DETECTION_FAILED"

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        code: Optional[str] = None
    ):
        super().__init__(message, code)
        self.status_code = status_code


class ValidationError(DiagramFlowError):
    """Raised when untrusted data fails validation."""
    code = "VALIDATION_ERROR"


class RenderError(DiagramFlowError):
    """Raised when a diagram cannot be rendered."""
    code = "PROCESSING_ERROR"


class MemoryLimitError(DiagramFlowError):
    """Raised when an allocation would exceed memory limits."""
    code = "OUT_OF_MEMORY"


class StorageError(DiagramFlowError):
    """Raised when storage operations fail."""
    code = "PROCESSING_ERROR"


class SessionNotFoundError(DiagramFlowError):
    """Raised when a processing session id is unknown."""
    code = "VALIDATION_ERROR"


class OperationCancelledError(DiagramFlowError):
    """Raised when work is abandoned because its session was cancelled."""
    code = "PROCESSING_ERROR"
