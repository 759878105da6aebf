# core/errors.py
"""Error taxonomy for indexing and retrieval."""
from core.enums import ErrorCode


class IndexingError(Exception):
    """Raised when indexing or retrieval fails with a specific error code"""

    error_code = ErrorCode.PROCESSING_FAILED

    def __init__(self, message: str, error_code: ErrorCode = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)

    def __str__(self):
        # Format used for logging and progress store
        return f"[{self.error_code.value}] {self.message}"


class UnsupportedDocumentTypeError(IndexingError):
    """Extension not recognized, or no extractor for the category. Terminal."""
    error_code = ErrorCode.UNSUPPORTED_TYPE


class ExtractionError(IndexingError):
    error_code = ErrorCode.EXTRACTION_FAILED


class StorageError(IndexingError):
    error_code = ErrorCode.STORAGE_FAILED


class ConfigurationError(IndexingError):
    """Pipeline used without the adapters it needs."""
    error_code = ErrorCode.CONFIGURATION_ERROR


class QueryValidationError(IndexingError):
    error_code = ErrorCode.INVALID_QUERY


class DocumentNotFoundError(IndexingError):
    error_code = ErrorCode.NOT_FOUND


class IndexingCancelledError(IndexingError):
    error_code = ErrorCode.CANCELLED


class DocumentIdConflictError(IndexingError):
    """Requested document id already belongs to another user."""
    error_code = ErrorCode.ID_CONFLICT
