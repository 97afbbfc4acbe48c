"""Domain exceptions raised by the ingestion pipeline.

Each error carries the HTTP status the API layer answers with, so routers can
let them propagate to the shared exception handler in ``tradebook.main``.
"""
from typing import Any, Optional


class IngestionError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class MalformedInputError(IngestionError):
    """CSV has no header row, no data rows, or cannot be decoded."""
    status_code = 400


class FileTooLargeError(IngestionError):
    status_code = 413


class InvalidCorrectionError(IngestionError):
    """A corrected mapping targets a field that does not exist."""
    status_code = 400


class NoPendingMappingsError(IngestionError):
    status_code = 400


class ImportBatchNotFoundError(IngestionError):
    status_code = 404


class UploadSessionNotFoundError(IngestionError):
    status_code = 404


class FormatNotFoundError(IngestionError):
    status_code = 404


class InvalidBatchStateError(IngestionError):
    """Batch is not PENDING (already finalized, cancelled or failed)."""
    status_code = 409


class FormatAlreadyApprovedError(IngestionError):
    status_code = 409


class ExpiredUploadError(IngestionError):
    """Held CSV content is gone; the user has to upload the file again."""
    status_code = 410


class StagingLimitExceededError(IngestionError):
    status_code = 429


class UploadLimitExceededError(IngestionError):
    status_code = 429


class OrphanedUploadLogError(IngestionError):
    """No upload log matches the batch being finalized."""
    status_code = 500
