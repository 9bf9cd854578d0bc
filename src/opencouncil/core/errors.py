"""Exception hierarchy for the ingestion pipeline."""

MAX_ERROR_MESSAGE_LENGTH = 500


class IngestError(Exception):
    """Base class for all ingestion errors."""


class ConfigError(IngestError):
    """Missing or malformed configuration."""


class MetadataError(IngestError):
    """A source key could not be parsed into metadata."""


class ObjectStoreError(IngestError):
    """The external object store returned an unusable response."""


class BlobStorageError(IngestError):
    """Raw file bytes could not be read back from blob storage."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class OcrError(IngestError):
    """Rasterization or text recognition failed."""


class IndexingError(IngestError):
    """The search backend did not accept a store or document."""


class InvalidTransition(IngestError):
    """A status change that the state machine does not allow."""


def truncate_error(error: object, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Render an error for storage on a job row."""
    message = str(error) or error.__class__.__name__
    return message[:limit]
