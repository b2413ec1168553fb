"""Error types raised by the extraction pipeline and queue operations."""


class ExtractorError(Exception):
    """Base class for per-item pipeline failures."""

    retryable = True


class MissingMediaReference(ExtractorError):
    """No media URL could be derived from the queue item or its webhook."""

    retryable = False


class FetchError(ExtractorError):
    """Download failed (network, timeout or non-2xx response)."""


class ExtractionError(ExtractorError):
    """A format-specific extractor failed."""


class DocumentFormatError(ExtractionError):
    """Document bytes do not match the expected container format."""


class UnsupportedMediaType(ExtractionError):
    """No extractor exists for the item's media type."""

    retryable = False


class OCRError(ExtractionError):
    """The OCR service rejected the request or returned an error."""


class TranscriptionError(ExtractionError):
    """The transcription service reported a failed job."""


class TranscriptionTimeout(TranscriptionError):
    """The transcription job did not finish within the poll budget."""


class TranscriptionCancelled(TranscriptionError):
    """Polling was abandoned because the queue item went away."""


class StorageError(Exception):
    """Object storage upload failed. Never fatal for an item."""


class ItemNotFound(Exception):
    """Queue item or webhook does not exist."""


class ItemBusy(Exception):
    """Queue item is already being processed by this process."""


class StoreUnavailable(Exception):
    """The document store cannot be reached."""
