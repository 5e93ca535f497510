# src/vmsync/contracts/errors.py
"""Error taxonomy for inventory synchronisation.

Errors are split by blast radius so callers can react correctly:
- ConnectivityError: an endpoint could not be reached. Fatal for the
  snapshot path, retried on the next tick for the batch path.
- DirectoryError: instance data is missing or malformed. Skips one row.
- SubscriptionError: the change notification stream failed. Fatal for
  the incremental pipeline.
- UploadError: the ingestion platform rejected an upload. Batches are
  retained and retried; a failed snapshot upload exits non-zero.
"""


class SyncError(Exception):
    """Base class for all vmsync exceptions."""


class ConnectivityError(SyncError):
    """Raised when the directory or ingestion endpoint cannot be reached."""


class DirectoryError(SyncError):
    """Raised when instance data is missing or malformed."""


class SubscriptionError(SyncError):
    """Raised when the change notification stream fails."""


class UploadError(SyncError):
    """Raised when the ingestion platform rejects an upload.

    Attributes:
        status_code: HTTP status of the failed response, None when no
            response was received
        body: Response text returned by the platform (may be empty)
    """

    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ExporterClosedError(SyncError):
    """Raised when a row is submitted to a BatchExporter that is shutting down."""


class BackpressureTimeout(SyncError):
    """Raised when a bounded submit times out because the hand-off queue stays full."""
