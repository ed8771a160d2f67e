"""
Error taxonomy for the sync engine.

Every healthsync error derives from SyncError; the orchestrator reports its
message on SyncState.error. Whoever catches AuthError must also drop the
authenticated flag.
"""


class SyncError(RuntimeError):
    """Base class for all sync engine failures."""


class ConnectivityError(SyncError):
    """Raised when the remote drive cannot be reached at all."""


class AuthError(SyncError):
    """Raised when a token is missing, expired, or lacks permission.

    status_code is 401 or 403 when the drive answered, 0 otherwise.
    """

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class NotConnectedError(SyncError):
    """Raised by browsing calls made while no session is authenticated."""


class NotFoundError(SyncError):
    """Raised when a remote resource does not exist."""


class AttachmentNotFoundError(NotFoundError):
    """Raised when an attachment is absent from the attachments folder."""


class SnapshotValidationError(SyncError):
    """Raised when a remote table snapshot has the wrong shape."""


class DriveError(SyncError):
    """Raised for any other non-success response from the drive API."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class AttachmentResolutionError(DriveError):
    """Raised when a download URL could not be resolved for other reasons."""


class ProviderUnavailableError(SyncError):
    """Raised when the identity provider cannot run in this environment."""


class DuplicateRecordError(SyncError):
    """Raised by LocalStore.add() when the record id already exists."""
