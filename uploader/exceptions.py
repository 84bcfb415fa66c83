"""Custom exception classes for the upload service."""

from typing import List, Optional


class IngestException(Exception):
    """
    Base exception class for all upload-service errors.
    """
    pass


class ClientInputError(IngestException):
    """
    Raised when request fields are missing or malformed. No side effects have happened.
    """
    pass


class MissingFileError(ClientInputError):
    """
    Raised when a required file part is absent from the request.
    """
    pass


class SecurityRejectedError(IngestException):
    """
    Raised when a staged file fails content inspection.

    Carries the inspector's blocking errors and advisory warnings so the
    caller can show both.
    """

    def __init__(self, message: str, errors: List[str], warnings: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors)
        self.warnings = list(warnings or [])


class InfrastructureFailure(IngestException):
    """
    Base class for backend failures. Details are logged, not returned to callers.
    """
    pass


class StagingError(InfrastructureFailure):
    """
    Raised when local staging storage cannot be read or written.
    """
    pass


class AssemblyError(InfrastructureFailure):
    """
    Raised when chunks cannot be concatenated into a complete file.
    """
    pass


class StorageFailureError(InfrastructureFailure):
    """
    Raised when the object store rejects, fails or times out an operation.
    """
    pass


class MetadataCommitError(InfrastructureFailure):
    """
    Raised when the metadata store cannot commit a record.
    """
    pass


class AuthorizationFailure(IngestException):
    """
    Base class for permission errors on existing resources.
    """
    pass


class UnauthorizedAccessError(AuthorizationFailure):
    """
    Raised when a user operates on a video or upload session they don't own.
    """
    pass


class InsufficientRoleError(AuthorizationFailure):
    """
    Raised when the caller's role does not allow the operation.
    """
    pass


class InvalidTokenError(IngestException):
    """
    Raised when the bearer token is missing, malformed or fails verification.
    """
    pass


class VideoNotFoundError(IngestException):
    """
    Raised when a requested video does not exist or was deleted.
    """
    pass


class UploadSessionClosedError(IngestException):
    """
    Raised when a chunk arrives for a session that is already assembling or finished.
    """
    pass


class ScannerUnavailableError(IngestException):
    """
    Raised by a scan backend that could not complete (not configured, unreachable, timed out).
    """
    pass
