"""File swap error taxonomy

Every error carries the HTTP status it maps to and a message that is safe to
return to the remote caller. Internal details (paths, cipher or codec errors)
travel only in the exception chain and the server log.
"""

from fastapi import status


class FileSwapError(Exception):
    """Base class for file swap errors"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "An error occurred"

    def __init__(self, message: str = "", public_message: str = ""):
        super().__init__(message or self.default_message)
        self.public_message = public_message or self.default_message


class StorageError(FileSwapError):
    """Temporary file could not be created, written, closed or deleted"""

    default_message = "Temporary storage failure"


class WriterStateError(StorageError):
    """Operation is not allowed in the file writer's current state"""

    default_message = "Invalid file writer state"


class SigningError(FileSwapError):
    """Download token could not be signed"""

    default_message = "Failed to issue download token"


class InvalidRequest(FileSwapError):
    """Download request can be corrected by the user (bad, expired or consumed token)"""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid download request"


class InternalError(FileSwapError):
    """Download failed for a reason the user cannot correct"""

    default_message = "Failed to download file"
