"""
Error taxonomy. Every error carries a message that can be shown to the user
as is; none of them is retried automatically.
"""

from enum import StrEnum

GENERIC_RETRY_MESSAGE = "Something went wrong. Please try again."


class DriveDropError(Exception):
    user_message = GENERIC_RETRY_MESSAGE

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if message is not None:
            self.user_message = message


class Permission(StrEnum):
    CAMERA = "camera"
    LOCATION = "location"
    PHOTO_LIBRARY = "photo_library"


_PERMISSION_MESSAGES = {
    Permission.CAMERA: "Camera access is required to capture verification photos.",
    Permission.LOCATION: "Location permission is required for verification.",
    Permission.PHOTO_LIBRARY: "Please grant photo library access to upload images.",
}


class PermissionDeniedError(DriveDropError):
    """A device permission was refused; the operation is aborted."""

    def __init__(self, permission: Permission) -> None:
        self.permission = permission
        super().__init__(_PERMISSION_MESSAGES[permission])


class BackendError(DriveDropError):
    """A backend call failed or returned a non-2xx response."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        code: str | None = None,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.user_message = user_message or GENERIC_RETRY_MESSAGE

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class SubmissionStep(StrEnum):
    START = "start"
    PHOTOS = "photos"
    CONFIRM = "confirm"
    SUBMIT = "submit"


class SubmissionError(DriveDropError):
    """One of the ordered verification submission steps failed."""

    user_message = "Failed to submit verification. Please try again."

    def __init__(self, step: SubmissionStep, cause: BaseException) -> None:
        super().__init__(f"Verification {step} step failed: {cause}")
        self.user_message = SubmissionError.user_message
        self.step = step
        self.cause = cause


class IncompleteCaptureError(DriveDropError):
    user_message = "Please capture all 6 photos and select a decision."

    def __init__(self) -> None:
        super().__init__(self.user_message)


class SubmissionInProgressError(DriveDropError):
    user_message = "Verification is already being submitted."

    def __init__(self) -> None:
        super().__init__(self.user_message)


class AlreadySubmittedError(DriveDropError):
    user_message = "This verification has already been submitted."

    def __init__(self) -> None:
        super().__init__(self.user_message)


class PhotoCollectionError(DriveDropError):
    """A photo payload did not have the expected shape."""


class AccessDeniedError(DriveDropError):
    user_message = "You do not have permission to access this screen"

    def __init__(self, route: str) -> None:
        super().__init__(self.user_message)
        self.route = route


class ShipmentUnavailableError(DriveDropError):
    user_message = "This shipment is no longer available"


class DataIntegrityWarning(DriveDropError, UserWarning):
    """A write was acknowledged but could not be read back."""


def user_message_for(exc: BaseException) -> str:
    if isinstance(exc, DriveDropError):
        return exc.user_message
    return GENERIC_RETRY_MESSAGE
