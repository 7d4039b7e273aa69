"""
Driver-side capture of the pickup verification photos and decision.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from drivedrop.errors import AlreadySubmittedError, SubmissionInProgressError
from drivedrop.models import VerificationDecision
from drivedrop.photos import REQUIRED_ANGLES, ClientReferencePhotos, PhotoAngle


class CapturedPhoto(BaseModel):
    angle: PhotoAngle
    uri: str  # Local device path until uploaded
    taken_at: datetime


class SubmissionProgress(BaseModel):
    """What a failed submission attempt already got the backend to accept."""

    verification_id: str | None = None
    registered: dict[PhotoAngle, str] = Field(default_factory=dict)  # angle -> url


class CaptureSession:
    def __init__(
        self, shipment_id: str, references: ClientReferencePhotos | None = None
    ) -> None:
        self.shipment_id = shipment_id
        self.references = references or ClientReferencePhotos()
        self.decision: VerificationDecision | None = None
        self.driver_notes: str = ""
        self.progress = SubmissionProgress()
        # Set by the submitter; photos are frozen while either is true
        self.submitting = False
        self.submitted = False
        self._photos: dict[PhotoAngle, CapturedPhoto] = {}

    def capture(
        self, angle: PhotoAngle | str, uri: str, taken_at: datetime | None = None
    ) -> CapturedPhoto:
        """Store a photo for an angle, replacing any earlier one."""
        if self.submitting:
            raise SubmissionInProgressError()
        if self.submitted:
            raise AlreadySubmittedError()
        angle = PhotoAngle(angle)
        photo = CapturedPhoto(
            angle=angle, uri=uri, taken_at=taken_at or datetime.now(UTC)
        )
        self._photos[angle] = photo
        # A new shot for this angle must be uploaded again
        self.progress.registered.pop(angle, None)
        return photo

    @property
    def photos(self) -> list[CapturedPhoto]:
        return [self._photos[a] for a in REQUIRED_ANGLES if a in self._photos]

    @property
    def photo_count(self) -> int:
        return len(self._photos)

    def photo_for(self, angle: PhotoAngle | str) -> CapturedPhoto | None:
        return self._photos.get(PhotoAngle(angle))

    def missing_angles(self) -> list[PhotoAngle]:
        return [a for a in REQUIRED_ANGLES if a not in self._photos]

    def reference_for(self, angle: PhotoAngle | str) -> str | None:
        return self.references.for_angle(angle)

    @property
    def can_submit(self) -> bool:
        return self.photo_count >= len(REQUIRED_ANGLES) and self.decision is not None

    @property
    def requires_client_response(self) -> bool:
        return self.decision == VerificationDecision.MINOR_DIFFERENCES

    @property
    def holds_shipment(self) -> bool:
        return self.decision in (
            VerificationDecision.MINOR_DIFFERENCES,
            VerificationDecision.MAJOR_ISSUES,
        )

    def pending_uploads(self) -> list[CapturedPhoto]:
        return [p for p in self.photos if p.angle not in self.progress.registered]
