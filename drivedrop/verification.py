"""
Driver-side submission of a pickup verification.

The submission is three ordered backend steps: start the verification, upload
and register every photo, then submit the decision. Photo uploads run
concurrently with each other but never before the start step or after the
submit step. A failed attempt is not rolled back; retrying the same session
resumes from what the backend already accepted.
"""

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from drivedrop.backend import BackendClient, eq
from drivedrop.capture import CapturedPhoto, CaptureSession
from drivedrop.config import Settings, get_settings
from drivedrop.errors import (
    AlreadySubmittedError,
    BackendError,
    DriveDropError,
    IncompleteCaptureError,
    SubmissionError,
    SubmissionInProgressError,
    SubmissionStep,
)
from drivedrop.models import Location, VerificationDecision
from drivedrop.photos import verification_from_row

logger = logging.getLogger(__name__)

DEFAULT_DIFFERENCES = "Minor differences noted"


class LocationProvider(Protocol):
    async def current_location(self) -> Location:
        """Raise PermissionDeniedError when location access is refused."""
        ...


class SubmissionResult(BaseModel):
    verification_id: str
    decision: VerificationDecision
    awaits_client_response: bool


class VerificationSubmitter:
    def __init__(
        self,
        backend: BackendClient,
        location_provider: LocationProvider,
        settings: Settings | None = None,
    ) -> None:
        self.backend = backend
        self.location_provider = location_provider
        self.settings = settings or get_settings()
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def submit(self, session: CaptureSession) -> SubmissionResult:
        if self._busy or session.submitting:
            raise SubmissionInProgressError()
        if session.submitted:
            raise AlreadySubmittedError()
        if not session.can_submit:
            raise IncompleteCaptureError()

        self._busy = session.submitting = True
        try:
            location = await self.location_provider.current_location()
            result = await self._run(session, location)
        finally:
            self._busy = session.submitting = False

        session.submitted = True
        await self._discard_local_copies(session.photos)
        return result

    async def _run(self, session: CaptureSession, location: Location) -> SubmissionResult:
        progress = session.progress
        shipment_id = session.shipment_id

        if progress.verification_id is None:
            try:
                progress.verification_id = await self.backend.start_verification(
                    shipment_id, location
                )
            except BackendError as exc:
                raise SubmissionError(SubmissionStep.START, exc) from exc
            logger.info(
                "Verification %s started for shipment %s",
                progress.verification_id,
                shipment_id,
            )
        else:
            logger.info("Resuming verification %s", progress.verification_id)
        verification_id = progress.verification_id

        pending = session.pending_uploads()
        results = await asyncio.gather(
            *(
                self._upload_and_register(session, verification_id, photo, location)
                for photo in pending
            ),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            for failure in failures:
                logger.error("Photo upload failed: %s", failure)
            raise SubmissionError(SubmissionStep.PHOTOS, failures[0]) from failures[0]
        logger.info("All %d photos registered", len(session.photos))

        try:
            await self._confirm_registrations(session, verification_id)
        except DriveDropError as exc:
            raise SubmissionError(SubmissionStep.CONFIRM, exc) from exc

        decision = session.decision
        notes = session.driver_notes.strip() or None
        differences = None
        if decision == VerificationDecision.MINOR_DIFFERENCES:
            differences = notes or DEFAULT_DIFFERENCES
        try:
            await self.backend.submit_verification(
                shipment_id,
                verification_id,
                decision,
                location,
                driver_notes=notes,
                differences=differences,
            )
        except BackendError as exc:
            raise SubmissionError(SubmissionStep.SUBMIT, exc) from exc
        logger.info("Verification %s submitted as %s", verification_id, decision)

        return SubmissionResult(
            verification_id=verification_id,
            decision=decision,
            awaits_client_response=session.requires_client_response,
        )

    async def _upload_and_register(
        self,
        session: CaptureSession,
        verification_id: str,
        photo: CapturedPhoto,
        location: Location,
    ) -> None:
        content = await asyncio.to_thread(Path(photo.uri).read_bytes)
        stamp = int(datetime.now(UTC).timestamp() * 1000)
        path = f"{session.shipment_id}/{verification_id}/{photo.angle}_{stamp}.jpg"
        url = await self.backend.upload_object(
            self.settings.verification_photo_bucket, path, content
        )
        await self.backend.register_photo(
            session.shipment_id, verification_id, photo.angle.value, url, location
        )
        session.progress.registered[photo.angle] = url
        logger.info("Photo %s registered", photo.angle)

    async def _confirm_registrations(
        self, session: CaptureSession, verification_id: str
    ) -> None:
        """Wait until the verification record lists every captured angle."""
        expected = {photo.angle.value for photo in session.photos}
        attempts = max(1, self.settings.registration_confirm_attempts)
        missing = expected
        for attempt in range(attempts):
            if attempt:
                await asyncio.sleep(self.settings.registration_confirm_interval)
            row = await self.backend.select_one(
                "pickup_verifications", {"id": eq(verification_id)}
            )
            if row is None:
                raise BackendError(f"Verification {verification_id} not found", 404)
            verification = verification_from_row(row)
            missing = expected - verification.registered_angles()
            if not missing:
                return
        raise BackendError(
            f"Photos not confirmed by backend: {', '.join(sorted(missing))}"
        )

    async def _discard_local_copies(self, photos: list[CapturedPhoto]) -> None:
        for photo in photos:
            try:
                await asyncio.to_thread(Path(photo.uri).unlink, missing_ok=True)
            except OSError as exc:
                logger.warning("Could not delete local photo %s: %s", photo.uri, exc)
