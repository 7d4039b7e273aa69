import asyncio
from pathlib import Path

import pytest

from conftest import SHIPMENT_ID, FixedLocation, RecordingTransport, wait_for
from drivedrop.backend import BackendClient
from drivedrop.capture import CaptureSession
from drivedrop.client_response import ClientResponseController
from drivedrop.config import Settings
from drivedrop.database import Database
from drivedrop.errors import (
    AlreadySubmittedError,
    IncompleteCaptureError,
    PermissionDeniedError,
    SubmissionError,
    SubmissionInProgressError,
    SubmissionStep,
    user_message_for,
)
from drivedrop.models import VerificationDecision
from drivedrop.photos import REQUIRED_ANGLES, verification_from_row
from drivedrop.verification import VerificationSubmitter

START = "/start-verification"
REGISTER = "/verification-photos"
SUBMIT = "/submit-verification"


@pytest.mark.asyncio
async def test_matches_runs_three_steps_in_order(
    backend: BackendClient,
    transport: RecordingTransport,
    full_session: CaptureSession,
    settings: Settings,
    db: Database,
) -> None:
    """start -> photos -> submit, and the client is never prompted."""
    full_session.decision = VerificationDecision.MATCHES
    submitter = VerificationSubmitter(backend, FixedLocation(), settings)

    result = await submitter.submit(full_session)

    starts = transport.index("POST", START)
    registers = transport.index("POST", REGISTER)
    submits = transport.index("POST", SUBMIT)
    uploads = transport.index("POST", ".jpg")
    assert len(starts) == 1 and len(submits) == 1
    assert len(registers) == len(REQUIRED_ANGLES)
    assert len(uploads) == len(REQUIRED_ANGLES)
    assert starts[0] < min(uploads) and starts[0] < min(registers)
    assert max(registers) < submits[0]

    assert result.decision == VerificationDecision.MATCHES
    assert not result.awaits_client_response
    assert db.get("shipments", SHIPMENT_ID)["status"] == "pickup_verified"

    verification = verification_from_row(
        db.get("pickup_verifications", result.verification_id)
    )
    assert verification.registered_angles() == {a.value for a in REQUIRED_ANGLES}
    controller = ClientResponseController(backend, verification)
    assert not controller.should_prompt
    assert controller.start() is None


@pytest.mark.asyncio
async def test_uploaded_objects_and_public_urls(
    backend: BackendClient,
    full_session: CaptureSession,
    settings: Settings,
    db: Database,
) -> None:
    full_session.decision = VerificationDecision.MATCHES
    result = await VerificationSubmitter(backend, FixedLocation(), settings).submit(full_session)

    photos = db.get("pickup_verifications", result.verification_id)["driver_photos"]
    prefix = (
        "http://test/storage/v1/object/public/verification-photos/"
        f"{SHIPMENT_ID}/{result.verification_id}/"
    )
    for photo in photos:
        assert photo["url"].startswith(prefix + photo["angle"] + "_")
        key = photo["url"].split("/object/public/", 1)[1]
        assert db.objects.get(key).startswith(b"\xff\xd8")


@pytest.mark.asyncio
async def test_minor_differences_awaits_client(
    backend: BackendClient,
    full_session: CaptureSession,
    settings: Settings,
    db: Database,
) -> None:
    full_session.decision = VerificationDecision.MINOR_DIFFERENCES
    result = await VerificationSubmitter(backend, FixedLocation(), settings).submit(full_session)

    assert result.awaits_client_response
    verification = db.get("pickup_verifications", result.verification_id)
    assert verification["differences_description"] == "Minor differences noted"
    assert db.get("shipments", SHIPMENT_ID)["status"] == "pickup_verification_pending"


@pytest.mark.asyncio
async def test_driver_notes_are_sent(
    backend: BackendClient,
    full_session: CaptureSession,
    settings: Settings,
    db: Database,
) -> None:
    full_session.decision = VerificationDecision.MINOR_DIFFERENCES
    full_session.driver_notes = "  Small dent on the rear bumper  "
    result = await VerificationSubmitter(backend, FixedLocation(), settings).submit(full_session)

    verification = db.get("pickup_verifications", result.verification_id)
    assert verification["driver_notes"] == "Small dent on the rear bumper"
    assert verification["differences_description"] == "Small dent on the rear bumper"


@pytest.mark.asyncio
async def test_incomplete_capture_makes_no_requests(
    backend: BackendClient,
    transport: RecordingTransport,
    shipment,
    settings: Settings,
) -> None:
    session = CaptureSession(SHIPMENT_ID)
    session.capture("front", "/tmp/front.jpg")
    session.decision = VerificationDecision.MATCHES

    with pytest.raises(IncompleteCaptureError) as excinfo:
        await VerificationSubmitter(backend, FixedLocation(), settings).submit(session)
    assert user_message_for(excinfo.value) == "Please capture all 6 photos and select a decision."
    assert transport.requests == []


@pytest.mark.asyncio
async def test_location_denied_aborts(
    backend: BackendClient,
    transport: RecordingTransport,
    full_session: CaptureSession,
    settings: Settings,
) -> None:
    full_session.decision = VerificationDecision.MATCHES
    submitter = VerificationSubmitter(backend, FixedLocation(denied=True), settings)

    with pytest.raises(PermissionDeniedError):
        await submitter.submit(full_session)
    assert transport.requests == []
    assert not submitter.busy


@pytest.mark.asyncio
async def test_reentrant_submit_rejected(
    backend: BackendClient, full_session: CaptureSession, settings: Settings
) -> None:
    release = asyncio.Event()

    class SlowLocation(FixedLocation):
        async def current_location(self):
            await release.wait()
            return await super().current_location()

    full_session.decision = VerificationDecision.MATCHES
    submitter = VerificationSubmitter(backend, SlowLocation(), settings)

    first = asyncio.create_task(submitter.submit(full_session))
    await asyncio.sleep(0)
    assert submitter.busy
    with pytest.raises(SubmissionInProgressError):
        await submitter.submit(full_session)

    release.set()
    await first
    assert not submitter.busy


@pytest.mark.asyncio
async def test_start_failure_surfaces_error(
    backend: BackendClient,
    transport: RecordingTransport,
    full_session: CaptureSession,
    settings: Settings,
) -> None:
    transport.fail.add(("POST", START))
    full_session.decision = VerificationDecision.MATCHES

    with pytest.raises(SubmissionError) as excinfo:
        await VerificationSubmitter(backend, FixedLocation(), settings).submit(full_session)
    assert excinfo.value.step == SubmissionStep.START
    assert excinfo.value.user_message == "Failed to submit verification. Please try again."
    assert transport.count("POST", REGISTER) == 0


@pytest.mark.asyncio
async def test_photo_failure_then_manual_retry_resumes(
    backend: BackendClient,
    transport: RecordingTransport,
    full_session: CaptureSession,
    settings: Settings,
    photo_files: dict[str, Path],
    db: Database,
) -> None:
    """A retry reuses the verification and only uploads what is missing."""
    full_session.decision = VerificationDecision.MATCHES
    interior = photo_files["interior"]
    content = interior.read_bytes()
    interior.unlink()
    submitter = VerificationSubmitter(backend, FixedLocation(), settings)

    with pytest.raises(SubmissionError) as excinfo:
        await submitter.submit(full_session)
    assert excinfo.value.step == SubmissionStep.PHOTOS
    assert transport.count("POST", SUBMIT) == 0
    verification_id = full_session.progress.verification_id
    assert verification_id is not None
    assert len(full_session.progress.registered) == len(REQUIRED_ANGLES) - 1

    interior.write_bytes(content)
    result = await submitter.submit(full_session)

    assert result.verification_id == verification_id
    assert transport.count("POST", START) == 1
    assert transport.count("POST", REGISTER) == len(REQUIRED_ANGLES)
    assert len(db.table("pickup_verifications")) == 1
    assert db.get("shipments", SHIPMENT_ID)["status"] == "pickup_verified"


@pytest.mark.asyncio
async def test_unconfirmed_registrations_block_submit(
    backend: BackendClient,
    transport: RecordingTransport,
    full_session: CaptureSession,
    settings: Settings,
) -> None:
    """Submit waits for the backend to list every photo instead of sleeping."""
    transport.drop.add(("POST", REGISTER))
    full_session.decision = VerificationDecision.MATCHES

    with pytest.raises(SubmissionError) as excinfo:
        await VerificationSubmitter(backend, FixedLocation(), settings).submit(full_session)
    assert excinfo.value.step == SubmissionStep.CONFIRM
    reads = transport.count("GET", "/rest/v1/pickup_verifications")
    assert reads == settings.registration_confirm_attempts
    assert transport.count("POST", SUBMIT) == 0


@pytest.mark.asyncio
async def test_submit_failure_keeps_progress(
    backend: BackendClient,
    transport: RecordingTransport,
    full_session: CaptureSession,
    settings: Settings,
    db: Database,
) -> None:
    transport.fail.add(("POST", SUBMIT))
    full_session.decision = VerificationDecision.MATCHES
    submitter = VerificationSubmitter(backend, FixedLocation(), settings)

    with pytest.raises(SubmissionError) as excinfo:
        await submitter.submit(full_session)
    assert excinfo.value.step == SubmissionStep.SUBMIT
    assert full_session.pending_uploads() == []

    transport.fail.clear()
    await submitter.submit(full_session)
    assert transport.count("POST", REGISTER) == len(REQUIRED_ANGLES)
    assert db.get("shipments", SHIPMENT_ID)["status"] == "pickup_verified"


@pytest.mark.asyncio
async def test_local_copies_deleted_after_success(
    backend: BackendClient,
    full_session: CaptureSession,
    settings: Settings,
    photo_files: dict[str, Path],
) -> None:
    full_session.decision = VerificationDecision.MATCHES
    await VerificationSubmitter(backend, FixedLocation(), settings).submit(full_session)
    assert not any(path.exists() for path in photo_files.values())


@pytest.mark.asyncio
async def test_photos_frozen_while_uploading(
    backend: BackendClient,
    transport: RecordingTransport,
    full_session: CaptureSession,
    settings: Settings,
    db: Database,
    tmp_path: Path,
) -> None:
    """A re-shot during upload cannot swap the photo that gets registered."""
    release = asyncio.Event()
    transport.hold[("POST", ".jpg")] = release
    full_session.decision = VerificationDecision.MATCHES
    original = full_session.photo_for("front").uri
    retake = tmp_path / "front-retake.jpg"
    retake.write_bytes(b"\xff\xd8retake")

    task = asyncio.create_task(
        VerificationSubmitter(backend, FixedLocation(), settings).submit(full_session)
    )
    await wait_for(lambda: transport.held)
    with pytest.raises(SubmissionInProgressError):
        full_session.capture("front", str(retake))
    release.set()
    result = await task

    assert full_session.photo_for("front").uri == original
    assert retake.exists()
    photos = db.get("pickup_verifications", result.verification_id)["driver_photos"]
    assert len(photos) == len(REQUIRED_ANGLES)


@pytest.mark.asyncio
async def test_resubmit_after_success_rejected(
    backend: BackendClient,
    transport: RecordingTransport,
    full_session: CaptureSession,
    settings: Settings,
) -> None:
    full_session.decision = VerificationDecision.MATCHES
    submitter = VerificationSubmitter(backend, FixedLocation(), settings)
    await submitter.submit(full_session)
    sent = len(transport.requests)

    with pytest.raises(AlreadySubmittedError) as excinfo:
        await submitter.submit(full_session)
    assert user_message_for(excinfo.value) == "This verification has already been submitted."
    assert len(transport.requests) == sent

    with pytest.raises(AlreadySubmittedError):
        full_session.capture("front", "/tmp/front-again.jpg")
