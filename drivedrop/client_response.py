"""
Client-side answer to a verification that found minor differences.

The client has a fixed window to approve or dispute; when it runs out the
verification is approved automatically. Whichever answer is recorded first
wins, whether it comes from this screen, its own timer, or another device.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel

from drivedrop.backend import BackendClient, eq, is_null
from drivedrop.countdown import ResponseWindow
from drivedrop.errors import BackendError
from drivedrop.models import ClientResponse, PickupVerification, ShipmentStatus
from drivedrop.photos import verification_from_row

logger = logging.getLogger(__name__)

# Seconds between countdown checks - tests shrink this
TICK_SECONDS = 1.0

MANUAL_APPROVE_NOTES = "Client approved verification"
AUTO_APPROVE_NOTES = "Auto-approved after 5 minutes"
DISPUTE_NOTES = "Client disputed verification - major discrepancies"
DISPUTE_REASON = "Client disputed pickup verification"

_FAILURE_MESSAGES = {
    ClientResponse.APPROVED: "Failed to approve verification. Please try again.",
    ClientResponse.DISPUTED: "Failed to dispute verification. Please try again.",
}

_response_locks: dict[str, asyncio.Lock] = {}
_locks_lock = asyncio.Lock()


async def _get_response_lock(verification_id: str) -> asyncio.Lock:
    """Get or create the lock serializing responses to one verification."""
    async with _locks_lock:
        if verification_id not in _response_locks:
            _response_locks[verification_id] = asyncio.Lock()
        return _response_locks[verification_id]


def clear_response_locks() -> None:
    """Forget every response lock, e.g. between test runs."""
    _response_locks.clear()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ResponseOutcome(BaseModel):
    verification_id: str
    response: ClientResponse
    automatic: bool = False
    shipment_status: ShipmentStatus | None = None  # None if not written by us
    refund_pending: bool = False
    already_resolved: bool = False  # Answered elsewhere before we got to it


class ClientResponseController:
    def __init__(
        self,
        backend: BackendClient,
        verification: PickupVerification,
        shipment_id: str | None = None,
        clock: Callable[[], datetime] | None = None,
        on_tick: Callable[[int], None] | None = None,
    ) -> None:
        self.backend = backend
        self.verification = verification
        self.shipment_id = shipment_id or verification.shipment_id
        self._clock = clock or _utcnow
        self._on_tick = on_tick
        self._window = (
            ResponseWindow(verification.verification_completed_at)
            if verification.verification_completed_at
            else None
        )
        self._outcome: ResponseOutcome | None = None
        self._recorded: tuple[ClientResponse, bool, str | None] | None = None
        self._task: asyncio.Task | None = None
        self._auto_approving = False

        if verification.is_resolved:
            self._outcome = self._outcome_from(verification)

    @property
    def outcome(self) -> ResponseOutcome | None:
        return self._outcome

    @property
    def resolved(self) -> bool:
        return self._outcome is not None

    @property
    def should_prompt(self) -> bool:
        return self.verification.awaiting_client and not self.resolved

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def remaining_seconds(self) -> int:
        if self._window is None:
            return 0
        return self._window.remaining_seconds(self._clock())

    def has_expired(self) -> bool:
        return self.remaining_seconds() == 0

    def start(self) -> asyncio.Task | None:
        """Start the countdown; returns None when there is nothing to wait for."""
        if not self.should_prompt:
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_countdown())
        return self._task

    def stop(self) -> None:
        """
        Cancel the countdown, e.g. when the screen is torn down.

        An auto-approval already under way always runs to completion.
        """
        if self._auto_approving:
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def approve(self, notes: str | None = None) -> ResponseOutcome:
        return await self._respond(
            ClientResponse.APPROVED, automatic=False, notes=notes or MANUAL_APPROVE_NOTES
        )

    async def auto_approve(self) -> ResponseOutcome:
        return await self._respond(
            ClientResponse.APPROVED, automatic=True, notes=AUTO_APPROVE_NOTES
        )

    async def dispute(self, reason: str | None = None) -> ResponseOutcome:
        return await self._respond(
            ClientResponse.DISPUTED,
            automatic=False,
            notes=DISPUTE_NOTES,
            reason=reason or DISPUTE_REASON,
        )

    async def _run_countdown(self) -> None:
        while not self.resolved:
            remaining = self.remaining_seconds()
            if self._on_tick is not None:
                self._on_tick(remaining)
            if remaining == 0:
                break
            await asyncio.sleep(TICK_SECONDS)

        if self.resolved:
            return
        self._auto_approving = True
        try:
            await self.auto_approve()
        except BackendError:
            logger.exception(
                "Auto-approve failed for verification %s", self.verification.id
            )
        finally:
            self._auto_approving = False

    async def _respond(
        self,
        response: ClientResponse,
        automatic: bool,
        notes: str,
        reason: str | None = None,
    ) -> ResponseOutcome:
        if self._outcome is not None:
            return self._outcome
        lock = await _get_response_lock(self.verification.id)
        async with lock:
            if self._outcome is not None:
                return self._outcome

            try:
                outcome = await self._record(response, automatic, notes, reason)
            except BackendError as exc:
                logger.error(
                    "Recording %s for verification %s failed: %s",
                    response,
                    self.verification.id,
                    exc,
                )
                raise BackendError(
                    str(exc),
                    status_code=exc.status_code,
                    code=exc.code,
                    user_message=_FAILURE_MESSAGES[response],
                ) from exc
            self._outcome = outcome
            _response_locks.pop(self.verification.id, None)

        current = asyncio.current_task()
        if self._task is not None and self._task is not current:
            self.stop()
        return outcome

    async def _record(
        self,
        response: ClientResponse,
        automatic: bool,
        notes: str,
        reason: str | None,
    ) -> ResponseOutcome:
        if self._recorded is None:
            # The backend decides whether someone already answered
            current = await self._fetch()
            if current.is_resolved:
                return self._mark_resolved(current)

            rows = await self.backend.update(
                "pickup_verifications",
                {"id": eq(self.verification.id), "client_response": is_null()},
                {
                    "client_response": response.value,
                    "client_responded_at": self._clock().isoformat(),
                    "client_response_notes": notes,
                },
            )
            if not rows:
                return self._mark_resolved(await self._fetch())
            self.verification = verification_from_row(rows[0])
            self._recorded = (response, automatic, reason)
            logger.info(
                "Verification %s %s%s",
                self.verification.id,
                response,
                " automatically" if automatic else "",
            )
        else:
            # Verification was written on an earlier attempt; finish the cascade
            response, automatic, reason = self._recorded

        return await self._cascade(response, automatic, reason)

    async def _cascade(
        self, response: ClientResponse, automatic: bool, reason: str | None
    ) -> ResponseOutcome:
        if response == ClientResponse.APPROVED:
            status = ShipmentStatus.PICKED_UP
            values: dict[str, str] = {"status": status.value}
        else:
            status = ShipmentStatus.CANCELLED
            values = {
                "status": status.value,
                "cancellation_reason": reason or DISPUTE_REASON,
            }
        await self.backend.update("shipments", {"id": eq(self.shipment_id)}, values)
        logger.info("Shipment %s moved to %s", self.shipment_id, status)

        return ResponseOutcome(
            verification_id=self.verification.id,
            response=response,
            automatic=automatic,
            shipment_status=status,
            refund_pending=response == ClientResponse.DISPUTED,
        )

    async def _fetch(self) -> PickupVerification:
        row = await self.backend.select_one(
            "pickup_verifications", {"id": eq(self.verification.id)}
        )
        if row is None:
            raise BackendError(f"Verification {self.verification.id} not found", 404)
        return verification_from_row(row)

    def _mark_resolved(self, verification: PickupVerification) -> ResponseOutcome:
        self.verification = verification
        logger.info(
            "Verification %s already answered (%s)",
            verification.id,
            verification.client_response,
        )
        return self._outcome_from(verification)

    def _outcome_from(self, verification: PickupVerification) -> ResponseOutcome:
        return ResponseOutcome(
            verification_id=verification.id,
            response=verification.client_response,
            automatic=verification.client_response_notes == AUTO_APPROVE_NOTES,
            already_resolved=True,
        )
