import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum

from drivedrop.backend import BackendClient, eq
from drivedrop.models import DriverSettings
from drivedrop.realtime import ChangeEvent, ChangeFeed, ChangeType, Subscription

logger = logging.getLogger(__name__)


class Availability(StrEnum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AvailabilityToggle:
    """
    Driver shift state, kept in step with the remote driver_settings row.

    Local toggles are written through; changes made from another session
    arrive through the change feed. The newest ``updated_at`` wins.
    """

    def __init__(
        self,
        backend: BackendClient,
        driver_id: str,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend
        self.driver_id = driver_id
        self.feed = feed
        self._clock = clock or _utcnow
        self.state = Availability.UNAVAILABLE
        self.updated_at: datetime | None = None
        self._subscription: Subscription | None = None

    @property
    def is_available(self) -> bool:
        return self.state == Availability.AVAILABLE

    async def load(self) -> Availability:
        row = await self.backend.select_one(
            "driver_settings", {"driver_id": eq(self.driver_id)}
        )
        if row is not None:
            self._apply(DriverSettings.model_validate(row))
        return self.state

    async def toggle(self) -> Availability:
        previous = (self.state, self.updated_at)
        available = not self.is_available
        now = self._clock()
        self.state = Availability.AVAILABLE if available else Availability.UNAVAILABLE
        self.updated_at = now
        try:
            await self.backend.upsert(
                "driver_settings",
                {
                    "driver_id": self.driver_id,
                    "available_for_jobs": available,
                    "updated_at": now.isoformat(),
                },
            )
        except Exception:
            self.state, self.updated_at = previous
            raise
        logger.info("Driver %s is now %s", self.driver_id, self.state)
        return self.state

    def attach(self) -> Subscription | None:
        if self.feed is None:
            return None
        if self._subscription is None:
            self._subscription = self.feed.subscribe(
                "driver_settings",
                self._on_change,
                filters={"driver_id": self.driver_id},
            )
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_change(self, event: ChangeEvent) -> None:
        if event.event_type == ChangeType.DELETE:
            return
        self._apply(DriverSettings.model_validate(event.new))

    def _apply(self, settings: DriverSettings) -> None:
        if (
            self.updated_at is not None
            and settings.updated_at is not None
            and settings.updated_at < self.updated_at
        ):
            logger.debug("Ignoring stale settings for driver %s", self.driver_id)
            return
        self.state = (
            Availability.AVAILABLE
            if settings.available_for_jobs
            else Availability.UNAVAILABLE
        )
        self.updated_at = settings.updated_at or self.updated_at
