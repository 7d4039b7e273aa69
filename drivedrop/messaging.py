import logging
from datetime import UTC, datetime

from drivedrop.backend import BackendClient, eq
from drivedrop.errors import BackendError
from drivedrop.models import Message
from drivedrop.realtime import ChangeEvent, ChangeFeed, ChangeType, Subscription

logger = logging.getLogger(__name__)


class Conversation:
    """Chat between the client and the driver of one shipment."""

    def __init__(
        self, backend: BackendClient, shipment_id: str, feed: ChangeFeed | None = None
    ) -> None:
        self.backend = backend
        self.shipment_id = shipment_id
        self.feed = feed
        self.messages: list[Message] = []
        self._subscriptions: list[Subscription] = []

    async def load(self) -> list[Message]:
        rows = await self.backend.select(
            "messages",
            {"shipment_id": eq(self.shipment_id)},
            order="created_at.asc",
        )
        self.messages = [Message.model_validate(row) for row in rows]
        return self.messages

    async def send(self, sender_id: str, content: str) -> Message | None:
        content = content.strip()
        if not content:
            return None
        row = await self.backend.insert(
            "messages",
            {
                "shipment_id": self.shipment_id,
                "sender_id": sender_id,
                "content": content,
                "is_read": False,
            },
        )
        if row is None:
            return None
        message = Message.model_validate(row)
        self._add(message)
        return message

    async def mark_read(self, message_id: str, user_id: str) -> bool:
        try:
            await self.backend.rpc(
                "mark_message_as_read",
                {"p_message_id": message_id, "p_user_id": user_id},
            )
        except BackendError as exc:
            logger.warning("Could not mark message %s as read: %s", message_id, exc)
            return False

        now = datetime.now(UTC)
        self.messages = [
            m.model_copy(update={"is_read": True, "read_at": now})
            if m.id == message_id
            else m
            for m in self.messages
        ]
        return True

    def unread_count(self, user_id: str) -> int:
        return sum(1 for m in self.messages if not m.is_read and m.sender_id != user_id)

    def attach(self) -> None:
        if self.feed is None or self._subscriptions:
            return
        filters = {"shipment_id": self.shipment_id}
        self._subscriptions = [
            self.feed.subscribe(
                "messages", self._on_insert, event_type=ChangeType.INSERT, filters=filters
            ),
            self.feed.subscribe(
                "messages", self._on_update, event_type=ChangeType.UPDATE, filters=filters
            ),
        ]

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    def _on_insert(self, event: ChangeEvent) -> None:
        self._add(Message.model_validate(event.new))

    def _on_update(self, event: ChangeEvent) -> None:
        updated = Message.model_validate(event.new)
        self.messages = [updated if m.id == updated.id else m for m in self.messages]

    def _add(self, message: Message) -> None:
        if any(m.id == message.id for m in self.messages):
            return
        self.messages.append(message)
        self.messages.sort(key=lambda m: m.created_at)
