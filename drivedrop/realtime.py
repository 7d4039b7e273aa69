"""
In-process feed of row change notifications.

A transport (the hosted realtime socket, or the local emulator) publishes
ChangeEvents here; screens subscribe per table with optional column filters.
Subscribers are delivered to independently and in no particular order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    table: str
    event_type: ChangeType
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)

    def matches(self, filters: dict[str, Any]) -> bool:
        row = self.old if self.event_type == ChangeType.DELETE else self.new
        return all(row.get(column) == value for column, value in filters.items())


Callback = Callable[[ChangeEvent], Awaitable[None] | None]


class Subscription:
    def __init__(
        self,
        feed: ChangeFeed,
        table: str,
        callback: Callback,
        event_type: ChangeType | None,
        filters: dict[str, Any],
    ) -> None:
        self._feed = feed
        self.table = table
        self.callback = callback
        self.event_type = event_type
        self.filters = filters

    def wants(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.event_type is not None and event.event_type != self.event_type:
            return False
        return event.matches(self.filters)

    def unsubscribe(self) -> None:
        self._feed._remove(self)


class ChangeFeed:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        table: str,
        callback: Callback,
        event_type: ChangeType | None = None,
        filters: dict[str, Any] | None = None,
    ) -> Subscription:
        subscription = Subscription(self, table, callback, event_type, filters or {})
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def __len__(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: ChangeEvent) -> None:
        targets = [s for s in self._subscriptions if s.wants(event)]
        if not targets:
            return
        await asyncio.gather(*(self._deliver(s, event) for s in targets))

    async def _deliver(self, subscription: Subscription, event: ChangeEvent) -> None:
        try:
            result = subscription.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Change callback failed for %s %s", event.event_type, event.table
            )
